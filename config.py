import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _csv(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


@dataclass(frozen=True)
class Settings:
    client_url: str = "http://localhost:5173"
    stripe_secret_key: str = ""
    firebase_cred_path: str = "./firebase-adminsdk.json"
    firebase_db_url: str = ""
    admin_api_key: str = ""
    allowed_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173"])
    currency: str = "inr"

    # Loyalty reward
    reward_threshold_minor: int = 20000
    reward_discount_percent: int = 10
    reward_valid_days: int = 30
    reward_trigger: str = "checkout"  # "checkout" or "payment"

    retry_attempts: int = 3
    retry_backoff_seconds: float = 0.2
    log_level: str = "INFO"


@lru_cache()
def get_settings() -> Settings:
    trigger = os.getenv("REWARD_TRIGGER", "checkout").strip().lower()
    if trigger not in ("checkout", "payment"):
        raise RuntimeError(f"REWARD_TRIGGER must be 'checkout' or 'payment', got {trigger!r}")

    return Settings(
        client_url=os.getenv("CLIENT_URL", "http://localhost:5173").rstrip("/"),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
        firebase_cred_path=os.getenv("FIREBASE_CRED_JSON", "./firebase-adminsdk.json"),
        firebase_db_url=os.getenv("FIREBASE_DB_URL", ""),
        admin_api_key=os.getenv("ADMIN_API_KEY", ""),
        allowed_origins=_csv(os.getenv("ALLOWED_ORIGINS", "http://localhost:5173")),
        currency=os.getenv("CURRENCY", "inr").lower(),
        reward_threshold_minor=int(os.getenv("REWARD_THRESHOLD_MINOR", "20000")),
        reward_discount_percent=int(os.getenv("REWARD_DISCOUNT_PERCENT", "10")),
        reward_valid_days=int(os.getenv("REWARD_VALID_DAYS", "30")),
        reward_trigger=trigger,
        retry_attempts=int(os.getenv("RETRY_ATTEMPTS", "3")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "0.2")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
