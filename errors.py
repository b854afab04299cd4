import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CheckoutError(Exception):
    """Base error surfaced to API clients as ``{"message", "error"}``."""

    status_code = 500
    message = "Error processing checkout"

    def __init__(self, error: str, message: Optional[str] = None):
        super().__init__(error)
        self.error = error
        if message is not None:
            self.message = message


class ValidationError(CheckoutError):
    status_code = 400
    message = "Invalid request"


class AuthError(CheckoutError):
    status_code = 401
    message = "Unauthorized"


class NotFoundError(CheckoutError):
    status_code = 404
    message = "Not found"


class GatewayError(CheckoutError):
    status_code = 500
    message = "Payment provider error"

    def __init__(self, error: str, message: Optional[str] = None, transient: bool = False):
        super().__init__(error, message)
        self.transient = transient


class PersistenceError(CheckoutError):
    status_code = 500
    message = "Storage error"

    def __init__(self, error: str, message: Optional[str] = None, transient: bool = False):
        super().__init__(error, message)
        self.transient = transient


def is_transient(exc: BaseException) -> bool:
    return bool(getattr(exc, "transient", False))


def call_with_retry(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    backoff: float = 0.2,
    retry_on: Tuple[Type[BaseException], ...] = (GatewayError, PersistenceError),
    label: str = "call",
) -> T:
    """Run ``fn`` and retry transient failures, sleeping ``backoff * attempt`` between tries."""
    attempts = max(1, attempts)
    for attempt in range(1, attempts):
        try:
            return fn()
        except retry_on as e:
            if not is_transient(e):
                raise
            logger.warning("%s failed (attempt %d/%d): %s; retrying", label, attempt, attempts, e)
            time.sleep(backoff * attempt)
    # Last attempt propagates whatever it raises
    return fn()
