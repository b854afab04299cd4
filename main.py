import logging
import os
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from checkout import (
    CheckoutReconciler, CheckoutSessionBuilder, CouponLedger, RewardIssuer, UserLocks,
)
from config import Settings, get_settings
from errors import AuthError, CheckoutError, ValidationError
from firebase_util import FirebaseCouponStore, FirebaseOrderStore, get_db_ref
from models import (
    CheckoutRequest, CheckoutResponse, CheckoutSuccessRequest, CheckoutSuccessResponse,
    Coupon, CouponCreate, CouponValidateRequest, CouponValidateResponse, ReconcileStatus,
)
from payment_gateway import StripeGateway

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront checkout")

# Allow frontend CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.error)
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message, "error": exc.error})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    detail = first.get("msg", "Malformed request")
    error = f"{field}: {detail}" if field else detail
    return JSONResponse(status_code=400, content={"message": ValidationError.message, "error": error})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal server error", "error": str(exc)})


# Collaborators, built once per process; tests swap them via dependency_overrides

@lru_cache()
def get_user_locks() -> UserLocks:
    return UserLocks()


@lru_cache()
def get_gateway() -> StripeGateway:
    return StripeGateway(settings.stripe_secret_key, settings.retry_attempts, settings.retry_backoff_seconds)


@lru_cache()
def get_coupon_store() -> FirebaseCouponStore:
    return FirebaseCouponStore(get_db_ref(), settings.retry_attempts, settings.retry_backoff_seconds)


@lru_cache()
def get_order_store() -> FirebaseOrderStore:
    return FirebaseOrderStore(get_db_ref(), settings.retry_attempts, settings.retry_backoff_seconds)


def get_config() -> Settings:
    return settings


def get_ledger(store=Depends(get_coupon_store), locks: UserLocks = Depends(get_user_locks)) -> CouponLedger:
    return CouponLedger(store, locks)


def get_reward_issuer(ledger: CouponLedger = Depends(get_ledger),
                      config: Settings = Depends(get_config)) -> RewardIssuer:
    return RewardIssuer(
        ledger,
        threshold_minor=config.reward_threshold_minor,
        discount_percentage=config.reward_discount_percent,
        valid_days=config.reward_valid_days,
    )


def get_session_builder(gateway=Depends(get_gateway),
                        ledger: CouponLedger = Depends(get_ledger),
                        rewards: RewardIssuer = Depends(get_reward_issuer),
                        config: Settings = Depends(get_config)) -> CheckoutSessionBuilder:
    return CheckoutSessionBuilder(
        gateway, ledger, rewards,
        client_url=config.client_url,
        currency=config.currency,
        reward_on_checkout=config.reward_trigger == "checkout",
    )


def get_reconciler(gateway=Depends(get_gateway),
                   ledger: CouponLedger = Depends(get_ledger),
                   orders=Depends(get_order_store),
                   rewards: RewardIssuer = Depends(get_reward_issuer),
                   config: Settings = Depends(get_config)) -> CheckoutReconciler:
    return CheckoutReconciler(
        gateway, ledger, orders,
        rewards=rewards if config.reward_trigger == "payment" else None,
    )


# Identity is resolved upstream; this service only reads the forwarded user id
def current_user(user_id: Optional[str] = Header(None, alias="x-user-id")) -> str:
    if not user_id or not user_id.strip():
        raise AuthError("Missing x-user-id header")
    return user_id.strip()


# Admin API key check
def check_admin(api_key: Optional[str] = Header(None, alias="x-api-key"),
                config: Settings = Depends(get_config)) -> None:
    if not config.admin_api_key or api_key != config.admin_api_key:
        raise AuthError("Invalid API key")


@app.get("/health")
def health():
    return {"status": "ok"}


# 1. CREATE CHECKOUT SESSION
@app.post("/api/payments/checkout", response_model=CheckoutResponse)
def create_checkout_session(body: CheckoutRequest,
                            user_id: str = Depends(current_user),
                            builder: CheckoutSessionBuilder = Depends(get_session_builder)):
    session = builder.create_session(user_id, body.products, body.couponCode)
    return {"id": session.id, "totalAmount": session.total_amount}


# 2. CHECKOUT SUCCESS CALLBACK
@app.post("/api/payments/checkout-success", response_model=CheckoutSuccessResponse,
          responses={402: {"model": CheckoutSuccessResponse}})
def checkout_success(body: CheckoutSuccessRequest,
                     user_id: str = Depends(current_user),
                     reconciler: CheckoutReconciler = Depends(get_reconciler)):
    result = reconciler.reconcile(body.sessionId)

    if result.status == ReconcileStatus.NOT_PAID:
        payload = CheckoutSuccessResponse(
            success=False,
            status=result.status,
            message="Payment not completed yet; no order was created.",
        )
        return JSONResponse(status_code=402, content=payload.model_dump(mode="json"))

    message = "Payment successful, order created, and coupon deactivated if used."
    if not result.created:
        message = "Payment already processed; returning the existing order."
    return CheckoutSuccessResponse(success=True, status=result.status, message=message, orderId=result.order_id)


# 3. GET CURRENT USER'S COUPON
@app.get("/api/coupon", response_model=Optional[Coupon])
def get_coupon(user_id: str = Depends(current_user), ledger: CouponLedger = Depends(get_ledger)):
    return ledger.get_user_coupon(user_id)


# 4. VALIDATE COUPON
@app.post("/api/coupon/validate", response_model=CouponValidateResponse)
def validate_coupon(body: CouponValidateRequest,
                    user_id: str = Depends(current_user),
                    ledger: CouponLedger = Depends(get_ledger)):
    coupon = ledger.validate(body.code, user_id)
    return {"message": f"✅ {coupon.code} applied – {coupon.discountPercentage:g}% off", "coupon": coupon}


# 5. GRANT COUPON (admin)
@app.post("/api/coupon", response_model=Coupon, dependencies=[Depends(check_admin)])
def grant_coupon(body: CouponCreate, ledger: CouponLedger = Depends(get_ledger)):
    return ledger.replace(body.userId, body.discountPercentage, body.validDays)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
