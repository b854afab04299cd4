import json
import logging
import secrets
import string
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Tuple
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from errors import GatewayError, NotFoundError, PersistenceError
from models import Coupon, GatewaySession, Order, OrderItem, ProductSnapshot, ReconcileStatus
from payment_gateway import SESSION_ID_PLACEHOLDER, PaymentGateway
from pricing import parse_cart, price_cart

logger = logging.getLogger(__name__)

GIFT_PREFIX = "GIFT"
_BASE36 = string.digits + string.ascii_uppercase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


class CouponStore(Protocol):
    def get_for_user(self, user_id: str) -> Optional[Coupon]: ...
    def find_active(self, code: str, user_id: str) -> Optional[Coupon]: ...
    def delete_by_user(self, user_id: str) -> None: ...
    def create(self, coupon: Coupon) -> Coupon: ...
    def deactivate(self, code: str, user_id: str) -> bool: ...


class OrderStore(Protocol):
    def get_by_session(self, session_id: str) -> Optional[Order]: ...
    def create_if_absent(self, session_id: str, order: Order) -> Tuple[Order, bool]: ...


class UserLocks:
    """One lock per user id, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._holders: Dict[str, int] = {}
        self._guard = threading.Lock()

    @contextmanager
    def for_user(self, user_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(user_id, threading.Lock())
            self._holders[user_id] = self._holders.get(user_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._holders[user_id] -= 1
                if not self._holders[user_id]:
                    del self._holders[user_id]
                    del self._locks[user_id]


class CouponLedger:
    def __init__(self, store: CouponStore, locks: UserLocks, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.locks = locks
        self.clock = clock

    def find_usable(self, code: Optional[str], user_id: str) -> Optional[Coupon]:
        """Active, unexpired coupon ``code`` owned by ``user_id``, else None."""
        code = normalize_code(code)
        if not code:
            return None
        coupon = self.store.find_active(code, user_id)
        if coupon is None:
            logger.info("Coupon %s not active for user %s", code, user_id)
            return None
        if coupon.is_expired(self.clock()):
            logger.info("Coupon %s for user %s expired at %s", code, user_id, coupon.expirationDate)
            return None
        return coupon

    def get_user_coupon(self, user_id: str) -> Optional[Coupon]:
        coupon = self.store.get_for_user(user_id)
        if coupon and coupon.isActive and not coupon.is_expired(self.clock()):
            return coupon
        return None

    def validate(self, code: str, user_id: str) -> Coupon:
        coupon = self.find_usable(code, user_id)
        if coupon is None:
            raise NotFoundError("Coupon not found or expired", message="Invalid coupon")
        return coupon

    def replace(self, user_id: str, discount_percentage: float, valid_days: int) -> Coupon:
        coupon = Coupon(
            code=GIFT_PREFIX + "".join(secrets.choice(_BASE36) for _ in range(6)),
            userId=user_id,
            discountPercentage=discount_percentage,
            isActive=True,
            expirationDate=self.clock() + timedelta(days=valid_days),
        )
        with self.locks.for_user(user_id):
            self.store.delete_by_user(user_id)
            self.store.create(coupon)
        logger.info("Coupon %s (%s%%) issued to user %s", coupon.code, discount_percentage, user_id)
        return coupon

    def deactivate(self, code: str, user_id: str) -> bool:
        with self.locks.for_user(user_id):
            changed = self.store.deactivate(code, user_id)
        if changed:
            logger.info("Coupon %s deactivated for user %s", code, user_id)
        return changed


class RewardIssuer:
    """Grants a loyalty coupon once a purchase clears the spend threshold."""

    def __init__(self, ledger: CouponLedger, threshold_minor: int = 20000,
                 discount_percentage: float = 10, valid_days: int = 30):
        self.ledger = ledger
        self.threshold_minor = threshold_minor
        self.discount_percentage = discount_percentage
        self.valid_days = valid_days

    def qualifies(self, total_minor: int) -> bool:
        return total_minor >= self.threshold_minor

    def issue(self, user_id: str) -> Coupon:
        return self.ledger.replace(user_id, self.discount_percentage, self.valid_days)

    def maybe_issue(self, user_id: str, total_minor: int) -> Optional[Coupon]:
        if not self.qualifies(total_minor):
            return None
        return self.issue(user_id)


@dataclass
class CheckoutSession:
    id: str
    total_amount: float  # major units
    total_minor: int
    reward: Optional[Coupon] = None


def snapshot_products(products: List[Any]) -> str:
    # Stripe caps each metadata value at 500 characters, roughly nine cart lines;
    # larger carts fail session creation with a GatewayError.
    items = parse_cart(products)
    return json.dumps([
        {"id": item.id, "quantity": item.quantity, "price": item.price} for item in items
    ], separators=(",", ":"))


class CheckoutSessionBuilder:
    def __init__(self, gateway: PaymentGateway, ledger: CouponLedger, rewards: RewardIssuer,
                 client_url: str, currency: str = "inr", reward_on_checkout: bool = True):
        self.gateway = gateway
        self.ledger = ledger
        self.rewards = rewards
        self.client_url = client_url.rstrip("/")
        self.currency = currency
        self.reward_on_checkout = reward_on_checkout

    @property
    def success_url(self) -> str:
        return f"{self.client_url}/purchase-success?session_id={SESSION_ID_PLACEHOLDER}"

    @property
    def cancel_url(self) -> str:
        return f"{self.client_url}/purchase-cancel"

    def create_session(self, user_id: str, products: Any, coupon_code: Optional[str] = None) -> CheckoutSession:
        # Validates before any gateway or store call
        items = parse_cart(products)

        coupon = self.ledger.find_usable(coupon_code, user_id)
        priced = price_cart(items, coupon=coupon, user_id=user_id, currency=self.currency)

        discounts = []
        if coupon is not None:
            stripe_coupon_id = self.gateway.create_percent_off_coupon(coupon.discountPercentage, duration="once")
            discounts.append({"coupon": stripe_coupon_id})
            logger.info("Applied coupon %s for user %s (-%d minor units)",
                        coupon.code, user_id, priced.discount_amount)

        metadata = {
            "userId": user_id,
            "couponCode": coupon.code if coupon else "",
            "products": snapshot_products(items),
        }
        session_id = self.gateway.create_checkout_session(
            line_items=priced.line_items,
            mode="payment",
            success_url=self.success_url,
            cancel_url=self.cancel_url,
            discounts=discounts,
            metadata=metadata,
        )
        logger.info("Checkout session %s created for user %s, total=%d", session_id, user_id, priced.total_amount)

        reward = None
        if self.reward_on_checkout:
            reward = self.rewards.maybe_issue(user_id, priced.total_amount)

        return CheckoutSession(
            id=session_id,
            total_amount=priced.total_amount / 100,
            total_minor=priced.total_amount,
            reward=reward,
        )


@dataclass
class ReconcileResult:
    status: ReconcileStatus
    order_id: Optional[str] = None
    created: bool = False
    coupon_deactivated: bool = False


def order_from_session(session: GatewaySession, clock: Callable[[], datetime] = utcnow) -> Order:
    metadata = session.metadata
    user_id = metadata.get("userId")
    if not user_id:
        raise GatewayError(f"Session {session.id} carries no userId metadata")
    try:
        snapshot = [ProductSnapshot.model_validate(p) for p in json.loads(metadata.get("products") or "[]")]
    except (ValueError, PydanticValidationError) as e:
        raise GatewayError(f"Session {session.id} has a malformed products snapshot: {e}") from e

    return Order(
        id=uuid4().hex,
        user=user_id,
        products=[OrderItem(product=p.id, quantity=p.quantity or 1, price=p.price) for p in snapshot],
        totalAmount=(session.amount_total or 0) / 100,
        stripeSessionId=session.id,
        createdAt=clock(),
    )


class CheckoutReconciler:
    """Turns a paid Stripe session into an order, at most once per session id."""

    def __init__(self, gateway: PaymentGateway, ledger: CouponLedger, orders: OrderStore,
                 rewards: Optional[RewardIssuer] = None):
        self.gateway = gateway
        self.ledger = ledger
        self.orders = orders
        # Set only when rewards are granted on confirmed payment
        self.rewards = rewards

    def reconcile(self, session_id: str) -> ReconcileResult:
        session = self.gateway.retrieve_session(session_id)
        if session.payment_status != "paid":
            logger.info("Session %s not paid yet (payment_status=%s)", session_id, session.payment_status)
            return ReconcileResult(status=ReconcileStatus.NOT_PAID)

        existing = self.orders.get_by_session(session_id)
        if existing is not None:
            logger.info("Session %s already reconciled as order %s", session_id, existing.id)
            return ReconcileResult(status=ReconcileStatus.PAID, order_id=existing.id)

        order = order_from_session(session, self.ledger.clock)

        deactivated = False
        coupon_code = session.metadata.get("couponCode")
        if coupon_code:
            deactivated = self.ledger.deactivate(coupon_code, order.user)

        try:
            saved, created = self.orders.create_if_absent(session_id, order)
        except PersistenceError:
            logger.error("Failed to persist order for session %s", session_id)
            raise

        if created:
            logger.info("Order %s created for session %s (user=%s, total=%.2f)",
                        saved.id, session_id, saved.user, saved.totalAmount)
            if self.rewards is not None:
                self.rewards.maybe_issue(saved.user, session.amount_total or 0)
        else:
            logger.info("Session %s reconciled concurrently; keeping order %s", session_id, saved.id)

        return ReconcileResult(
            status=ReconcileStatus.PAID,
            order_id=saved.id,
            created=created,
            coupon_deactivated=deactivated,
        )

    def try_reconcile(self, session_id: str) -> ReconcileResult:
        """Like ``reconcile`` but reports an unknown session as a result instead of raising."""
        try:
            return self.reconcile(session_id)
        except NotFoundError:
            logger.warning("Session %s unknown to the payment gateway", session_id)
            return ReconcileResult(status=ReconcileStatus.NOT_FOUND)
