"""Pytest fixtures: in-memory stand-ins for Stripe and Firebase."""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from checkout import CouponLedger, RewardIssuer, UserLocks
from config import Settings
from errors import NotFoundError
from models import Coupon, GatewaySession, Order

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class InMemoryCouponStore:
    def __init__(self) -> None:
        self.coupons: Dict[str, Coupon] = {}
        self.calls: List[str] = []

    def get_for_user(self, user_id: str) -> Optional[Coupon]:
        return self.coupons.get(user_id)

    def find_active(self, code: str, user_id: str) -> Optional[Coupon]:
        coupon = self.coupons.get(user_id)
        if coupon and coupon.code == code and coupon.isActive:
            return coupon
        return None

    def delete_by_user(self, user_id: str) -> None:
        self.calls.append(f"delete:{user_id}")
        self.coupons.pop(user_id, None)

    def create(self, coupon: Coupon) -> Coupon:
        self.calls.append(f"create:{coupon.userId}")
        assert coupon.userId not in self.coupons, "previous coupon must be deleted first"
        self.coupons[coupon.userId] = coupon
        return coupon

    def deactivate(self, code: str, user_id: str) -> bool:
        self.calls.append(f"deactivate:{code}:{user_id}")
        coupon = self.coupons.get(user_id)
        if not coupon or coupon.code != code or not coupon.isActive:
            return False
        self.coupons[user_id] = coupon.model_copy(update={"isActive": False})
        return True

    def add(self, code: str, user_id: str, percent: float = 10, active: bool = True,
            expires: Optional[datetime] = None) -> Coupon:
        coupon = Coupon(
            code=code,
            userId=user_id,
            discountPercentage=percent,
            isActive=active,
            expirationDate=expires or datetime.now(timezone.utc) + timedelta(days=30),
        )
        self.coupons[user_id] = coupon
        return coupon


class InMemoryOrderStore:
    def __init__(self) -> None:
        self.orders: Dict[str, Order] = {}

    def get_by_session(self, session_id: str) -> Optional[Order]:
        return self.orders.get(session_id)

    def create_if_absent(self, session_id: str, order: Order) -> Tuple[Order, bool]:
        if session_id in self.orders:
            return self.orders[session_id], False
        self.orders[session_id] = order
        return order, True


class FakeGateway:
    """Records every call; sessions start unpaid until ``pay`` is called."""

    def __init__(self) -> None:
        self.sessions: Dict[str, GatewaySession] = {}
        self.created: List[dict] = []
        self.coupons: Dict[str, float] = {}
        self.retrieved: List[str] = []

    def create_percent_off_coupon(self, percent: float, duration: str = "once") -> str:
        coupon_id = f"stripe_coupon_{len(self.coupons) + 1}"
        self.coupons[coupon_id] = percent
        assert duration == "once"
        return coupon_id

    def create_checkout_session(self, line_items, mode, success_url, cancel_url, discounts, metadata) -> str:
        session_id = f"cs_test_{len(self.created) + 1}"
        self.created.append({
            "id": session_id,
            "line_items": line_items,
            "mode": mode,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "discounts": discounts,
            "metadata": metadata,
        })
        subtotal = sum(li["price_data"]["unit_amount"] * li["quantity"] for li in line_items)
        for d in discounts:
            subtotal -= round(subtotal * self.coupons[d["coupon"]] / 100)
        self.sessions[session_id] = GatewaySession(
            id=session_id, payment_status="unpaid", amount_total=subtotal, metadata=dict(metadata),
        )
        return session_id

    def retrieve_session(self, session_id: str) -> GatewaySession:
        self.retrieved.append(session_id)
        if session_id not in self.sessions:
            raise NotFoundError(f"Checkout session {session_id} not found")
        return self.sessions[session_id]

    def pay(self, session_id: str, amount_total: Optional[int] = None) -> None:
        session = self.sessions[session_id]
        update = {"payment_status": "paid"}
        if amount_total is not None:
            update["amount_total"] = amount_total
        self.sessions[session_id] = session.model_copy(update=update)

    def add_session(self, session_id: str, payment_status: str, amount_total: int, metadata: dict) -> None:
        self.sessions[session_id] = GatewaySession(
            id=session_id, payment_status=payment_status, amount_total=amount_total, metadata=metadata,
        )


@pytest.fixture
def coupon_store() -> InMemoryCouponStore:
    return InMemoryCouponStore()


@pytest.fixture
def order_store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def ledger(coupon_store) -> CouponLedger:
    return CouponLedger(coupon_store, UserLocks(), clock=lambda: NOW)


@pytest.fixture
def rewards(ledger) -> RewardIssuer:
    return RewardIssuer(ledger, threshold_minor=20000, discount_percentage=10, valid_days=30)


@pytest.fixture
def settings() -> Settings:
    return Settings(client_url="http://shop.test", admin_api_key="admin-secret", currency="inr")


@pytest.fixture
def client(gateway, coupon_store, order_store, settings):
    import main

    app = main.app
    app.dependency_overrides[main.get_gateway] = lambda: gateway
    app.dependency_overrides[main.get_coupon_store] = lambda: coupon_store
    app.dependency_overrides[main.get_order_store] = lambda: order_store
    app.dependency_overrides[main.get_user_locks] = lambda: UserLocks()
    app.dependency_overrides[main.get_config] = lambda: settings
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()
