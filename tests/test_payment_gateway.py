"""Tests for the Stripe-backed gateway, with the Stripe API monkeypatched."""
import pytest
import stripe

from errors import GatewayError, NotFoundError
from payment_gateway import StripeGateway


class FakeStripeObject(dict):
    def __getattr__(self, name):
        return self[name]


@pytest.fixture
def gw():
    return StripeGateway("sk_test_123", retry_attempts=3, retry_backoff=0)


def test_requires_api_key():
    with pytest.raises(RuntimeError):
        StripeGateway("")


def test_create_session_passes_arguments(gw, monkeypatch):
    seen = {}

    def create(**kwargs):
        seen.update(kwargs)
        return FakeStripeObject(id="cs_test_abc")

    monkeypatch.setattr(stripe.checkout.Session, "create", create)

    session_id = gw.create_checkout_session(
        line_items=[{"price_data": {"currency": "inr", "product_data": {"name": "Mug"}, "unit_amount": 500},
                     "quantity": 1}],
        mode="payment",
        success_url="http://shop.test/purchase-success?session_id={CHECKOUT_SESSION_ID}",
        cancel_url="http://shop.test/purchase-cancel",
        discounts=[],
        metadata={"userId": "u1"},
    )

    assert session_id == "cs_test_abc"
    assert seen["api_key"] == "sk_test_123"
    assert seen["mode"] == "payment"
    assert seen["payment_method_types"] == ["card"]
    assert seen["metadata"] == {"userId": "u1"}


def test_percent_off_coupon_is_single_use(gw, monkeypatch):
    seen = {}

    def create(**kwargs):
        seen.update(kwargs)
        return FakeStripeObject(id="co_1")

    monkeypatch.setattr(stripe.Coupon, "create", create)

    assert gw.create_percent_off_coupon(10) == "co_1"
    assert seen["percent_off"] == 10
    assert seen["duration"] == "once"


def test_retrieve_session_maps_fields(gw, monkeypatch):
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", lambda sid, **kw: FakeStripeObject(
        id=sid, payment_status="paid", amount_total=10000,
        metadata={"userId": "u1", "couponCode": "", "products": "[]"},
    ))

    session = gw.retrieve_session("cs_1")

    assert session.id == "cs_1"
    assert session.payment_status == "paid"
    assert session.amount_total == 10000
    assert session.metadata["userId"] == "u1"


def test_retrieve_missing_session_is_not_found(gw, monkeypatch):
    calls = []

    def retrieve(sid, **kw):
        calls.append(sid)
        raise stripe.InvalidRequestError("No such checkout.session", "id", code="resource_missing", http_status=404)

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", retrieve)

    with pytest.raises(NotFoundError):
        gw.retrieve_session("cs_missing")
    assert calls == ["cs_missing"]


def test_connection_errors_retried(gw, monkeypatch):
    calls = []

    def create(**kwargs):
        calls.append(1)
        if len(calls) < 3:
            raise stripe.APIConnectionError("network down")
        return FakeStripeObject(id="co_ok")

    monkeypatch.setattr(stripe.Coupon, "create", create)

    assert gw.create_percent_off_coupon(5) == "co_ok"
    assert len(calls) == 3


def test_gives_up_after_bounded_attempts(gw, monkeypatch):
    calls = []

    def create(**kwargs):
        calls.append(1)
        raise stripe.RateLimitError("slow down")

    monkeypatch.setattr(stripe.Coupon, "create", create)

    with pytest.raises(GatewayError) as exc:
        gw.create_percent_off_coupon(5)
    assert exc.value.transient is True
    assert len(calls) == 3


def test_client_errors_not_retried(gw, monkeypatch):
    calls = []

    def create(**kwargs):
        calls.append(1)
        raise stripe.InvalidRequestError("Invalid currency", "currency", http_status=400)

    monkeypatch.setattr(stripe.checkout.Session, "create", create)

    with pytest.raises(GatewayError) as exc:
        gw.create_checkout_session([], "payment", "s", "c", [], {})
    assert "Invalid currency" in exc.value.error
    assert len(calls) == 1
