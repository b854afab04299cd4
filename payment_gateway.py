import logging
from typing import Any, Dict, List, Protocol

import stripe

from errors import GatewayError, NotFoundError, call_with_retry
from models import GatewaySession

logger = logging.getLogger(__name__)

# Stripe replaces this placeholder with the real session id on redirect
SESSION_ID_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


class PaymentGateway(Protocol):
    def create_checkout_session(
        self,
        line_items: List[Dict[str, Any]],
        mode: str,
        success_url: str,
        cancel_url: str,
        discounts: List[Dict[str, str]],
        metadata: Dict[str, str],
    ) -> str: ...

    def retrieve_session(self, session_id: str) -> GatewaySession: ...

    def create_percent_off_coupon(self, percent: float, duration: str = "once") -> str: ...


def _is_transient(e: stripe.StripeError) -> bool:
    if isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError)):
        return True
    status = getattr(e, "http_status", None)
    return isinstance(e, stripe.APIError) and (status is None or status >= 500)


def _to_gateway_error(e: stripe.StripeError) -> GatewayError:
    msg = getattr(e, "user_message", None) or str(e) or type(e).__name__
    return GatewayError(msg, transient=_is_transient(e))


class StripeGateway:
    """Payment Gateway collaborator backed by Stripe Checkout."""

    def __init__(self, api_key: str, retry_attempts: int = 3, retry_backoff: float = 0.2):
        if not api_key:
            raise RuntimeError("STRIPE_SECRET_KEY is not configured")
        self.api_key = api_key
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

    def _call(self, label: str, fn):
        def attempt():
            try:
                return fn()
            except stripe.StripeError as e:
                raise _to_gateway_error(e) from e

        return call_with_retry(
            attempt,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            retry_on=(GatewayError,),
            label=f"stripe.{label}",
        )

    def create_checkout_session(self, line_items, mode, success_url, cancel_url, discounts, metadata) -> str:
        session = self._call("checkout.Session.create", lambda: stripe.checkout.Session.create(
            api_key=self.api_key,
            payment_method_types=["card"],
            line_items=line_items,
            mode=mode,
            success_url=success_url,
            cancel_url=cancel_url,
            discounts=discounts,
            metadata=metadata,
        ))
        logger.info("Stripe checkout session created: %s", session.id)
        return session.id

    def retrieve_session(self, session_id: str) -> GatewaySession:
        def retrieve():
            try:
                return stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)
            except stripe.InvalidRequestError as e:
                if getattr(e, "code", None) == "resource_missing" or getattr(e, "http_status", None) == 404:
                    raise NotFoundError(f"Checkout session {session_id} not found") from e
                raise

        session = self._call("checkout.Session.retrieve", retrieve)
        metadata = session.get("metadata") or {}
        return GatewaySession(
            id=session.id,
            payment_status=session.get("payment_status") or "unpaid",
            amount_total=session.get("amount_total"),
            metadata={k: str(v) for k, v in metadata.items()},
        )

    def create_percent_off_coupon(self, percent: float, duration: str = "once") -> str:
        coupon = self._call("Coupon.create", lambda: stripe.Coupon.create(
            api_key=self.api_key,
            percent_off=percent,
            duration=duration,
        ))
        return coupon.id
