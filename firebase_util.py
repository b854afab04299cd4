import logging
import re
from functools import lru_cache
from typing import Optional, Tuple

import firebase_admin
from firebase_admin import credentials, db
from firebase_admin import exceptions as firebase_exceptions

from config import get_settings
from errors import PersistenceError, ValidationError, call_with_retry
from models import Coupon, Order

logger = logging.getLogger(__name__)

# Realtime Database keys may not contain these
_FORBIDDEN_KEY_CHARS = re.compile(r"[.$#\[\]/]")


@lru_cache()
def get_db_ref() -> db.Reference:
    """Initialize the Firebase app once and return the root DB reference."""
    settings = get_settings()
    if not firebase_admin._apps:
        try:
            cred = credentials.Certificate(settings.firebase_cred_path)
            firebase_admin.initialize_app(cred, {
                'databaseURL': settings.firebase_db_url
            })
        except Exception as e:
            raise RuntimeError(f"Firebase initialization failed: {e}") from e
    return db.reference("/")


def _key(value: str, what: str) -> str:
    if not value or _FORBIDDEN_KEY_CHARS.search(value):
        raise ValidationError(f"Invalid {what}: {value!r}")
    return value


class _FirebaseStore:
    def __init__(self, root: db.Reference, retry_attempts: int = 3, retry_backoff: float = 0.2):
        self.root = root
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

    def _run(self, label: str, fn):
        def attempt():
            try:
                return fn()
            except db.TransactionAbortedError as e:
                raise PersistenceError(str(e), transient=True) from e
            except (firebase_exceptions.UnavailableError, firebase_exceptions.DeadlineExceededError) as e:
                raise PersistenceError(str(e), transient=True) from e
            except firebase_exceptions.FirebaseError as e:
                raise PersistenceError(str(e)) from e

        return call_with_retry(
            attempt,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            retry_on=(PersistenceError,),
            label=f"firebase.{label}",
        )


class FirebaseCouponStore(_FirebaseStore):
    """
    Coupons live at ``coupons/<userId>``: one node per user, so the store
    itself can never hold two coupons for the same user.
    """

    def _ref(self, user_id: str) -> db.Reference:
        return self.root.child("coupons").child(_key(user_id, "user id"))

    def get_for_user(self, user_id: str) -> Optional[Coupon]:
        data = self._run("coupons.get", self._ref(user_id).get)
        return Coupon.model_validate(data) if data else None

    def find_active(self, code: str, user_id: str) -> Optional[Coupon]:
        coupon = self.get_for_user(user_id)
        if coupon and coupon.code == code and coupon.isActive:
            return coupon
        return None

    def delete_by_user(self, user_id: str) -> None:
        self._run("coupons.delete", self._ref(user_id).delete)

    def create(self, coupon: Coupon) -> Coupon:
        ref = self._ref(coupon.userId)
        self._run("coupons.set", lambda: ref.set(coupon.model_dump(mode="json")))
        return coupon

    def deactivate(self, code: str, user_id: str) -> bool:
        """Set ``isActive`` false only if the user's coupon still carries ``code``."""
        changed = []

        def txn(current):
            changed.clear()
            if not current or current.get("code") != code:
                return current
            if current.get("isActive"):
                changed.append(True)
            current["isActive"] = False
            return current

        ref = self._ref(user_id)
        self._run("coupons.deactivate", lambda: ref.transaction(txn))
        return bool(changed)


class FirebaseOrderStore(_FirebaseStore):
    """Orders are keyed by Stripe session id, which makes the session id unique."""

    def _ref(self, session_id: str) -> db.Reference:
        return self.root.child("orders").child(_key(session_id, "session id"))

    def get_by_session(self, session_id: str) -> Optional[Order]:
        data = self._run("orders.get", self._ref(session_id).get)
        return Order.model_validate(data) if data else None

    def create_if_absent(self, session_id: str, order: Order) -> Tuple[Order, bool]:
        payload = order.model_dump(mode="json")

        def txn(current):
            return current if current else payload

        ref = self._ref(session_id)
        stored = self._run("orders.create", lambda: ref.transaction(txn))
        saved = Order.model_validate(stored)
        return saved, saved.id == order.id
