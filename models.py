from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field


class CartItem(BaseModel):
    # Catalog documents arrive with "_id"
    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    name: str = Field(min_length=1)
    image: Optional[str] = None
    price: float = Field(ge=0)
    # 0 and null both price as a single unit
    quantity: Optional[int] = Field(default=None, ge=0)


class CheckoutRequest(BaseModel):
    # Left untyped so a non-list payload reaches the pricing check and gets a 400
    products: Any = None
    couponCode: Optional[str] = None


class CheckoutResponse(BaseModel):
    id: str
    totalAmount: float


class CheckoutSuccessRequest(BaseModel):
    sessionId: str = Field(min_length=1)


class ReconcileStatus(str, Enum):
    PAID = "paid"
    NOT_PAID = "not_paid"
    NOT_FOUND = "not_found"


class CheckoutSuccessResponse(BaseModel):
    success: bool
    status: ReconcileStatus
    message: str
    orderId: Optional[str] = None


class Coupon(BaseModel):
    code: str
    userId: str
    discountPercentage: float = Field(ge=0, le=100)
    isActive: bool = True
    expirationDate: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expirationDate


class CouponCreate(BaseModel):
    userId: str
    discountPercentage: float = Field(gt=0, le=100)
    validDays: int = Field(default=30, ge=1)


class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1)


class CouponValidateResponse(BaseModel):
    message: str
    coupon: Coupon


class ProductSnapshot(BaseModel):
    """Price and quantity the buyer saw when the checkout session was created."""

    id: str
    quantity: Optional[int] = None
    price: float


class OrderItem(BaseModel):
    product: str
    quantity: int
    price: float


class Order(BaseModel):
    id: str
    user: str
    products: List[OrderItem]
    totalAmount: float
    stripeSessionId: str
    createdAt: datetime


class GatewaySession(BaseModel):
    id: str
    payment_status: str
    amount_total: Optional[int] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    message: str
    error: str
