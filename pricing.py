from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError
from models import CartItem, Coupon


@dataclass
class PricedCart:
    line_items: List[Dict[str, Any]]
    total_amount: int  # minor units
    discount_amount: int = 0


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_minor(price: float) -> int:
    return round_half_up(Decimal(str(price)) * 100)


def parse_cart(products: Any) -> List[CartItem]:
    if not isinstance(products, list) or len(products) == 0:
        raise ValidationError("Invalid or empty products array")
    try:
        return [p if isinstance(p, CartItem) else CartItem.model_validate(p) for p in products]
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid product in cart: {e.errors()[0]['msg']}") from e


def coupon_applies(coupon: Optional[Coupon], user_id: Optional[str]) -> bool:
    return coupon is not None and coupon.isActive and coupon.userId == user_id


def price_cart(
    products: Any,
    coupon: Optional[Coupon] = None,
    user_id: Optional[str] = None,
    currency: str = "inr",
) -> PricedCart:
    """
    Turn cart items into Stripe line items and a total in minor units.

    The coupon only counts if it is active and owned by ``user_id``.
    """
    items = parse_cart(products)

    line_items = []
    total = 0
    for item in items:
        unit_amount = to_minor(item.price)
        quantity = item.quantity or 1
        total += unit_amount * quantity
        product_data = {"name": item.name}
        if item.image:
            product_data["images"] = [item.image]
        line_items.append({
            "price_data": {
                "currency": currency,
                "product_data": product_data,
                "unit_amount": unit_amount,
            },
            "quantity": quantity,
        })

    discount = 0
    if coupon_applies(coupon, user_id):
        discount = round_half_up(Decimal(total) * Decimal(str(coupon.discountPercentage)) / 100)
        total -= discount

    return PricedCart(line_items=line_items, total_amount=total, discount_amount=discount)
