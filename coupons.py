"""
Coupon validation and redemption.

Validation never writes. Redemption (a usage row plus the usage counter) is a
separate step and only happens once an order exists, so abandoned checkouts
don't consume anyone's allowance.
"""

import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from errors import (
    BelowMinimumOrderError,
    ConflictError,
    CouponExpiredError,
    CouponInactiveError,
    CouponNotYetValidError,
    PerUserLimitReachedError,
    UnauthorizedError,
    UsageLimitReachedError,
)
from schemas import Coupon, DiscountType, utcnow
from stores import Session

logger = logging.getLogger(__name__)


class CouponSummary(BaseModel):
    """The customer-facing view of a coupon; usage counters stay private."""
    code: str
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: int
    max_discount: Optional[int] = None
    min_order_amount: Optional[int] = None


class CouponQuote(BaseModel):
    coupon_id: str
    discount: int
    coupon: CouponSummary


def format_amount(minor_units: int) -> str:
    """Render paise as rupees with Indian digit grouping, e.g. 150000000 -> '15,00,000'."""
    rupees, paise = divmod(minor_units, 100)
    digits = str(rupees)
    if len(digits) > 3:
        head, tail = digits[:-3], digits[-3:]
        groups = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        digits = ",".join(groups + [tail])
    if paise:
        digits += f".{paise:02d}".rstrip("0")
    return digits


def compute_discount(coupon: Coupon, subtotal: int) -> int:
    if coupon.discount_type == DiscountType.PERCENTAGE:
        # halves round up
        discount = (subtotal * coupon.discount_value + 50) // 100
        if coupon.max_discount is not None and discount > coupon.max_discount:
            discount = coupon.max_discount
        return discount
    return coupon.discount_value


def summarize(coupon: Coupon) -> CouponSummary:
    return CouponSummary(
        code=coupon.code,
        description=coupon.description,
        discount_type=coupon.discount_type,
        discount_value=coupon.discount_value,
        max_discount=coupon.max_discount,
        min_order_amount=coupon.min_order_amount,
    )


def validate_coupon(
    session: Session,
    code: str,
    subtotal: Optional[int],
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CouponQuote:
    """Check every redemption rule for `code` against `subtotal`.

    Rules are evaluated in a fixed order and the first failure is raised:
    not found, inactive, not yet valid, expired, global usage limit, the
    caller's own usage (only when `user_id` is known), minimum order amount
    (only when `subtotal` is known).
    """
    now = now or utcnow()
    coupon = session.coupons.find_by_code(code)

    if not coupon.is_active:
        raise CouponInactiveError()
    if now < coupon.valid_from:
        raise CouponNotYetValidError()
    if now > coupon.valid_to:
        raise CouponExpiredError()
    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        raise UsageLimitReachedError()
    if user_id is not None:
        used = session.coupons.count_usage_by_user(coupon.id, user_id)
        if used >= coupon.per_user_limit:
            raise PerUserLimitReachedError()
    if coupon.min_order_amount is not None and subtotal is not None and subtotal < coupon.min_order_amount:
        raise BelowMinimumOrderError(coupon.min_order_amount, format_amount(coupon.min_order_amount))

    return CouponQuote(
        coupon_id=coupon.id,
        discount=compute_discount(coupon, subtotal or 0),
        coupon=summarize(coupon),
    )


def redeem_coupon(session: Session, coupon_id: str, user_id: str, order_id: str) -> None:
    session.coupons.record_usage(coupon_id, user_id, order_id)
    session.coupons.increment_usage_count(coupon_id)
    logger.info("Coupon %s redeemed by user %s on order %s", coupon_id, user_id, order_id)


def apply_coupon(
    session: Session,
    code: str,
    user_id: str,
    order_id: str,
    now: Optional[datetime] = None,
) -> Coupon:
    """Record a redemption of `code` against an existing order owned by `user_id`.

    The order may carry at most one coupon and each coupon counts once per
    order, so an order placed with a coupon is already redeemed. Every rule
    of `validate_coupon` is re-checked against the order's subtotal before
    anything is written.
    """
    coupon = session.coupons.find_by_code(code)
    order = session.orders.get(order_id)
    if order.user_id != user_id:
        raise UnauthorizedError()
    if order.coupon_code and order.coupon_code != coupon.code:
        raise ConflictError("A different coupon is already applied to this order")
    if session.coupons.has_usage_for_order(coupon.id, order.id):
        raise ConflictError("Coupon already applied to this order")
    validate_coupon(session, coupon.code, order.subtotal, user_id, now=now)
    redeem_coupon(session, coupon.id, user_id, order.id)
    return coupon
