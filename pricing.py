"""
Order pricing: subtotal -> coupon discount -> shipping rule -> total.

The pure functions here never touch the database; ``quote`` is the one
async entry point that loads coupons and shipping rules first.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

import catalog
from errors import InvalidCouponError
from schemas import Coupon, DiscountType, PriceBreakdown, ShippingRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShippingSelection:
    is_pickup: bool = False
    category: Optional[str] = None


def _money(value: float) -> float:
    return round(value + 0.0, 2)


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def validate_coupon(coupon: Optional[Coupon], subtotal: float, now: Optional[datetime] = None) -> Coupon:
    if coupon is None or not coupon.is_active:
        raise InvalidCouponError("Invalid or expired coupon code.", code=coupon.code if coupon else None)
    if coupon.min_order_amount and subtotal < coupon.min_order_amount:
        raise InvalidCouponError(
            f"Minimum order amount of ${coupon.min_order_amount:.2f} required.", code=coupon.code
        )
    now = now or datetime.now(timezone.utc)
    if coupon.expires_at and _as_aware(coupon.expires_at) < _as_aware(now):
        raise InvalidCouponError("This coupon has expired.", code=coupon.code)
    return coupon


def compute_discount(subtotal: float, coupon: Optional[Coupon]) -> float:
    if coupon is None or subtotal <= 0:
        return 0.0
    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = subtotal * coupon.discount_value / 100
    else:
        discount = coupon.discount_value
    return _money(min(max(discount, 0.0), subtotal))


def resolve_shipping(
    amount: float,
    rules: Iterable[ShippingRule],
    is_pickup: bool = False,
    category: Optional[str] = None,
) -> float:
    if is_pickup:
        return 0.0
    rules = list(rules)
    specific = [r for r in rules if category and r.category == category]
    generic = [r for r in rules if r.category is None]
    # category rules take precedence; generic rules only cover what they leave open
    for pool in (specific, generic):
        for rule in sorted(pool, key=lambda r: r.min_amount):
            if rule.contains(amount):
                return _money(rule.price)
    if specific or generic:
        logger.warning("No shipping rule covers %.2f (category=%s); charging 0", amount, category)
    return 0.0


def compute_total(
    subtotal: float,
    coupon: Optional[Coupon],
    selection: ShippingSelection,
    rules: Iterable[ShippingRule],
    now: Optional[datetime] = None,
) -> PriceBreakdown:
    subtotal = _money(max(subtotal, 0.0))
    if coupon is not None:
        validate_coupon(coupon, subtotal, now)
    discount = compute_discount(subtotal, coupon)
    discounted = _money(max(0.0, subtotal - discount))
    shipping_cost = resolve_shipping(discounted, rules, selection.is_pickup, selection.category)
    return PriceBreakdown(
        subtotal=subtotal,
        discount=discount,
        discounted_subtotal=discounted,
        shipping_cost=shipping_cost,
        total=_money(discounted + shipping_cost),
        coupon_code=coupon.code if coupon else None,
    )


async def lookup_coupon(db, code: str, subtotal: float, now: Optional[datetime] = None) -> Coupon:
    """Fetch a coupon by code and check it applies to ``subtotal``."""
    doc = await catalog.get_coupon_by_code(db, code)
    coupon = Coupon.model_validate(doc) if doc else None
    return validate_coupon(coupon, subtotal, now)


async def quote(
    db,
    subtotal: float,
    coupon_code: Optional[str],
    selection: ShippingSelection,
    now: Optional[datetime] = None,
) -> PriceBreakdown:
    coupon = None
    if coupon_code and coupon_code.strip():
        coupon = await lookup_coupon(db, coupon_code, subtotal, now)
    rules = [ShippingRule.model_validate(r) for r in await catalog.list_shipping_rules(db)]
    return compute_total(subtotal, coupon, selection, rules, now)
