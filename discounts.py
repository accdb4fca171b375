"""Coupon discounts and loyalty accrual for a cart."""
from __future__ import annotations
from typing import Iterable, List, NamedTuple, Optional, Sequence, Set

from schemas import CartItem, Coupon, LoyaltyConfig, LoyaltyUser


class CartTotals(NamedTuple):
    subtotal: float
    discount: float
    final_total: float


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def scope_set(scope_value: Optional[str]) -> Set[str]:
    return {v for v in (scope_value or "").split(",") if v}


def in_scope(scope_type: str, scope_value: Optional[str], item: CartItem) -> bool:
    if scope_type == "all":
        return True
    values = scope_set(scope_value)
    if scope_type == "category":
        return item.category in values
    if scope_type == "product":
        return item.id in values
    return False


def applicable_coupons(coupons: Iterable[Coupon], item: CartItem) -> List[Coupon]:
    return [c for c in coupons if c.is_active and in_scope(c.scope_type, c.scope_value, item)]


def best_coupon(coupons: Iterable[Coupon], item: CartItem) -> Optional[Coupon]:
    valid = applicable_coupons(coupons, item)
    if not valid:
        return None
    # max() keeps the first of equal percentages
    return max(valid, key=lambda c: c.percentage)


def line_subtotal(item: CartItem) -> float:
    return item.price * item.quantity


def subtotal(items: Iterable[CartItem]) -> float:
    return round(sum(line_subtotal(i) for i in items), 2)


def line_discount(item: CartItem, coupons: Iterable[Coupon]) -> float:
    coupon = best_coupon(coupons, item)
    if coupon is None:
        return 0.0
    return line_subtotal(item) * coupon.percentage / 100


def cart_discount(items: Iterable[CartItem], coupons: Sequence[Coupon]) -> float:
    if not coupons:
        return 0.0
    return round(sum(line_discount(i, coupons) for i in items), 2)


def cart_totals(items: Sequence[CartItem], coupons: Sequence[Coupon] = ()) -> CartTotals:
    sub = subtotal(items)
    discount = cart_discount(items, coupons)
    return CartTotals(subtotal=sub, discount=discount, final_total=sub - discount)


def find_coupon(coupons: Iterable[Coupon], code: str) -> Optional[Coupon]:
    """Active coupon matching ``code`` case-insensitively, or None."""
    wanted = normalize_code(code)
    if not wanted:
        return None
    for coupon in coupons:
        if coupon.is_active and normalize_code(coupon.code) == wanted:
            return coupon
    return None


# ---------- Loyalty ----------
def point_ratio(totals: CartTotals) -> float:
    if totals.subtotal <= 0:
        return 0.0
    return totals.final_total / totals.subtotal


def loyalty_eligible(items: Sequence[CartItem], config: LoyaltyConfig, totals: CartTotals) -> float:
    """Spend that counts toward the loyalty goal, scaled down by any coupon."""
    gross = sum(line_subtotal(i) for i in items if in_scope(config.scope_type, config.scope_value, i))
    return gross * point_ratio(totals)


def accrue(user: Optional[LoyaltyUser], phone: str, name: str, amount: float) -> LoyaltyUser:
    if user is None:
        return LoyaltyUser(phone=phone, name=name, accumulated=amount)
    return user.model_copy(update={"accumulated": user.accumulated + amount})


def loyalty_progress(user: Optional[LoyaltyUser], config: LoyaltyConfig) -> dict:
    accumulated = user.accumulated if user else 0.0
    if config.spending_goal <= 0:
        progress = 1.0
    else:
        progress = min(accumulated / config.spending_goal, 1.0)
    return {
        "accumulated": round(accumulated, 2),
        "spending_goal": config.spending_goal,
        "progress": round(progress, 4),
        "goal_reached": progress >= 1.0,
    }
