"""Tests for coupon discounts and loyalty accrual."""

import pytest

from discounts import (
    accrue, best_coupon, cart_totals, find_coupon, in_scope, loyalty_eligible,
    loyalty_progress, point_ratio,
)
from schemas import CartItem, Coupon, LoyaltyConfig, LoyaltyUser


def line(product, quantity=1):
    return CartItem(**product.model_dump(), quantity=quantity)


@pytest.fixture
def coupons():
    return [
        Coupon(id="a", code="JG10", percentage=10, scope_type="category", scope_value="Cafeteria"),
        Coupon(id="b", code="JG20", percentage=20, scope_type="category", scope_value="Cafeteria,Combos"),
        Coupon(id="c", code="OFF", percentage=90, is_active=False),
    ]


class TestScope:
    def test_all(self, coffee):
        assert in_scope("all", "", line(coffee))

    def test_category(self, coffee, combo):
        assert in_scope("category", "Combos,Cafeteria", line(coffee))
        assert not in_scope("category", "Combos", line(coffee))

    def test_product(self, coffee, combo):
        assert in_scope("product", "c1", line(coffee))
        assert not in_scope("product", "c1", line(combo))

    def test_empty_scope_value_matches_nothing(self, coffee):
        assert not in_scope("category", "", line(coffee))


class TestCoupons:
    def test_highest_percentage_wins(self, coffee, coupons):
        assert best_coupon(coupons, line(coffee)).code == "JG20"

    def test_inactive_coupon_ignored(self, coffee):
        inactive = [Coupon(id="c", code="OFF", percentage=90, is_active=False)]
        assert best_coupon(inactive, line(coffee)) is None
        assert cart_totals([line(coffee)], inactive).discount == 0

    def test_discount_uses_best_coupon_per_line(self, coffee, combo, coupons):
        only_coffee = [coupons[0], Coupon(id="d", code="COMBO5", percentage=5,
                                         scope_type="product", scope_value="cb1")]
        items = [line(coffee, 2), line(combo, 1)]
        totals = cart_totals(items, only_coffee)
        assert totals.discount == pytest.approx(1.10 + 0.845, abs=0.01)
        assert totals.final_total == totals.subtotal - totals.discount

    def test_fifty_percent_scenario(self, coffee):
        totals = cart_totals([line(coffee, 2)], [Coupon(id="t", code="TEST50", percentage=50)])
        assert totals.subtotal == pytest.approx(11.00)
        assert totals.discount == pytest.approx(5.50)
        assert totals.final_total == pytest.approx(5.50)

    def test_no_coupons(self, coffee):
        totals = cart_totals([line(coffee, 3)])
        assert totals.discount == 0
        assert totals.final_total == totals.subtotal

    @pytest.mark.parametrize("code", ["jg10", "JG10", "  Jg10 "])
    def test_lookup_is_case_insensitive(self, coupons, code):
        assert find_coupon(coupons, code).id == "a"

    @pytest.mark.parametrize("code", ["OFF", "NOPE", "", "   "])
    def test_lookup_not_found(self, coupons, code):
        assert find_coupon(coupons, code) is None


class TestLoyalty:
    def test_point_ratio_scales_accrual(self, coffee, combo):
        config = LoyaltyConfig(is_active=True, scope_type="category", scope_value="Cafeteria")
        items = [line(coffee, 2), line(combo, 1)]
        totals = cart_totals(items, [Coupon(id="t", code="TEST50", percentage=50)])
        assert point_ratio(totals) == pytest.approx(0.5)
        assert loyalty_eligible(items, config, totals) == pytest.approx(11.0 * 0.5)

    def test_zero_subtotal(self):
        totals = cart_totals([])
        assert point_ratio(totals) == 0
        assert loyalty_eligible([], LoyaltyConfig(is_active=True), totals) == 0

    def test_accrue_creates_user(self):
        user = accrue(None, "85999990000", "Ana", 12.5)
        assert user == LoyaltyUser(phone="85999990000", name="Ana", accumulated=12.5)

    def test_accrue_adds_to_existing(self):
        existing = LoyaltyUser(phone="85999990000", name="Ana", accumulated=40)
        user = accrue(existing, "85999990000", "Outro Nome", 10)
        assert user.accumulated == 50
        assert user.name == "Ana"
        assert existing.accumulated == 40

    def test_progress(self):
        config = LoyaltyConfig(is_active=True, spending_goal=100)
        assert loyalty_progress(None, config)["progress"] == 0
        half = loyalty_progress(LoyaltyUser(phone="1", name="A", accumulated=50), config)
        assert half["progress"] == 0.5
        assert half["goal_reached"] is False
        done = loyalty_progress(LoyaltyUser(phone="1", name="A", accumulated=130), config)
        assert done["progress"] == 1.0
        assert done["goal_reached"] is True
