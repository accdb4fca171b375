"""Tests for building and mutating orders."""

import pytest

from discounts import cart_totals
from orders import (
    ORDER_ID_ALPHABET, CheckoutError, InvalidStatusTransition, OrderError, add_item, build_checkout_order,
    default_customer_name, new_external_order, new_order_id, remove_item, set_status,
    validate_checkout,
)
from schemas import CartItem, Coupon


def assert_totals_consistent(order):
    assert order.final_total == order.total - (order.discount or 0)


class TestAddItem:
    def test_new_order_defaults(self, coffee):
        order = add_item(None, coffee, table_id=4)
        assert order.table_id == 4
        assert order.order_type == "table"
        assert order.customer_name == "Mesa 4"
        assert order.status == "pending"
        assert order.payment_method == "Pendente"
        assert len(order.id) == 6
        assert order.items[0].quantity == 1

    @pytest.mark.parametrize("table_id,name,order_type", [
        (903, "Entrega", "delivery"),
        (951, "Balcão", "counter"),
    ])
    def test_default_name_per_channel(self, coffee, table_id, name, order_type):
        order = add_item(None, coffee, table_id=table_id)
        assert order.customer_name == name
        assert order.order_type == order_type

    def test_repeated_adds_increment_quantity(self, coffee, combo):
        order = None
        for _ in range(3):
            order = add_item(order, coffee, table_id=2)
        order = add_item(order, combo)
        assert [i.quantity for i in order.items] == [3, 1]
        assert order.total == pytest.approx(5.50 * 3 + 16.90)
        assert_totals_consistent(order)

    def test_note_splits_lines(self, coffee):
        order = add_item(None, coffee, table_id=1)
        order = add_item(order, coffee, "sem açúcar")
        order = add_item(order, coffee, "sem açúcar")
        assert [(i.observation, i.quantity) for i in order.items] == [(None, 1), ("sem açúcar", 2)]

    def test_blank_note_matches_no_note(self, coffee):
        order = add_item(None, coffee, table_id=1)
        order = add_item(order, coffee, "   ")
        assert len(order.items) == 1
        assert order.items[0].quantity == 2

    def test_input_order_untouched(self, coffee):
        first = add_item(None, coffee, table_id=1)
        second = add_item(first, coffee)
        assert first.items[0].quantity == 1
        assert second.items[0].quantity == 2

    def test_keeps_existing_discount(self, coffee):
        order = add_item(None, coffee, table_id=1).model_copy(update={"discount": 1.0})
        order = add_item(order, coffee)
        assert order.total == pytest.approx(11.0)
        assert order.final_total == pytest.approx(10.0)
        assert_totals_consistent(order)

    def test_new_order_needs_a_slot(self, coffee):
        with pytest.raises(OrderError):
            add_item(None, coffee)


class TestRemoveItem:
    def test_remove_line(self, coffee, combo):
        order = add_item(add_item(None, coffee, table_id=1), combo)
        order = remove_item(order, 0)
        assert [i.id for i in order.items] == ["cb1"]
        assert order.total == pytest.approx(16.90)
        assert_totals_consistent(order)

    def test_removing_last_line_means_free_the_slot(self, coffee):
        order = add_item(None, coffee, table_id=1)
        assert remove_item(order, 0) is None

    def test_bad_index(self, coffee):
        order = add_item(None, coffee, table_id=1)
        with pytest.raises(IndexError):
            remove_item(order, 3)


class TestSetStatus:
    def test_sets_status_and_marker(self, coffee):
        order = add_item(None, coffee, table_id=1)
        updated = set_status(order, "preparing")
        assert updated.status == "preparing"
        assert updated.is_updated is True
        assert updated.items == order.items
        assert updated.id == order.id

    def test_any_jump_allowed_by_default(self, coffee):
        order = set_status(add_item(None, coffee, table_id=1), "delivered")
        assert set_status(order, "pending").status == "pending"

    def test_strict_mode_rejects_backward_moves(self, coffee):
        order = set_status(add_item(None, coffee, table_id=1), "ready")
        with pytest.raises(InvalidStatusTransition):
            set_status(order, "pending", strict=True)
        assert set_status(order, "delivered", strict=True).status == "delivered"

    def test_unknown_status(self, coffee):
        with pytest.raises(InvalidStatusTransition):
            set_status(add_item(None, coffee, table_id=1), "cancelled")


class TestCheckout:
    @pytest.mark.parametrize("kwargs,message", [
        ({"customer_name": " ", "order_type": "counter"}, "nome"),
        ({"customer_name": "Ana", "order_type": "table"}, "mesa"),
        ({"customer_name": "Ana", "order_type": "delivery", "address": "  "}, "entregar"),
    ])
    def test_validation(self, kwargs, message):
        params = {"table_number": None, "address": None, "items": [object()], **kwargs}
        with pytest.raises(CheckoutError, match=message):
            validate_checkout(**params)

    def test_empty_cart(self):
        with pytest.raises(CheckoutError):
            validate_checkout("Ana", "counter", None, None, [])

    def test_valid_checkout_normalizes(self):
        assert validate_checkout(" Ana ", "takeaway", None, None, [object()]) == ("Ana", "counter")

    def test_build_with_coupon(self, coffee):
        items = [CartItem(**coffee.model_dump(), quantity=2)]
        coupon = Coupon(id="c", code="test50", percentage=50)
        order = build_checkout_order(
            customer_name="Ana", items=items, table_id=4, order_type="table",
            payment_method="Pix", coupons=[coupon], customer_phone=" ", address="Rua 1",
        )
        assert order.total == pytest.approx(11.0)
        assert order.discount == pytest.approx(5.5)
        assert order.final_total == pytest.approx(5.5)
        assert order.coupon_code == "TEST50"
        assert order.customer_name == "Ana"
        assert order.customer_phone is None
        assert order.address is None
        assert order.order_type == "table"
        assert order.table_id == 4
        assert_totals_consistent(order)

    def test_totals_match_engine(self, coffee, combo):
        items = [CartItem(**coffee.model_dump(), quantity=1), CartItem(**combo.model_dump(), quantity=2)]
        order = build_checkout_order(customer_name="Ana", items=items, table_id=950,
                                     order_type="counter", payment_method="Dinheiro")
        assert (order.total, order.discount, order.final_total) == tuple(cart_totals(items))


class TestExternalOrder:
    def test_delivery_needs_address(self):
        with pytest.raises(CheckoutError):
            new_external_order("Ana", "delivery", 900)

    def test_counter_order(self):
        order = new_external_order(" Ana ", "takeaway", 951)
        assert order.customer_name == "Ana"
        assert order.order_type == "counter"
        assert order.items == []
        assert order.payment_method == "Pendente"

    def test_tables_not_allowed(self):
        with pytest.raises(OrderError):
            new_external_order("Ana", "table", 3)


def test_order_ids_are_six_uppercase_chars():
    ids = {new_order_id() for _ in range(50)}
    assert all(len(i) == 6 and set(i) <= set(ORDER_ID_ALPHABET) for i in ids)


def test_default_customer_name():
    assert default_customer_name("table", 7) == "Mesa 7"
