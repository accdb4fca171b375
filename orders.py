"""Order aggregate construction.

All functions return new ``Order`` objects and leave their inputs untouched.
"""
from __future__ import annotations
import secrets
import string
from typing import Dict, List, Optional, Sequence, Set, Tuple

from discounts import cart_totals, subtotal
from schemas import ORDER_STATUSES, CartItem, Coupon, Order, Product, utcnow
from slots import channel_for, normalize_channel

ORDER_ID_ALPHABET = string.ascii_uppercase + string.digits
ORDER_ID_LENGTH = 6

# forward edges; only consulted in strict mode
ALLOWED_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"preparing"},
    "preparing": {"ready"},
    "ready": {"delivered"},
    "delivered": set(),
}


class OrderError(ValueError):
    pass


class CheckoutError(OrderError):
    pass


class InvalidStatusTransition(OrderError):
    pass


def new_order_id() -> str:
    return "".join(secrets.choice(ORDER_ID_ALPHABET) for _ in range(ORDER_ID_LENGTH))


def default_customer_name(channel: str, table_id: int) -> str:
    if channel == "delivery":
        return "Entrega"
    if channel == "counter":
        return "Balcão"
    return f"Mesa {table_id}"


def _clean(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = text.strip()
    return text or None


def with_totals(order: Order, items: List[CartItem]) -> Order:
    total = subtotal(items)
    return order.model_copy(update={
        "items": items,
        "total": total,
        "final_total": total - (order.discount or 0),
    })


def add_item(order: Optional[Order], product: Product, note: Optional[str] = None, *,
             table_id: Optional[int] = None, order_type: Optional[str] = None) -> Order:
    note = _clean(note)
    items = [i.model_copy() for i in order.items] if order else []
    for idx, item in enumerate(items):
        if item.id == product.id and item.observation == note:
            items[idx] = item.model_copy(update={"quantity": item.quantity + 1})
            break
    else:
        fields = product.model_dump(exclude={"quantity", "observation"})
        items.append(CartItem(**fields, quantity=1, observation=note))

    if order is None:
        if table_id is None:
            raise OrderError("table_id is required to open a new order")
        channel = normalize_channel(order_type) if order_type else (channel_for(table_id) or "table")
        order = Order(
            id=new_order_id(),
            customer_name=default_customer_name(channel, table_id),
            table_id=table_id,
            order_type=channel,
            status="pending",
            payment_method="Pendente",
            timestamp=utcnow(),
        )
    return with_totals(order, items)


def remove_item(order: Order, index: int) -> Optional[Order]:
    """Drop the line at ``index``.

    Returns None when no lines are left: the slot has to be freed instead of
    persisting an empty order.
    """
    if index < 0 or index >= len(order.items):
        raise IndexError(f"Order {order.id} has no item at position {index}")
    items = [i.model_copy() for i in order.items]
    del items[index]
    if not items:
        return None
    return with_totals(order, items)


def set_status(order: Order, status: str, strict: bool = False) -> Order:
    if status not in ORDER_STATUSES:
        raise InvalidStatusTransition(f"Unknown status '{status}'")
    if strict and status != order.status and status not in ALLOWED_TRANSITIONS[order.status]:
        raise InvalidStatusTransition(f"Cannot move order {order.id} from {order.status} to {status}")
    return order.model_copy(update={"status": status, "is_updated": True})


def validate_checkout(customer_name: str, order_type: str, table_number: Optional[int],
                      address: Optional[str], items: Sequence[object]) -> Tuple[str, str]:
    """Reject incomplete checkouts before anything is written.

    Returns the trimmed customer name and the normalized channel.
    """
    if not items:
        raise CheckoutError("Sua sacola está vazia.")
    name = (customer_name or "").strip()
    if not name:
        raise CheckoutError("Diga-nos seu nome para o pedido.")
    channel = normalize_channel(order_type)
    if channel == "table" and not table_number:
        raise CheckoutError("Em qual mesa você está?")
    if channel == "delivery" and not _clean(address):
        raise CheckoutError("Onde devemos entregar?")
    return name, channel


def build_checkout_order(*, customer_name: str, items: Sequence[CartItem], table_id: int,
                         order_type: str, payment_method: str,
                         coupons: Sequence[Coupon] = (),
                         customer_phone: Optional[str] = None,
                         address: Optional[str] = None,
                         observation: Optional[str] = None) -> Order:
    channel = normalize_channel(order_type)
    totals = cart_totals(items, coupons)
    return Order(
        id=new_order_id(),
        customer_name=customer_name,
        customer_phone=_clean(customer_phone),
        items=list(items),
        total=totals.subtotal,
        discount=totals.discount,
        final_total=totals.final_total,
        payment_method=payment_method,
        timestamp=utcnow(),
        table_id=table_id,
        status="pending",
        order_type=channel,
        address=_clean(address) if channel == "delivery" else None,
        coupon_code=coupons[0].code if coupons else None,
        observation=_clean(observation),
    )


def new_external_order(customer_name: str, order_type: str, table_id: int,
                       address: Optional[str] = None) -> Order:
    channel = normalize_channel(order_type)
    if channel == "table":
        raise OrderError("External orders are for delivery or counter only")
    if channel == "delivery" and not _clean(address):
        raise CheckoutError("Onde devemos entregar?")
    return Order(
        id=new_order_id(),
        customer_name=customer_name.strip(),
        items=[],
        total=0,
        final_total=0,
        payment_method="Pendente",
        timestamp=utcnow(),
        table_id=table_id,
        status="pending",
        order_type=channel,
        address=_clean(address) if channel == "delivery" else None,
    )
