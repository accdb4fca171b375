from __future__ import annotations
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

# Collections:
# - product
# - category
# - coupon
# - daily_special
# - loyalty_config (singleton, _id=1)
# - loyalty_user
# - store_config (singleton, _id=1)
# - table (_id = slot id; a missing row means the slot is free)

ScopeType = Literal["all", "category", "product"]
OrderStatus = Literal["pending", "preparing", "ready", "delivered"]
OrderType = Literal["table", "delivery", "counter"]
PaymentMethod = Literal["Pix", "Dinheiro", "Cartão"]

ORDER_STATUSES: tuple = ("pending", "preparing", "ready", "delivered")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------- Catalog ----------
class Product(BaseModel):
    id: str
    name: str
    description: str = ""
    price: float = Field(..., ge=0)
    category: str
    image: Optional[str] = None
    savings: Optional[str] = None
    is_available: bool = True


class ProductIn(BaseModel):
    id: Optional[str] = None
    name: str
    description: str = ""
    price: float = Field(..., ge=0)
    category: str
    image: Optional[str] = None
    savings: Optional[str] = None
    is_available: bool = True


class Category(BaseModel):
    id: str
    name: str


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1)


class DailySpecial(BaseModel):
    day: int = Field(..., ge=0, le=6)  # 0=Sunday
    product_id: str


# ---------- Marketing ----------
class Coupon(BaseModel):
    id: str
    code: str
    percentage: float = Field(..., ge=0, le=100)
    is_active: bool = True
    scope_type: ScopeType = "all"
    scope_value: str = ""

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()


class CouponIn(BaseModel):
    code: str = Field(..., min_length=1)
    percentage: float = Field(..., gt=0, le=100)
    scope_type: ScopeType = "all"
    selected_items: List[str] = []
    is_active: bool = True


class LoyaltyConfig(BaseModel):
    is_active: bool = False
    spending_goal: float = Field(100, ge=0)
    scope_type: ScopeType = "all"
    scope_value: str = ""


class LoyaltyUser(BaseModel):
    phone: str
    name: str
    accumulated: float = 0


class StoreConfig(BaseModel):
    tables_enabled: bool = True
    delivery_enabled: bool = True
    counter_enabled: bool = True
    status_panel_enabled: bool = False
    waiter_can_finalize: bool = True
    waiter_can_cancel_items: bool = True

    @property
    def is_open(self) -> bool:
        return self.tables_enabled or self.delivery_enabled or self.counter_enabled

    def channel_enabled(self, order_type: str) -> bool:
        return {
            "table": self.tables_enabled,
            "delivery": self.delivery_enabled,
            "counter": self.counter_enabled,
        }.get(order_type, False)


# ---------- Orders ----------
class CartItem(Product):
    quantity: int = Field(1, ge=1)
    observation: Optional[str] = None


class Order(BaseModel):
    id: str
    customer_name: str
    customer_phone: Optional[str] = None
    items: List[CartItem] = []
    total: float = 0
    discount: Optional[float] = None
    final_total: float = 0
    payment_method: str = "Pendente"
    timestamp: datetime = Field(default_factory=utcnow)
    table_id: int
    status: OrderStatus = "pending"
    order_type: OrderType
    address: Optional[str] = None
    coupon_code: Optional[str] = None
    observation: Optional[str] = None
    is_updated: Optional[bool] = None


# ---------- Tables (slots) ----------
class FreeTable(BaseModel):
    id: int
    status: Literal["free"] = "free"
    current_order: None = None


class OccupiedTable(BaseModel):
    id: int
    status: Literal["occupied"] = "occupied"
    current_order: Order


Table = Annotated[Union[FreeTable, OccupiedTable], Field(discriminator="status")]

_table_adapter: TypeAdapter = TypeAdapter(Table)


def parse_table(row: Dict[str, Any]) -> Union[FreeTable, OccupiedTable]:
    """Build a typed slot from a stored row (``_id`` carries the slot id)."""
    data = {k: v for k, v in row.items() if k != "_id"}
    if "id" not in data:
        data["id"] = row["_id"]
    return _table_adapter.validate_python(data)


def table_document(table: Union[FreeTable, OccupiedTable]) -> Dict[str, Any]:
    doc = table.model_dump(mode="json")
    doc["_id"] = table.id
    return doc


# ---------- Change events ----------
class ChangeEvent(BaseModel):
    event_type: Literal["insert", "update", "delete"]
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None

    @property
    def table_id(self) -> Optional[int]:
        for row in (self.new, self.old):
            if row:
                key = row.get("id", row.get("_id"))
                if key is not None:
                    try:
                        return int(key)
                    except (TypeError, ValueError):
                        return None
        return None

    @classmethod
    def from_change_stream(cls, change: Dict[str, Any]) -> Optional["ChangeEvent"]:
        """Translate a MongoDB change stream document; None for other operations."""
        op = change.get("operationType")
        key = change.get("documentKey") or {}
        if op == "delete":
            return cls(event_type="delete", old=dict(key))
        if op == "insert":
            return cls(event_type="insert", new=change.get("fullDocument"), old=None)
        if op in ("update", "replace"):
            new = change.get("fullDocument")
            if new is None:
                # updated and deleted again before the lookup ran
                return None
            return cls(event_type="update", new=new, old=dict(key))
        return None


# ---------- Requests ----------
class CheckoutItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    observation: Optional[str] = None


class CheckoutRequest(BaseModel):
    customer_name: str = ""
    customer_phone: Optional[str] = None
    # "takeaway" is what the storefront calls the counter channel
    order_type: Literal["table", "delivery", "counter", "takeaway"] = "table"
    table_number: Optional[int] = None
    address: Optional[str] = None
    payment_method: PaymentMethod = "Pix"
    observation: Optional[str] = None
    coupon_code: Optional[str] = None
    items: List[CheckoutItem] = []


class CouponValidateRequest(BaseModel):
    code: str
    items: List[CheckoutItem] = []


class AddItemRequest(BaseModel):
    product_id: str
    observation: Optional[str] = None


class StatusUpdate(BaseModel):
    status: OrderStatus


class ExternalOrderRequest(BaseModel):
    customer_name: str = Field(..., min_length=1)
    order_type: Literal["delivery", "counter", "takeaway"] = "delivery"
    address: Optional[str] = None
