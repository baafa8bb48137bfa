import math
import datetime
import uuid
from decimal import Decimal
from typing import Annotated, Generic, List, TypeVar

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, computed_field, conint, field_validator

from .enums import OrderSortBy, OrderStatus, PaymentStatus, ShippingStatus


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# Amounts keep full precision in memory and are rounded to cents when rendered as JSON
Money = Annotated[Decimal, PlainSerializer(lambda v: float(round(v, 2)), return_type=float, when_used="json")]


class Address(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    address_line1: str = ""
    address_line2: str | None = None
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = ""


# --- Requests (validated by the HTTP layer) ---

class CreateOrderItemRequest(BaseModel):
    product_id: str
    product_name: str
    product_sku: str | None = None
    unit_price: Decimal = Field(ge=0)
    quantity: conint(gt=0) # Quantity > 0


class CreateOrderRequest(BaseModel):
    customer_id: str
    customer_name: str = ""
    customer_email: str = ""
    customer_phone: str = ""
    items: List[CreateOrderItemRequest] = Field(default_factory=list)
    shipping_address: Address = Field(default_factory=Address)
    billing_address: Address = Field(default_factory=Address)
    notes: str | None = None


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus
    reason: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value):
        return OrderStatus.parse(value)


# --- Aggregate ---

class OrderItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    product_id: str
    product_name: str
    product_sku: str | None = None
    unit_price: Money
    quantity: int
    total_price: Money
    created_at: datetime.datetime = Field(default_factory=_utcnow)


class Order(BaseModel):
    """Order aggregate: the order row together with its owned line items."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    order_number: str
    customer_id: str
    customer_name: str = ""
    customer_email: str = ""
    customer_phone: str = ""

    status: OrderStatus = OrderStatus.CREATED
    payment_status: PaymentStatus = PaymentStatus.PENDING
    shipping_status: ShippingStatus = ShippingStatus.NOT_SHIPPED

    currency: str = "USD"
    subtotal: Money = Decimal("0")
    tax_amount: Money = Decimal("0")
    shipping_cost: Money = Decimal("0")
    discount_amount: Money = Decimal("0")
    total_amount: Money = Decimal("0")

    shipping_address: Address = Field(default_factory=Address)
    billing_address: Address = Field(default_factory=Address)
    items: List[OrderItem] = Field(default_factory=list)
    notes: str | None = None

    created_at: datetime.datetime = Field(default_factory=_utcnow)
    updated_at: datetime.datetime = Field(default_factory=_utcnow)
    created_by: str = ""
    updated_by: str | None = None

    # Optimistic concurrency token, bumped by every successful update
    version: int = 1


# --- Queries ---

class OrderQuery(BaseModel):
    page: conint(ge=1) = 1
    page_size: conint(ge=1, le=100) = 10
    status: OrderStatus | None = None
    customer_id: str | None = None
    order_date_from: datetime.datetime | None = None
    order_date_to: datetime.datetime | None = None
    sort_by: OrderSortBy = OrderSortBy.ORDER_DATE_DESC

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.page_size


T = TypeVar("T")


class PagedResponse(BaseModel, Generic[T]):
    items: List[T]
    page: int
    page_size: int
    total_items: int
    total_pages: int

    @computed_field
    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @computed_field
    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @classmethod
    def create(cls, items: List[T], page: int, page_size: int, total_items: int) -> "PagedResponse[T]":
        return cls(
            items=items,
            page=page,
            page_size=page_size,
            total_items=total_items,
            total_pages=math.ceil(total_items / page_size) if page_size else 0,
        )


class RecentOrder(BaseModel):
    id: str
    order_number: str
    customer_id: str
    customer_name: str
    status: OrderStatus
    total_amount: Money
    item_count: int
    created_at: datetime.datetime


class OrderStats(BaseModel):
    total: int
    pending: int
    completed: int
    new_this_month: int
    growth: Money # percent vs. last month, 1 dp
    revenue: Money
    recent_orders: List[RecentOrder] | None = None
