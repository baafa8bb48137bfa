"""Event envelopes exchanged with the fulfillment pipeline.

Outbound events are projections of the order aggregate at the moment of a
change; they are published, never stored. Inbound events are produced by other
services and only tell us which status an order should move to.
"""
import datetime
import uuid
from decimal import Decimal
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .schemas import Address, Money, Order, _utcnow


class EventModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        """Flat JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


# --- Outbound ---

class AddressEvent(EventModel):
    address_line1: str = ""
    address_line2: str | None = None
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = ""

    @classmethod
    def from_address(cls, address: Address) -> "AddressEvent":
        return cls(**address.model_dump())


class OrderItemEvent(EventModel):
    product_id: str
    product_name: str
    quantity: int
    unit_price: Money
    total_price: Money


class OrderCreatedEvent(EventModel):
    order_id: uuid.UUID
    correlation_id: str
    customer_id: str
    order_number: str
    total_amount: Money
    currency: str
    created_at: datetime.datetime
    items: List[OrderItemEvent] = Field(default_factory=list)
    shipping_address: AddressEvent
    billing_address: AddressEvent

    @classmethod
    def from_order(cls, order: Order, correlation_id: str) -> "OrderCreatedEvent":
        return cls(
            order_id=order.id,
            correlation_id=correlation_id,
            customer_id=order.customer_id,
            order_number=order.order_number,
            total_amount=order.total_amount,
            currency=order.currency,
            created_at=order.created_at,
            items=[
                OrderItemEvent(
                    product_id=item.product_id,
                    product_name=item.product_name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    total_price=item.total_price,
                )
                for item in order.items
            ],
            shipping_address=AddressEvent.from_address(order.shipping_address),
            billing_address=AddressEvent.from_address(order.billing_address),
        )


class OrderStatusChangedEvent(EventModel):
    order_id: str
    order_number: str
    customer_id: str
    previous_status: str
    new_status: str
    updated_at: datetime.datetime
    updated_by: str
    reason: str | None = None
    correlation_id: str


class OrderDeletedEvent(EventModel):
    order_id: str
    order_number: str
    customer_id: str
    deleted_at: datetime.datetime = Field(default_factory=_utcnow)
    deleted_by: str
    reason: str | None = None
    correlation_id: str


# --- Inbound ---

class InboundEvent(EventModel):
    """Base for events consumed from upstream services.

    Producers do not agree on key casing (``orderId``, ``OrderId``,
    ``order_id``), so keys are matched case-insensitively against both the
    field names and their camelCase aliases. Unknown keys are ignored.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    order_id: uuid.UUID
    correlation_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _match_keys_case_insensitively(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        lookup = {}
        for name, field in cls.model_fields.items():
            lookup[name.lower()] = name
            if field.alias:
                lookup[field.alias.lower()] = name
        return {lookup.get(str(key).lower(), key): value for key, value in data.items()}


class OrderCompletedEvent(InboundEvent):
    completed_at: datetime.datetime | None = None


class OrderFailedEvent(InboundEvent):
    reason: str = ""
    failed_at: datetime.datetime | None = None


class PaymentProcessedEvent(InboundEvent):
    payment_id: str = ""
    amount: Decimal | None = None
    currency: str = ""
    processed_at: datetime.datetime | None = None


class InventoryReservedEvent(InboundEvent):
    reservation_id: str = ""
    reserved_at: datetime.datetime | None = None


class ShippingPreparedEvent(InboundEvent):
    shipping_id: str = ""
    tracking_number: str = ""
    prepared_at: datetime.datetime | None = None


class StatusChangedEvent(InboundEvent):
    """Generic status change; ``new_status`` is parsed case-insensitively by the handler."""

    order_number: str = ""
    customer_id: str = ""
    previous_status: str = ""
    new_status: str | None = None
    updated_at: datetime.datetime | None = None
    updated_by: str | None = None
    reason: str | None = None
