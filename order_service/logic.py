import datetime
import logging
import uuid
from decimal import Decimal
from typing import Iterable, NamedTuple

from pydantic import BaseModel, Field

from . import config
from .enums import OrderStatus, PaymentStatus, ShippingStatus
from .errors import IllegalTransitionError
from .schemas import Address, CreateOrderItemRequest, CreateOrderRequest, Order, OrderItem

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class PricingRules(BaseModel):
    tax_rate: Decimal = Field(default_factory=lambda: config.TAX_RATE, ge=0)
    free_shipping_threshold: Decimal = Field(default_factory=lambda: config.FREE_SHIPPING_THRESHOLD, ge=0)
    default_shipping_cost: Decimal = Field(default_factory=lambda: config.DEFAULT_SHIPPING_COST, ge=0)
    currency: str = Field(default_factory=lambda: config.DEFAULT_CURRENCY)
    order_number_prefix: str = Field(default_factory=lambda: config.ORDER_NUMBER_PREFIX)


class OrderTotals(NamedTuple):
    subtotal: Decimal
    tax: Decimal
    shipping_cost: Decimal
    discount: Decimal
    total: Decimal


def round_money(value: Decimal) -> Decimal:
    """Round to cents, half-to-even like ``round(Decimal, 2)``."""
    return round(value, 2)


def compute_totals(items: Iterable[CreateOrderItemRequest | OrderItem], rules: PricingRules) -> OrderTotals:
    """
    Calculates order totals from line items.
    Everything stays in Decimal at full precision; rounding happens where amounts are shown.
    """
    subtotal = sum((Decimal(item.unit_price) * item.quantity for item in items), ZERO)

    # Tax is a flat rate over the subtotal, not per item
    tax = subtotal * rules.tax_rate

    # Free shipping only strictly above the threshold
    shipping_cost = ZERO if subtotal > rules.free_shipping_threshold else rules.default_shipping_cost

    # No promotion engine yet
    discount = ZERO

    total = subtotal + tax + shipping_cost - discount
    logger.debug(f"Totals computed - Subtotal: {subtotal}, Tax: {tax}, Shipping: {shipping_cost}, Total: {total}")
    return OrderTotals(subtotal, tax, shipping_cost, discount, total)


def generate_order_number(prefix: str, now: datetime.datetime | None = None) -> str:
    """
    Builds ``<PREFIX>-<YYYYMMDD>-<8 HEX>``.
    There is no retry on collision: the store's unique constraint rejects duplicates.
    """
    now = now or datetime.datetime.now(datetime.timezone.utc)
    suffix = uuid.uuid4().hex[:8].upper()
    return f"{prefix}-{now:%Y%m%d}-{suffix}"


def build_order(
    request: CreateOrderRequest,
    rules: PricingRules,
    actor: str,
    now: datetime.datetime | None = None,
) -> Order:
    now = now or datetime.datetime.now(datetime.timezone.utc)
    items = [
        OrderItem(
            product_id=item.product_id,
            product_name=item.product_name,
            product_sku=item.product_sku,
            unit_price=item.unit_price,
            quantity=item.quantity,
            total_price=item.unit_price * item.quantity,
            created_at=now,
        )
        for item in request.items
    ]
    totals = compute_totals(items, rules)

    if not items:
        logger.warning(f"Building order for customer {request.customer_id} with no items")

    return Order(
        order_number=generate_order_number(rules.order_number_prefix, now),
        customer_id=request.customer_id,
        customer_name=request.customer_name,
        customer_email=request.customer_email,
        customer_phone=request.customer_phone,
        status=OrderStatus.CREATED,
        payment_status=PaymentStatus.PENDING,
        shipping_status=ShippingStatus.NOT_SHIPPED,
        currency=rules.currency,
        subtotal=totals.subtotal,
        tax_amount=totals.tax,
        shipping_cost=totals.shipping_cost,
        discount_amount=totals.discount,
        total_amount=totals.total,
        shipping_address=Address.model_validate(request.shipping_address.model_dump()),
        billing_address=Address.model_validate(request.billing_address.model_dump()),
        items=items,
        notes=request.notes,
        created_at=now,
        updated_at=now,
        created_by=actor,
    )


# --- Status lifecycle ---

# Upstream events are unordered across routing keys, so forward skips are allowed.
# Delivered and Cancelled are terminal.
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({
        OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED,
        OrderStatus.DELIVERED, OrderStatus.CANCELLED,
    }),
    OrderStatus.CONFIRMED: frozenset({
        OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED,
    }),
    OrderStatus.PROCESSING: frozenset({
        OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED,
    }),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def is_transition_allowed(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def check_transition(current: OrderStatus, new: OrderStatus) -> None:
    if not is_transition_allowed(current, new):
        raise IllegalTransitionError(current, new)
