import logging

from ..enums import OrderStatus
from ..events import (
    InventoryReservedEvent,
    OrderCompletedEvent,
    OrderFailedEvent,
    PaymentProcessedEvent,
    ShippingPreparedEvent,
    StatusChangedEvent,
)
from .base import StatusTransitionHandler

logger = logging.getLogger(__name__)


class OrderCompletedHandler(StatusTransitionHandler[OrderCompletedEvent]):
    target_status = OrderStatus.DELIVERED


class OrderFailedHandler(StatusTransitionHandler[OrderFailedEvent]):
    target_status = OrderStatus.CANCELLED

    def reason(self, event: OrderFailedEvent) -> str | None:
        return event.reason or None


class PaymentProcessedHandler(StatusTransitionHandler[PaymentProcessedEvent]):
    target_status = OrderStatus.CONFIRMED

    def reason(self, event: PaymentProcessedEvent) -> str | None:
        return f"Payment {event.payment_id} processed" if event.payment_id else None


class InventoryReservedHandler(StatusTransitionHandler[InventoryReservedEvent]):
    target_status = OrderStatus.PROCESSING


class ShippingPreparedHandler(StatusTransitionHandler[ShippingPreparedEvent]):
    target_status = OrderStatus.SHIPPED

    def reason(self, event: ShippingPreparedEvent) -> str | None:
        return f"Tracking number {event.tracking_number}" if event.tracking_number else None


class StatusChangedHandler(StatusTransitionHandler[StatusChangedEvent]):
    """Applies whatever status the event names; an unknown status is logged and acknowledged."""

    def target(self, event: StatusChangedEvent) -> OrderStatus | None:
        try:
            return OrderStatus.parse(event.new_status)
        except ValueError:
            logger.warning(
                f"Invalid order status {event.new_status!r} for order {event.order_id} "
                f"[CorrelationId: {event.correlation_id}]"
            )
            return None

    def updated_by(self, event: StatusChangedEvent) -> str:
        return event.updated_by or self.actor

    def reason(self, event: StatusChangedEvent) -> str | None:
        return event.reason or None
