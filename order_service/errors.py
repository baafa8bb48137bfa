"""Error kinds raised by the order service core.

A missing order is never an error here: lookups return ``None`` and deletes
return ``False``.
"""
from uuid import UUID

from .enums import OrderStatus


class OrderServiceError(Exception):
    """Base class for all order service errors."""


class IllegalTransitionError(OrderServiceError):
    def __init__(self, current: OrderStatus, requested: OrderStatus):
        self.current = current
        self.requested = requested
        super().__init__(f"Illegal status transition {current.value} -> {requested.value}")


class ConcurrentModificationError(OrderServiceError):
    """Another writer updated the order after it was loaded. Safe to retry."""

    def __init__(self, order_id: UUID, expected_version: int):
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(
            f"Order {order_id} was modified concurrently (expected version {expected_version})"
        )


class DuplicateOrderNumberError(OrderServiceError):
    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__(f"Order number already exists: {order_number}")


class PublishError(OrderServiceError):
    def __init__(self, exchange: str, routing_key: str, reason: str = ""):
        self.exchange = exchange
        self.routing_key = routing_key
        message = f"Failed to publish event to {exchange}/{routing_key}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class BrokerConfigurationError(OrderServiceError):
    """Raised while wiring the service, before any message is sent or consumed."""


class BrokerNotConnectedError(OrderServiceError):
    pass
