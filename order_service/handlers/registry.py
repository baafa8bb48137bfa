import json
import logging
from typing import AsyncContextManager, Callable, Dict, List, Tuple, Type

from .. import config
from ..events import (
    InboundEvent,
    InventoryReservedEvent,
    OrderCompletedEvent,
    OrderFailedEvent,
    PaymentProcessedEvent,
    ShippingPreparedEvent,
    StatusChangedEvent,
)
from ..service import OrderService
from .base import EventHandler
from .status_handlers import (
    InventoryReservedHandler,
    OrderCompletedHandler,
    OrderFailedHandler,
    PaymentProcessedHandler,
    ShippingPreparedHandler,
    StatusChangedHandler,
)

logger = logging.getLogger(__name__)

# Opens a fresh unit of work (own DB session) and yields the facade bound to it
ScopeFactory = Callable[[], AsyncContextManager[OrderService]]


class EventHandlerRegistry:
    """Maps routing keys to (event type, handler type) and dispatches raw messages."""

    def __init__(self, scope_factory: ScopeFactory):
        self.scope_factory = scope_factory
        self._handlers: Dict[str, Tuple[Type[InboundEvent], Type[EventHandler]]] = {}

    def register(self, routing_key: str, event_type: Type[InboundEvent], handler_type: Type[EventHandler]) -> None:
        self._handlers[routing_key] = (event_type, handler_type)
        logger.debug(f"Registered {handler_type.__name__} for routing key: {routing_key}")

    @property
    def routing_keys(self) -> List[str]:
        return list(self._handlers)

    async def process(self, routing_key: str, payload: str) -> None:
        """
        Unknown routing keys are logged and dropped (the message is acked).
        Malformed JSON, an invalid event and handler failures are raised so the
        adapter's retry policy decides what happens to the message.
        """
        entry = self._handlers.get(routing_key)
        if entry is None:
            logger.warning(f"No handler registered for routing key: {routing_key}")
            return
        event_type, handler_type = entry

        data = json.loads(payload)
        if data is None:
            logger.warning(f"Received null {event_type.__name__} on {routing_key}, skipping")
            return
        event = event_type.model_validate(data)

        async with self.scope_factory() as service:
            await handler_type(service).handle(event)


def default_registry(scope_factory: ScopeFactory) -> EventHandlerRegistry:
    registry = EventHandlerRegistry(scope_factory)
    registry.register(config.TOPIC_ORDER_COMPLETED, OrderCompletedEvent, OrderCompletedHandler)
    registry.register(config.TOPIC_ORDER_FAILED, OrderFailedEvent, OrderFailedHandler)
    registry.register(config.TOPIC_PAYMENT_PROCESSED, PaymentProcessedEvent, PaymentProcessedHandler)
    registry.register(config.TOPIC_INVENTORY_RESERVED, InventoryReservedEvent, InventoryReservedHandler)
    registry.register(config.TOPIC_SHIPPING_PREPARED, ShippingPreparedEvent, ShippingPreparedHandler)
    return registry


def status_update_registry(scope_factory: ScopeFactory) -> EventHandlerRegistry:
    """Generic ``order.status.changed`` feed, consumed on its own queue."""
    registry = EventHandlerRegistry(scope_factory)
    registry.register(config.TOPIC_ORDER_STATUS_CHANGED, StatusChangedEvent, StatusChangedHandler)
    return registry
