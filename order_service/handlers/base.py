import logging
from abc import ABC, abstractmethod
from typing import ClassVar, Generic, TypeVar

from ..enums import OrderStatus
from ..errors import IllegalTransitionError
from ..events import InboundEvent
from ..service import OrderService

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=InboundEvent)


class EventHandler(ABC, Generic[E]):
    """One instance per message, bound to that message's OrderService scope."""

    def __init__(self, service: OrderService):
        self.service = service

    @abstractmethod
    async def handle(self, event: E) -> None:
        ...


class StatusTransitionHandler(EventHandler[E]):
    """
    Moves the referenced order to the status returned by ``target``
    (``target_status`` unless overridden).

    Returning normally acknowledges the message. A missing order and an illegal
    transition are both final answers, so they are logged and acknowledged;
    anything else (including a lost optimistic-concurrency race) is raised and
    left to the broker's retry policy.
    """

    target_status: ClassVar[OrderStatus]
    actor: ClassVar[str] = "OrderProcessor"

    def target(self, event: E) -> OrderStatus | None:
        """None acknowledges the event without touching the order."""
        return self.target_status

    def updated_by(self, event: E) -> str:
        return self.actor

    def reason(self, event: E) -> str | None:
        return None

    async def handle(self, event: E) -> None:
        target = self.target(event)
        if target is None:
            return
        logger.info(
            f"Processing {type(event).__name__} for order {event.order_id} "
            f"-> {target.value} [CorrelationId: {event.correlation_id}]"
        )
        try:
            order = await self.service.update_status(
                event.order_id,
                target,
                correlation_id=event.correlation_id,
                actor=self.updated_by(event),
                reason=self.reason(event),
            )
        except IllegalTransitionError as e:
            logger.warning(f"Ignoring {type(event).__name__} for order {event.order_id}: {e}")
            return

        if order is None:
            logger.warning(f"Order {event.order_id} not found, {type(event).__name__} acknowledged without changes")
            return
        logger.info(f"Updated order {event.order_id} status to {order.status.value}")
