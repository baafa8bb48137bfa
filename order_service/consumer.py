import asyncio
import logging

from . import config
from .handlers.registry import EventHandlerRegistry
from .messaging.base import BrokerAdapter

logger = logging.getLogger(__name__)


class OrderEventConsumer:
    """Background loop feeding fulfillment events from the broker into the handler registry."""

    def __init__(self, adapter: BrokerAdapter, registry: EventHandlerRegistry, queue_name: str | None = None):
        self.adapter = adapter
        self.registry = registry
        self.queue_name = queue_name or config.CONSUMER_QUEUE_NAME

    async def run(self) -> None:
        """
        Runs until cancelled. The adapter is always closed on the way out, so a
        message that was being handled stays unacked and the broker redelivers it.
        """
        broker = self.adapter.broker_type.value
        routing_keys = self.registry.routing_keys
        logger.info(f"Starting order event consumer (broker: {broker}, queue: {self.queue_name})")
        try:
            await self.adapter.connect()
            logger.info(f"Subscribing to {len(routing_keys)} routing keys: {', '.join(routing_keys)}")
            await self.adapter.subscribe(self.queue_name, routing_keys, self.registry.process)
        except asyncio.CancelledError:
            logger.info("Order event consumer is stopping due to cancellation")
            raise
        except Exception:
            logger.exception(f"Fatal error in order event consumer (broker: {broker})")
            raise
        finally:
            await self.adapter.close()

    def is_healthy(self) -> bool:
        return self.adapter.is_healthy()
