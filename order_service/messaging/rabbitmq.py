import logging
from typing import Iterable

import aio_pika
from aio_pika import DeliveryMode, ExchangeType

from .. import config
from ..errors import BrokerNotConnectedError
from .base import (
    FAILURE_REASON_HEADER,
    ORIGINAL_ROUTING_KEY_HEADER,
    RETRY_COUNT_HEADER,
    BrokerAdapter,
    BrokerType,
    MessageHandler,
    RetryPolicy,
)

logger = logging.getLogger(__name__)


def _header_int(value) -> int:
    if value is None:
        return 0
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _header_str(value) -> str | None:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class RabbitMQAdapter(BrokerAdapter):
    """
    Topic-exchange consumer: durable exchange, durable queue bound once per
    routing key, manual acknowledgment, one unacked message at a time.

    A failed message is republished to the tail of the same queue with an
    incremented ``x-retry-count`` header (the original is then acked) until the
    retry policy gives up and moves it to ``<queue>.<suffix>``. With an
    unbounded policy the message is rejected with requeue instead.
    """

    broker_type = BrokerType.RABBITMQ

    def __init__(
        self,
        url: str | None = None,
        exchange: str | None = None,
        retry_policy: RetryPolicy | None = None,
        prefetch_count: int = 1,
    ):
        self.url = url or config.RABBITMQ_URL
        self.exchange_name = exchange or config.RABBITMQ_EXCHANGE
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self.prefetch_count = prefetch_count
        self._connection: aio_pika.abc.AbstractRobustConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    async def connect(self) -> None:
        try:
            self._connection = await aio_pika.connect_robust(
                self.url, client_properties={"connection_name": "order-service-consumer"}
            )
            self._channel = await self._connection.channel()
            await self._channel.set_qos(prefetch_count=self.prefetch_count)
            self._exchange = await self._channel.declare_exchange(
                self.exchange_name, ExchangeType.TOPIC, durable=True
            )
            logger.info(f"RabbitMQ connection established successfully (exchange: {self.exchange_name})")
        except Exception as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            raise

    async def subscribe(self, queue_name: str, routing_keys: Iterable[str], handler: MessageHandler) -> None:
        if self._channel is None or self._exchange is None:
            raise BrokerNotConnectedError("Channel not initialized. Call connect() first.")

        queue = await self._channel.declare_queue(queue_name, durable=True, exclusive=False, auto_delete=False)
        for routing_key in routing_keys:
            await queue.bind(self._exchange, routing_key=routing_key)
            logger.info(f"Bound queue {queue_name} to routing key: {routing_key}")

        if not self.retry_policy.unbounded:
            await self._channel.declare_queue(self.retry_policy.dead_letter_name(queue_name), durable=True)

        logger.info(f"Started consuming from queue: {queue_name}")
        async with queue.iterator() as messages:
            async for message in messages:
                await self.process_message(queue_name, message, handler)

    async def process_message(self, queue_name: str, message, handler: MessageHandler) -> None:
        headers = dict(message.headers or {})
        routing_key = _header_str(headers.get(ORIGINAL_ROUTING_KEY_HEADER)) or message.routing_key
        try:
            payload = message.body.decode("utf-8")
            logger.info(f"Received event with routing key: {routing_key}")
            await handler(routing_key, payload)
        except Exception as e:
            logger.exception(f"Error processing RabbitMQ message with routing key {routing_key}")
            await self._handle_failure(queue_name, message, routing_key, headers, e)
            return
        await message.ack()

    async def _handle_failure(self, queue_name: str, message, routing_key: str, headers: dict, error: Exception) -> None:
        if self.retry_policy.unbounded:
            # Immediate redelivery, no ceiling
            await message.reject(requeue=True)
            return

        attempts = _header_int(headers.get(RETRY_COUNT_HEADER)) + 1
        try:
            if self.retry_policy.should_dead_letter(attempts):
                target = self.retry_policy.dead_letter_name(queue_name)
                await self._republish(message, target, routing_key, attempts, reason=str(error))
                logger.error(
                    f"Message with routing key {routing_key} dead-lettered to {target} after {attempts} attempts"
                )
            else:
                await self._republish(message, queue_name, routing_key, attempts)
                logger.warning(
                    f"Message with routing key {routing_key} scheduled for retry "
                    f"(attempt {attempts}/{self.retry_policy.max_attempts})"
                )
        except Exception:
            logger.exception("Could not republish failed message, falling back to broker requeue")
            await message.reject(requeue=True)
            return
        await message.ack()

    async def _republish(self, message, target_queue: str, routing_key: str, attempts: int, reason: str | None = None) -> None:
        if self._channel is None:
            raise BrokerNotConnectedError("Channel not initialized. Call connect() first.")
        headers = dict(message.headers or {})
        headers[RETRY_COUNT_HEADER] = attempts
        headers[ORIGINAL_ROUTING_KEY_HEADER] = routing_key
        if reason is not None:
            headers[FAILURE_REASON_HEADER] = reason[:1000]
        # Default exchange routes by queue name, so only this queue sees the retry
        await self._channel.default_exchange.publish(
            aio_pika.Message(
                body=message.body,
                headers=headers,
                content_type=message.content_type or "application/json",
                correlation_id=message.correlation_id,
                message_id=message.message_id,
                delivery_mode=DeliveryMode.PERSISTENT,
            ),
            routing_key=target_queue,
        )

    def is_healthy(self) -> bool:
        return (
            self._connection is not None
            and not self._connection.is_closed
            and self._channel is not None
            and not self._channel.is_closed
        )

    async def close(self) -> None:
        logger.info("Closing RabbitMQ adapter")
        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
        self._channel = None
        self._exchange = None
        self._connection = None
