"""Outbound event publishers.

Every publisher takes a JSON-ready payload dict, adds a ``timestamp`` and
pushes it to ``exchange``/``routing_key``. Failures surface as ``PublishError``;
deciding whether a failed publish matters is the caller's job.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from uuid import uuid4

import aio_pika
import httpx
from aio_pika import DeliveryMode, ExchangeType
from aiokafka import AIOKafkaProducer

from .. import config
from ..errors import PublishError

logger = logging.getLogger(__name__)


def with_timestamp(payload: dict) -> dict:
    return {**payload, "timestamp": datetime.now(timezone.utc).isoformat()}


class EventPublisher(ABC):
    @abstractmethod
    async def publish_event(self, exchange: str, routing_key: str, payload: dict) -> None:
        ...

    def is_healthy(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class RabbitMQPublisher(EventPublisher):
    """
    Publishes persistent JSON messages to a durable topic exchange.

    One channel is shared by every caller and the AMQP client does not allow
    concurrent writes on a channel, so publishes are serialized on a lock.
    """

    def __init__(self, url: str | None = None, publisher_confirms: bool | None = None):
        self.url = url or config.RABBITMQ_URL
        self.publisher_confirms = (
            config.RABBITMQ_PUBLISHER_CONFIRMS if publisher_confirms is None else publisher_confirms
        )
        self._lock = asyncio.Lock()
        self._connection = None
        self._channel = None
        self._exchanges: dict[str, aio_pika.abc.AbstractExchange] = {}

    async def _get_exchange(self, name: str):
        if self._connection is None or self._connection.is_closed:
            logger.info("Opening RabbitMQ publisher connection")
            self._connection = await aio_pika.connect_robust(
                self.url, client_properties={"connection_name": "order-service-publisher"}
            )
            self._channel = None
        if self._channel is None or self._channel.is_closed:
            self._channel = await self._connection.channel(publisher_confirms=self.publisher_confirms)
            self._exchanges.clear()
        if name not in self._exchanges:
            self._exchanges[name] = await self._channel.declare_exchange(name, ExchangeType.TOPIC, durable=True)
        return self._exchanges[name]

    async def publish_event(self, exchange: str, routing_key: str, payload: dict) -> None:
        body = json.dumps(with_timestamp(payload)).encode("utf-8")
        message = aio_pika.Message(
            body=body,
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=uuid4().hex,
            correlation_id=payload.get("correlationId"),
            timestamp=datetime.now(timezone.utc),
        )
        async with self._lock:
            try:
                target = await self._get_exchange(exchange)
                await target.publish(message, routing_key=routing_key)
            except Exception as e:
                raise PublishError(exchange, routing_key, str(e)) from e
        logger.debug(f"Published event to RabbitMQ: {exchange}/{routing_key}")

    def is_healthy(self) -> bool:
        # Connects lazily, so "not connected yet" is healthy
        return self._connection is None or not self._connection.is_closed

    async def close(self) -> None:
        async with self._lock:
            if self._connection is not None and not self._connection.is_closed:
                await self._connection.close()
            self._connection = None
            self._channel = None
            self._exchanges.clear()


class KafkaPublisher(EventPublisher):
    """Routing key is the topic; Kafka has no exchanges so ``exchange`` is only logged."""

    def __init__(self, bootstrap_servers: str | None = None):
        self.bootstrap_servers = bootstrap_servers or config.KAFKA_BOOTSTRAP_SERVERS
        self._producer: AIOKafkaProducer | None = None
        self._lock = asyncio.Lock()

    async def get_producer(self) -> AIOKafkaProducer:
        async with self._lock:
            if self._producer is None:
                logger.info(f"Initializing Kafka producer: {self.bootstrap_servers}")
                producer = AIOKafkaProducer(
                    bootstrap_servers=self.bootstrap_servers,
                    value_serializer=lambda v: json.dumps(v).encode('utf-8'),
                    acks='all'
                )
                await producer.start()
                self._producer = producer
        return self._producer

    async def publish_event(self, exchange: str, routing_key: str, payload: dict) -> None:
        try:
            producer = await self.get_producer()
            await producer.send_and_wait(routing_key, value=with_timestamp(payload))
        except Exception as e:
            raise PublishError(exchange, routing_key, str(e)) from e
        logger.debug(f"Message sent to Kafka topic '{routing_key}' (exchange {exchange})")

    async def close(self) -> None:
        if self._producer is not None:
            logger.info("Stopping Kafka producer...")
            await self._producer.stop()
            self._producer = None


class HttpPublisher(EventPublisher):
    """Posts events to the message-broker-service instead of talking to a broker directly."""

    PUBLISH_PATH = "/api/events/publish"

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Content-Type": "application/json"}
        key = api_key if api_key is not None else config.MESSAGE_BROKER_API_KEY
        if key:
            headers["X-API-Key"] = key
        self._client = httpx.AsyncClient(
            base_url=base_url or config.MESSAGE_BROKER_SERVICE_URL,
            headers=headers,
            timeout=timeout if timeout is not None else config.MESSAGE_BROKER_TIMEOUT_SECONDS,
            transport=transport,
        )
        self._last_failed = False

    async def publish_event(self, exchange: str, routing_key: str, payload: dict) -> None:
        body = {
            "exchange": exchange,
            "routingKey": routing_key,
            "message": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            response = await self._client.post(self.PUBLISH_PATH, json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            self._last_failed = True
            raise PublishError(
                exchange, routing_key, f"broker service returned {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            self._last_failed = True
            raise PublishError(exchange, routing_key, f"broker service unreachable: {e}") from e
        self._last_failed = False
        logger.debug(f"Published event via broker service: {exchange}/{routing_key}")

    def is_healthy(self) -> bool:
        return not self._client.is_closed and not self._last_failed

    async def close(self) -> None:
        await self._client.aclose()
