"""Broker-agnostic consumer contract.

The consumer service only ever talks to a ``BrokerAdapter``; which broker sits
behind it is decided once, at configuration time, by ``messaging.factory``.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable

from .. import config

# (routing_key, raw_payload) -> None; raising means the message was not processed
MessageHandler = Callable[[str, str], Awaitable[None]]

RETRY_COUNT_HEADER = "x-retry-count"
ORIGINAL_ROUTING_KEY_HEADER = "x-original-routing-key"
FAILURE_REASON_HEADER = "x-failure-reason"


class BrokerType(str, Enum):
    RABBITMQ = "RabbitMQ"
    KAFKA = "Kafka"
    AZURE_SERVICE_BUS = "AzureServiceBus"

    @classmethod
    def parse(cls, provider: str) -> "BrokerType":
        aliases = {
            "rabbitmq": cls.RABBITMQ,
            "kafka": cls.KAFKA,
            "azureservicebus": cls.AZURE_SERVICE_BUS,
            "azure-servicebus": cls.AZURE_SERVICE_BUS,
        }
        try:
            return aliases[(provider or "rabbitmq").strip().lower()]
        except KeyError:
            raise ValueError(
                f"Message broker provider '{provider}' is not supported. "
                f"Supported providers: rabbitmq, kafka, azureservicebus"
            ) from None


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many times a failing message is delivered before it is dead-lettered.
    ``max_attempts == 0`` means requeue forever.
    """

    max_attempts: int = 5
    dead_letter_suffix: str = "dlq"

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_attempts=config.CONSUMER_MAX_DELIVERY_ATTEMPTS,
            dead_letter_suffix=config.DEAD_LETTER_SUFFIX,
        )

    @property
    def unbounded(self) -> bool:
        return self.max_attempts <= 0

    def should_dead_letter(self, attempts: int) -> bool:
        """``attempts`` counts deliveries so far, including the one that just failed."""
        return not self.unbounded and attempts >= self.max_attempts

    def dead_letter_name(self, queue_name: str) -> str:
        return f"{queue_name}.{self.dead_letter_suffix}"


class BrokerAdapter(ABC):
    """Connection lifecycle plus subscribe-with-callback for one broker technology."""

    broker_type: BrokerType
    # False for adapters that only keep connection bookkeeping; the factory refuses them
    implemented: bool = True

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def subscribe(self, queue_name: str, routing_keys: Iterable[str], handler: MessageHandler) -> None:
        """
        Binds ``queue_name`` to every routing key and consumes until cancelled.
        Messages are handled one at a time; success acknowledges, failure goes
        through the adapter's RetryPolicy.
        """

    @abstractmethod
    def is_healthy(self) -> bool:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
