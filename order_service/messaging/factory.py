import logging

from .. import config
from ..errors import BrokerConfigurationError
from .azure_service_bus import AzureServiceBusAdapter
from .base import BrokerAdapter, BrokerType, RetryPolicy
from .kafka import KafkaAdapter
from .publishers import EventPublisher, HttpPublisher, KafkaPublisher, RabbitMQPublisher
from .rabbitmq import RabbitMQAdapter

logger = logging.getLogger(__name__)

_ADAPTERS: dict[BrokerType, type[BrokerAdapter]] = {
    BrokerType.RABBITMQ: RabbitMQAdapter,
    BrokerType.KAFKA: KafkaAdapter,
    BrokerType.AZURE_SERVICE_BUS: AzureServiceBusAdapter,
}

_PUBLISHERS: dict[BrokerType, type[EventPublisher]] = {
    BrokerType.RABBITMQ: RabbitMQPublisher,
    BrokerType.KAFKA: KafkaPublisher,
}


def resolve_broker_type(provider: str | None = None) -> BrokerType:
    try:
        return BrokerType.parse(provider or config.MESSAGE_BROKER_PROVIDER)
    except ValueError as e:
        raise BrokerConfigurationError(str(e)) from e


def create_adapter(provider: str | None = None, retry_policy: RetryPolicy | None = None) -> BrokerAdapter:
    """Builds the consumer-side adapter for the configured broker.

    Providers whose adapter is only a stub are refused here, so a wrong
    deployment fails at startup instead of on the first message.
    """
    broker_type = resolve_broker_type(provider)
    adapter_cls = _ADAPTERS[broker_type]
    if not adapter_cls.implemented:
        raise BrokerConfigurationError(
            f"Message broker provider '{broker_type.value}' is recognised but its adapter is not implemented"
        )
    logger.info(f"Using {broker_type.value} message broker adapter")
    return adapter_cls(retry_policy=retry_policy)


def create_publisher(transport: str | None = None, provider: str | None = None) -> EventPublisher:
    transport = (transport or config.EVENT_PUBLISHER_TRANSPORT).strip().lower()
    if transport == "http":
        logger.info(f"Publishing events through broker service at {config.MESSAGE_BROKER_SERVICE_URL}")
        return HttpPublisher()
    if transport != "broker":
        raise BrokerConfigurationError(
            f"Event publisher transport '{transport}' is not supported. Supported transports: broker, http"
        )

    broker_type = resolve_broker_type(provider)
    publisher_cls = _PUBLISHERS.get(broker_type)
    if publisher_cls is None:
        raise BrokerConfigurationError(
            f"No direct publisher for '{broker_type.value}'; set EVENT_PUBLISHER_TRANSPORT=http"
        )
    logger.info(f"Publishing events directly to {broker_type.value}")
    return publisher_cls()
