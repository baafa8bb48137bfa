import logging
from typing import Iterable

from .. import config
from ..errors import BrokerNotConnectedError
from .base import BrokerAdapter, BrokerType, MessageHandler, RetryPolicy

logger = logging.getLogger(__name__)


class AzureServiceBusAdapter(BrokerAdapter):
    """
    Extension point for Azure Service Bus. Only the connection bookkeeping
    exists; subscribing raises NotImplementedError. ``implemented = False``
    makes ``messaging.factory`` refuse this provider at configuration time.

    A real binding would map the queue name to a topic subscription, the
    routing keys to subscription rules, and use the processor's
    complete/abandon/dead-letter settlement in place of ack/retry.
    """

    broker_type = BrokerType.AZURE_SERVICE_BUS
    implemented = False

    def __init__(
        self,
        connection_string: str | None = None,
        namespace: str | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.connection_string = connection_string or config.AZURE_SERVICEBUS_CONNECTION_STRING
        self.namespace = namespace or config.AZURE_SERVICEBUS_NAMESPACE
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self._connected = False

    async def connect(self) -> None:
        logger.info(f"Connecting to Azure Service Bus: {self.namespace or 'using connection string'}")
        self._connected = True

    async def subscribe(self, queue_name: str, routing_keys: Iterable[str], handler: MessageHandler) -> None:
        if not self._connected:
            raise BrokerNotConnectedError("Not connected to Azure Service Bus. Call connect() first.")
        raise NotImplementedError("Azure Service Bus adapter is not implemented yet.")

    def is_healthy(self) -> bool:
        return self._connected

    async def close(self) -> None:
        logger.info("Closing Azure Service Bus adapter")
        self._connected = False
