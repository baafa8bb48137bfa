from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
import logging
from typing import Iterable

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


class KafkaAdapter(BrokerAdapter):
    """
    Kafka consumer where each routing key is a topic and the queue name is the
    consumer group. Offsets are committed by hand after a record is handled.

    A failed record is redelivered by seeking its partition back to the
    record's offset; attempts are counted in memory per (topic, partition,
    offset), so a restart resets the count. Past the ceiling the record is
    copied to the ``<queue>.<suffix>`` topic and committed.
    """

    broker_type = BrokerType.KAFKA

    def __init__(
        self,
        bootstrap_servers: str | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.bootstrap_servers = bootstrap_servers or config.KAFKA_BOOTSTRAP_SERVERS
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self._producer: AIOKafkaProducer | None = None
        self._consumer: AIOKafkaConsumer | None = None
        self._connected = False
        self._attempts: dict[tuple[str, int, int], int] = {}

    async def connect(self) -> None:
        logger.info(f"Connecting to Kafka brokers: {self.bootstrap_servers}")
        try:
            # Only used to copy poison records to the dead-letter topic
            self._producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers, acks="all")
            await self._producer.start()
        except Exception as e:
            logger.error(f"Failed to connect to Kafka: {e}")
            self._producer = None
            raise
        self._connected = True
        logger.info("Kafka connection established successfully")

    async def subscribe(self, queue_name: str, routing_keys: Iterable[str], handler: MessageHandler) -> None:
        if not self._connected:
            raise BrokerNotConnectedError("Not connected to Kafka. Call connect() first.")

        topics = list(routing_keys)
        logger.info(f"Subscribing to Kafka topics: {', '.join(topics)} (group: {queue_name})")
        self._consumer = AIOKafkaConsumer(
            *topics,
            bootstrap_servers=self.bootstrap_servers,
            group_id=queue_name,
            enable_auto_commit=False,
            auto_offset_reset="earliest", # Start reading from the beginning if no offset found
        )
        await self._consumer.start()
        try:
            async for record in self._consumer:
                await self.process_record(queue_name, record, handler)
        finally:
            logger.info("Stopping Kafka consumer...")
            await self._consumer.stop()
            self._consumer = None

    async def process_record(self, queue_name: str, record, handler: MessageHandler) -> None:
        tp = TopicPartition(record.topic, record.partition)
        key = (record.topic, record.partition, record.offset)
        try:
            payload = record.value.decode("utf-8")
            logger.info(f"Received Kafka message from topic: {record.topic}")
            await handler(record.topic, payload)
        except Exception as e:
            logger.exception(f"Error processing Kafka message from topic {record.topic}")
            await self._handle_failure(queue_name, record, tp, key, e)
            return
        self._attempts.pop(key, None)
        await self._consumer.commit({tp: record.offset + 1})

    async def _handle_failure(self, queue_name: str, record, tp: TopicPartition, key, error: Exception) -> None:
        attempts = self._attempts.get(key, 0) + 1
        if self.retry_policy.should_dead_letter(attempts):
            target = self.retry_policy.dead_letter_name(queue_name)
            try:
                await self._producer.send_and_wait(
                    target,
                    value=record.value,
                    key=record.key,
                    headers=[
                        (RETRY_COUNT_HEADER, str(attempts).encode("utf-8")),
                        (ORIGINAL_ROUTING_KEY_HEADER, record.topic.encode("utf-8")),
                        (FAILURE_REASON_HEADER, str(error)[:1000].encode("utf-8")),
                    ],
                )
            except Exception:
                logger.exception(f"Could not dead-letter record {key}, it will be redelivered")
                self._attempts[key] = attempts
                self._consumer.seek(tp, record.offset)
                return
            logger.error(f"Record from topic {record.topic} dead-lettered to {target} after {attempts} attempts")
            self._attempts.pop(key, None)
            await self._consumer.commit({tp: record.offset + 1})
            return

        self._attempts[key] = attempts
        # Next fetch on this partition starts again at the failed record
        self._consumer.seek(tp, record.offset)

    def is_healthy(self) -> bool:
        return self._connected and self._producer is not None

    async def close(self) -> None:
        logger.info("Closing Kafka adapter")
        if self._consumer is not None:
            await self._consumer.stop()
            self._consumer = None
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None
        self._connected = False
