"""Tests for the RabbitMQ adapter's ack / retry / dead-letter handling."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from aio_pika import DeliveryMode, ExchangeType

from order_service.errors import BrokerNotConnectedError
from order_service.messaging import rabbitmq
from order_service.messaging.base import RetryPolicy
from order_service.messaging.rabbitmq import RabbitMQAdapter


class FakeMessage:
    def __init__(self, body=b'{"orderId": "x"}', routing_key="order.completed", headers=None):
        self.body = body
        self.routing_key = routing_key
        self.headers = headers or {}
        self.content_type = "application/json"
        self.correlation_id = "corr-1"
        self.message_id = "msg-1"
        self.ack = AsyncMock()
        self.reject = AsyncMock()


@pytest.fixture
def adapter():
    adapter = RabbitMQAdapter(url="amqp://test", exchange="orders.exchange", retry_policy=RetryPolicy(max_attempts=3))
    adapter._channel = MagicMock()
    adapter._channel.default_exchange.publish = AsyncMock()
    return adapter


def _republished(adapter):
    call = adapter._channel.default_exchange.publish.await_args
    return call.args[0], call.kwargs["routing_key"]


class TestProcessMessage:
    async def test_success_acks(self, adapter):
        handler = AsyncMock()
        message = FakeMessage()

        await adapter.process_message("q", message, handler)

        handler.assert_awaited_once_with("order.completed", '{"orderId": "x"}')
        message.ack.assert_awaited_once()
        message.reject.assert_not_awaited()
        adapter._channel.default_exchange.publish.assert_not_awaited()

    async def test_first_failure_is_retried_through_the_queue(self, adapter):
        message = FakeMessage()

        await adapter.process_message("q", message, AsyncMock(side_effect=ValueError("bad")))

        retry, target = _republished(adapter)
        assert target == "q"
        assert retry.headers["x-retry-count"] == 1
        assert retry.headers["x-original-routing-key"] == "order.completed"
        assert retry.body == message.body
        assert retry.delivery_mode == DeliveryMode.PERSISTENT
        message.ack.assert_awaited_once()

    async def test_ceiling_dead_letters(self, adapter):
        message = FakeMessage(headers={"x-retry-count": 2, "x-original-routing-key": "order.completed"})

        await adapter.process_message("q", message, AsyncMock(side_effect=ValueError("still bad")))

        dead, target = _republished(adapter)
        assert target == "q.dlq"
        assert dead.headers["x-retry-count"] == 3
        assert dead.headers["x-failure-reason"] == "still bad"
        message.ack.assert_awaited_once()

    async def test_retried_message_keeps_original_routing_key(self, adapter):
        # Republished retries arrive through the default exchange, keyed by queue name
        message = FakeMessage(routing_key="q", headers={"x-retry-count": b"1", "x-original-routing-key": b"payment.processed"})
        handler = AsyncMock()

        await adapter.process_message("q", message, handler)

        assert handler.await_args.args[0] == "payment.processed"
        message.ack.assert_awaited_once()

    async def test_unbounded_policy_requeues(self, adapter):
        adapter.retry_policy = RetryPolicy(max_attempts=0)
        message = FakeMessage()

        await adapter.process_message("q", message, AsyncMock(side_effect=ValueError("bad")))

        message.reject.assert_awaited_once_with(requeue=True)
        message.ack.assert_not_awaited()
        adapter._channel.default_exchange.publish.assert_not_awaited()

    async def test_republish_failure_falls_back_to_requeue(self, adapter):
        adapter._channel.default_exchange.publish.side_effect = ConnectionError("channel closed")
        message = FakeMessage()

        await adapter.process_message("q", message, AsyncMock(side_effect=ValueError("bad")))

        message.reject.assert_awaited_once_with(requeue=True)
        message.ack.assert_not_awaited()

    async def test_undecodable_body_goes_through_retry(self, adapter):
        message = FakeMessage(body=b"\xff\xfe")
        handler = AsyncMock()

        await adapter.process_message("q", message, handler)

        handler.assert_not_awaited()
        assert _republished(adapter)[1] == "q"


class FakeQueueIterator:
    def __init__(self, messages):
        self._messages = list(messages)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._messages:
            raise StopAsyncIteration
        return self._messages.pop(0)


class TestSubscribe:
    async def test_requires_connect(self):
        adapter = RabbitMQAdapter(url="amqp://test")
        with pytest.raises(BrokerNotConnectedError):
            await adapter.subscribe("q", ["order.completed"], AsyncMock())

    async def test_declares_binds_and_consumes(self, monkeypatch):
        messages = [FakeMessage(), FakeMessage(routing_key="order.failed")]
        queue = MagicMock()
        queue.bind = AsyncMock()
        queue.iterator.return_value = FakeQueueIterator(messages)

        channel = MagicMock()
        channel.is_closed = False
        channel.set_qos = AsyncMock()
        channel.declare_exchange = AsyncMock(return_value="exchange")
        channel.declare_queue = AsyncMock(return_value=queue)
        channel.close = AsyncMock()

        connection = MagicMock()
        connection.is_closed = False
        connection.channel = AsyncMock(return_value=channel)
        connection.close = AsyncMock()
        monkeypatch.setattr(rabbitmq.aio_pika, "connect_robust", AsyncMock(return_value=connection))

        handler = AsyncMock()
        adapter = RabbitMQAdapter(url="amqp://test", exchange="orders.exchange", retry_policy=RetryPolicy(max_attempts=5))
        async with adapter:
            assert adapter.is_healthy()
            await adapter.subscribe("q", ["order.completed", "order.failed"], handler)

        channel.set_qos.assert_awaited_once_with(prefetch_count=1)
        channel.declare_exchange.assert_awaited_once_with("orders.exchange", ExchangeType.TOPIC, durable=True)
        assert [c.kwargs["routing_key"] for c in queue.bind.await_args_list] == ["order.completed", "order.failed"]
        declared = [c.args[0] for c in channel.declare_queue.await_args_list]
        assert declared == ["q", "q.dlq"]
        assert [c.args[0] for c in handler.await_args_list] == ["order.completed", "order.failed"]
        assert all(m.ack.await_count == 1 for m in messages)
        connection.close.assert_awaited_once()
        assert not adapter.is_healthy()

    async def test_cancellation_leaves_message_unacked(self, adapter):
        started = asyncio.Event()

        async def slow_handler(routing_key, payload):
            started.set()
            await asyncio.sleep(10)

        message = FakeMessage()
        task = asyncio.create_task(adapter.process_message("q", message, slow_handler))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        message.ack.assert_not_awaited()
        message.reject.assert_not_awaited()
