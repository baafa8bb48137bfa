"""Tests for inbound event dispatch and the status handlers."""

import json
import uuid
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest

from order_service.enums import OrderStatus
from order_service.errors import ConcurrentModificationError
from order_service.handlers.registry import EventHandlerRegistry, default_registry, status_update_registry


@pytest.fixture
def scopes(service):
    """Scope factory that hands out the shared in-memory service and counts scopes."""
    opened = []

    @asynccontextmanager
    async def scope():
        opened.append(service)
        yield service

    scope.opened = opened
    return scope


@pytest.fixture
def registry(scopes):
    return default_registry(scopes)


@pytest.fixture
async def order(service, publisher, make_request):
    created = await service.create_order(make_request(("10.00", 1)))
    publisher.events.clear()
    return created


def _payload(order_id, **fields):
    return json.dumps({"OrderId": str(order_id), "CorrelationId": "corr-7", **fields})


class TestDispatch:
    def test_routing_keys(self, registry):
        assert sorted(registry.routing_keys) == [
            "inventory.reserved", "order.completed", "order.failed", "payment.processed", "shipping.prepared",
        ]

    async def test_unknown_routing_key_is_dropped(self, registry, scopes):
        await registry.process("order.exploded", "{not even json")
        assert scopes.opened == []

    async def test_malformed_json_raises(self, registry):
        with pytest.raises(json.JSONDecodeError):
            await registry.process("order.completed", "{not json")

    async def test_invalid_event_raises(self, registry):
        with pytest.raises(ValueError):
            await registry.process("order.completed", json.dumps({"orderId": "not-a-uuid"}))

    async def test_null_payload_is_skipped(self, registry, scopes):
        await registry.process("order.completed", "null")
        assert scopes.opened == []

    async def test_fresh_scope_per_message(self, registry, scopes, order):
        await registry.process("payment.processed", _payload(order.id))
        await registry.process("inventory.reserved", _payload(order.id))
        assert len(scopes.opened) == 2

    async def test_custom_registration(self, scopes):
        registry = EventHandlerRegistry(scopes)
        assert registry.routing_keys == []


class TestStatusHandlers:
    @pytest.mark.parametrize(
        "routing_key,expected",
        [
            ("payment.processed", OrderStatus.CONFIRMED),
            ("inventory.reserved", OrderStatus.PROCESSING),
            ("shipping.prepared", OrderStatus.SHIPPED),
            ("order.completed", OrderStatus.DELIVERED),
            ("order.failed", OrderStatus.CANCELLED),
        ],
    )
    async def test_target_status(self, registry, service, order, routing_key, expected):
        await registry.process(routing_key, _payload(order.id))
        assert (await service.get_by_id(order.id)).status == expected

    async def test_correlation_id_and_actor_flow_into_event(self, registry, publisher, order):
        await registry.process("order.failed", _payload(order.id, Reason="payment declined"))

        _, routing_key, payload = publisher.events[0]
        assert routing_key == "order.cancelled"
        assert payload["correlationId"] == "corr-7"
        assert payload["updatedBy"] == "OrderProcessor"
        assert payload["reason"] == "payment declined"

    async def test_redelivery_is_idempotent(self, registry, service, publisher, order):
        await registry.process("payment.processed", _payload(order.id))
        await registry.process("payment.processed", _payload(order.id))

        assert (await service.get_by_id(order.id)).version == 2
        assert len(publisher.events) == 1

    async def test_missing_order_is_acknowledged(self, registry, publisher):
        await registry.process("order.completed", _payload(uuid.uuid4()))
        assert publisher.events == []

    async def test_illegal_transition_is_acknowledged(self, registry, service, publisher, order):
        await registry.process("order.completed", _payload(order.id))
        publisher.events.clear()

        # Late payment event for an order that is already delivered
        await registry.process("payment.processed", _payload(order.id))

        assert (await service.get_by_id(order.id)).status == OrderStatus.DELIVERED
        assert publisher.events == []

    async def test_concurrent_modification_propagates(self):
        service = AsyncMock()
        service.update_status.side_effect = ConcurrentModificationError(uuid.uuid4(), 1)

        @asynccontextmanager
        async def scope():
            yield service

        with pytest.raises(ConcurrentModificationError):
            await default_registry(scope).process("order.completed", _payload(uuid.uuid4()))


class TestStatusChangedFeed:
    @pytest.fixture
    def status_registry(self, scopes):
        return status_update_registry(scopes)

    def test_routing_keys(self, status_registry):
        assert status_registry.routing_keys == ["order.status.changed"]

    @pytest.mark.parametrize("new_status", ["confirmed", "CONFIRMED", "Confirmed"])
    async def test_status_parsed_case_insensitively(self, status_registry, service, order, new_status):
        await status_registry.process("order.status.changed", _payload(order.id, NewStatus=new_status))
        assert (await service.get_by_id(order.id)).status == OrderStatus.CONFIRMED

    async def test_updated_by_and_reason_flow_into_event(self, status_registry, publisher, order):
        payload = _payload(
            order.id, previousStatus="Created", newStatus="Cancelled", updatedBy="support-desk", reason="customer request"
        )
        await status_registry.process("order.status.changed", payload)

        _, routing_key, event = publisher.events[0]
        assert routing_key == "order.cancelled"
        assert event["previousStatus"] == "Created"
        assert event["updatedBy"] == "support-desk"
        assert event["reason"] == "customer request"
        assert event["correlationId"] == "corr-7"

    async def test_missing_updated_by_falls_back_to_processor(self, status_registry, publisher, order):
        await status_registry.process("order.status.changed", _payload(order.id, newStatus="Processing"))
        assert publisher.events[0][2]["updatedBy"] == "OrderProcessor"

    @pytest.mark.parametrize("new_status", ["Lost", "", None])
    async def test_unknown_status_is_acknowledged(self, status_registry, service, publisher, order, new_status):
        await status_registry.process("order.status.changed", _payload(order.id, newStatus=new_status))

        assert (await service.get_by_id(order.id)).status == OrderStatus.CREATED
        assert publisher.events == []

    async def test_null_event_is_skipped(self, status_registry, scopes):
        await status_registry.process("order.status.changed", "null")
        assert scopes.opened == []

    async def test_illegal_transition_is_acknowledged(self, status_registry, service, publisher, order):
        await status_registry.process("order.status.changed", _payload(order.id, newStatus="Delivered"))
        publisher.events.clear()

        await status_registry.process("order.status.changed", _payload(order.id, newStatus="Created"))
        assert (await service.get_by_id(order.id)).status == OrderStatus.DELIVERED
        assert publisher.events == []

    async def test_not_part_of_fulfillment_feed(self, registry, scopes):
        await registry.process("order.status.changed", _payload(uuid.uuid4(), newStatus="Confirmed"))
        assert scopes.opened == []
