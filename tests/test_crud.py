"""Tests for the SQLAlchemy order store against SQLite."""

import datetime
from decimal import Decimal

import pytest

from order_service.crud import SqlOrderStore
from order_service.enums import OrderSortBy, OrderStatus
from order_service.errors import ConcurrentModificationError, DuplicateOrderNumberError
from order_service.logic import build_order
from order_service.schemas import OrderQuery


@pytest.fixture
def sql_store(db_session):
    return SqlOrderStore(db_session)


class TestSqlOrderStore:
    async def test_round_trip_keeps_items_and_amounts(self, sql_store, make_request, rules):
        order = build_order(make_request(("25.00", 2), ("15.00", 1)), rules, actor="test")
        await sql_store.create(order)

        loaded = await sql_store.get_by_id(order.id)
        assert loaded.order_number == order.order_number
        assert [i.product_id for i in loaded.items] == ["prod-0", "prod-1"]
        assert loaded.subtotal == Decimal("65.00")
        assert loaded.tax_amount == Decimal("5.20")
        assert loaded.total_amount == Decimal("80.20")
        assert loaded.shipping_address.zip_code == "62701"
        assert loaded.created_at.tzinfo is not None
        assert loaded.version == 1

    async def test_duplicate_order_number(self, sql_store, make_request, rules):
        first = build_order(make_request(("10.00", 1)), rules, actor="test")
        await sql_store.create(first)
        second = build_order(make_request(("10.00", 1)), rules, actor="test")
        second.order_number = first.order_number

        with pytest.raises(DuplicateOrderNumberError):
            await sql_store.create(second)
        assert len(await sql_store.get_all()) == 1

    async def test_conditional_update(self, sql_store, make_request, rules):
        order = build_order(make_request(("10.00", 1)), rules, actor="test")
        await sql_store.create(order)

        loaded = await sql_store.get_by_id(order.id)
        loaded.status = OrderStatus.CONFIRMED
        updated = await sql_store.update(loaded, expected_version=1)
        assert updated.version == 2

        reloaded = await sql_store.get_by_id(order.id)
        assert reloaded.status == OrderStatus.CONFIRMED
        assert reloaded.version == 2

    async def test_lost_race_detected(self, session_factory, make_request, rules):
        async with session_factory() as setup:
            order = build_order(make_request(("10.00", 1)), rules, actor="test")
            await SqlOrderStore(setup).create(order)

        async with session_factory() as s1, session_factory() as s2:
            store1, store2 = SqlOrderStore(s1), SqlOrderStore(s2)
            first = await store1.get_by_id(order.id)
            second = await store2.get_by_id(order.id)

            first.status = OrderStatus.SHIPPED
            await store1.update(first, expected_version=first.version)

            second.status = OrderStatus.CANCELLED
            with pytest.raises(ConcurrentModificationError):
                await store2.update(second, expected_version=second.version)

            assert (await store2.get_by_id(order.id)).status == OrderStatus.SHIPPED

    async def test_update_missing_returns_none(self, sql_store, make_request, rules):
        order = build_order(make_request(("10.00", 1)), rules, actor="test")
        assert await sql_store.update(order, expected_version=1) is None

    async def test_delete_cascades_items(self, sql_store, make_request, rules):
        order = build_order(make_request(("10.00", 1), ("5.00", 2)), rules, actor="test")
        await sql_store.create(order)

        assert await sql_store.delete(order.id) is True
        assert await sql_store.get_by_id(order.id) is None
        assert await sql_store.delete(order.id) is False

    async def test_paged_filters(self, sql_store, make_request, rules):
        days = [
            (datetime.datetime(2024, 1, 1, 23, 30, tzinfo=datetime.timezone.utc), "a", "30.00"),
            (datetime.datetime(2024, 1, 2, 9, 0, tzinfo=datetime.timezone.utc), "a", "10.00"),
            (datetime.datetime(2024, 1, 3, 9, 0, tzinfo=datetime.timezone.utc), "b", "20.00"),
        ]
        for created_at, customer, price in days:
            order = build_order(make_request((price, 1), customer_id=customer), rules, actor="test", now=created_at)
            await sql_store.create(order)

        page, total = await sql_store.get_paged(OrderQuery(customer_id="a"))
        assert total == 2
        assert [o.created_at.day for o in page] == [2, 1]

        page, total = await sql_store.get_paged(
            OrderQuery(order_date_to=datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc))
        )
        assert total == 1

        page, total = await sql_store.get_paged(
            OrderQuery(page=2, page_size=2, sort_by=OrderSortBy.TOTAL_AMOUNT_ASC)
        )
        assert total == 3
        assert [o.subtotal for o in page] == [Decimal("30.00")]

    async def test_paging_with_tied_sort_values(self, sql_store, make_request, rules):
        created_at = datetime.datetime(2024, 1, 1, 9, 0, tzinfo=datetime.timezone.utc)
        for _ in range(5):
            order = build_order(make_request(("10.00", 1)), rules, actor="test", now=created_at)
            await sql_store.create(order)

        for sort_by in (OrderSortBy.TOTAL_AMOUNT_ASC, OrderSortBy.STATUS_DESC):
            seen = []
            for page_number in (1, 2, 3):
                page, _ = await sql_store.get_paged(OrderQuery(page=page_number, page_size=2, sort_by=sort_by))
                seen.extend(o.id for o in page)
            assert len(seen) == 5
            assert len(set(seen)) == 5
