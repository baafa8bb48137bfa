"""Persistence contract consumed by the order service.

Every operation is atomic at the store's discretion; the service never asks
for a transaction spanning several calls. Updates are conditional on the
version the caller loaded, which is how racing writers (an HTTP status change
and a consumer-driven one) are told apart.
"""
import datetime
import logging
import uuid
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from .enums import OrderSortBy, OrderStatus
from .errors import ConcurrentModificationError, DuplicateOrderNumberError
from .schemas import Order, OrderQuery

logger = logging.getLogger(__name__)


def as_utc(value: datetime.datetime) -> datetime.datetime:
    """Treats naive datetimes (e.g. read back from SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


def end_of_day_exclusive(value: datetime.datetime) -> datetime.datetime:
    """First instant of the day after ``value``; makes a to-date filter cover the whole day."""
    value = as_utc(value)
    start = datetime.datetime.combine(value.date(), datetime.time.min, tzinfo=value.tzinfo)
    return start + datetime.timedelta(days=1)


class OrderStore(ABC):

    @abstractmethod
    async def create(self, order: Order) -> Order:
        """Persists a new order. Raises DuplicateOrderNumberError on a taken order number."""

    @abstractmethod
    async def get_by_id(self, order_id: uuid.UUID) -> Optional[Order]:
        ...

    @abstractmethod
    async def get_all(self) -> List[Order]:
        ...

    @abstractmethod
    async def get_by_customer_id(self, customer_id: str) -> List[Order]:
        ...

    @abstractmethod
    async def get_by_status(self, status: OrderStatus) -> List[Order]:
        ...

    @abstractmethod
    async def update(self, order: Order, expected_version: int) -> Optional[Order]:
        """
        Writes the mutable fields of ``order`` if the stored version still equals
        ``expected_version`` and returns the stored order with its new version.
        Returns None if the order no longer exists and raises
        ConcurrentModificationError if someone else updated it first.
        """

    @abstractmethod
    async def delete(self, order_id: uuid.UUID) -> bool:
        ...

    @abstractmethod
    async def get_paged(self, query: OrderQuery) -> Tuple[List[Order], int]:
        ...


def _sort_key(sort_by: OrderSortBy):
    if sort_by in (OrderSortBy.TOTAL_AMOUNT_ASC, OrderSortBy.TOTAL_AMOUNT_DESC):
        return lambda o: o.total_amount
    if sort_by in (OrderSortBy.STATUS_ASC, OrderSortBy.STATUS_DESC):
        return lambda o: o.status.value
    return lambda o: as_utc(o.created_at)


def _is_descending(sort_by: OrderSortBy) -> bool:
    return sort_by in (OrderSortBy.ORDER_DATE_DESC, OrderSortBy.TOTAL_AMOUNT_DESC, OrderSortBy.STATUS_DESC)


class InMemoryOrderStore(OrderStore):
    """Dict-backed store with the same uniqueness and version rules as the SQL one."""

    def __init__(self) -> None:
        self._orders: dict[uuid.UUID, Order] = {}

    async def create(self, order: Order) -> Order:
        if any(o.order_number == order.order_number for o in self._orders.values()):
            raise DuplicateOrderNumberError(order.order_number)
        stored = order.model_copy(deep=True)
        self._orders[stored.id] = stored
        logger.debug(f"Stored order {stored.id} ({stored.order_number})")
        return stored.model_copy(deep=True)

    async def get_by_id(self, order_id: uuid.UUID) -> Optional[Order]:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def get_all(self) -> List[Order]:
        return [o.model_copy(deep=True) for o in self._orders.values()]

    async def get_by_customer_id(self, customer_id: str) -> List[Order]:
        return [o.model_copy(deep=True) for o in self._orders.values() if o.customer_id == customer_id]

    async def get_by_status(self, status: OrderStatus) -> List[Order]:
        return [o.model_copy(deep=True) for o in self._orders.values() if o.status == status]

    async def update(self, order: Order, expected_version: int) -> Optional[Order]:
        current = self._orders.get(order.id)
        if current is None:
            return None
        if current.version != expected_version:
            raise ConcurrentModificationError(order.id, expected_version)
        stored = order.model_copy(deep=True, update={"version": expected_version + 1})
        self._orders[order.id] = stored
        return stored.model_copy(deep=True)

    async def delete(self, order_id: uuid.UUID) -> bool:
        return self._orders.pop(order_id, None) is not None

    async def get_paged(self, query: OrderQuery) -> Tuple[List[Order], int]:
        orders = list(self._orders.values())
        if query.status is not None:
            orders = [o for o in orders if o.status == query.status]
        if query.customer_id:
            orders = [o for o in orders if o.customer_id == query.customer_id]
        if query.order_date_from is not None:
            start = as_utc(query.order_date_from)
            orders = [o for o in orders if as_utc(o.created_at) >= start]
        if query.order_date_to is not None:
            end = end_of_day_exclusive(query.order_date_to)
            orders = [o for o in orders if as_utc(o.created_at) < end]

        # Ties fall back to creation time, then id
        orders.sort(key=lambda o: (as_utc(o.created_at), str(o.id)))
        orders.sort(key=_sort_key(query.sort_by), reverse=_is_descending(query.sort_by))
        total = len(orders)
        page = orders[query.skip:query.skip + query.page_size]
        return [o.model_copy(deep=True) for o in page], total
