import datetime
import logging
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, List, Optional

from . import config
from .crud import SqlOrderStore
from .database import get_session_factory
from .enums import OrderStatus
from .errors import PublishError
from .events import OrderCreatedEvent, OrderDeletedEvent, OrderStatusChangedEvent
from .logic import PricingRules, build_order, check_transition, round_money
from .messaging.publishers import EventPublisher
from .schemas import CreateOrderRequest, Order, OrderQuery, OrderStats, PagedResponse, RecentOrder
from .status_cache import OrderStatusCache
from .store import OrderStore, as_utc

logger = logging.getLogger(__name__)

# New status -> outbound routing key; everything else is a plain update
_STATUS_TOPICS = {
    OrderStatus.CANCELLED: lambda: config.TOPIC_ORDER_CANCELLED,
    OrderStatus.SHIPPED: lambda: config.TOPIC_ORDER_SHIPPED,
    OrderStatus.DELIVERED: lambda: config.TOPIC_ORDER_DELIVERED,
}


def status_routing_key(status: OrderStatus) -> str:
    topic = _STATUS_TOPICS.get(status)
    return topic() if topic else config.TOPIC_ORDER_UPDATED


def _new_correlation_id() -> str:
    return str(uuid.uuid4())


def _month_start(value: datetime.datetime) -> datetime.datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _previous_month_start(month_start: datetime.datetime) -> datetime.datetime:
    if month_start.month == 1:
        return month_start.replace(year=month_start.year - 1, month=12)
    return month_start.replace(month=month_start.month - 1)


class OrderService:
    """
    Every order mutation goes through here, whether it comes from an HTTP route
    or from an inbound fulfillment event.

    Writes are persisted first; events are published afterwards and a failed
    publish is logged, never raised. The status cache is refreshed after each
    successful write.
    """

    def __init__(
        self,
        store: OrderStore,
        publisher: EventPublisher,
        cache: OrderStatusCache | None = None,
        rules: PricingRules | None = None,
        enforce_transitions: bool | None = None,
        exchange: str | None = None,
    ):
        self.store = store
        self.publisher = publisher
        self.cache = cache
        self.rules = rules or PricingRules()
        self.enforce_transitions = (
            config.ENFORCE_STATUS_TRANSITIONS if enforce_transitions is None else enforce_transitions
        )
        self.exchange = exchange or config.RABBITMQ_EXCHANGE

    async def _publish_safely(self, routing_key: str, payload: dict, correlation_id: str) -> bool:
        try:
            await self.publisher.publish_event(self.exchange, routing_key, payload)
        except PublishError as e:
            logger.error(
                f"Failed to publish event - Exchange: {self.exchange}, RoutingKey: {routing_key}, "
                f"CorrelationId: {correlation_id}: {e}"
            )
            return False
        except Exception:
            logger.exception(
                f"Unexpected error publishing event - Exchange: {self.exchange}, RoutingKey: {routing_key}, "
                f"CorrelationId: {correlation_id}"
            )
            return False
        logger.info(f"Published {routing_key} event - CorrelationId: {correlation_id}")
        return True

    # --- Mutations ---

    async def create_order(
        self,
        request: CreateOrderRequest,
        correlation_id: str | None = None,
        actor: str | None = None,
    ) -> Order:
        correlation_id = correlation_id or _new_correlation_id()
        actor = actor or config.DEFAULT_ACTOR
        logger.info(f"Creating order for customer {request.customer_id} - CorrelationId: {correlation_id}")

        order = build_order(request, self.rules, actor)
        order = await self.store.create(order)
        logger.info(
            f"Order created - Id: {order.id}, Number: {order.order_number}, "
            f"Total: {round_money(order.total_amount)} {order.currency}"
        )

        if self.cache is not None:
            await self.cache.set_order_status(order)

        event = OrderCreatedEvent.from_order(order, correlation_id)
        await self._publish_safely(config.TOPIC_ORDER_CREATED, event.to_payload(), correlation_id)
        return order

    async def update_status(
        self,
        order_id: uuid.UUID,
        new_status: OrderStatus,
        correlation_id: str | None = None,
        actor: str | None = None,
        reason: str | None = None,
    ) -> Optional[Order]:
        """
        Moves an order to ``new_status``.

        Returns None if the order does not exist. Re-applying the current status
        changes nothing and publishes nothing, which is what makes redelivered
        events harmless. Raises IllegalTransitionError (when enforcement is on)
        or ConcurrentModificationError; neither leaves a write or an event behind.
        """
        correlation_id = correlation_id or _new_correlation_id()
        actor = actor or config.DEFAULT_ACTOR

        order = await self.store.get_by_id(order_id)
        if order is None:
            logger.warning(f"Order {order_id} not found for status update - CorrelationId: {correlation_id}")
            return None

        previous_status = order.status
        if previous_status == new_status:
            logger.info(f"Order {order_id} already in status {new_status.value}, nothing to do")
            return order

        if self.enforce_transitions:
            check_transition(previous_status, new_status)

        expected_version = order.version
        order.status = new_status
        order.updated_at = datetime.datetime.now(datetime.timezone.utc)
        order.updated_by = actor

        updated = await self.store.update(order, expected_version)
        if updated is None:
            logger.warning(f"Order {order_id} was deleted during status update - CorrelationId: {correlation_id}")
            return None

        logger.info(
            f"Order {order_id} status changed {previous_status.value} -> {new_status.value} "
            f"by {actor} - CorrelationId: {correlation_id}"
        )
        if self.cache is not None:
            await self.cache.set_order_status(updated)

        event = OrderStatusChangedEvent(
            order_id=str(updated.id),
            order_number=updated.order_number,
            customer_id=updated.customer_id,
            previous_status=previous_status.value,
            new_status=new_status.value,
            updated_at=updated.updated_at,
            updated_by=actor,
            reason=reason,
            correlation_id=correlation_id,
        )
        await self._publish_safely(status_routing_key(new_status), event.to_payload(), correlation_id)
        return updated

    async def delete_order(
        self,
        order_id: uuid.UUID,
        correlation_id: str | None = None,
        actor: str | None = None,
        reason: str | None = None,
    ) -> bool:
        correlation_id = correlation_id or _new_correlation_id()
        actor = actor or config.DEFAULT_ACTOR

        order = await self.store.get_by_id(order_id)
        if order is None:
            logger.warning(f"Order {order_id} not found for deletion - CorrelationId: {correlation_id}")
            return False
        if not await self.store.delete(order_id):
            return False

        logger.info(f"Order {order_id} ({order.order_number}) deleted by {actor}")
        if self.cache is not None:
            await self.cache.evict(order_id)

        event = OrderDeletedEvent(
            order_id=str(order.id),
            order_number=order.order_number,
            customer_id=order.customer_id,
            deleted_by=actor,
            reason=reason,
            correlation_id=correlation_id,
        )
        await self._publish_safely(config.TOPIC_ORDER_DELETED, event.to_payload(), correlation_id)
        return True

    # --- Reads ---

    async def get_by_id(self, order_id: uuid.UUID) -> Optional[Order]:
        return await self.store.get_by_id(order_id)

    async def get_all(self) -> List[Order]:
        return await self.store.get_all()

    async def get_by_customer(self, customer_id: str) -> List[Order]:
        return await self.store.get_by_customer_id(customer_id)

    async def get_by_status(self, status: OrderStatus) -> List[Order]:
        return await self.store.get_by_status(status)

    async def get_paged(self, query: OrderQuery) -> PagedResponse[Order]:
        orders, total = await self.store.get_paged(query)
        return PagedResponse[Order].create(orders, query.page, query.page_size, total)

    async def get_by_customer_paged(self, customer_id: str, page: int = 1, page_size: int = 10) -> PagedResponse[Order]:
        return await self.get_paged(OrderQuery(customer_id=customer_id, page=page, page_size=page_size))

    async def get_stats(
        self,
        include_recent: bool = False,
        recent_limit: int = 10,
        now: datetime.datetime | None = None,
    ) -> OrderStats:
        now = now or datetime.datetime.now(datetime.timezone.utc)
        this_month = _month_start(as_utc(now))
        last_month = _previous_month_start(this_month)

        orders = await self.store.get_all()
        pending_statuses = (OrderStatus.CREATED, OrderStatus.CONFIRMED, OrderStatus.PROCESSING)
        revenue_statuses = (OrderStatus.SHIPPED, OrderStatus.DELIVERED)

        total = len(orders)
        pending = sum(1 for o in orders if o.status in pending_statuses)
        completed = sum(1 for o in orders if o.status == OrderStatus.DELIVERED)
        new_this_month = sum(1 for o in orders if as_utc(o.created_at) >= this_month)
        new_last_month = sum(1 for o in orders if last_month <= as_utc(o.created_at) < this_month)
        revenue = sum((o.total_amount for o in orders if o.status in revenue_statuses), Decimal("0"))

        if new_last_month > 0:
            growth = Decimal(new_this_month - new_last_month) / Decimal(new_last_month) * 100
        elif new_this_month > 0:
            growth = Decimal("100")
        else:
            growth = Decimal("0")

        recent = None
        if include_recent:
            newest = sorted(orders, key=lambda o: as_utc(o.created_at), reverse=True)[:recent_limit]
            recent = [
                RecentOrder(
                    id=str(o.id),
                    order_number=o.order_number,
                    customer_id=o.customer_id,
                    customer_name=o.customer_name,
                    status=o.status,
                    total_amount=o.total_amount,
                    item_count=len(o.items),
                    created_at=o.created_at,
                )
                for o in newest
            ]

        logger.info(
            f"Order statistics computed - Total: {total}, Pending: {pending}, "
            f"Completed: {completed}, NewThisMonth: {new_this_month}"
        )
        return OrderStats(
            total=total,
            pending=pending,
            completed=completed,
            new_this_month=new_this_month,
            growth=round(growth, 1),
            revenue=round_money(revenue),
            recent_orders=recent,
        )


@asynccontextmanager
async def service_scope(
    publisher: EventPublisher,
    cache: OrderStatusCache | None = None,
    session_factory=None,
) -> AsyncIterator[OrderService]:
    """Fresh session and facade for one unit of work (one inbound message)."""
    factory = session_factory or get_session_factory()
    async with factory() as session:
        yield OrderService(SqlOrderStore(session), publisher, cache)
