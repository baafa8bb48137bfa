import logging
import uuid
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .enums import OrderSortBy, OrderStatus
from .errors import ConcurrentModificationError, DuplicateOrderNumberError
from .models import OrderItemRecord, OrderRecord
from .schemas import Order, OrderQuery
from .store import OrderStore, as_utc, end_of_day_exclusive

logger = logging.getLogger(__name__)

_SORT_COLUMNS = {
    OrderSortBy.ORDER_DATE_ASC: OrderRecord.created_at.asc(),
    OrderSortBy.ORDER_DATE_DESC: OrderRecord.created_at.desc(),
    OrderSortBy.TOTAL_AMOUNT_ASC: OrderRecord.total_amount.asc(),
    OrderSortBy.TOTAL_AMOUNT_DESC: OrderRecord.total_amount.desc(),
    OrderSortBy.STATUS_ASC: OrderRecord.status.asc(),
    OrderSortBy.STATUS_DESC: OrderRecord.status.desc(),
}


def _to_record(order: Order) -> OrderRecord:
    return OrderRecord(
        id=order.id,
        order_number=order.order_number,
        customer_id=order.customer_id,
        customer_name=order.customer_name,
        customer_email=order.customer_email,
        customer_phone=order.customer_phone,
        status=order.status.value,
        payment_status=order.payment_status.value,
        shipping_status=order.shipping_status.value,
        currency=order.currency,
        subtotal=order.subtotal,
        tax_amount=order.tax_amount,
        shipping_cost=order.shipping_cost,
        discount_amount=order.discount_amount,
        total_amount=order.total_amount,
        shipping_address=order.shipping_address.model_dump(),
        billing_address=order.billing_address.model_dump(),
        notes=order.notes,
        created_at=order.created_at,
        updated_at=order.updated_at,
        created_by=order.created_by,
        updated_by=order.updated_by,
        version=order.version,
        items=[
            OrderItemRecord(
                id=item.id,
                position=position,
                product_id=item.product_id,
                product_name=item.product_name,
                product_sku=item.product_sku,
                unit_price=item.unit_price,
                quantity=item.quantity,
                total_price=item.total_price,
                created_at=item.created_at,
            )
            for position, item in enumerate(order.items)
        ],
    )


def _to_domain(record: OrderRecord) -> Order:
    order = Order.model_validate(record)
    order.created_at = as_utc(order.created_at)
    order.updated_at = as_utc(order.updated_at)
    for item in order.items:
        item.created_at = as_utc(item.created_at)
    return order


class SqlOrderStore(OrderStore):
    """OrderStore on top of one SQLAlchemy AsyncSession (one session per scope)."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _fetch(self, stmt) -> List[Order]:
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return [_to_domain(record) for record in result.scalars().all()]

    async def create(self, order: Order) -> Order:
        self.db.add(_to_record(order))
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            taken = await self.db.scalar(
                select(OrderRecord.id).where(OrderRecord.order_number == order.order_number)
            )
            if taken is not None:
                logger.error(f"Order number collision on {order.order_number}")
                raise DuplicateOrderNumberError(order.order_number) from e
            raise
        logger.info(f"Created order {order.id} ({order.order_number}) with {len(order.items)} items")
        return order.model_copy(deep=True)

    async def get_by_id(self, order_id: uuid.UUID) -> Optional[Order]:
        orders = await self._fetch(select(OrderRecord).where(OrderRecord.id == order_id))
        return orders[0] if orders else None

    async def get_all(self) -> List[Order]:
        return await self._fetch(select(OrderRecord).order_by(OrderRecord.created_at.desc()))

    async def get_by_customer_id(self, customer_id: str) -> List[Order]:
        return await self._fetch(
            select(OrderRecord)
            .where(OrderRecord.customer_id == customer_id)
            .order_by(OrderRecord.created_at.desc())
        )

    async def get_by_status(self, status: OrderStatus) -> List[Order]:
        return await self._fetch(
            select(OrderRecord)
            .where(OrderRecord.status == status.value)
            .order_by(OrderRecord.created_at.desc())
        )

    async def update(self, order: Order, expected_version: int) -> Optional[Order]:
        # Items are immutable after creation, only the order row changes
        stmt = (
            update(OrderRecord)
            .where(OrderRecord.id == order.id, OrderRecord.version == expected_version)
            .values(
                status=order.status.value,
                payment_status=order.payment_status.value,
                shipping_status=order.shipping_status.value,
                notes=order.notes,
                updated_at=order.updated_at,
                updated_by=order.updated_by,
                version=expected_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            await self.db.rollback()
            exists = await self.db.scalar(select(OrderRecord.id).where(OrderRecord.id == order.id))
            if exists is None:
                logger.warning(f"Order {order.id} disappeared before update")
                return None
            raise ConcurrentModificationError(order.id, expected_version)
        await self.db.commit()
        logger.debug(f"Updated order {order.id} to version {expected_version + 1}")
        return order.model_copy(deep=True, update={"version": expected_version + 1})

    async def delete(self, order_id: uuid.UUID) -> bool:
        record = await self.db.get(OrderRecord, order_id)
        if record is None:
            logger.warning(f"Attempted to delete non-existent order '{order_id}'")
            return False
        await self.db.delete(record)
        await self.db.commit()
        logger.info(f"Deleted order '{order_id}'")
        return True

    async def get_paged(self, query: OrderQuery) -> Tuple[List[Order], int]:
        logger.debug(f"Fetching paged orders - Page: {query.page}, PageSize: {query.page_size}")
        stmt = select(OrderRecord)
        if query.status is not None:
            stmt = stmt.where(OrderRecord.status == query.status.value)
        if query.customer_id:
            stmt = stmt.where(OrderRecord.customer_id == query.customer_id)
        if query.order_date_from is not None:
            stmt = stmt.where(OrderRecord.created_at >= as_utc(query.order_date_from))
        if query.order_date_to is not None:
            stmt = stmt.where(OrderRecord.created_at < end_of_day_exclusive(query.order_date_to))

        total = await self.db.scalar(select(func.count()).select_from(stmt.subquery()))
        orders = await self._fetch(
            stmt.order_by(_SORT_COLUMNS[query.sort_by], OrderRecord.created_at.asc(), OrderRecord.id.asc())
            .offset(query.skip).limit(query.page_size)
        )
        logger.debug(f"Retrieved {len(orders)} orders out of {total} total")
        return orders, total or 0
