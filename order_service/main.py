from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
import asyncio
import datetime
import logging
import uuid
from contextlib import asynccontextmanager
from functools import partial
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .consumer import OrderEventConsumer
from .crud import SqlOrderStore
from .database import dispose_engine, get_db_session, init_models
from .enums import OrderSortBy, OrderStatus
from .errors import ConcurrentModificationError, DuplicateOrderNumberError, IllegalTransitionError
from .handlers.registry import default_registry, status_update_registry
from .messaging.factory import create_adapter, create_publisher
from .schemas import CreateOrderRequest, Order, OrderQuery, OrderStats, PagedResponse, UpdateOrderStatusRequest
from .service import OrderService, service_scope
from .status_cache import OrderStatusCache

# Configure logging
logging.basicConfig(level=config.LOG_LEVEL, format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')
logger = logging.getLogger(__name__)


# --- FastAPI Lifespan Events ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application startup...")
    # Broker selection fails here, before anything is connected
    publisher = create_publisher()
    # One adapter per consumer: each holds its own connection and subscription
    adapters = [create_adapter(), create_adapter()] if config.CONSUMER_ENABLED else []

    await init_models()
    cache = OrderStatusCache() if config.STATUS_CACHE_ENABLED else None

    app.state.publisher = publisher
    app.state.cache = cache
    app.state.consumers = []
    consumer_tasks = []

    if adapters:
        scope_factory = partial(service_scope, publisher, cache)
        app.state.consumers = [
            OrderEventConsumer(adapters[0], default_registry(scope_factory), config.CONSUMER_QUEUE_NAME),
            OrderEventConsumer(adapters[1], status_update_registry(scope_factory), config.STATUS_CONSUMER_QUEUE_NAME),
        ]
        for consumer in app.state.consumers:
            logger.info(f"Starting order event consumer task for queue {consumer.queue_name}...")
            consumer_tasks.append(asyncio.create_task(consumer.run()))
    else:
        logger.info("Order event consumers disabled")

    yield # Application runs here

    logger.info("Application shutdown...")
    for task in consumer_tasks:
        task.cancel()
    for task in consumer_tasks:
        try:
            await task
        except asyncio.CancelledError:
            logger.info("Order event consumer task cancelled.")
        except Exception as e:
            logger.error(f"Exception during consumer task shutdown: {e}")

    # Cleanup resources
    await publisher.close()
    if cache is not None:
        await cache.close()
    await dispose_engine()


# --- FastAPI App ---
app = FastAPI(
    title="Order Service",
    description="Manages orders, publishes order lifecycle events and applies fulfillment status events from the message broker.",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(IllegalTransitionError)
async def illegal_transition_handler(request: Request, exc: IllegalTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ConcurrentModificationError)
async def concurrent_modification_handler(request: Request, exc: ConcurrentModificationError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(DuplicateOrderNumberError)
async def duplicate_order_number_handler(request: Request, exc: DuplicateOrderNumberError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# --- Dependencies ---
async def get_order_service(request: Request, db: AsyncSession = Depends(get_db_session)) -> OrderService:
    return OrderService(SqlOrderStore(db), request.app.state.publisher, request.app.state.cache)


def get_order_query(
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    status: str | None = None,
    customer_id: str | None = None,
    order_date_from: datetime.datetime | None = None,
    order_date_to: datetime.datetime | None = None,
    sort_by: OrderSortBy = OrderSortBy.ORDER_DATE_DESC,
) -> OrderQuery:
    try:
        parsed_status = OrderStatus.parse(status) if status else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return OrderQuery(
        page=page,
        page_size=page_size,
        status=parsed_status,
        customer_id=customer_id,
        order_date_from=order_date_from,
        order_date_to=order_date_to,
        sort_by=sort_by,
    )


# --- Routes ---
@app.get("/health", summary="Health Check", tags=["Monitoring"])
async def health_check(request: Request):
    publisher = getattr(request.app.state, "publisher", None)
    consumers = getattr(request.app.state, "consumers", [])
    publisher_ok = publisher.is_healthy() if publisher is not None else False
    queues = {c.queue_name: c.is_healthy() for c in consumers}
    consumer_ok = all(queues.values()) if queues else None
    healthy = publisher_ok and consumer_ok is not False
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "ok" if healthy else "degraded",
            "publisher": publisher_ok,
            "consumer": consumer_ok,
            "queues": queues,
            "broker": config.MESSAGE_BROKER_PROVIDER,
        },
    )


@app.post("/orders", status_code=201, response_model=Order, tags=["Orders"])
async def create_order(
    request: CreateOrderRequest,
    x_correlation_id: str | None = Header(default=None),
    service: OrderService = Depends(get_order_service),
):
    return await service.create_order(request, correlation_id=x_correlation_id)


@app.get("/orders", response_model=PagedResponse[Order], tags=["Orders"])
async def list_orders(
    query: OrderQuery = Depends(get_order_query),
    service: OrderService = Depends(get_order_service),
):
    return await service.get_paged(query)


@app.get("/orders/stats", response_model=OrderStats, tags=["Orders"])
async def order_stats(
    include_recent: bool = False,
    recent_limit: int = Query(10, ge=1, le=100),
    service: OrderService = Depends(get_order_service),
):
    return await service.get_stats(include_recent=include_recent, recent_limit=recent_limit)


@app.get("/orders/customer/{customer_id}", response_model=PagedResponse[Order], tags=["Orders"])
async def list_customer_orders(
    customer_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    service: OrderService = Depends(get_order_service),
):
    return await service.get_by_customer_paged(customer_id, page, page_size)


@app.get("/orders/{order_id}", response_model=Order, tags=["Orders"])
async def get_order(order_id: uuid.UUID, service: OrderService = Depends(get_order_service)):
    order = await service.get_by_id(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")
    return order


@app.get("/orders/{order_id}/status", summary="Get Order Status", tags=["Orders"], response_model=dict)
async def get_order_status(order_id: uuid.UUID, request: Request, service: OrderService = Depends(get_order_service)):
    """Status snapshot from the Redis cache, falling back to the database."""
    cache: OrderStatusCache | None = getattr(request.app.state, "cache", None)
    if cache is not None:
        status_info = await cache.get_order_status(order_id)
        if status_info:
            return status_info
    order = await service.get_by_id(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail=f"Status not found for order {order_id}")
    return {
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "shipping_status": order.shipping_status.value,
        "order_number": order.order_number,
        "version": order.version,
        "updated_at": order.updated_at.isoformat(),
    }


@app.put("/orders/{order_id}/status", response_model=Order, tags=["Orders"])
async def update_order_status(
    order_id: uuid.UUID,
    request: UpdateOrderStatusRequest,
    x_correlation_id: str | None = Header(default=None),
    service: OrderService = Depends(get_order_service),
):
    order = await service.update_status(
        order_id, request.status, correlation_id=x_correlation_id, reason=request.reason
    )
    if order is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")
    return order


@app.delete("/orders/{order_id}", status_code=204, tags=["Orders"])
async def delete_order(
    order_id: uuid.UUID,
    x_correlation_id: str | None = Header(default=None),
    service: OrderService = Depends(get_order_service),
):
    if not await service.delete_order(order_id, correlation_id=x_correlation_id):
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")
    return Response(status_code=204)
