import redis.asyncio as redis
import json
import logging
from . import config
from .schemas import Order

logger = logging.getLogger(__name__)

# Writes only when nothing newer is cached: KEYS[1]=key, ARGV=value, version, ttl
SET_IF_NEWER = """
local current = redis.call("GET", KEYS[1])
if current then
    local cached = cjson.decode(current)
    if cached["version"] and tonumber(cached["version"]) >= tonumber(ARGV[2]) then
        return 0
    end
end
redis.call("SET", KEYS[1], ARGV[1], "EX", ARGV[3])
return 1
"""


class OrderStatusCache:
    """
    Snapshot of each order's status axes in Redis, refreshed after every write.
    Best effort: the database stays authoritative, cache errors are only logged.
    """

    def __init__(self, client: redis.Redis | None = None, ttl_seconds: int | None = None):
        self._client = client
        self._pool: redis.ConnectionPool | None = None
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else config.REDIS_ORDER_STATUS_TTL_SECONDS

    @staticmethod
    def _key(order_id) -> str:
        return f"order_status:{order_id}"

    async def get_client(self) -> redis.Redis:
        if self._client is None:
            logger.info(f"Creating Redis connection pool for {config.REDIS_HOST}:{config.REDIS_PORT}")
            self._pool = redis.ConnectionPool(
                host=config.REDIS_HOST,
                port=config.REDIS_PORT,
                db=config.REDIS_DB,
                decode_responses=True # Decode responses to strings
            )
            self._client = redis.Redis(connection_pool=self._pool)
        return self._client

    async def set_order_status(self, order: Order) -> bool:
        """
        Stores the current status of an order in Redis with a TTL.

        Concurrent writers can finish out of order, so the write is skipped when
        the cached snapshot already carries the same or a higher version.
        Returns True if the snapshot was written.
        """
        try:
            r = await self.get_client()
            value = json.dumps({
                "status": order.status.value,
                "payment_status": order.payment_status.value,
                "shipping_status": order.shipping_status.value,
                "order_number": order.order_number,
                "version": order.version,
                "updated_at": order.updated_at.isoformat(),
            })
            written = await r.eval(SET_IF_NEWER, 1, self._key(order.id), value, order.version, self.ttl_seconds)
        except Exception as e:
            logger.error(f"Failed to set status for order {order.id} in Redis: {e}")
            return False
        if not written:
            logger.debug(f"Skipped stale status v{order.version} for order {order.id}, newer snapshot cached")
            return False
        logger.debug(f"Set status for order {order.id} to {order.status.value} in Redis")
        return True

    async def get_order_status(self, order_id) -> dict | None:
        """Retrieves the current status of an order from Redis."""
        try:
            r = await self.get_client()
            value = await r.get(self._key(order_id))
            if value:
                return json.loads(value)
            return None
        except Exception as e:
            logger.error(f"Failed to get status for order {order_id} from Redis: {e}")
            return None

    async def evict(self, order_id) -> None:
        try:
            r = await self.get_client()
            await r.delete(self._key(order_id))
        except Exception as e:
            logger.error(f"Failed to evict status for order {order_id} from Redis: {e}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None
