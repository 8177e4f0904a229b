import json
import logging
from typing import Awaitable, Callable, Optional

from redis.asyncio import Redis

from ..common.config import settings
from ..common.redis_client import get_redis

_logger = logging.getLogger(__name__)


class StockPublisher:
    """Announces committed stock levels on a Redis pub/sub channel.

    Publishing happens after the owning transaction has committed, so a
    failure here never affects stored data; it is logged and dropped.
    """

    def __init__(
        self,
        channel: Optional[str] = None,
        redis_factory: Callable[[], Awaitable[Redis]] = get_redis,
        enabled: Optional[bool] = None,
    ) -> None:
        self.channel = channel or settings.REDIS_STOCK_CHANNEL
        self.enabled = settings.STOCK_EVENTS_ENABLED if enabled is None else enabled
        self._redis_factory = redis_factory

    async def publish(self, product_id: int, stock: int) -> bool:
        if not self.enabled:
            return False
        try:
            r = await self._redis_factory()
            await r.publish(self.channel, json.dumps({"product_id": product_id, "stock": stock}))
        except Exception as e:
            _logger.warning("Stock update not published | product_id=%s stock=%s err=%s", product_id, stock, e)
            return False
        _logger.info("Published stock update via Redis | product_id=%s stock=%s channel=%s", product_id, stock, self.channel)
        return True
