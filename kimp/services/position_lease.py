"""
仓位互斥租约
同一用户同一币种同一时间只允许一个开仓/平仓流程，租约到期自动释放 (进程崩溃时兜底)
"""
import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from ..config import settings
from ..db import get_redis
from ..db.redis_schema import close_pending_key, lease_key
from .errors import PositionLockedError

logger = logging.getLogger(__name__)

# 只有持有者 token 匹配时才删除
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class PositionLease:
    def __init__(self, redis_client=None, ttl_seconds: Optional[int] = None):
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds or settings.POSITION_LEASE_TTL_SECONDS
        self.pending_ttl_seconds = settings.CLOSE_PENDING_TTL_SECONDS

    async def _get_redis(self):
        if self._redis is None:
            self._redis = await get_redis()
        return self._redis

    async def acquire(self, user_id, coin_symbol: str) -> Optional[str]:
        """获取租约，成功返回 token，已被占用返回 None"""
        r = await self._get_redis()
        token = secrets.token_hex(16)
        ok = await r.set(lease_key(user_id, coin_symbol), token, nx=True, px=self.ttl_seconds * 1000)
        return token if ok else None

    async def release(self, user_id, coin_symbol: str, token: str) -> bool:
        r = await self._get_redis()
        released = await r.eval(_RELEASE_SCRIPT, 1, lease_key(user_id, coin_symbol), token)
        if not released:
            logger.warning(f"租约已过期或被他人持有: {user_id}:{coin_symbol}")
        return bool(released)

    @asynccontextmanager
    async def hold(self, user_id, coin_symbol: str) -> AsyncIterator[str]:
        token = await self.acquire(user_id, coin_symbol)
        if token is None:
            raise PositionLockedError(f"{coin_symbol} 的开平仓正在进行中，请稍后再试")
        try:
            yield token
        finally:
            await self.release(user_id, coin_symbol, token)

    # 平仓待确认标记: /close 下单前写入，/close/finalize 入账后删除

    async def mark_close_pending(self, user_id, coin_symbol: str) -> None:
        r = await self._get_redis()
        await r.set(close_pending_key(user_id, coin_symbol), str(int(time.time() * 1000)), ex=self.pending_ttl_seconds)

    async def clear_close_pending(self, user_id, coin_symbol: str) -> None:
        r = await self._get_redis()
        await r.delete(close_pending_key(user_id, coin_symbol))

    async def is_close_pending(self, user_id, coin_symbol: str) -> bool:
        r = await self._get_redis()
        return bool(await r.get(close_pending_key(user_id, coin_symbol)))
