"""
USDT/KRW 汇率服务
读取顺序: Redis 缓存 (10秒内有效) -> 实时接口 -> 固定近似汇率 (仅平仓路径)
另带一个后台刷新任务，每 3 秒把实时汇率写入缓存
"""
import asyncio
import json
import logging
import time
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Tuple

import aiohttp

from ..config import settings
from ..db import get_redis
from ..utils.precise_math import safe_numeric

logger = logging.getLogger(__name__)

_HTTP_TIMEOUT_SECONDS = 5


def _now_ms() -> int:
    return int(time.time() * 1000)


def _extract_trade_price(payload) -> Decimal:
    # Upbit ticker: [{"market": "KRW-USDT", "trade_price": 1391.0, ...}]
    if isinstance(payload, dict):
        payload = payload.get("data")
    if not isinstance(payload, list) or not payload:
        return Decimal(0)
    first = payload[0] if isinstance(payload[0], dict) else {}
    return safe_numeric(first.get("trade_price"))


class CrossRateService:
    def __init__(
        self,
        redis_client=None,
        fetcher: Optional[Callable[[], Awaitable[Decimal]]] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self._redis = redis_client
        self._fetcher = fetcher
        self._clock = clock
        self._cache_key = settings.CROSS_RATE_CACHE_KEY
        self._max_age_ms = settings.CROSS_RATE_MAX_AGE_MS
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    async def _get_redis(self):
        if self._redis is None:
            self._redis = await get_redis()
        return self._redis

    async def get_cached_rate(self) -> Optional[Tuple[Decimal, int]]:
        """读取缓存的汇率，返回 (汇率, 写入时间ms)；缓存缺失或损坏返回 None"""
        try:
            r = await self._get_redis()
            raw = await r.get(self._cache_key)
        except Exception as e:
            logger.warning(f"读取汇率缓存失败: {e}")
            return None
        if not raw:
            return None
        try:
            cached = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"汇率缓存格式错误: {raw!r}")
            return None
        rate = _extract_trade_price(cached)
        if rate <= 0:
            return None
        # 裸 ticker 列表没有写入时间，无法判断新鲜度
        written_at = cached.get("timestamp") if isinstance(cached, dict) else None
        try:
            timestamp = int(written_at)
        except (TypeError, ValueError):
            logger.warning(f"汇率缓存缺少写入时间: {raw!r}")
            return None
        return rate, timestamp

    async def fetch_live_rate(self) -> Decimal:
        """请求实时 USDT/KRW 汇率，失败时抛出异常"""
        if self._fetcher is not None:
            return await self._fetcher()
        payload = await self._fetch_ticker_payload()
        rate = _extract_trade_price(payload)
        if rate <= 0:
            raise ValueError(f"实时汇率数据无效: {payload}")
        return rate

    async def _fetch_ticker_payload(self):
        timeout = aiohttp.ClientTimeout(total=_HTTP_TIMEOUT_SECONDS)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(settings.CROSS_RATE_TICKER_URL, headers={"accept": "application/json"}) as resp:
                resp.raise_for_status()
                return await resp.json()

    async def get_rate(self) -> Optional[Decimal]:
        """缓存优先，其次实时接口；都失败时返回 None (开仓路径不阻塞)"""
        cached = await self.get_cached_rate()
        if cached is not None:
            rate, ts = cached
            if self._clock() - ts < self._max_age_ms:
                return rate
            logger.debug(f"汇率缓存已过期 ({self._clock() - ts}ms)")

        try:
            return await self.fetch_live_rate()
        except Exception as e:
            logger.warning(f"获取实时汇率失败: {e}")
            return None

    async def get_rate_or_fallback(self) -> Decimal:
        rate = await self.get_rate()
        if rate is not None:
            return rate
        fallback = Decimal(str(settings.CROSS_RATE_FALLBACK))
        logger.warning(f"⚠️ 汇率不可用，使用近似汇率 {fallback}")
        return fallback

    async def refresh_once(self) -> Decimal:
        rate = await self.fetch_live_rate()
        payload = {
            "data": [{"market": "KRW-USDT", "trade_price": float(rate)}],
            "timestamp": self._clock(),
        }
        r = await self._get_redis()
        await r.set(self._cache_key, json.dumps(payload), ex=settings.CROSS_RATE_CACHE_TTL_SECONDS)
        return rate

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        logger.info("💱 USDT/KRW 汇率刷新任务启动")
        while not self._stop_event.is_set():
            try:
                await self.refresh_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"刷新汇率缓存失败: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=settings.CROSS_RATE_REFRESH_SECONDS)
            except asyncio.TimeoutError:
                pass
