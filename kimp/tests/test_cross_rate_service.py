import json
from decimal import Decimal

import pytest

from fakes import FakeRedis
from kimp.services.cross_rate_service import CrossRateService

NOW_MS = 1_700_000_000_000


def _cache_payload(price, ts):
    return json.dumps({"data": [{"market": "KRW-USDT", "trade_price": price}], "timestamp": ts})


class _Fetcher:
    def __init__(self, result):
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


@pytest.mark.asyncio
async def test_fresh_cache_is_preferred():
    redis = FakeRedis()
    await redis.set("upbit:KRW-USDT", _cache_payload(1391.5, NOW_MS - 3000))
    fetcher = _Fetcher(Decimal("1400"))
    service = CrossRateService(redis_client=redis, fetcher=fetcher, clock=lambda: NOW_MS)

    assert await service.get_rate() == Decimal("1391.5")
    assert fetcher.calls == 0


@pytest.mark.asyncio
async def test_stale_cache_falls_back_to_live_fetch():
    redis = FakeRedis()
    await redis.set("upbit:KRW-USDT", _cache_payload(1391.5, NOW_MS - 10_000))
    fetcher = _Fetcher(Decimal("1400"))
    service = CrossRateService(redis_client=redis, fetcher=fetcher, clock=lambda: NOW_MS)

    assert await service.get_rate() == Decimal("1400")
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_unavailable_rate_returns_none_or_fallback():
    redis = FakeRedis()
    await redis.set("upbit:KRW-USDT", "not-json")
    service = CrossRateService(redis_client=redis, fetcher=_Fetcher(RuntimeError("dns")), clock=lambda: NOW_MS)

    assert await service.get_rate() is None
    assert await service.get_rate_or_fallback() == Decimal("1380")


@pytest.mark.asyncio
async def test_refresh_once_writes_cache_with_ttl():
    redis = FakeRedis()
    service = CrossRateService(redis_client=redis, fetcher=_Fetcher(Decimal("1388")), clock=lambda: NOW_MS)

    await service.refresh_once()

    cached = json.loads(redis.store["upbit:KRW-USDT"])
    assert cached["timestamp"] == NOW_MS
    assert cached["data"][0]["trade_price"] == 1388.0
    assert redis.expiry["upbit:KRW-USDT"] == 10
    assert await service.get_rate() == Decimal("1388")


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    json.dumps([{"market": "KRW-USDT", "trade_price": 1391.5}]),
    json.dumps({"data": [{"market": "KRW-USDT", "trade_price": 1391.5}], "timestamp": "soon"}),
])
async def test_cache_without_write_time_is_ignored(payload):
    redis = FakeRedis()
    await redis.set("upbit:KRW-USDT", payload)
    fetcher = _Fetcher(Decimal("1400"))
    service = CrossRateService(redis_client=redis, fetcher=fetcher, clock=lambda: NOW_MS)

    assert await service.get_cached_rate() is None
    assert await service.get_rate() == Decimal("1400")
    assert fetcher.calls == 1
