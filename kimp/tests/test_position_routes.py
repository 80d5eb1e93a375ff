from decimal import Decimal
from uuid import uuid4

import httpx
import pytest
from fastapi import FastAPI, HTTPException

from fakes import DummyConn, DummyPool, FakeRedis
from kimp import auth
from kimp.api import position_routes
from kimp.auth import CurrentUser, get_current_user
from kimp.services import ServiceContainer
from kimp.services.errors import NoActivePositionError, PositionEngineError
from kimp.services.execution_journal import ExecutionJournal, ExecutionPhase
from kimp.services.position_engine import PositionResult
from kimp.services.stats_service import EntryAllowance, StatsService

USER = CurrentUser(id=uuid4(), username="trader", email=None)


class _StubEngine:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.closed = False

    async def open_position(self, coin_symbol, amount, leverage, defer_persistence=False):
        if self.error:
            raise self.error
        return self.result

    async def close_position(self, coin_symbol, foreign_amount=None):
        if self.error:
            raise self.error
        return self.result

    async def close(self):
        self.closed = True


@pytest.fixture
def app():
    application = FastAPI()
    application.include_router(position_routes.router)
    application.dependency_overrides[get_current_user] = lambda: USER
    yield application
    ServiceContainer.reset()


def _client(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


def _patch_engine(monkeypatch, engine):
    async def _build(user_id, kr_exchange, fr_exchange):
        return engine

    monkeypatch.setattr(position_routes, "build_position_engine", _build)


def _patch_allowance(monkeypatch, allowance):
    counted = []

    async def _can_enter(user_id, today=None):
        return allowance

    async def _increment(user_id, today=None):
        counted.append(user_id)

    monkeypatch.setattr(StatsService, "can_user_enter_position", staticmethod(_can_enter))
    monkeypatch.setattr(StatsService, "increment_daily_entry_count", staticmethod(_increment))
    return counted


@pytest.mark.asyncio
async def test_open_rejected_when_daily_limit_reached(app, monkeypatch):
    _patch_allowance(monkeypatch, EntryAllowance(False, 0, "limit"))

    async with _client(app) as client:
        resp = await client.post("/api/v1/positions/open", json={"coin_symbol": "BTC", "amount": "1000000"})

    assert resp.status_code == 403
    assert resp.json()["detail"]["remaining_entries"] == 0


@pytest.mark.asyncio
async def test_open_success_counts_daily_entry(app, monkeypatch):
    counted = _patch_allowance(monkeypatch, EntryAllowance(True, 1))
    engine = _StubEngine(result=PositionResult(
        success=True,
        message="ok",
        coin_symbol="BTC",
        position_id=11,
        entry_rate=Decimal("1427.55"),
    ))
    _patch_engine(monkeypatch, engine)

    async with _client(app) as client:
        resp = await client.post(
            "/api/v1/positions/open",
            json={"coin_symbol": "btc", "amount": "1000000", "leverage": 2},
        )

    assert resp.status_code == 200
    body = resp.json()
    assert body["position_id"] == 11
    assert body["success"] is True
    assert counted == [USER.id]
    assert engine.closed is True


@pytest.mark.asyncio
async def test_partial_failure_is_reported_with_phase(app, monkeypatch):
    counted = _patch_allowance(monkeypatch, EntryAllowance(True, 1))
    engine = _StubEngine(error=PositionEngineError("海外下单失败", phase=ExecutionPhase.DOMESTIC_CONFIRMED.value))
    _patch_engine(monkeypatch, engine)

    async with _client(app) as client:
        resp = await client.post("/api/v1/positions/open", json={"coin_symbol": "BTC", "amount": "1000000"})

    assert resp.status_code == 500
    detail = resp.json()["detail"]
    assert detail["partial"] is True
    assert detail["phase"] == "DOMESTIC_CONFIRMED"
    assert counted == []
    assert engine.closed is True


@pytest.mark.asyncio
async def test_close_without_active_position_is_404(app, monkeypatch):
    _patch_engine(monkeypatch, _StubEngine(error=NoActivePositionError("没有活跃仓位")))

    async with _client(app) as client:
        resp = await client.post("/api/v1/positions/close", json={"coin_symbol": "BTC"})

    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_progress_reads_execution_journal(app):
    journal = ExecutionJournal(redis_client=FakeRedis())
    ServiceContainer._execution_journal = journal
    await journal.record(ExecutionJournal.OPEN, USER.id, "btc", ExecutionPhase.FOREIGN_PLACED, fr_order_id="fr-1")

    async with _client(app) as client:
        found = await client.get("/api/v1/positions/progress/open/BTC")
        missing = await client.get("/api/v1/positions/progress/close/BTC")
        unknown = await client.get("/api/v1/positions/progress/transfer/BTC")

    assert found.status_code == 200
    assert found.json()["progress"]["phase"] == "FOREIGN_PLACED"
    assert found.json()["progress"]["fr_order_id"] == "fr-1"
    assert missing.status_code == 404
    assert unknown.status_code == 400


@pytest.mark.asyncio
async def test_session_token_resolves_user(monkeypatch):
    user_id = uuid4()
    redis = FakeRedis()
    await redis.set("session:tok-1", str(user_id))
    pool = DummyPool(DummyConn(fetchrow_result={"id": user_id, "username": "trader", "email": "t@example.com"}))

    async def _get_redis():
        return redis

    async def _get_pool():
        return pool

    monkeypatch.setattr(auth, "get_redis", _get_redis)
    monkeypatch.setattr(auth, "get_pg_pool", _get_pool)

    user = await auth.get_current_user(authorization="Bearer tok-1")
    assert user.id == user_id

    with pytest.raises(HTTPException) as exc:
        await auth.get_current_user(authorization="Bearer expired")
    assert exc.value.status_code == 401
