import re
from datetime import date
from decimal import Decimal
from uuid import uuid4

import asyncpg
import pytest

from fakes import DummyConn, DummyPool
from kimp.exchange.registry import ExchangeCredentials
from kimp.services import stats_service
from kimp.services.stats_service import StatsService

TODAY = date(2025, 3, 1)


def _patch_pool(monkeypatch, conn):
    pool = DummyPool(conn)

    async def _get_pool():
        return pool

    monkeypatch.setattr(stats_service, "get_pg_pool", _get_pool)


@pytest.mark.asyncio
async def test_paid_plan_is_unlimited(monkeypatch):
    _patch_pool(monkeypatch, DummyConn(fetchrow_result={
        "plan_name": "Pro", "daily_entry_count": 9, "last_entry_date": TODAY,
    }))
    allowance = await StatsService.can_user_enter_position(uuid4(), today=TODAY)
    assert allowance.can_enter is True
    assert allowance.remaining_entries == -1


@pytest.mark.asyncio
async def test_free_plan_limited_once_per_day(monkeypatch):
    _patch_pool(monkeypatch, DummyConn(fetchrow_result={
        "plan_name": "Free", "daily_entry_count": 1, "last_entry_date": TODAY,
    }))
    allowance = await StatsService.can_user_enter_position(uuid4(), today=TODAY)
    assert allowance.can_enter is False
    assert allowance.reason


@pytest.mark.asyncio
async def test_free_plan_resets_on_new_day(monkeypatch):
    _patch_pool(monkeypatch, DummyConn(fetchrow_result={
        "plan_name": "Free", "daily_entry_count": 1, "last_entry_date": date(2025, 2, 28),
    }))
    allowance = await StatsService.can_user_enter_position(uuid4(), today=TODAY)
    assert allowance.can_enter is True
    assert allowance.remaining_entries == 1


@pytest.mark.asyncio
async def test_missing_user_cannot_enter(monkeypatch):
    _patch_pool(monkeypatch, DummyConn())
    allowance = await StatsService.can_user_enter_position(uuid4(), today=TODAY)
    assert allowance.can_enter is False


@pytest.mark.asyncio
async def test_exchange_credentials_decrypts_with_configured_secret(monkeypatch):
    user_id = uuid4()
    conn = DummyConn(fetchrow_result={
        "api_key": "key",
        "api_secret": "secret",
        "passphrase": "",
    })
    _patch_pool(monkeypatch, conn)
    monkeypatch.setattr(stats_service.settings, "EXCHANGE_KEY_SECRET", "s3cret")

    creds = await StatsService.get_exchange_credentials(user_id, "bybit")

    assert creds == ExchangeCredentials(api_key="key", api_secret="secret", passphrase=None)
    _, sql, args = conn.calls[0]
    assert sql.count("pgp_sym_decrypt(") == 3
    assert "LIKE '\\\\x%'" in sql
    assert args == (user_id, "bybit", "s3cret")


class _NoPgcryptoConn(DummyConn):
    async def fetchrow(self, sql, *args):
        if "pgp_sym_decrypt" in sql:
            self.calls.append(("fetchrow", sql, args))
            raise asyncpg.exceptions.UndefinedFunctionError("function pgp_sym_decrypt does not exist")
        return await super().fetchrow(sql, *args)


@pytest.mark.asyncio
async def test_exchange_credentials_fall_back_to_plaintext(monkeypatch):
    user_id = uuid4()
    conn = _NoPgcryptoConn(fetchrow_result={
        "api_key": "plain-key",
        "api_secret": "plain-secret",
        "passphrase": "pass",
    })
    _patch_pool(monkeypatch, conn)

    creds = await StatsService.get_exchange_credentials(user_id, "OKX")

    assert creds == ExchangeCredentials(api_key="plain-key", api_secret="plain-secret", passphrase="pass")
    assert len(conn.calls) == 2
    _, plain_sql, plain_args = conn.calls[1]
    assert "pgp_sym_decrypt" not in plain_sql
    assert plain_args == (user_id, "okx")


@pytest.mark.asyncio
async def test_exchange_credentials_missing_secret(monkeypatch):
    _patch_pool(monkeypatch, DummyConn(fetchrow_result={
        "api_key": "key", "api_secret": None, "passphrase": None,
    }))
    assert await StatsService.get_exchange_credentials(uuid4(), "UPBIT") is None


@pytest.mark.asyncio
async def test_strategy_profit_is_bound_as_numeric(monkeypatch):
    conn = DummyConn()
    _patch_pool(monkeypatch, conn)
    strategy_id = uuid4()

    await StatsService.update_strategy_stats_after_close(strategy_id, Decimal("0.75"), Decimal("0.01"))

    _, sql, args = conn.calls[0]
    assert args == (strategy_id, Decimal("0.75"))
    # 参数不能被推断为 int4，否则小数收益会被截断
    assert re.findall(r"\$2(?!::numeric)", sql) == []
    assert sql.count("$2::numeric") == 3


@pytest.mark.asyncio
async def test_deployed_capital_is_bound_as_numeric(monkeypatch):
    conn = DummyConn()
    _patch_pool(monkeypatch, conn)

    await StatsService.increment_user_deployed_capital(uuid4(), Decimal("1966000.5"))

    _, sql, _ = conn.calls[0]
    assert re.findall(r"\$2(?!::numeric)", sql) == []
