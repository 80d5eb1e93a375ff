from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from fakes import DummyConn, DummyPool
from kimp.services import position_ledger
from kimp.services.position_ledger import PositionLedger, PositionRecord

T0 = datetime(2025, 3, 1, tzinfo=timezone.utc)
USER_ID = uuid4()


def _patch_pool(monkeypatch, conn):
    pool = DummyPool(conn)

    async def _get_pool():
        return pool

    monkeypatch.setattr(position_ledger, "get_pg_pool", _get_pool)
    return pool


def _open_row(coin, minutes, kr_funds, fr_funds, entry_rate="1350", kr_exchange="UPBIT", fr_exchange="BYBIT"):
    return {
        "coin_symbol": coin,
        "status": "OPEN",
        "entry_time": T0 + timedelta(minutes=minutes),
        "exit_time": None,
        "entry_rate": Decimal(entry_rate),
        "kr_volume": Decimal("0.01"),
        "fr_volume": Decimal("0.01"),
        "kr_funds": Decimal(kr_funds),
        "fr_funds": Decimal(fr_funds),
        "kr_fee": Decimal("500"),
        "fr_fee": Decimal("0.4"),
        "kr_exchange": kr_exchange,
        "fr_exchange": fr_exchange,
        "leverage": 1,
        "strategy_id": None,
    }


@pytest.mark.asyncio
async def test_insert_open_position_truncates_values(monkeypatch):
    conn = DummyConn(fetchval_result=42)
    _patch_pool(monkeypatch, conn)
    record = PositionRecord(
        user_id=USER_ID,
        strategy_id=uuid4(),
        coin_symbol="btc",
        leverage=2,
        kr_exchange="UPBIT",
        kr_order_id="kr-1",
        kr_price=Decimal("95000000.123456789"),
        kr_volume=Decimal("0.010526315789"),
        kr_funds=Decimal("1000000"),
        kr_fee=Decimal("500"),
        fr_exchange="BYBIT",
        fr_order_id="fr-1",
        fr_price=Decimal("70050"),
        fr_volume=Decimal("0.01"),
        fr_funds=Decimal("700.5"),
        fr_fee=Decimal("0.385"),
        entry_rate=Decimal("1427.559"),
        fr_slippage=Decimal("0.071428"),
        usdt_price=Decimal("1391.567"),
    )

    position_id = await PositionLedger.insert_open_position(record)

    assert position_id == 42
    kind, sql, args = conn.calls[0]
    assert kind == "fetchval"
    assert "'OPEN'" in sql and "RETURNING id" in sql
    assert args[2] == "BTC"
    assert args[6] == Decimal("95000000.12345678")
    assert args[7] == Decimal("0.01052631")
    assert args[17] == Decimal("0.0714")
    assert args[18] == Decimal("1391.56")
    assert args[19] == Decimal("1427.55")
    assert args[20] is None


@pytest.mark.asyncio
async def test_insert_closed_position_stamps_exit_time(monkeypatch):
    conn = DummyConn(fetchval_result=7)
    _patch_pool(monkeypatch, conn)
    record = PositionRecord(
        user_id=USER_ID, strategy_id=uuid4(), coin_symbol="BTC", leverage=1,
        kr_exchange="UPBIT", kr_order_id="kr-2", kr_price=Decimal("96000000"),
        kr_volume=Decimal("0.01"), kr_funds=Decimal("960000"), kr_fee=Decimal("480"),
        fr_exchange="BYBIT", fr_order_id="fr-2", fr_price=Decimal("70100"),
        fr_volume=Decimal("0.01"), fr_funds=Decimal("697.25"), fr_fee=Decimal("0.77"),
        entry_rate=Decimal("1369.47"), exit_rate=Decimal("1369.47"),
        profit=Decimal("-12345.678"), profit_rate=Decimal("-1.239"),
    )

    assert await PositionLedger.insert_closed_position(record) == 7
    _, sql, args = conn.calls[0]
    assert "'CLOSED'" in sql and "NOW(), NOW()" in sql
    assert args[21] == Decimal("-12345.67")
    assert args[22] == Decimal("-1.23")


@pytest.mark.asyncio
async def test_active_rows_respect_last_close_per_coin(monkeypatch):
    open_rows = [
        _open_row("BTC", 0, "999", "1"),
        _open_row("ETH", 5, "500000", "370"),
        _open_row("BTC", 30, "1000000", "740", entry_rate="1351.35"),
        _open_row("BTC", 40, "2000000", "1470", entry_rate="1360.54"),
    ]
    closed_rows = [{"coin_symbol": "BTC", "last_exit_time": T0 + timedelta(minutes=20)}]
    conn = DummyConn(fetch_results=[open_rows, closed_rows])
    _patch_pool(monkeypatch, conn)

    settlement = await PositionLedger.get_active_positions_for_settlement(USER_ID, "btc")

    assert settlement.positions_count == 2
    assert settlement.total_kr_funds == Decimal("3000000")
    assert settlement.total_fr_funds == Decimal("2210")
    assert conn.calls[0][2] == (USER_ID, "BTC")


@pytest.mark.asyncio
async def test_settlement_is_none_without_active_rows(monkeypatch):
    open_rows = [_open_row("BTC", 0, "1000000", "740")]
    closed_rows = [{"coin_symbol": "BTC", "last_exit_time": T0 + timedelta(minutes=1)}]
    _patch_pool(monkeypatch, DummyConn(fetch_results=[open_rows, closed_rows]))

    assert await PositionLedger.get_active_positions_for_settlement(USER_ID, "BTC") is None


@pytest.mark.asyncio
async def test_user_active_positions_grouped_by_coin_and_exchange(monkeypatch):
    open_rows = [
        _open_row("BTC", 0, "1000000", "740"),
        _open_row("BTC", 10, "1000000", "760"),
        _open_row("BTC", 20, "500000", "370", kr_exchange="BITHUMB"),
        _open_row("ETH", 5, "500000", "370"),
    ]
    _patch_pool(monkeypatch, DummyConn(fetch_results=[open_rows, []]))

    summaries = await PositionLedger.get_user_active_positions(USER_ID)

    assert [(s["coin_symbol"], s["kr_exchange"], s["position_count"]) for s in summaries] == [
        ("BTC", "UPBIT", 2),
        ("BTC", "BITHUMB", 1),
        ("ETH", "UPBIT", 1),
    ]
    assert summaries[0]["avg_entry_rate"] == Decimal("1333.33")


@pytest.mark.asyncio
async def test_active_count_and_history_limit(monkeypatch):
    open_rows = [_open_row("BTC", 0, "1", "1"), _open_row("XRP", 0, "1", "1")]
    conn = DummyConn(fetch_results=[open_rows, [], []])
    _patch_pool(monkeypatch, conn)

    assert await PositionLedger.has_active_positions(USER_ID) is True

    await PositionLedger.get_trading_history(USER_ID, page=3, limit=500)
    _, _, args = conn.calls[-1]
    assert args == (USER_ID, 100, 200)
