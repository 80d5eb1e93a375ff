"""
仓位账本 - positions 表读写
开仓/平仓各插入一条记录；活跃仓位的汇总与计数统一走 select_active_positions 过滤
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..db import get_pg_pool
from ..utils.precise_math import CryptoDecimals, precise_divide, precise_sum, truncate_to_decimal
from .settlement import PositionSettlement, aggregate_settlement, select_active_positions

logger = logging.getLogger(__name__)

_POSITION_COLUMNS = """
    id, user_id, strategy_id, coin_symbol, leverage, status,
    kr_exchange, kr_order_id, kr_price, kr_volume, kr_funds, kr_fee,
    fr_exchange, fr_order_id, fr_original_price, fr_price, fr_volume, fr_funds, fr_fee, fr_slippage,
    usdt_price, entry_rate, exit_rate, profit, profit_rate,
    entry_time, exit_time, created_at
"""


@dataclass
class PositionRecord:
    """写入 positions 表的一条记录 (开仓或平仓)"""
    user_id: UUID
    strategy_id: UUID
    coin_symbol: str
    leverage: int
    kr_exchange: str
    kr_order_id: str
    kr_price: Decimal
    kr_volume: Decimal
    kr_funds: Decimal
    kr_fee: Decimal
    fr_exchange: str
    fr_order_id: str
    fr_price: Decimal
    fr_volume: Decimal
    fr_funds: Decimal
    fr_fee: Decimal
    entry_rate: Decimal
    fr_original_price: Optional[Decimal] = None
    fr_slippage: Optional[Decimal] = None
    usdt_price: Optional[Decimal] = None
    exit_rate: Optional[Decimal] = None
    profit: Optional[Decimal] = None
    profit_rate: Optional[Decimal] = None


def _truncate(value, decimals: int) -> Optional[Decimal]:
    if value is None:
        return None
    return truncate_to_decimal(value, decimals)


def _insert_args(record: PositionRecord) -> List[Any]:
    leg = CryptoDecimals.FUNDS
    return [
        record.user_id,
        record.strategy_id,
        record.coin_symbol.upper(),
        int(record.leverage),
        record.kr_exchange,
        record.kr_order_id,
        _truncate(record.kr_price, leg),
        _truncate(record.kr_volume, leg),
        _truncate(record.kr_funds, leg),
        _truncate(record.kr_fee, leg),
        record.fr_exchange,
        record.fr_order_id,
        _truncate(record.fr_original_price, leg),
        _truncate(record.fr_price, leg),
        _truncate(record.fr_volume, leg),
        _truncate(record.fr_funds, leg),
        _truncate(record.fr_fee, leg),
        _truncate(record.fr_slippage, CryptoDecimals.SLIPPAGE),
        _truncate(record.usdt_price, CryptoDecimals.USDT_PRICE),
        _truncate(record.entry_rate, CryptoDecimals.RATE),
        _truncate(record.exit_rate, CryptoDecimals.RATE),
        _truncate(record.profit, CryptoDecimals.PROFIT),
        _truncate(record.profit_rate, CryptoDecimals.RATE),
    ]


_INSERT_SQL = """
    INSERT INTO positions (
        user_id, strategy_id, coin_symbol, leverage,
        kr_exchange, kr_order_id, kr_price, kr_volume, kr_funds, kr_fee,
        fr_exchange, fr_order_id, fr_original_price, fr_price, fr_volume, fr_funds, fr_fee, fr_slippage,
        usdt_price, entry_rate, exit_rate, profit, profit_rate,
        status, entry_time, exit_time
    ) VALUES (
        $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18,
        $19, $20, $21, $22, $23,
        '{status}', NOW(), {exit_time}
    )
    RETURNING id
"""


class PositionLedger:
    """positions 表访问"""

    @staticmethod
    async def insert_open_position(record: PositionRecord) -> int:
        pool = await get_pg_pool()
        sql = _INSERT_SQL.format(status="OPEN", exit_time="NULL")
        async with pool.acquire() as conn:
            position_id = await conn.fetchval(sql, *_insert_args(record))
        logger.info(f"✅ 开仓记录已保存: {record.coin_symbol} #{position_id}")
        return position_id

    @staticmethod
    async def insert_closed_position(record: PositionRecord) -> int:
        """平仓记录: entry_time = exit_time = NOW()，之后的开仓进入新的活跃窗口"""
        pool = await get_pg_pool()
        sql = _INSERT_SQL.format(status="CLOSED", exit_time="NOW()")
        async with pool.acquire() as conn:
            position_id = await conn.fetchval(sql, *_insert_args(record))
        logger.info(f"✅ 平仓记录已保存: {record.coin_symbol} #{position_id} profit={record.profit}")
        return position_id

    @staticmethod
    async def _load_active_rows(user_id: UUID, coin_symbol: Optional[str] = None) -> Dict[str, List[dict]]:
        """按币种分组的活跃 OPEN 记录"""
        pool = await get_pg_pool()
        args: List[Any] = [user_id]
        coin_filter = ""
        if coin_symbol:
            args.append(coin_symbol.upper())
            coin_filter = "AND coin_symbol = $2"

        async with pool.acquire() as conn:
            open_rows = await conn.fetch(
                f"""
                SELECT {_POSITION_COLUMNS}
                FROM positions
                WHERE user_id = $1 AND status = 'OPEN' {coin_filter}
                ORDER BY entry_time ASC
                """,
                *args,
            )
            closed_rows = await conn.fetch(
                f"""
                SELECT coin_symbol, MAX(exit_time) AS last_exit_time
                FROM positions
                WHERE user_id = $1 AND status = 'CLOSED' {coin_filter}
                GROUP BY coin_symbol
                """,
                *args,
            )

        last_exit = {row["coin_symbol"]: row["last_exit_time"] for row in closed_rows}
        grouped: Dict[str, List[dict]] = OrderedDict()
        for row in open_rows:
            grouped.setdefault(row["coin_symbol"], []).append(dict(row))

        active: Dict[str, List[dict]] = OrderedDict()
        for coin, rows in grouped.items():
            selected = select_active_positions(rows, last_exit.get(coin))
            if selected:
                active[coin] = selected
        return active

    @staticmethod
    async def get_active_position_details(user_id: UUID, coin_symbol: str) -> List[dict]:
        active = await PositionLedger._load_active_rows(user_id, coin_symbol)
        return active.get(coin_symbol.upper(), [])

    @staticmethod
    async def get_active_positions_for_settlement(user_id: UUID, coin_symbol: str) -> Optional[PositionSettlement]:
        rows = await PositionLedger.get_active_position_details(user_id, coin_symbol)
        return aggregate_settlement(rows)

    @staticmethod
    async def get_user_active_positions(user_id: UUID) -> List[Dict[str, Any]]:
        """按 (币种, 国内所, 海外所) 分组的活跃仓位概要"""
        active = await PositionLedger._load_active_rows(user_id)
        summaries: List[Dict[str, Any]] = []
        for coin, rows in active.items():
            groups: Dict[tuple, List[dict]] = OrderedDict()
            for row in rows:
                groups.setdefault((row["kr_exchange"], row["fr_exchange"]), []).append(row)
            for (kr_exchange, fr_exchange), items in groups.items():
                total_kr_funds = precise_sum((r["kr_funds"] for r in items), CryptoDecimals.FUNDS)
                total_fr_funds = precise_sum((r["fr_funds"] for r in items), CryptoDecimals.FUNDS)
                summaries.append({
                    "coin_symbol": coin,
                    "kr_exchange": kr_exchange,
                    "fr_exchange": fr_exchange,
                    "total_kr_volume": precise_sum((r["kr_volume"] for r in items), CryptoDecimals.VOLUME),
                    "total_fr_volume": precise_sum((r["fr_volume"] for r in items), CryptoDecimals.VOLUME),
                    "total_kr_funds": total_kr_funds,
                    "total_fr_funds": total_fr_funds,
                    "avg_entry_rate": precise_divide(total_kr_funds, total_fr_funds, CryptoDecimals.RATE),
                    "position_count": len(items),
                    "latest_entry_time": max(r["entry_time"] for r in items),
                    "leverage": max(int(r["leverage"] or 1) for r in items),
                })
        return summaries

    @staticmethod
    async def get_user_active_position_count(user_id: UUID) -> int:
        active = await PositionLedger._load_active_rows(user_id)
        return sum(len(rows) for rows in active.values())

    @staticmethod
    async def has_active_positions(user_id: UUID) -> bool:
        return await PositionLedger.get_user_active_position_count(user_id) > 0

    @staticmethod
    async def get_trading_history(user_id: UUID, page: int = 1, limit: int = 10) -> List[Dict[str, Any]]:
        page = max(1, int(page))
        limit = max(1, min(int(limit), 100))
        pool = await get_pg_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_POSITION_COLUMNS}
                FROM positions
                WHERE user_id = $1
                ORDER BY entry_time DESC
                LIMIT $2 OFFSET $3
                """,
                user_id,
                limit,
                (page - 1) * limit,
            )
        return [dict(row) for row in rows]

    @staticmethod
    async def get_trading_history_count(user_id: UUID) -> int:
        pool = await get_pg_pool()
        async with pool.acquire() as conn:
            count = await conn.fetchval("SELECT COUNT(*) FROM positions WHERE user_id = $1", user_id)
        return int(count or 0)

    @staticmethod
    async def get_trading_stats(user_id: UUID) -> Dict[str, Any]:
        pool = await get_pg_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT COUNT(*) AS total_trades,
                       COUNT(*) FILTER (WHERE status = 'OPEN') AS open_trades,
                       COUNT(*) FILTER (WHERE status = 'CLOSED') AS closed_trades,
                       COALESCE(SUM(profit), 0) AS total_profit
                FROM positions
                WHERE user_id = $1
                """,
                user_id,
            )
        return {
            "total_trades": int(row["total_trades"] or 0),
            "open_trades": int(row["open_trades"] or 0),
            "closed_trades": int(row["closed_trades"] or 0),
            "total_profit": Decimal(row["total_profit"] or 0),
        }

    @staticmethod
    async def get_daily_profit(user_id: UUID) -> Decimal:
        """今日 (韩国时间) 平仓记录的收益合计"""
        pool = await get_pg_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(
                """
                SELECT COALESCE(SUM(profit), 0)
                FROM positions
                WHERE user_id = $1
                  AND status = 'CLOSED'
                  AND exit_time >= (date_trunc('day', NOW() AT TIME ZONE 'Asia/Seoul') AT TIME ZONE 'Asia/Seoul')
                """,
                user_id,
            )
        return Decimal(value or 0)
