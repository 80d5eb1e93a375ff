"""
用户 / 策略统计服务
只对 users、strategies 表做计数器增减，不参与仓位引擎的不变量
"""
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Optional
from uuid import UUID

import asyncpg

from ..config import settings
from ..db import get_pg_pool
from ..exchange.registry import ExchangeCredentials, ExchangeId

logger = logging.getLogger(__name__)

FREE_PLAN_NAME = "Free"
FREE_PLAN_DAILY_ENTRY_LIMIT = 1


def _decrypt_column(column: str, alias: str) -> str:
    # LIKE 中反斜杠本身是转义符，匹配字面量 \x 前缀需要写成 \\x
    return (
        f"CASE WHEN {column} LIKE '\\\\x%' "
        f"THEN pgp_sym_decrypt(decode(substr({column}, 3), 'hex'), $3) "
        f"ELSE {column} END AS {alias}"
    )


_DECRYPTED_CREDENTIALS_SQL = f"""
    SELECT
        {_decrypt_column('api_key_encrypted', 'api_key')},
        {_decrypt_column('api_secret_encrypted', 'api_secret')},
        {_decrypt_column('passphrase_encrypted', 'passphrase')}
    FROM exchange_configs
    WHERE user_id = $1 AND exchange_id = $2 AND is_active = true
    LIMIT 1
"""

_PLAIN_CREDENTIALS_SQL = """
    SELECT api_key_encrypted AS api_key,
           api_secret_encrypted AS api_secret,
           passphrase_encrypted AS passphrase
    FROM exchange_configs
    WHERE user_id = $1 AND exchange_id = $2 AND is_active = true
    LIMIT 1
"""


@dataclass
class EntryAllowance:
    can_enter: bool
    remaining_entries: int  # -1 表示不限
    reason: Optional[str] = None


class StatsService:

    @staticmethod
    async def increment_user_deployed_capital(user_id: UUID, amount: Decimal) -> None:
        """开仓成功后累加入场次数与投入金额"""
        pool = await get_pg_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE users
                SET total_entry_count = total_entry_count + 1,
                    total_self_entry_count = total_self_entry_count + 1,
                    total_order_amount = total_order_amount + $2::numeric,
                    updated_at = NOW()
                WHERE id = $1
                """,
                user_id,
                amount,
            )
        logger.info(f"用户 {user_id} 累计统计已更新: 投入金额 +{amount}")

    @staticmethod
    async def update_strategy_stats_after_close(strategy_id: UUID, profit: Decimal, profit_rate: Decimal) -> None:
        pool = await get_pg_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE strategies
                SET entry_count = GREATEST(entry_count - 1, 0),
                    win_count = win_count + CASE WHEN $2::numeric > 0 THEN 1 ELSE 0 END,
                    loss_count = loss_count + CASE WHEN $2::numeric < 0 THEN 1 ELSE 0 END,
                    total_profit = total_profit + $2::numeric,
                    updated_at = NOW()
                WHERE id = $1
                """,
                strategy_id,
                profit,
            )
        logger.info(f"策略 {strategy_id} 平仓统计已更新: 收益 {profit}, 收益率 {profit_rate}%")

    @staticmethod
    async def get_user_active_strategy(user_id: UUID) -> Optional[Dict]:
        pool = await get_pg_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT s.*
                FROM users u
                JOIN strategies s ON s.id = u.active_strategy_id
                WHERE u.id = $1
                """,
                user_id,
            )
        return dict(row) if row else None

    @staticmethod
    async def can_user_enter_position(user_id: UUID, today: Optional[date] = None) -> EntryAllowance:
        """Free 计划每日限 1 次开仓，其它计划不限"""
        pool = await get_pg_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT plan_name, daily_entry_count, last_entry_date FROM users WHERE id = $1",
                user_id,
            )
        if not row:
            return EntryAllowance(False, 0, "用户不存在")
        if row["plan_name"] != FREE_PLAN_NAME:
            return EntryAllowance(True, -1)

        today = today or date.today()
        if row["last_entry_date"] != today:
            return EntryAllowance(True, FREE_PLAN_DAILY_ENTRY_LIMIT)

        remaining = max(0, FREE_PLAN_DAILY_ENTRY_LIMIT - int(row["daily_entry_count"] or 0))
        if remaining == 0:
            return EntryAllowance(False, 0, "Free 计划每日只能开仓 1 次，升级计划后不限次数")
        return EntryAllowance(True, remaining)

    @staticmethod
    async def increment_daily_entry_count(user_id: UUID, today: Optional[date] = None) -> None:
        today = today or date.today()
        pool = await get_pg_pool()
        async with pool.acquire() as conn:
            # 日期变化时计数重置为 1
            await conn.execute(
                """
                UPDATE users
                SET daily_entry_count = CASE WHEN last_entry_date = $2 THEN daily_entry_count + 1 ELSE 1 END,
                    last_entry_date = $2,
                    updated_at = NOW()
                WHERE id = $1
                """,
                user_id,
                today,
            )

    @staticmethod
    async def get_exchange_credentials(user_id: UUID, exchange) -> Optional[ExchangeCredentials]:
        """读取用户的交易所 API 凭证；\\x 开头的字段为 pgcrypto 加密值，其余按明文处理"""
        exchange_id = ExchangeId.parse(exchange)
        pool = await get_pg_pool()
        async with pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    _DECRYPTED_CREDENTIALS_SQL,
                    user_id,
                    exchange_id.ccxt_id,
                    settings.EXCHANGE_KEY_SECRET,
                )
            except asyncpg.PostgresError as e:
                # 未安装 pgcrypto 或密钥不匹配时退回明文读取
                logger.warning(f"API 凭证解密失败，按明文读取: {e}")
                row = await conn.fetchrow(_PLAIN_CREDENTIALS_SQL, user_id, exchange_id.ccxt_id)
        if not row or not row["api_key"] or not row["api_secret"]:
            logger.warning(f"用户 {user_id} 未配置 {exchange_id.value} API 凭证")
            return None
        return ExchangeCredentials(
            api_key=row["api_key"],
            api_secret=row["api_secret"],
            passphrase=row["passphrase"] or None,
        )
