"""
PostgreSQL 表结构
positions 为本引擎独占写入；users / strategies 只由统计服务做计数器增减
"""
import logging

logger = logging.getLogger(__name__)

POSITIONS_DDL = """
CREATE TABLE IF NOT EXISTS positions (
    id BIGSERIAL PRIMARY KEY,
    user_id UUID NOT NULL,
    strategy_id UUID NOT NULL,
    coin_symbol VARCHAR(20) NOT NULL,
    leverage INTEGER NOT NULL DEFAULT 1,
    status VARCHAR(20) NOT NULL DEFAULT 'OPEN',
    kr_exchange VARCHAR(50) NOT NULL,
    kr_order_id VARCHAR(100) NOT NULL,
    kr_price NUMERIC(18, 8) NOT NULL,
    kr_volume NUMERIC(18, 8) NOT NULL,
    kr_funds NUMERIC(18, 8) NOT NULL,
    kr_fee NUMERIC(18, 8) NOT NULL,
    fr_exchange VARCHAR(50) NOT NULL,
    fr_order_id VARCHAR(100) NOT NULL,
    fr_original_price NUMERIC(18, 8),
    fr_price NUMERIC(18, 8) NOT NULL,
    fr_volume NUMERIC(18, 8) NOT NULL,
    fr_funds NUMERIC(18, 8) NOT NULL,
    fr_fee NUMERIC(18, 8) NOT NULL,
    fr_slippage NUMERIC(10, 4),
    usdt_price NUMERIC(10, 2),
    entry_rate NUMERIC(10, 2) NOT NULL,
    exit_rate NUMERIC(10, 2),
    profit NUMERIC(18, 2),
    profit_rate NUMERIC(10, 2),
    entry_time TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    exit_time TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT positions_status_check CHECK (status IN ('OPEN', 'CLOSED'))
)
"""

POSITIONS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_positions_user_coin ON positions (user_id, coin_symbol, status)",
    "CREATE INDEX IF NOT EXISTS idx_positions_user_entry ON positions (user_id, entry_time DESC)",
]

# 统计服务依赖的计数器列（表本身由用户/策略子系统维护）
COUNTER_COLUMNS = [
    "ALTER TABLE users ADD COLUMN IF NOT EXISTS total_entry_count INTEGER NOT NULL DEFAULT 0",
    "ALTER TABLE users ADD COLUMN IF NOT EXISTS total_self_entry_count INTEGER NOT NULL DEFAULT 0",
    "ALTER TABLE users ADD COLUMN IF NOT EXISTS total_order_amount NUMERIC(24, 8) NOT NULL DEFAULT 0",
    "ALTER TABLE users ADD COLUMN IF NOT EXISTS daily_entry_count INTEGER NOT NULL DEFAULT 0",
    "ALTER TABLE users ADD COLUMN IF NOT EXISTS last_entry_date DATE",
    "ALTER TABLE users ADD COLUMN IF NOT EXISTS active_strategy_id UUID",
    "ALTER TABLE users ADD COLUMN IF NOT EXISTS plan_name VARCHAR(50) NOT NULL DEFAULT 'Free'",
    "ALTER TABLE strategies ADD COLUMN IF NOT EXISTS entry_count INTEGER NOT NULL DEFAULT 0",
    "ALTER TABLE strategies ADD COLUMN IF NOT EXISTS win_count INTEGER NOT NULL DEFAULT 0",
    "ALTER TABLE strategies ADD COLUMN IF NOT EXISTS loss_count INTEGER NOT NULL DEFAULT 0",
    "ALTER TABLE strategies ADD COLUMN IF NOT EXISTS total_profit NUMERIC(18, 2) NOT NULL DEFAULT 0",
]


async def ensure_schema(conn) -> None:
    """创建 positions 表并补齐计数器列（幂等）"""
    await conn.execute(POSITIONS_DDL)
    for ddl in POSITIONS_INDEXES:
        await conn.execute(ddl)
    for ddl in COUNTER_COLUMNS:
        try:
            await conn.execute(ddl)
        except Exception as e:
            # users / strategies 表不存在时只告警，不阻塞启动
            logger.warning(f"补齐计数器列失败(可忽略但建议修复): {e}")
    logger.info("✅ positions 表结构检查完成")
