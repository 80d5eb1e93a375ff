"""
Redis 数据结构设计文档
仓位引擎使用的缓存、租约与执行进度键

基于以下原则设计:
1. 汇率缓存由后台任务写入，读取方按时间戳判断新鲜度
2. 同一用户同一币种的开平仓互斥
3. 执行进度可在进程崩溃后人工查看
"""

# ============================================
# 1. USDT/KRW 汇率缓存
# ============================================
# Key: upbit:KRW-USDT
# Type: String (JSON)
# TTL: 10 seconds
#
# Example:
#   SET upbit:KRW-USDT '{"data":[{"market":"KRW-USDT","trade_price":1391.0}],"timestamp":1705123456789}' EX 10
# 实际键名由 settings.CROSS_RATE_CACHE_KEY 配置

# ============================================
# 2. 仓位互斥租约 (Position Lease)
# ============================================
# Key: lease:position:{user_id}:{coin_symbol}
# Type: String (持有者 token)
# TTL: POSITION_LEASE_TTL_SECONDS
#
# 获取: SET key token NX PX ttl_ms
# 释放: Lua 脚本比较 token 后删除
LEASE_KEY_PREFIX = "lease:position"

# ============================================
# 2b. 平仓待确认标记
# ============================================
# Key: pending:close:{user_id}:{coin_symbol}
# Type: String (写入时间 ms)
# TTL: CLOSE_PENDING_TTL_SECONDS
#
# close_position 下单前写入，finalize_close 入账后删除；存在期间拒绝同币种开仓和重复平仓
CLOSE_PENDING_KEY_PREFIX = "pending:close"

# ============================================
# 3. 执行进度 (Execution Journal)
# ============================================
# Key: journal:{action}:{user_id}:{coin_symbol}
# Type: Hash
# TTL: 7 days
#
# Fields:
#   - phase: DOMESTIC_PLACED / DOMESTIC_CONFIRMED / FOREIGN_PLACED / FOREIGN_CONFIRMED / PERSISTED / FAILED
#   - kr_order_id / fr_order_id
#   - error: 失败原因 (如有)
#   - updated_at: 时间戳 (ms)
JOURNAL_KEY_PREFIX = "journal"
JOURNAL_TTL_SECONDS = 60 * 60 * 24 * 7

# ============================================
# 4. 登录会话
# ============================================
# Key: session:{token}
# Type: String (user_id)
SESSION_KEY_PREFIX = "session"


def lease_key(user_id, coin_symbol: str) -> str:
    return f"{LEASE_KEY_PREFIX}:{user_id}:{coin_symbol.upper()}"


def journal_key(action: str, user_id, coin_symbol: str) -> str:
    return f"{JOURNAL_KEY_PREFIX}:{action}:{user_id}:{coin_symbol.upper()}"


def close_pending_key(user_id, coin_symbol: str) -> str:
    return f"{CLOSE_PENDING_KEY_PREFIX}:{user_id}:{coin_symbol.upper()}"
