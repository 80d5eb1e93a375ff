"""
开平仓执行进度
每个阶段推进都写入 Redis，进程中途崩溃后可查看停在哪一步 (不做自动恢复)
"""
import logging
import time
from enum import Enum
from typing import Any, Dict, Optional

from ..db import get_redis
from ..db.redis_schema import JOURNAL_TTL_SECONDS, journal_key

logger = logging.getLogger(__name__)


class ExecutionPhase(str, Enum):
    DOMESTIC_PLACED = "DOMESTIC_PLACED"
    DOMESTIC_CONFIRMED = "DOMESTIC_CONFIRMED"
    FOREIGN_PLACED = "FOREIGN_PLACED"
    FOREIGN_CONFIRMED = "FOREIGN_CONFIRMED"
    PERSISTED = "PERSISTED"
    FAILED = "FAILED"


class ExecutionJournal:
    OPEN = "open"
    CLOSE = "close"

    def __init__(self, redis_client=None):
        self._redis = redis_client

    async def _get_redis(self):
        if self._redis is None:
            self._redis = await get_redis()
        return self._redis

    async def record(self, action: str, user_id, coin_symbol: str, phase: ExecutionPhase, **fields: Any) -> None:
        """记录阶段推进；写入失败只告警，不影响已经下到交易所的订单流程"""
        mapping = {
            "phase": phase.value,
            "updated_at": str(int(time.time() * 1000)),
        }
        mapping.update({k: str(v) for k, v in fields.items() if v is not None})
        key = journal_key(action, user_id, coin_symbol)
        try:
            r = await self._get_redis()
            await r.hset(key, mapping=mapping)
            await r.expire(key, JOURNAL_TTL_SECONDS)
        except Exception as e:
            logger.warning(f"执行进度写入失败 {key} -> {phase.value}: {e}")

    async def get_progress(self, action: str, user_id, coin_symbol: str) -> Optional[Dict[str, str]]:
        r = await self._get_redis()
        data = await r.hgetall(journal_key(action, user_id, coin_symbol))
        return data or None
