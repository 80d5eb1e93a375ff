"""
服务容器 - 统一管理进程内共享的服务实例
汇率服务带后台刷新任务，必须全局唯一
"""
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class ServiceContainer:
    """服务单例容器"""

    _cross_rate_service: Optional['CrossRateService'] = None
    _execution_journal: Optional['ExecutionJournal'] = None

    @classmethod
    def initialize(cls):
        logger.info("🔧 初始化服务容器...")

        # 延迟导入避免循环依赖
        from .cross_rate_service import CrossRateService
        from .execution_journal import ExecutionJournal

        cls._cross_rate_service = CrossRateService()
        cls._execution_journal = ExecutionJournal()

        logger.info("✅ 服务容器初始化完成")

    @classmethod
    def get_cross_rate_service(cls):
        """获取 USDT/KRW 汇率服务"""
        if cls._cross_rate_service is None:
            from .cross_rate_service import CrossRateService
            cls._cross_rate_service = CrossRateService()
        return cls._cross_rate_service

    @classmethod
    def get_execution_journal(cls):
        """获取执行进度记录"""
        if cls._execution_journal is None:
            from .execution_journal import ExecutionJournal
            cls._execution_journal = ExecutionJournal()
        return cls._execution_journal

    @classmethod
    def reset(cls):
        """重置容器，主要用于测试"""
        cls._cross_rate_service = None
        cls._execution_journal = None


from .errors import (
    FinalizationError,
    NoActivePositionError,
    PositionEngineError,
    PositionLockedError,
    PreconditionError,
)
from .cross_rate_service import CrossRateService
from .execution_journal import ExecutionJournal, ExecutionPhase
from .order_poller import FinalizationResult, OrderFinalizationPoller
from .position_engine import PositionEngine, PositionResult, build_position_engine
from .position_lease import PositionLease
from .position_ledger import PositionLedger, PositionRecord
from .settlement import PositionSettlement, aggregate_settlement, select_active_positions
from .stats_service import StatsService

__all__ = [
    "ServiceContainer",
    "CrossRateService",
    "ExecutionJournal",
    "ExecutionPhase",
    "FinalizationError",
    "FinalizationResult",
    "NoActivePositionError",
    "OrderFinalizationPoller",
    "PositionEngine",
    "PositionEngineError",
    "PositionLease",
    "PositionLedger",
    "PositionLockedError",
    "PositionRecord",
    "PositionResult",
    "PositionSettlement",
    "PreconditionError",
    "StatsService",
    "aggregate_settlement",
    "build_position_engine",
    "select_active_positions",
]
