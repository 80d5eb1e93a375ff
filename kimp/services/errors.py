"""
仓位引擎异常
每个异常都记录引擎已经到达的阶段，便于提示用户"可能已部分开/平仓，请人工核对"
"""
from typing import Optional


class PositionEngineError(Exception):
    """仓位引擎基础异常"""

    def __init__(self, message: str, phase: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.phase = phase

    @property
    def partial(self) -> bool:
        """是否已有订单下到交易所 (无自动回滚，需要人工处理)"""
        return self.phase is not None

    def __str__(self):
        return self.message


class PreconditionError(PositionEngineError):
    """缺少 API 凭证 / 没有激活中的策略 等前置条件不满足"""


class OrderQueryError(PositionEngineError):
    """订单查询未返回有效数据"""


class LotSizeUnavailableError(PositionEngineError):
    """海外交易所 lot size 不可用"""


class VolumeBelowLotSizeError(PositionEngineError):
    """向下取整到 lot size 后数量不为正，国内腿未对冲"""


class LeverageRejectedError(PositionEngineError):
    """杠杆设置被拒绝"""


class NoActivePositionError(PositionEngineError):
    """没有可平仓的活跃仓位"""


class PositionLockedError(PositionEngineError):
    """同一用户同一币种已有开/平仓在进行中"""


class FinalizationError(PositionEngineError):
    """订单确认重试耗尽后仍无法取得数据"""

    DOMESTIC_ORDER_UNAVAILABLE = "DOMESTIC_ORDER_UNAVAILABLE"
    FOREIGN_ORDER_UNAVAILABLE = "FOREIGN_ORDER_UNAVAILABLE"
    FOREIGN_PNL_UNAVAILABLE = "FOREIGN_PNL_UNAVAILABLE"

    _MESSAGES = {
        DOMESTIC_ORDER_UNAVAILABLE: "国内交易所订单信息获取失败",
        FOREIGN_ORDER_UNAVAILABLE: "海外交易所订单信息获取失败",
        FOREIGN_PNL_UNAVAILABLE: "海外交易所已实现盈亏获取失败",
    }

    def __init__(self, cause: str, detail: Optional[str] = None, phase: Optional[str] = None):
        message = self._MESSAGES.get(cause, cause)
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, phase=phase)
        self.cause = cause
