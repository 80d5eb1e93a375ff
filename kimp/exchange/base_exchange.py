"""
交易所交易端口
仓位引擎只依赖这里定义的抽象能力，不依赖具体交易所
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional
import logging


@dataclass(frozen=True)
class OrderRequest:
    """
    下单请求

    cost: 以计价货币表示的市价买入金额 (韩国交易所按 KRW 金额买入)
    close_entire_position: 平掉该币种的全部空头持仓，数量由适配器读取持仓得到
    """
    symbol: str
    side: str
    type: str = 'market'
    amount: Optional[Decimal] = None
    price: Optional[Decimal] = None
    cost: Optional[Decimal] = None
    close_entire_position: bool = False


@dataclass(frozen=True)
class OrderResult:
    """
    订单成交信息

    amount: 成交数量 (币)
    filled: 成交金额 (计价货币，韩国所为 KRW，海外所为 USDT)
    price: 成交均价
    original_price: 下单时刻的市场价 (海外合约用于计算滑点)
    """
    id: str
    symbol: str
    type: str
    side: str
    amount: Decimal
    filled: Decimal
    price: Decimal
    fee: Decimal = Decimal(0)
    timestamp: int = 0
    slippage: Optional[Decimal] = None
    original_price: Optional[Decimal] = None
    raw: dict = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class ClosedPnl:
    """海外合约平仓后的已实现盈亏记录"""
    order_id: str
    symbol: str
    total_pnl: Decimal = Decimal(0)
    avg_exit_price: Decimal = Decimal(0)
    total_volume: Decimal = Decimal(0)
    close_fee: Decimal = Decimal(0)
    total_fee: Decimal = Decimal(0)
    order_price: Decimal = Decimal(0)
    slippage: Decimal = Decimal(0)


@dataclass(frozen=True)
class LeverageResult:
    status: str
    message: str = ""
    raw: Any = None

    OK = "OK"
    NOT_MODIFIED = "NOT_MODIFIED"
    REJECTED = "REJECTED"

    @property
    def is_success(self) -> bool:
        # 杠杆未变化视为幂等成功
        return self.status in (self.OK, self.NOT_MODIFIED)


@dataclass(frozen=True)
class TickerResult:
    symbol: str
    price: Decimal
    timestamp: int


class BaseExchange(ABC):
    supports_lot_size: bool = False
    supports_leverage: bool = False
    supports_closed_pnl: bool = False

    def __init__(self, exchange_id, api_key=None, secret=None, password=None):
        self.exchange_id = exchange_id
        self.api_key = api_key
        self.secret = secret
        self.password = password
        self.logger = logging.getLogger(f"Exchange.{exchange_id}")

    @abstractmethod
    async def place_order(self, order: OrderRequest) -> str:
        """下单接口，返回交易所订单ID"""
        pass

    @abstractmethod
    async def get_order(self, order_id: str, symbol: str) -> OrderResult:
        """按订单ID查询成交信息"""
        pass

    @abstractmethod
    async def get_ticker(self, symbol: str) -> TickerResult:
        """查询现价"""
        pass

    async def get_lot_size(self, symbol: str) -> Optional[Decimal]:
        """最小下单数量增量，不支持时返回 None"""
        return None

    async def set_leverage(self, symbol: str, leverage: int) -> LeverageResult:
        raise NotImplementedError(f"{self.exchange_id} 不支持设置杠杆")

    async def get_closed_pnl(self, symbol: str, order_id: str) -> ClosedPnl:
        raise NotImplementedError(f"{self.exchange_id} 不支持查询已实现盈亏")

    async def close(self):
        pass
