from .base_exchange import (
    BaseExchange,
    ClosedPnl,
    LeverageResult,
    OrderRequest,
    OrderResult,
    TickerResult,
)
from .registry import ExchangeCredentials, ExchangeId, create_exchange

__all__ = [
    "BaseExchange",
    "ClosedPnl",
    "ExchangeCredentials",
    "ExchangeId",
    "LeverageResult",
    "OrderRequest",
    "OrderResult",
    "TickerResult",
    "create_exchange",
]
