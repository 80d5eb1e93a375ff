"""
交易所标识与工厂
引擎构造时一次性解析为具体适配器，之后不再按字符串分派
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ExchangeId(str, Enum):
    UPBIT = "UPBIT"
    BITHUMB = "BITHUMB"
    BYBIT = "BYBIT"
    BINANCE = "BINANCE"
    OKX = "OKX"

    @classmethod
    def parse(cls, value) -> "ExchangeId":
        if isinstance(value, ExchangeId):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"不支持的交易所: {value}")

    @property
    def is_domestic(self) -> bool:
        return self in (ExchangeId.UPBIT, ExchangeId.BITHUMB)

    @property
    def ccxt_id(self) -> str:
        return self.value.lower()

    @property
    def quote(self) -> str:
        return "KRW" if self.is_domestic else "USDT"

    def market_symbol(self, coin_symbol: str) -> str:
        """币种 -> ccxt 交易对 (韩国所现货 BTC/KRW，海外所 U 本位永续 BTC/USDT:USDT)"""
        coin = coin_symbol.strip().upper()
        if self.is_domestic:
            return f"{coin}/KRW"
        return f"{coin}/USDT:USDT"


@dataclass(frozen=True)
class ExchangeCredentials:
    api_key: str
    api_secret: str
    passphrase: Optional[str] = None


def create_exchange(exchange_id, credentials: Optional[ExchangeCredentials] = None):
    """根据交易所标识创建适配器"""
    from .ccxt_exchange import CCXTExchange

    exchange = ExchangeId.parse(exchange_id)
    creds = credentials or ExchangeCredentials(api_key="", api_secret="")
    return CCXTExchange(
        exchange,
        api_key=creds.api_key,
        secret=creds.api_secret,
        password=creds.passphrase,
    )
