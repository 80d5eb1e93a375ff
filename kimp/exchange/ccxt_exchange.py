import ccxt.async_support as ccxt
from decimal import Decimal
from typing import Optional

from .base_exchange import (
    BaseExchange,
    ClosedPnl,
    LeverageResult,
    OrderRequest,
    OrderResult,
    TickerResult,
)
from .registry import ExchangeId
from ..config import settings
from ..utils.precise_math import CryptoDecimals, precise_divide, precise_multiply, precise_sum, safe_numeric

# Bybit 杠杆未变化时的错误码
_LEVERAGE_NOT_MODIFIED_MARKERS = ("leverage not modified", "110043")

# 按成交明细汇总已实现盈亏的交易所: (按订单过滤的参数名, 明细中的已实现盈亏字段)
_FILL_PNL_FIELDS = {
    ExchangeId.BINANCE: ('orderId', 'realizedPnl'),
    ExchangeId.OKX: ('ordId', 'fillPnl'),
}


class CCXTExchange(BaseExchange):
    """基于 ccxt 的交易所适配器 (韩国所现货 / 海外所 U 本位永续)"""

    def __init__(self, exchange_id: ExchangeId, api_key=None, secret=None, password=None, client=None):
        super().__init__(exchange_id.value, api_key, secret, password)
        self.exchange = exchange_id
        self.supports_lot_size = not exchange_id.is_domestic
        self.supports_leverage = not exchange_id.is_domestic
        self.supports_closed_pnl = exchange_id is ExchangeId.BYBIT or exchange_id in _FILL_PNL_FIELDS
        if client is not None:
            self.client = client
        else:
            exchange_class = getattr(ccxt, exchange_id.ccxt_id)
            self.client = exchange_class({
                'apiKey': api_key,
                'secret': secret,
                'password': password,
                'enableRateLimit': True,
                'options': {'defaultType': 'spot' if exchange_id.is_domestic else 'swap'},
            })
            if exchange_id is ExchangeId.BYBIT and settings.BYBIT_TESTNET:
                self.client.set_sandbox_mode(True)
        self._markets_loaded = False

    async def _ensure_markets(self):
        if not self._markets_loaded:
            await self.client.load_markets()
            self._markets_loaded = True

    def _symbol(self, coin_symbol: str) -> str:
        return self.exchange.market_symbol(coin_symbol)

    def _contract_size(self, market_symbol: str) -> Decimal:
        """每张合约对应的币数量 (OKX 永续按张下单，Bybit / Binance 为 1)"""
        if self.exchange.is_domestic:
            return Decimal(1)
        try:
            market = self.client.market(market_symbol)
        except Exception as e:
            self.logger.warning(f"读取 {market_symbol} 合约面值失败，按 1 处理: {e}")
            return Decimal(1)
        size = safe_numeric(market.get('contractSize'), 1)
        return size if size > 0 else Decimal(1)

    async def place_order(self, order: OrderRequest) -> str:
        await self._ensure_markets()
        symbol = self._symbol(order.symbol)
        try:
            if order.cost is not None:
                result = await self.client.create_market_buy_order_with_cost(symbol, float(order.cost))
            elif order.close_entire_position:
                amount = await self._open_short_size(symbol)
                result = await self.client.create_order(
                    symbol, 'market', order.side, float(amount), None, {'reduceOnly': True}
                )
            else:
                if order.amount is None:
                    raise ValueError("下单数量不能为空")
                price = float(order.price) if order.price is not None else None
                contracts = precise_divide(order.amount, self._contract_size(symbol), CryptoDecimals.VOLUME)
                result = await self.client.create_order(
                    symbol, order.type, order.side, float(contracts), price
                )
        except Exception as e:
            self.logger.error(f"下单失败 {order.side} {symbol}: {e}")
            raise

        order_id = str(result.get('id') or '')
        if not order_id:
            raise RuntimeError(f"{self.exchange_id} 下单未返回订单ID: {result}")
        self.logger.info(f"下单成功 {order.side} {symbol}: {order_id}")
        return order_id

    async def _open_short_size(self, symbol: str) -> Decimal:
        positions = await self.client.fetch_positions([symbol])
        for position in positions or []:
            if position.get('symbol') != symbol or position.get('side') != 'short':
                continue
            contracts = safe_numeric(position.get('contracts'))
            if contracts > 0:
                return contracts
        raise RuntimeError(f"{self.exchange_id} 没有可平的 {symbol} 空头持仓")

    async def get_order(self, order_id: str, symbol: str) -> OrderResult:
        await self._ensure_markets()
        market_symbol = self._symbol(symbol)
        params = {'acknowledged': True} if self.exchange is ExchangeId.BYBIT else {}
        try:
            raw = await self.client.fetch_order(order_id, market_symbol, params)
        except Exception as e:
            self.logger.error(f"查询订单失败 {order_id}: {e}")
            raise
        return self._to_order_result(raw, symbol, self._contract_size(market_symbol))

    def _to_order_result(self, raw: dict, symbol: str, contract_size: Decimal = Decimal(1)) -> OrderResult:
        amount = safe_numeric(raw.get('filled')) * contract_size
        average = safe_numeric(raw.get('average'))
        cost = safe_numeric(raw.get('cost'))
        if cost == 0 and average > 0:
            cost = precise_multiply(average, amount, CryptoDecimals.FUNDS)
        if average == 0 and amount > 0:
            average = precise_divide(cost, amount, CryptoDecimals.PRICE)

        info = raw.get('info') or {}
        original_price = safe_numeric(info.get('lastPriceOnCreated') or raw.get('price'))
        slippage = None
        if original_price > 0 and average > 0:
            slippage = precise_divide(abs(average - original_price) * 100, original_price, CryptoDecimals.SLIPPAGE)

        return OrderResult(
            id=str(raw.get('id') or ''),
            symbol=symbol,
            type=str(raw.get('type') or '').lower(),
            side=str(raw.get('side') or '').lower(),
            amount=amount,
            filled=cost,
            price=average,
            fee=self._fee_cost(raw),
            timestamp=int(raw.get('lastTradeTimestamp') or raw.get('timestamp') or 0),
            slippage=slippage,
            original_price=original_price if original_price > 0 else None,
            raw=raw,
        )

    @staticmethod
    def _fee_cost(raw: dict) -> Decimal:
        fees = raw.get('fees') or []
        if fees:
            return sum((safe_numeric((f or {}).get('cost')) for f in fees), Decimal(0))
        return safe_numeric((raw.get('fee') or {}).get('cost'))

    async def get_ticker(self, symbol: str) -> TickerResult:
        market_symbol = self._symbol(symbol)
        ticker = await self.client.fetch_ticker(market_symbol)
        return TickerResult(
            symbol=symbol,
            price=safe_numeric(ticker.get('last')),
            timestamp=int(ticker.get('timestamp') or 0),
        )

    async def get_lot_size(self, symbol: str) -> Optional[Decimal]:
        try:
            await self._ensure_markets()
            market = self.client.market(self._symbol(symbol))
        except Exception as e:
            self.logger.error(f"查询 lot size 失败 {symbol}: {e}")
            return None
        min_amount = ((market.get('limits') or {}).get('amount') or {}).get('min')
        if min_amount is None:
            min_amount = (market.get('precision') or {}).get('amount')
        lot = safe_numeric(min_amount) * self._contract_size(self._symbol(symbol))
        return lot if lot > 0 else None

    async def set_leverage(self, symbol: str, leverage: int) -> LeverageResult:
        await self._ensure_markets()
        try:
            raw = await self.client.set_leverage(int(leverage), self._symbol(symbol))
            return LeverageResult(status=LeverageResult.OK, raw=raw)
        except ccxt.ExchangeError as e:
            message = str(e)
            if any(marker in message.lower() for marker in _LEVERAGE_NOT_MODIFIED_MARKERS):
                return LeverageResult(status=LeverageResult.NOT_MODIFIED, message=message)
            self.logger.error(f"设置杠杆失败 {symbol} x{leverage}: {message}")
            return LeverageResult(status=LeverageResult.REJECTED, message=message)

    async def get_closed_pnl(self, symbol: str, order_id: str) -> ClosedPnl:
        if not self.supports_closed_pnl:
            return await super().get_closed_pnl(symbol, order_id)
        await self._ensure_markets()
        if self.exchange in _FILL_PNL_FIELDS:
            return await self._closed_pnl_from_fills(symbol, order_id)
        market = self.client.market(self._symbol(symbol))
        response = await self.client.private_get_v5_position_closed_pnl({
            'category': 'linear',
            'symbol': market['id'],
        })
        if str(response.get('retCode')) != '0':
            raise RuntimeError(f"Bybit closed-pnl 查询失败: {response.get('retMsg')}")

        records = (response.get('result') or {}).get('list') or []
        record = next((r for r in records if r.get('orderId') == order_id), None)
        if record is None:
            # 尚未生成盈亏记录，由调用方按"未结算"重试
            return ClosedPnl(order_id=order_id, symbol=symbol.upper())

        order_price = safe_numeric(record.get('orderPrice'))
        avg_entry_price = safe_numeric(record.get('avgEntryPrice'))
        slippage = Decimal(0)
        if order_price > 0:
            slippage = abs(precise_divide((avg_entry_price - order_price) * 100, order_price, CryptoDecimals.SLIPPAGE))
        close_fee = safe_numeric(record.get('closeFee'))
        return ClosedPnl(
            order_id=order_id,
            symbol=symbol.upper(),
            total_pnl=safe_numeric(record.get('closedPnl')),
            avg_exit_price=safe_numeric(record.get('avgExitPrice')),
            total_volume=safe_numeric(record.get('closedSize')),
            close_fee=close_fee,
            total_fee=safe_numeric(record.get('openFee')) + close_fee,
            order_price=order_price,
            slippage=slippage,
        )

    async def _closed_pnl_from_fills(self, symbol: str, order_id: str) -> ClosedPnl:
        """Binance / OKX: 按订单号拉取成交明细，汇总已实现盈亏、成交量、均价和手续费"""
        order_param, pnl_field = _FILL_PNL_FIELDS[self.exchange]
        market_symbol = self._symbol(symbol)
        trades = await self.client.fetch_my_trades(market_symbol, None, None, {order_param: order_id})
        fills = [t for t in trades or [] if str(t.get('order') or '') == str(order_id)]
        if not fills:
            return ClosedPnl(order_id=order_id, symbol=symbol.upper())

        contracts = precise_sum((safe_numeric(t.get('amount')) for t in fills), CryptoDecimals.VOLUME)
        notional = precise_sum(
            (precise_multiply(t.get('price') or 0, t.get('amount') or 0, CryptoDecimals.FUNDS) for t in fills),
            CryptoDecimals.FUNDS,
        )
        avg_exit_price = precise_divide(notional, contracts, CryptoDecimals.PRICE) if contracts > 0 else Decimal(0)
        # OKX 明细里的手续费为负数
        fee = precise_sum((abs(safe_numeric((t.get('fee') or {}).get('cost'))) for t in fills), CryptoDecimals.FEE)
        pnl = precise_sum((safe_numeric((t.get('info') or {}).get(pnl_field)) for t in fills), CryptoDecimals.FUNDS)

        return ClosedPnl(
            order_id=order_id,
            symbol=symbol.upper(),
            total_pnl=pnl,
            avg_exit_price=avg_exit_price,
            total_volume=contracts * self._contract_size(market_symbol),
            close_fee=fee,
            total_fee=fee,
        )

    async def close(self):
        await self.client.close()
