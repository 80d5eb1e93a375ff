from decimal import Decimal

import ccxt.async_support as ccxt
import pytest

from kimp.exchange.base_exchange import LeverageResult, OrderRequest
from kimp.exchange.ccxt_exchange import CCXTExchange
from kimp.exchange.registry import ExchangeId


class _FakeClient:
    def __init__(self, leverage_error=None, closed_pnl=None, positions=None, order=None, trades=None, contract_size=None):
        self.calls = []
        self.leverage_error = leverage_error
        self.closed_pnl = closed_pnl or {"retCode": 0, "result": {"list": []}}
        self.positions = positions or []
        self.order = order or {}
        self.trades = trades or []
        self.contract_size = contract_size

    async def load_markets(self):
        self.calls.append(("load_markets",))

    def market(self, symbol):
        return {
            "id": symbol.split("/")[0] + "USDT",
            "symbol": symbol,
            "limits": {"amount": {"min": 0.001}},
            "precision": {"amount": 0.001},
            "contractSize": self.contract_size,
        }

    async def create_market_buy_order_with_cost(self, symbol, cost):
        self.calls.append(("cost_buy", symbol, cost))
        return {"id": "kr-100"}

    async def create_order(self, symbol, order_type, side, amount, price=None, params=None):
        self.calls.append(("create_order", symbol, order_type, side, amount, price, params))
        return {"id": "fr-200"}

    async def fetch_positions(self, symbols):
        return self.positions

    async def fetch_order(self, order_id, symbol, params=None):
        self.calls.append(("fetch_order", order_id, symbol, params))
        return self.order

    async def set_leverage(self, leverage, symbol):
        if self.leverage_error:
            raise self.leverage_error
        return {"retCode": 0}

    async def fetch_my_trades(self, symbol, since=None, limit=None, params=None):
        self.calls.append(("my_trades", symbol, params))
        return self.trades

    async def private_get_v5_position_closed_pnl(self, params):
        self.calls.append(("closed_pnl", params))
        return self.closed_pnl

    async def fetch_ticker(self, symbol):
        return {"last": 70000.5, "timestamp": 123}

    async def close(self):
        self.calls.append(("close",))


@pytest.mark.asyncio
async def test_domestic_buy_uses_cost():
    client = _FakeClient()
    exchange = CCXTExchange(ExchangeId.UPBIT, client=client)

    order_id = await exchange.place_order(OrderRequest(symbol="btc", side="buy", cost=Decimal("1000000")))

    assert order_id == "kr-100"
    assert ("cost_buy", "BTC/KRW", 1000000.0) in client.calls
    assert exchange.supports_lot_size is False
    assert exchange.supports_leverage is False


@pytest.mark.asyncio
async def test_close_entire_position_uses_reduce_only_short_size():
    client = _FakeClient(positions=[
        {"symbol": "ETH/USDT:USDT", "side": "short", "contracts": 3},
        {"symbol": "BTC/USDT:USDT", "side": "short", "contracts": 0.012},
    ])
    exchange = CCXTExchange(ExchangeId.BYBIT, client=client)

    await exchange.place_order(OrderRequest(symbol="BTC", side="buy", close_entire_position=True))

    assert ("create_order", "BTC/USDT:USDT", "market", "buy", 0.012, None, {"reduceOnly": True}) in client.calls


@pytest.mark.asyncio
async def test_close_entire_position_without_short_raises():
    exchange = CCXTExchange(ExchangeId.BYBIT, client=_FakeClient())

    with pytest.raises(RuntimeError):
        await exchange.place_order(OrderRequest(symbol="BTC", side="buy", close_entire_position=True))


@pytest.mark.asyncio
async def test_get_order_maps_volume_funds_and_slippage():
    client = _FakeClient(order={
        "id": "fr-200",
        "type": "market",
        "side": "sell",
        "filled": 0.01,
        "cost": 700.5,
        "average": 70050,
        "fee": {"cost": 0.385},
        "timestamp": 1700000000000,
        "info": {"lastPriceOnCreated": "70000"},
    })
    exchange = CCXTExchange(ExchangeId.BYBIT, client=client)

    order = await exchange.get_order("fr-200", "BTC")

    assert order.amount == Decimal("0.01")
    assert order.filled == Decimal("700.5")
    assert order.price == Decimal("70050")
    assert order.fee == Decimal("0.385")
    assert order.original_price == Decimal("70000")
    assert order.slippage == Decimal("0.0714")
    assert ("fetch_order", "fr-200", "BTC/USDT:USDT", {"acknowledged": True}) in client.calls


@pytest.mark.asyncio
async def test_lot_size_and_leverage():
    exchange = CCXTExchange(ExchangeId.BYBIT, client=_FakeClient())
    assert await exchange.get_lot_size("BTC") == Decimal("0.001")
    assert (await exchange.set_leverage("BTC", 2)).status == LeverageResult.OK

    not_modified = CCXTExchange(
        ExchangeId.BYBIT,
        client=_FakeClient(leverage_error=ccxt.BadRequest('bybit {"retCode":110043,"retMsg":"leverage not modified"}')),
    )
    result = await not_modified.set_leverage("BTC", 2)
    assert result.status == LeverageResult.NOT_MODIFIED
    assert result.is_success is True

    rejected = CCXTExchange(ExchangeId.BYBIT, client=_FakeClient(leverage_error=ccxt.ExchangeError("risk limit")))
    result = await rejected.set_leverage("BTC", 200)
    assert result.status == LeverageResult.REJECTED
    assert result.is_success is False


@pytest.mark.asyncio
async def test_closed_pnl_matches_order_id():
    client = _FakeClient(closed_pnl={
        "retCode": 0,
        "result": {"list": [
            {"orderId": "other", "closedPnl": "1"},
            {
                "orderId": "fr-200",
                "closedPnl": "-3.25",
                "avgExitPrice": "70100",
                "avgEntryPrice": "70200",
                "closedSize": "0.01",
                "openFee": "0.38",
                "closeFee": "0.39",
                "orderPrice": "70000",
            },
        ]},
    })
    exchange = CCXTExchange(ExchangeId.BYBIT, client=client)

    pnl = await exchange.get_closed_pnl("BTC", "fr-200")

    assert pnl.total_pnl == Decimal("-3.25")
    assert pnl.avg_exit_price == Decimal("70100")
    assert pnl.total_volume == Decimal("0.01")
    assert pnl.total_fee == Decimal("0.77")
    assert pnl.order_price == Decimal("70000")
    assert pnl.slippage == Decimal("0.2857")
    assert ("closed_pnl", {"category": "linear", "symbol": "BTCUSDT"}) in client.calls

    missing = await exchange.get_closed_pnl("BTC", "not-yet")
    assert missing.total_pnl == 0
    assert missing.avg_exit_price == 0
    assert missing.total_volume == 0


@pytest.mark.asyncio
async def test_binance_closed_pnl_aggregates_fills_of_the_order():
    client = _FakeClient(trades=[
        {"order": "fr-200", "price": 70000, "amount": 0.006, "fee": {"cost": 0.168}, "info": {"realizedPnl": "-1.2"}},
        {"order": "fr-200", "price": 70100, "amount": 0.004, "fee": {"cost": 0.112}, "info": {"realizedPnl": "-0.8"}},
        {"order": "other", "price": 1, "amount": 5, "fee": {"cost": 9}, "info": {"realizedPnl": "100"}},
    ])
    exchange = CCXTExchange(ExchangeId.BINANCE, client=client)
    assert exchange.supports_closed_pnl is True

    pnl = await exchange.get_closed_pnl("btc", "fr-200")

    assert ("my_trades", "BTC/USDT:USDT", {"orderId": "fr-200"}) in client.calls
    assert pnl.total_pnl == Decimal("-2")
    assert pnl.total_volume == Decimal("0.01")
    assert pnl.avg_exit_price == Decimal("70040")
    assert pnl.close_fee == Decimal("0.28")
    assert pnl.total_fee == Decimal("0.28")


@pytest.mark.asyncio
async def test_fill_based_closed_pnl_without_fills_is_empty():
    exchange = CCXTExchange(ExchangeId.BINANCE, client=_FakeClient(trades=[
        {"order": "other", "price": 70000, "amount": 0.01, "info": {"realizedPnl": "3"}},
    ]))

    pnl = await exchange.get_closed_pnl("BTC", "fr-200")

    assert pnl.total_pnl == 0
    assert pnl.total_volume == 0
    assert pnl.avg_exit_price == 0


@pytest.mark.asyncio
async def test_okx_closed_pnl_scales_contracts_to_coins():
    client = _FakeClient(contract_size=0.01, trades=[
        {"order": "okx-1", "price": 70000, "amount": 1, "fee": {"cost": -0.35}, "info": {"fillPnl": "1.5"}},
        {"order": "okx-1", "price": 70200, "amount": 1, "fee": {"cost": -0.351}, "info": {"fillPnl": "1.3"}},
    ])
    exchange = CCXTExchange(ExchangeId.OKX, client=client)

    pnl = await exchange.get_closed_pnl("BTC", "okx-1")

    assert ("my_trades", "BTC/USDT:USDT", {"ordId": "okx-1"}) in client.calls
    assert pnl.total_pnl == Decimal("2.8")
    assert pnl.total_fee == Decimal("0.701")
    assert pnl.avg_exit_price == Decimal("70100")
    assert pnl.total_volume == Decimal("0.02")


@pytest.mark.asyncio
async def test_okx_orders_are_sized_in_contracts():
    client = _FakeClient(contract_size=0.01, order={
        "id": "okx-1",
        "type": "market",
        "side": "sell",
        "filled": 2,
        "cost": 1400,
        "average": 70000,
        "timestamp": 1700000000000,
    })
    exchange = CCXTExchange(ExchangeId.OKX, client=client)

    await exchange.place_order(OrderRequest(symbol="BTC", side="sell", amount=Decimal("0.02")))
    order = await exchange.get_order("okx-1", "BTC")

    assert ("create_order", "BTC/USDT:USDT", "market", "sell", 2.0, None, None) in client.calls
    assert order.amount == Decimal("0.02")
    assert await exchange.get_lot_size("BTC") == Decimal("0.00001")
