"""
仓位生命周期引擎

开仓: 国内所市价买入 -> 确认成交量 -> 按海外所 lot size 向下取整 -> 设置杠杆 -> 海外所市价做空 -> 确认 -> 入账
平仓: 汇总活跃仓位 -> 国内所卖出 + 海外所平空 -> 轮询确认 (含已实现盈亏) -> 计算收益 -> 入账

两个交易所之间没有原子性保证，任何一步失败都不会自动回滚已下的订单；
异常会带上已到达的阶段，调用方需要提示用户人工核对
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from ..config import settings
from ..exchange.base_exchange import BaseExchange, ClosedPnl, OrderRequest, OrderResult
from ..exchange.registry import ExchangeId, create_exchange
from ..utils.precise_math import (
    CryptoDecimals,
    precise_add,
    precise_divide,
    precise_multiply,
    precise_profit_rate,
    precise_subtract,
    round_volume_to_lot_size,
    to_decimal,
)
from .cross_rate_service import CrossRateService
from .errors import (
    LeverageRejectedError,
    LotSizeUnavailableError,
    NoActivePositionError,
    OrderQueryError,
    PositionEngineError,
    PositionLockedError,
    PreconditionError,
    VolumeBelowLotSizeError,
)
from .execution_journal import ExecutionJournal, ExecutionPhase
from .order_poller import FinalizationResult, OrderFinalizationPoller
from .position_lease import PositionLease
from .position_ledger import PositionLedger, PositionRecord
from .settlement import PositionSettlement
from .stats_service import StatsService

logger = logging.getLogger(__name__)


@dataclass
class PositionResult:
    """开/平仓结果 (needs_finalization=True 表示订单已提交，等待确认入账)"""
    success: bool
    message: str
    coin_symbol: str
    needs_finalization: bool = False
    kr_order_id: Optional[str] = None
    fr_order_id: Optional[str] = None
    strategy_id: Optional[UUID] = None
    leverage: Optional[int] = None
    settlement: Optional[PositionSettlement] = None
    kr_order: Optional[OrderResult] = None
    fr_order: Optional[OrderResult] = None
    fr_pnl: Optional[ClosedPnl] = None
    position_id: Optional[int] = None
    entry_rate: Optional[Decimal] = None
    exit_rate: Optional[Decimal] = None
    usdt_price: Optional[Decimal] = None
    profit: Optional[Decimal] = None
    profit_rate: Optional[Decimal] = None
    attempts: Optional[int] = None
    complete: Optional[bool] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # 交易所原始返回不对外暴露
        for key in ("kr_order", "fr_order"):
            if data.get(key):
                data[key].pop("raw", None)
        extra = data.pop("extra")
        data.update(extra)
        return {k: v for k, v in data.items() if v is not None}


class PositionEngine:
    """单个用户在一对 (国内所, 海外所) 上的开平仓编排"""

    def __init__(
        self,
        user_id: UUID,
        domestic: BaseExchange,
        foreign: BaseExchange,
        *,
        cross_rate: Optional[CrossRateService] = None,
        ledger=PositionLedger,
        stats=StatsService,
        lease: Optional[PositionLease] = None,
        journal: Optional[ExecutionJournal] = None,
        sleep=asyncio.sleep,
    ):
        self.user_id = user_id
        self.domestic = domestic
        self.foreign = foreign
        self.cross_rate = cross_rate or CrossRateService()
        self.ledger = ledger
        self.stats = stats
        self.lease = lease
        self.journal = journal
        self._sleep = sleep
        self.poller = OrderFinalizationPoller(domestic, foreign, sleep=sleep)

    # ------------------------------------------------------------------
    # 公共辅助
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _exclusive(self, coin_symbol: str):
        if self.lease is None:
            yield
            return
        async with self.lease.hold(self.user_id, coin_symbol):
            yield

    async def _mark(self, action: str, coin_symbol: str, phase: ExecutionPhase, **fields) -> ExecutionPhase:
        if self.journal is not None:
            await self.journal.record(action, self.user_id, coin_symbol, phase, **fields)
        return phase

    async def _fail(self, action: str, coin_symbol: str, phase: Optional[ExecutionPhase], error: Exception) -> PositionEngineError:
        """统一包装为 PositionEngineError 并记录 FAILED"""
        phase_value = phase.value if phase else None
        if isinstance(error, PositionEngineError):
            if error.phase is None:
                error.phase = phase_value
            wrapped = error
        else:
            label = "开仓" if action == ExecutionJournal.OPEN else "平仓"
            wrapped = PositionEngineError(f"{label}过程中出错: {error}", phase=phase_value)
        if phase is not None:
            await self._mark(action, coin_symbol, ExecutionPhase.FAILED, error=str(wrapped), failed_after=phase_value)
            logger.error(f"❌ {coin_symbol} 在 {phase_value} 之后失败，可能已部分成交，请人工核对: {wrapped}")
        return wrapped

    async def _reject_if_close_pending(self, coin_symbol: str) -> None:
        if self.lease is not None and await self.lease.is_close_pending(self.user_id, coin_symbol):
            raise PositionLockedError(f"{coin_symbol} 平仓尚未确认入账，请先完成平仓确认")

    async def _resolve_strategy_id(self, strategy_id: Optional[UUID]) -> UUID:
        if strategy_id is not None:
            return strategy_id
        strategy = await self.stats.get_user_active_strategy(self.user_id)
        if not strategy:
            raise PreconditionError("没有激活中的策略")
        return strategy["id"]

    async def _confirm_order(self, exchange: BaseExchange, order_id: str, coin_symbol: str, label: str) -> OrderResult:
        await self._sleep(settings.ORDER_CONFIRM_DELAY_SECONDS)
        try:
            order = await exchange.get_order(order_id, coin_symbol)
        except Exception as e:
            raise OrderQueryError(f"{label}订单查询失败: {e}") from e
        if order is None:
            raise OrderQueryError(f"{label}订单查询无数据: {order_id}")
        return order

    # ------------------------------------------------------------------
    # 开仓
    # ------------------------------------------------------------------

    async def open_position(
        self,
        coin_symbol: str,
        amount: Decimal,
        leverage: int,
        strategy_id: Optional[UUID] = None,
        defer_persistence: bool = False,
    ) -> PositionResult:
        """
        开仓

        Args:
            amount: 国内所买入金额 (KRW)
            defer_persistence: True 时海外订单下单后立即返回，由 finalize_open 轮询确认并入账
        """
        coin_symbol = coin_symbol.upper()
        seed = to_decimal(amount)
        if seed <= 0:
            raise PreconditionError("买入金额必须大于 0")

        async with self._exclusive(coin_symbol):
            await self._reject_if_close_pending(coin_symbol)
            strategy_id = await self._resolve_strategy_id(strategy_id)
            phase: Optional[ExecutionPhase] = None
            action = ExecutionJournal.OPEN
            try:
                kr_order_id = await self.domestic.place_order(
                    OrderRequest(symbol=coin_symbol, side="buy", cost=seed)
                )
                phase = await self._mark(action, coin_symbol, ExecutionPhase.DOMESTIC_PLACED, kr_order_id=kr_order_id)
                logger.info(f"📥 国内所买入已下单 {coin_symbol} {seed} KRW: {kr_order_id}")

                kr_order = await self._confirm_order(self.domestic, kr_order_id, coin_symbol, "国内所")
                if kr_order.amount <= 0:
                    raise OrderQueryError(f"国内所订单没有成交数量: {kr_order_id}")
                phase = await self._mark(action, coin_symbol, ExecutionPhase.DOMESTIC_CONFIRMED, kr_volume=kr_order.amount)

                lot_size = await self.foreign.get_lot_size(coin_symbol)
                if lot_size is None or lot_size <= 0:
                    raise LotSizeUnavailableError(f"海外所 {coin_symbol} 最小下单单位获取失败")

                hedge_volume = round_volume_to_lot_size(kr_order.amount, lot_size)
                if hedge_volume <= 0:
                    raise VolumeBelowLotSizeError(
                        f"海外所可下单数量不足最小单位: {kr_order.amount} -> {hedge_volume} (lot={lot_size})"
                    )

                if self.foreign.supports_leverage:
                    leverage_result = await self.foreign.set_leverage(coin_symbol, int(leverage))
                    if not leverage_result.is_success:
                        raise LeverageRejectedError(f"海外所杠杆设置失败: {leverage_result.message}")

                fr_order_id = await self.foreign.place_order(
                    OrderRequest(symbol=coin_symbol, side="sell", amount=hedge_volume)
                )
                phase = await self._mark(action, coin_symbol, ExecutionPhase.FOREIGN_PLACED, fr_order_id=fr_order_id)
                logger.info(f"📤 海外所做空已下单 {coin_symbol} {hedge_volume}: {fr_order_id}")

                if defer_persistence:
                    return PositionResult(
                        success=True,
                        message=f"{coin_symbol} 订单已提交，等待确认",
                        coin_symbol=coin_symbol,
                        needs_finalization=True,
                        kr_order_id=kr_order_id,
                        fr_order_id=fr_order_id,
                        strategy_id=strategy_id,
                        leverage=int(leverage),
                        kr_order=kr_order,
                    )

                fr_order = await self._confirm_order(self.foreign, fr_order_id, coin_symbol, "海外所")
                phase = await self._mark(action, coin_symbol, ExecutionPhase.FOREIGN_CONFIRMED)

                result = await self._persist_open(coin_symbol, strategy_id, int(leverage), kr_order, fr_order)
                await self._mark(action, coin_symbol, ExecutionPhase.PERSISTED, position_id=result.position_id)
                return result
            except Exception as e:
                raise await self._fail(action, coin_symbol, phase, e)

    async def finalize_open(
        self,
        coin_symbol: str,
        kr_order_id: str,
        fr_order_id: str,
        leverage: int,
        strategy_id: Optional[UUID] = None,
    ) -> PositionResult:
        coin_symbol = coin_symbol.upper()
        action = ExecutionJournal.OPEN
        phase = ExecutionPhase.FOREIGN_PLACED
        async with self._exclusive(coin_symbol):
            try:
                strategy_id = await self._resolve_strategy_id(strategy_id)
                polled = await self.poller.finalize_open(coin_symbol, kr_order_id, fr_order_id)
                phase = await self._mark(action, coin_symbol, ExecutionPhase.FOREIGN_CONFIRMED, attempts=polled.attempts)

                result = await self._persist_open(coin_symbol, strategy_id, int(leverage), polled.kr_order, polled.fr_order)
                await self._mark(action, coin_symbol, ExecutionPhase.PERSISTED, position_id=result.position_id)
                result.attempts = polled.attempts
                result.complete = polled.complete
                return result
            except Exception as e:
                raise await self._fail(action, coin_symbol, phase, e)

    async def _persist_open(
        self,
        coin_symbol: str,
        strategy_id: UUID,
        leverage: int,
        kr_order: OrderResult,
        fr_order: OrderResult,
    ) -> PositionResult:
        # 汇率只作为快照，取不到也不阻塞开仓
        usdt_price = await self.cross_rate.get_rate()
        entry_rate = precise_divide(kr_order.filled, fr_order.filled, CryptoDecimals.RATE)

        position_id = await self.ledger.insert_open_position(PositionRecord(
            user_id=self.user_id,
            strategy_id=strategy_id,
            coin_symbol=coin_symbol,
            leverage=leverage,
            kr_exchange=self.domestic.exchange_id,
            kr_order_id=kr_order.id,
            kr_price=kr_order.price,
            kr_volume=kr_order.amount,
            kr_funds=kr_order.filled,
            kr_fee=kr_order.fee,
            fr_exchange=self.foreign.exchange_id,
            fr_order_id=fr_order.id,
            fr_original_price=fr_order.original_price,
            fr_price=fr_order.price,
            fr_volume=fr_order.amount,
            fr_funds=fr_order.filled,
            fr_fee=fr_order.fee,
            fr_slippage=fr_order.slippage,
            usdt_price=usdt_price,
            entry_rate=entry_rate,
        ))

        fr_funds_krw = precise_multiply(fr_order.filled, usdt_price or 0, CryptoDecimals.FUNDS)
        deployed = precise_add(kr_order.filled, fr_funds_krw, CryptoDecimals.FUNDS)
        await self.stats.increment_user_deployed_capital(self.user_id, deployed)

        logger.info(f"✅ {coin_symbol} 开仓完成: 汇率 {entry_rate}, 投入 {deployed} KRW")
        return PositionResult(
            success=True,
            message=f"{coin_symbol} 开仓成功",
            coin_symbol=coin_symbol,
            kr_order_id=kr_order.id,
            fr_order_id=fr_order.id,
            strategy_id=strategy_id,
            leverage=leverage,
            kr_order=kr_order,
            fr_order=fr_order,
            position_id=position_id,
            entry_rate=entry_rate,
            usdt_price=usdt_price,
        )

    # ------------------------------------------------------------------
    # 平仓
    # ------------------------------------------------------------------

    async def close_position(self, coin_symbol: str, foreign_amount: Optional[Decimal] = None) -> PositionResult:
        """
        按活跃仓位汇总下平仓单，立即返回订单号与结算快照，由 finalize_close 确认入账

        foreign_amount 为空时海外所按"平掉全部空头"下单
        """
        coin_symbol = coin_symbol.upper()
        action = ExecutionJournal.CLOSE
        async with self._exclusive(coin_symbol):
            await self._reject_if_close_pending(coin_symbol)
            settlement = await self.ledger.get_active_positions_for_settlement(self.user_id, coin_symbol)
            if settlement is None:
                raise NoActivePositionError(f"{coin_symbol} 没有可平仓的活跃仓位")

            details = await self.ledger.get_active_position_details(self.user_id, coin_symbol)
            if not details:
                raise NoActivePositionError(f"{coin_symbol} 没有可平仓的活跃仓位")
            strategy_id = details[-1]["strategy_id"]
            leverage = max(int(row.get("leverage") or 1) for row in details)

            phase: Optional[ExecutionPhase] = None
            try:
                if self.lease is not None:
                    await self.lease.mark_close_pending(self.user_id, coin_symbol)
                kr_order_id = await self.domestic.place_order(
                    OrderRequest(symbol=coin_symbol, side="sell", amount=settlement.total_kr_volume)
                )
                phase = await self._mark(action, coin_symbol, ExecutionPhase.DOMESTIC_PLACED, kr_order_id=kr_order_id)
                logger.info(f"📤 国内所卖出已下单 {coin_symbol} {settlement.total_kr_volume}: {kr_order_id}")

                if foreign_amount is not None:
                    fr_request = OrderRequest(symbol=coin_symbol, side="buy", amount=to_decimal(foreign_amount))
                else:
                    fr_request = OrderRequest(symbol=coin_symbol, side="buy", close_entire_position=True)
                fr_order_id = await self.foreign.place_order(fr_request)
                phase = await self._mark(action, coin_symbol, ExecutionPhase.FOREIGN_PLACED, fr_order_id=fr_order_id)
                logger.info(f"📥 海外所平空已下单 {coin_symbol}: {fr_order_id}")
            except Exception as e:
                if phase is None and self.lease is not None:
                    # 一条腿都没下成，不需要等待确认
                    await self.lease.clear_close_pending(self.user_id, coin_symbol)
                raise await self._fail(action, coin_symbol, phase, e)

            return PositionResult(
                success=True,
                message=f"{coin_symbol} 平仓订单已提交，等待确认",
                coin_symbol=coin_symbol,
                needs_finalization=True,
                kr_order_id=kr_order_id,
                fr_order_id=fr_order_id,
                strategy_id=strategy_id,
                leverage=leverage,
                settlement=settlement,
            )

    async def finalize_close(
        self,
        coin_symbol: str,
        kr_order_id: str,
        fr_order_id: str,
        settlement: PositionSettlement,
        strategy_id: UUID,
        leverage: int,
    ) -> PositionResult:
        coin_symbol = coin_symbol.upper()
        action = ExecutionJournal.CLOSE
        phase = ExecutionPhase.FOREIGN_PLACED
        async with self._exclusive(coin_symbol):
            try:
                polled = await self.poller.finalize_close(coin_symbol, kr_order_id, fr_order_id)
                phase = await self._mark(action, coin_symbol, ExecutionPhase.FOREIGN_CONFIRMED, attempts=polled.attempts)

                result = await self._persist_close(coin_symbol, settlement, strategy_id, int(leverage), polled)
                await self._mark(action, coin_symbol, ExecutionPhase.PERSISTED, position_id=result.position_id)
                if self.lease is not None:
                    await self.lease.clear_close_pending(self.user_id, coin_symbol)
                return result
            except Exception as e:
                raise await self._fail(action, coin_symbol, phase, e)

    async def _persist_close(
        self,
        coin_symbol: str,
        settlement: PositionSettlement,
        strategy_id: UUID,
        leverage: int,
        polled: FinalizationResult,
    ) -> PositionResult:
        kr_order, fr_order, fr_pnl = polled.kr_order, polled.fr_order, polled.fr_pnl
        usdt_price = await self.cross_rate.get_rate_or_fallback()

        exit_rate = precise_divide(kr_order.price, fr_pnl.avg_exit_price, CryptoDecimals.RATE)

        kr_settlement = precise_subtract(kr_order.filled, kr_order.fee, CryptoDecimals.FUNDS)
        kr_profit = precise_subtract(kr_settlement, settlement.total_kr_funds, CryptoDecimals.PROFIT)
        fr_pnl_krw = precise_multiply(fr_pnl.total_pnl, usdt_price, CryptoDecimals.PROFIT)
        profit = precise_add(kr_profit, fr_pnl_krw, CryptoDecimals.PROFIT)

        fr_funds_krw = precise_multiply(settlement.total_fr_funds, usdt_price, CryptoDecimals.FUNDS)
        total_invested = precise_divide(
            precise_add(settlement.total_kr_funds, fr_funds_krw, CryptoDecimals.FUNDS),
            2,
            CryptoDecimals.FUNDS,
        )
        if total_invested > 0:
            profit_rate = precise_profit_rate(total_invested, precise_add(total_invested, profit, CryptoDecimals.PROFIT))
        else:
            profit_rate = Decimal("0.00")

        logger.info(
            f"💰 {coin_symbol} 收益计算: 国内 {kr_profit}, 海外PnL {fr_pnl_krw} KRW, 合计 {profit}, 收益率 {profit_rate}%"
        )

        fr_funds = precise_add(settlement.total_fr_funds, fr_pnl.total_pnl, CryptoDecimals.FUNDS)
        position_id = await self.ledger.insert_closed_position(PositionRecord(
            user_id=self.user_id,
            strategy_id=strategy_id,
            coin_symbol=coin_symbol,
            leverage=leverage,
            kr_exchange=self.domestic.exchange_id,
            kr_order_id=kr_order.id,
            kr_price=kr_order.price,
            kr_volume=kr_order.amount,
            kr_funds=kr_order.filled,
            kr_fee=kr_order.fee,
            fr_exchange=self.foreign.exchange_id,
            fr_order_id=fr_pnl.order_id,
            fr_original_price=fr_pnl.order_price or fr_order.original_price,
            fr_price=fr_pnl.avg_exit_price,
            fr_volume=fr_pnl.total_volume,
            fr_funds=fr_funds,
            fr_fee=fr_pnl.close_fee,
            fr_slippage=fr_order.slippage,
            usdt_price=usdt_price,
            # 平仓时只保留一个汇总价格，开仓汇率字段记为平仓汇率
            entry_rate=exit_rate,
            exit_rate=exit_rate,
            profit=profit,
            profit_rate=profit_rate,
        ))

        returned = precise_add(
            kr_settlement,
            precise_multiply(fr_funds, usdt_price, CryptoDecimals.FUNDS),
            CryptoDecimals.FUNDS,
        )
        # users.total_order_amount 是累计成交额 (开平都计入)，不是在途余额，平仓不做扣减
        await self.stats.increment_user_deployed_capital(self.user_id, returned)
        await self.stats.update_strategy_stats_after_close(strategy_id, profit, profit_rate)

        logger.info(f"✅ {coin_symbol} 平仓完成: 收益 {profit} KRW, 收益率 {profit_rate}%")
        return PositionResult(
            success=True,
            message=f"{coin_symbol} 平仓结果已记录",
            coin_symbol=coin_symbol,
            kr_order_id=kr_order.id,
            fr_order_id=fr_pnl.order_id,
            strategy_id=strategy_id,
            leverage=leverage,
            settlement=settlement,
            kr_order=kr_order,
            fr_order=fr_order,
            fr_pnl=fr_pnl,
            position_id=position_id,
            exit_rate=exit_rate,
            usdt_price=usdt_price,
            profit=profit,
            profit_rate=profit_rate,
            attempts=polled.attempts,
            complete=polled.complete,
        )

    async def close(self):
        await asyncio.gather(self.domestic.close(), self.foreign.close(), return_exceptions=True)


async def build_position_engine(
    user_id: UUID,
    kr_exchange,
    fr_exchange,
    cross_rate: Optional[CrossRateService] = None,
) -> PositionEngine:
    """解析交易所、读取用户 API 凭证并创建引擎 (交易所只在这里解析一次)"""
    from . import ServiceContainer

    try:
        domestic_id = ExchangeId.parse(kr_exchange)
        foreign_id = ExchangeId.parse(fr_exchange)
    except ValueError as e:
        raise PreconditionError(str(e)) from e
    if not domestic_id.is_domestic:
        raise PreconditionError(f"{domestic_id.value} 不是韩国交易所")
    if foreign_id.is_domestic:
        raise PreconditionError(f"{foreign_id.value} 不是海外交易所")

    kr_credentials = await StatsService.get_exchange_credentials(user_id, domestic_id)
    if kr_credentials is None:
        raise PreconditionError(f"韩国交易所({domestic_id.value}) API 凭证未配置")
    fr_credentials = await StatsService.get_exchange_credentials(user_id, foreign_id)
    if fr_credentials is None:
        raise PreconditionError(f"海外交易所({foreign_id.value}) API 凭证未配置")

    return PositionEngine(
        user_id,
        create_exchange(domestic_id, kr_credentials),
        create_exchange(foreign_id, fr_credentials),
        cross_rate=cross_rate or ServiceContainer.get_cross_rate_service(),
        lease=PositionLease(),
        journal=ServiceContainer.get_execution_journal(),
    )
