"""
订单确认轮询
下单后交易所的订单数据是最终一致的：固定间隔重试查询，直到数据看起来完整

- 每次尝试前都先等待 (包括第一次)
- 同一轮内国内订单 / 海外订单 / 海外已实现盈亏并发查询，互不取消
- 查询异常: 记录日志后进入下一轮；最后一轮仍异常则按具体原因失败
- 数据不完整: 进入下一轮；重试耗尽后仍使用最后一次观察到的数据返回 (可用性优先)
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ..config import settings
from ..exchange.base_exchange import BaseExchange, ClosedPnl, OrderResult
from .errors import FinalizationError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class FinalizationResult:
    kr_order: OrderResult
    fr_order: OrderResult
    fr_pnl: Optional[ClosedPnl]
    attempts: int
    complete: bool


def is_open_fill_complete(order: OrderResult) -> bool:
    return order.amount > 0 and order.filled > 0


def is_closed_pnl_complete(pnl: ClosedPnl) -> bool:
    return pnl.total_pnl != 0 or pnl.avg_exit_price != 0 or pnl.total_volume != 0


class OrderFinalizationPoller:
    def __init__(self, domestic: BaseExchange, foreign: BaseExchange, sleep: Sleep = asyncio.sleep):
        self.domestic = domestic
        self.foreign = foreign
        self._sleep = sleep

    async def finalize_open(
        self,
        symbol: str,
        kr_order_id: str,
        fr_order_id: str,
        max_attempts: Optional[int] = None,
        delay_seconds: Optional[float] = None,
    ) -> FinalizationResult:
        return await self._poll(
            symbol,
            kr_order_id,
            fr_order_id,
            with_pnl=False,
            max_attempts=max_attempts or settings.OPEN_FINALIZE_MAX_ATTEMPTS,
            delay_seconds=settings.OPEN_FINALIZE_DELAY_SECONDS if delay_seconds is None else delay_seconds,
        )

    async def finalize_close(
        self,
        symbol: str,
        kr_order_id: str,
        fr_order_id: str,
        max_attempts: Optional[int] = None,
        delay_seconds: Optional[float] = None,
    ) -> FinalizationResult:
        return await self._poll(
            symbol,
            kr_order_id,
            fr_order_id,
            with_pnl=True,
            max_attempts=max_attempts or settings.CLOSE_FINALIZE_MAX_ATTEMPTS,
            delay_seconds=settings.CLOSE_FINALIZE_DELAY_SECONDS if delay_seconds is None else delay_seconds,
        )

    async def _poll(
        self,
        symbol: str,
        kr_order_id: str,
        fr_order_id: str,
        *,
        with_pnl: bool,
        max_attempts: int,
        delay_seconds: float,
    ) -> FinalizationResult:
        label = "平仓" if with_pnl else "开仓"
        max_attempts = max(1, int(max_attempts))

        for attempt in range(1, max_attempts + 1):
            await self._sleep(delay_seconds)
            last_attempt = attempt == max_attempts

            queries = [
                self.domestic.get_order(kr_order_id, symbol),
                self.foreign.get_order(fr_order_id, symbol),
            ]
            if with_pnl:
                queries.append(self.foreign.get_closed_pnl(symbol, fr_order_id))
            results = await asyncio.gather(*queries, return_exceptions=True)

            kr_order, fr_order = results[0], results[1]
            fr_pnl = results[2] if with_pnl else None

            failures = [
                (cause, result)
                for cause, result in (
                    (FinalizationError.DOMESTIC_ORDER_UNAVAILABLE, kr_order),
                    (FinalizationError.FOREIGN_ORDER_UNAVAILABLE, fr_order),
                    (FinalizationError.FOREIGN_PNL_UNAVAILABLE, fr_pnl),
                )
                if isinstance(result, BaseException)
            ]
            if failures:
                for cause, error in failures:
                    logger.warning(f"{label}确认 {symbol} 第 {attempt}/{max_attempts} 次查询失败 [{cause}]: {error}")
                if last_attempt:
                    cause, error = failures[0]
                    logger.error(f"❌ {label}确认 {symbol} 重试耗尽: {cause}")
                    raise FinalizationError(cause, detail=str(error))
                continue

            if with_pnl:
                complete = is_closed_pnl_complete(fr_pnl)
            else:
                complete = is_open_fill_complete(kr_order) and is_open_fill_complete(fr_order)

            if complete:
                logger.info(f"✅ {label}确认 {symbol} 第 {attempt}/{max_attempts} 次获取到完整数据")
                return FinalizationResult(kr_order, fr_order, fr_pnl, attempt, True)

            if last_attempt:
                logger.error(
                    f"⚠️ {label}确认 {symbol} 重试 {max_attempts} 次后数据仍不完整，使用最后一次查询结果继续"
                )
                return FinalizationResult(kr_order, fr_order, fr_pnl, attempt, False)

            logger.warning(f"{label}确认 {symbol} 第 {attempt}/{max_attempts} 次数据不完整，稍后重试")

        # max_attempts >= 1 时不会走到这里
        raise FinalizationError(FinalizationError.DOMESTIC_ORDER_UNAVAILABLE)
