from decimal import Decimal
from typing import Any, Optional
from uuid import UUID
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from ..auth import CurrentUser, get_current_user
from ..services import ServiceContainer
from ..services.errors import (
    NoActivePositionError,
    PositionEngineError,
    PositionLockedError,
    PreconditionError,
)
from ..services.execution_journal import ExecutionJournal
from ..services.position_engine import PositionEngine, build_position_engine
from ..services.position_ledger import PositionLedger
from ..services.settlement import settlement_from_dict
from ..services.stats_service import StatsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/positions", tags=["positions"])


class ExchangePair(BaseModel):
    coin_symbol: str = Field(..., min_length=1, max_length=20)
    kr_exchange: str = Field("UPBIT")
    fr_exchange: str = Field("BYBIT")


class OpenPositionRequest(ExchangePair):
    amount: Decimal = Field(..., gt=0, description="国内所买入金额 (KRW)")
    leverage: int = Field(1, ge=1, le=100)
    defer_persistence: bool = Field(False)


class FinalizeOpenRequest(ExchangePair):
    kr_order_id: str = Field(..., min_length=1)
    fr_order_id: str = Field(..., min_length=1)
    leverage: int = Field(1, ge=1, le=100)
    strategy_id: Optional[UUID] = Field(None)


class ClosePositionRequest(ExchangePair):
    foreign_amount: Optional[Decimal] = Field(None, gt=0, description="为空时平掉全部空头")


class FinalizeCloseRequest(ExchangePair):
    kr_order_id: str = Field(..., min_length=1)
    fr_order_id: str = Field(..., min_length=1)
    strategy_id: UUID
    leverage: int = Field(1, ge=1, le=100)
    settlement: dict[str, Any]


def _to_http_error(e: PositionEngineError) -> HTTPException:
    if isinstance(e, PreconditionError) and not e.partial:
        return HTTPException(status_code=400, detail={"success": False, "message": e.message})
    if isinstance(e, NoActivePositionError):
        return HTTPException(status_code=404, detail={"success": False, "message": e.message})
    if isinstance(e, PositionLockedError):
        return HTTPException(status_code=409, detail={"success": False, "message": e.message})

    detail = {"success": False, "message": e.message, "partial": e.partial, "phase": e.phase}
    if e.partial:
        detail["message"] = f"{e.message} (可能已部分成交，请到交易所人工核对)"
    return HTTPException(status_code=500, detail=detail)


async def _engine_for(user: CurrentUser, req: ExchangePair) -> PositionEngine:
    try:
        return await build_position_engine(user.id, req.kr_exchange, req.fr_exchange)
    except PositionEngineError as e:
        raise _to_http_error(e)


@router.post("/open")
async def open_position(req: OpenPositionRequest, user: CurrentUser = Depends(get_current_user)):
    allowance = await StatsService.can_user_enter_position(user.id)
    if not allowance.can_enter:
        raise HTTPException(
            status_code=403,
            detail={"success": False, "message": allowance.reason, "remaining_entries": allowance.remaining_entries},
        )

    engine = await _engine_for(user, req)
    try:
        result = await engine.open_position(
            req.coin_symbol,
            req.amount,
            req.leverage,
            defer_persistence=req.defer_persistence,
        )
    except PositionEngineError as e:
        raise _to_http_error(e)
    finally:
        await engine.close()

    await StatsService.increment_daily_entry_count(user.id)
    return jsonable_encoder(result.to_dict())


@router.post("/open/finalize")
async def finalize_open(req: FinalizeOpenRequest, user: CurrentUser = Depends(get_current_user)):
    engine = await _engine_for(user, req)
    try:
        result = await engine.finalize_open(
            req.coin_symbol,
            req.kr_order_id,
            req.fr_order_id,
            req.leverage,
            strategy_id=req.strategy_id,
        )
    except PositionEngineError as e:
        raise _to_http_error(e)
    finally:
        await engine.close()
    return jsonable_encoder(result.to_dict())


@router.post("/close")
async def close_position(req: ClosePositionRequest, user: CurrentUser = Depends(get_current_user)):
    engine = await _engine_for(user, req)
    try:
        result = await engine.close_position(req.coin_symbol, foreign_amount=req.foreign_amount)
    except PositionEngineError as e:
        raise _to_http_error(e)
    finally:
        await engine.close()
    return jsonable_encoder(result.to_dict())


@router.post("/close/finalize")
async def finalize_close(req: FinalizeCloseRequest, user: CurrentUser = Depends(get_current_user)):
    engine = await _engine_for(user, req)
    try:
        result = await engine.finalize_close(
            req.coin_symbol,
            req.kr_order_id,
            req.fr_order_id,
            settlement_from_dict(req.settlement),
            req.strategy_id,
            req.leverage,
        )
    except PositionEngineError as e:
        raise _to_http_error(e)
    finally:
        await engine.close()
    return jsonable_encoder(result.to_dict())


@router.get("/active")
async def list_active_positions(user: CurrentUser = Depends(get_current_user)):
    positions = await PositionLedger.get_user_active_positions(user.id)
    return jsonable_encoder({"success": True, "positions": positions, "count": sum(p["position_count"] for p in positions)})


@router.get("/settlement/{coin_symbol}")
async def get_settlement(coin_symbol: str, user: CurrentUser = Depends(get_current_user)):
    settlement = await PositionLedger.get_active_positions_for_settlement(user.id, coin_symbol)
    if settlement is None:
        raise HTTPException(status_code=404, detail={"success": False, "message": f"{coin_symbol.upper()} 没有活跃仓位"})
    return jsonable_encoder({"success": True, "coin_symbol": coin_symbol.upper(), "settlement": settlement.to_dict()})


@router.get("/history")
async def get_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
):
    items = await PositionLedger.get_trading_history(user.id, page=page, limit=limit)
    total = await PositionLedger.get_trading_history_count(user.id)
    stats = await PositionLedger.get_trading_stats(user.id)
    daily_profit = await PositionLedger.get_daily_profit(user.id)
    return jsonable_encoder({
        "success": True,
        "items": items,
        "page": page,
        "limit": limit,
        "total": total,
        "stats": stats,
        "daily_profit": daily_profit,
    })


@router.get("/progress/{action}/{coin_symbol}")
async def get_progress(action: str, coin_symbol: str, user: CurrentUser = Depends(get_current_user)):
    if action not in (ExecutionJournal.OPEN, ExecutionJournal.CLOSE):
        raise HTTPException(status_code=400, detail={"success": False, "message": f"未知操作: {action}"})
    progress = await ServiceContainer.get_execution_journal().get_progress(action, user.id, coin_symbol)
    if progress is None:
        raise HTTPException(status_code=404, detail={"success": False, "message": "没有执行记录"})
    return jsonable_encoder({"success": True, "progress": progress})
