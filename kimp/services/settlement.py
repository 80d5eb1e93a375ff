"""
平仓结算汇总
同一用户同一币种的"活跃"开仓记录 -> 加权平均开仓汇率 + 数量/金额合计

活跃仓位窗口: 只有 entry_time 晚于该 (用户, 币种) 最近一次 CLOSED 记录 exit_time 的
OPEN 记录才参与汇总；历史记录不删除，每次读取时按同一规则过滤
"""
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..utils.precise_math import (
    CryptoDecimals,
    precise_sum,
    precise_weighted_average,
    safe_numeric,
)


@dataclass(frozen=True)
class PositionSettlement:
    avg_entry_rate: Decimal
    total_kr_volume: Decimal
    total_kr_funds: Decimal
    total_fr_funds: Decimal
    total_kr_fee: Decimal
    total_fr_fee: Decimal
    positions_count: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def latest_exit_time(rows: Iterable[Mapping]) -> Optional[datetime]:
    """CLOSED 记录中最新的 exit_time，没有则为 None"""
    exits = [
        row.get("exit_time")
        for row in rows
        if row.get("status") == "CLOSED" and row.get("exit_time") is not None
    ]
    return max(exits) if exits else None


def select_active_positions(
    rows: Iterable[Mapping],
    last_exit_time: Optional[datetime] = None,
) -> List[Mapping]:
    """
    按活跃窗口过滤出 OPEN 记录，按 entry_time 升序返回

    rows 可以混有同一 (用户, 币种) 的 CLOSED 记录，此时窗口边界取其中最新的 exit_time；
    也可以只传 OPEN 记录并通过 last_exit_time 显式给出边界
    """
    rows = list(rows)
    boundary = latest_exit_time(rows)
    if last_exit_time is not None and (boundary is None or last_exit_time > boundary):
        boundary = last_exit_time

    active = [
        row for row in rows
        if row.get("status", "OPEN") == "OPEN"
        and (boundary is None or row["entry_time"] > boundary)
    ]
    active.sort(key=lambda row: row["entry_time"])
    return active


def aggregate_settlement(active_rows: Iterable[Mapping]) -> Optional[PositionSettlement]:
    """汇总已过滤的活跃记录；集合为空时返回 None (调用方按"无活跃仓位"处理)"""
    rows = list(active_rows)
    if not rows:
        return None

    entry_rates = [safe_numeric(row.get("entry_rate")) for row in rows]
    kr_funds = [safe_numeric(row.get("kr_funds")) for row in rows]

    return PositionSettlement(
        # 以国内投入金额为权重
        avg_entry_rate=precise_weighted_average(entry_rates, kr_funds, CryptoDecimals.RATE),
        total_kr_volume=precise_sum((row.get("kr_volume") or 0 for row in rows), CryptoDecimals.VOLUME),
        total_kr_funds=precise_sum(kr_funds, CryptoDecimals.FUNDS),
        total_fr_funds=precise_sum((row.get("fr_funds") or 0 for row in rows), CryptoDecimals.FUNDS),
        total_kr_fee=precise_sum((row.get("kr_fee") or 0 for row in rows), CryptoDecimals.FEE),
        total_fr_fee=precise_sum((row.get("fr_fee") or 0 for row in rows), CryptoDecimals.FEE),
        positions_count=len(rows),
    )


def settlement_from_dict(data: Mapping[str, Any]) -> PositionSettlement:
    """还原调用方回传的结算快照 (平仓确认阶段使用)"""
    return PositionSettlement(
        avg_entry_rate=safe_numeric(data.get("avg_entry_rate")),
        total_kr_volume=safe_numeric(data.get("total_kr_volume")),
        total_kr_funds=safe_numeric(data.get("total_kr_funds")),
        total_fr_funds=safe_numeric(data.get("total_fr_funds")),
        total_kr_fee=safe_numeric(data.get("total_kr_fee")),
        total_fr_fee=safe_numeric(data.get("total_fr_fee")),
        positions_count=int(data.get("positions_count") or 0),
    )
