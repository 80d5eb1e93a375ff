"""
定点精度运算工具
金额、数量在整数域内计算，避免二进制浮点误差累积

所有函数都按 decimals 指定的小数位工作：
先把操作数放大 10^decimals 变成整数，整数运算后再缩回，
因此结果最多只有一次舍入误差，与操作数量级无关。
"""
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_FLOOR, ROUND_HALF_UP
from typing import Iterable, Sequence, Union

Number = Union[Decimal, int, float, str]


class CryptoDecimals:
    """交易数据的精度约定 (与 positions 表的 numeric scale 一致)"""
    PRICE = 8
    VOLUME = 8
    FUNDS = 8
    FEE = 8
    RATE = 2
    PROFIT = 2
    USDT_PRICE = 2
    SLIPPAGE = 4


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # 经过 str 转换，避免把 0.1 的二进制展开带进来
        return Decimal(repr(value))
    return Decimal(value)


def _scale(value: Number, decimals: int) -> int:
    return int(to_decimal(value).scaleb(decimals).to_integral_value(rounding=ROUND_HALF_UP))


def _unscale(scaled: int, decimals: int) -> Decimal:
    return Decimal(scaled).scaleb(-decimals)


def precise_add(a: Number, b: Number, decimals: int = 8) -> Decimal:
    return _unscale(_scale(a, decimals) + _scale(b, decimals), decimals)


def precise_subtract(a: Number, b: Number, decimals: int = 8) -> Decimal:
    return _unscale(_scale(a, decimals) - _scale(b, decimals), decimals)


def precise_multiply(a: Number, b: Number, decimals: int = 8) -> Decimal:
    return _unscale(_scale(to_decimal(a) * to_decimal(b), decimals), decimals)


def precise_divide(a: Number, b: Number, decimals: int = 8) -> Decimal:
    """除数为 0 时返回 0，不抛异常；调用方不能把成功当作比值有意义"""
    divisor = to_decimal(b)
    if divisor == 0:
        return _unscale(0, decimals)
    return _unscale(_scale(to_decimal(a) / divisor, decimals), decimals)


def precise_sum(values: Iterable[Number], decimals: int = 8) -> Decimal:
    return _unscale(sum(_scale(v, decimals) for v in values), decimals)


def precise_weighted_average(
    values: Sequence[Number],
    weights: Sequence[Number],
    decimals: int = 8,
) -> Decimal:
    """
    加权平均 (用于平均开仓汇率)

    长度不一致、空列表或权重和为 0 时返回 0
    """
    if len(values) != len(weights) or len(values) == 0:
        return _unscale(0, decimals)

    total_weight = _unscale(sum(_scale(w, decimals) for w in weights), decimals)
    if total_weight == 0:
        return _unscale(0, decimals)

    weighted_sum = sum(
        (to_decimal(v) * to_decimal(w) for v, w in zip(values, weights)),
        Decimal(0),
    )
    return _unscale(_scale(weighted_sum / total_weight, decimals), decimals)


def precise_profit_rate(entry: Number, exit: Number, decimals: int = 2) -> Decimal:
    """收益率(%) = (exit - entry) / entry * 100，entry 为 0 时返回 0"""
    entry_d = to_decimal(entry)
    if entry_d == 0:
        return _unscale(0, decimals)
    rate = (to_decimal(exit) - entry_d) / entry_d * 100
    return _unscale(_scale(rate, decimals), decimals)


def safe_numeric(value, default: Number = 0) -> Decimal:
    """把数据库 numeric / 交易所返回的字符串安全转换为 Decimal"""
    if value is None or value == "":
        return to_decimal(default)
    try:
        result = to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        return to_decimal(default)
    if result.is_nan() or result.is_infinite():
        return to_decimal(default)
    return result


def truncate_to_decimal(value: Number, decimals: int) -> Decimal:
    """截断到指定小数位 (写库前使用，不做进位)"""
    return to_decimal(value).quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)


def round_volume_to_lot_size(volume: Number, lot_size: Number) -> Decimal:
    """
    把数量向下取整到 lot size 的整数倍

    结果不会超过输入，且一定是 lot_size 的整数倍；多出的零头不做对冲
    """
    lot = to_decimal(lot_size)
    if lot <= 0:
        raise ValueError(f"lot size 必须为正数: {lot_size}")
    lots = (to_decimal(volume) / lot).to_integral_value(rounding=ROUND_FLOOR)
    return lots * lot
