"""
Pure PnL / payout formulas shared by market closes, bot closes and ADL.
"""
from __future__ import annotations

from typing import Tuple

from core.fixed_point import PRECISION, sdiv

LIQ_THRESHOLD_P = 10   # value at or below 10 % of collateral -> liquidated


def percent_profit(open_price: int, current_price: int, buy: bool, leverage: int,
                   max_gain_p: int) -> int:
    """Leveraged percent profit (scaled), clamped to [-100 %, max_gain_p %]."""
    diff = current_price - open_price if buy else open_price - current_price
    p = sdiv(diff * 100 * PRECISION * leverage, open_price)
    return max(min(p, max_gain_p * PRECISION), -100 * PRECISION)


def trade_value(collateral: int, percent_p: int, rollover_fee: int,
                funding_fee: int, closing_fee: int) -> Tuple[int, bool]:
    """
    Amount owed to the trader and whether the trade was liquidated.

    A liquidated trade pays nothing and is charged no closing fee.
    """
    value = collateral + sdiv(collateral * percent_p, PRECISION * 100) - rollover_fee - funding_fee
    if value <= collateral * LIQ_THRESHOLD_P // 100:
        return 0, True
    return max(value - closing_fee, 0), False


def tp_hit(buy: bool, price: int, tp: int) -> bool:
    return tp > 0 and (price >= tp if buy else price <= tp)


def sl_hit(buy: bool, price: int, sl: int) -> bool:
    return sl > 0 and (price <= sl if buy else price >= sl)


def liq_hit(buy: bool, price: int, liq_price: int) -> bool:
    return price <= liq_price if buy else price >= liq_price


def within_slippage(buy: bool, price: int, wanted_price: int, slippage_p: int) -> bool:
    """Longs accept up to wanted + slippage, shorts down to wanted - slippage."""
    max_slip = wanted_price * slippage_p // PRECISION // 100
    return price <= wanted_price + max_slip if buy else price >= wanted_price - max_slip
