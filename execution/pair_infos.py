"""
PairInfos — rollover / funding accrual, price impact and liquidation price.

Accumulators are per pair and advance with elapsed seconds:

  rollover_acc       += elapsed * rollover_rate              (percent, scaled)
  paid_by_longs       = (oi_long - oi_short) * elapsed * funding_rate %
  funding_acc_long   += paid_by_longs * 1e18 / oi_long
  funding_acc_short  -= paid_by_longs * 1e18 / oi_short

A trade snapshots the accumulators when stored; its fee is the delta since.
Negative funding means the trade received funding.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from loguru import logger

from core.fixed_point import FUNDING_PRECISION, PRECISION, sdiv
from execution.risk_engine import RiskParameterStore


@dataclass
class PairAccrual:
    last_update: int
    rollover_acc: int = 0
    funding_acc_long: int = 0
    funding_acc_short: int = 0


class PairInfos:
    """Accrual state per pair plus the pricing formulas that depend on it."""

    def __init__(self, params: RiskParameterStore, clock: Callable[[], int],
                 open_interest: Callable[[int], Tuple[int, int]]):
        """
        Args:
            params: pair configuration (rates, depth, spread)
            clock: integer seconds
            open_interest: pair_index -> (oi_long, oi_short)
        """
        self.params = params
        self.clock = clock
        self.open_interest = open_interest
        self._accruals: Dict[int, PairAccrual] = {}
        params.before_params_change = self.sync

    def _accrual(self, pair_index: int) -> PairAccrual:
        if pair_index not in self._accruals:
            self._accruals[pair_index] = PairAccrual(last_update=self.clock())
        return self._accruals[pair_index]

    def _projected(self, pair_index: int) -> PairAccrual:
        """Accumulators as of now, without writing them back."""
        acc = self._accrual(pair_index)
        elapsed = max(self.clock() - acc.last_update, 0)
        if elapsed == 0:
            return PairAccrual(acc.last_update, acc.rollover_acc,
                               acc.funding_acc_long, acc.funding_acc_short)

        pp = self.params.pair_params(pair_index)
        oi_long, oi_short = self.open_interest(pair_index)
        paid_by_longs = sdiv((oi_long - oi_short) * elapsed * pp.funding_fee_per_second_p,
                             PRECISION * 100)

        acc_long, acc_short = acc.funding_acc_long, acc.funding_acc_short
        if oi_long > 0:
            acc_long += sdiv(paid_by_longs * FUNDING_PRECISION, oi_long)
        if oi_short > 0:
            acc_short -= sdiv(paid_by_longs * FUNDING_PRECISION, oi_short)

        return PairAccrual(
            last_update=acc.last_update + elapsed,
            rollover_acc=acc.rollover_acc + elapsed * pp.rollover_fee_per_second_p,
            funding_acc_long=acc_long,
            funding_acc_short=acc_short,
        )

    def sync(self, pair_index: int) -> PairAccrual:
        """Bring a pair's accumulators current.  Call before any OI/rate change."""
        self._accruals[pair_index] = self._projected(pair_index)
        return self._accruals[pair_index]

    def snapshot(self, pair_index: int, buy: bool) -> Tuple[int, int]:
        """(rollover_acc, funding_acc_for_side) after syncing."""
        acc = self.sync(pair_index)
        return acc.rollover_acc, (acc.funding_acc_long if buy else acc.funding_acc_short)

    # ── Per-trade fees ───────────────────────────────────────────────────

    def rollover_fee(self, pair_index: int, collateral: int, acc_at_open: int) -> int:
        acc = self._projected(pair_index).rollover_acc
        return collateral * (acc - acc_at_open) // PRECISION // 100

    def funding_fee(self, pair_index: int, buy: bool, open_notional: int,
                    acc_at_open: int) -> int:
        acc = self._projected(pair_index)
        current = acc.funding_acc_long if buy else acc.funding_acc_short
        return sdiv((current - acc_at_open) * open_notional, FUNDING_PRECISION)

    # ── Pricing ──────────────────────────────────────────────────────────

    def price_impact_p(self, pair_index: int, buy: bool, notional: int) -> int:
        pp = self.params.pair_params(pair_index)
        depth = pp.one_percent_depth_above if buy else pp.one_percent_depth_below
        if depth == 0:
            return 0
        oi_long, oi_short = self.open_interest(pair_index)
        start_oi = oi_long if buy else oi_short
        return (start_oi + notional // 2) * PRECISION // depth

    def execution_price(self, pair_index: int, price: int, buy: bool,
                        notional: int) -> Tuple[int, int]:
        """Oracle price -> (price after spread and impact, impact_p)."""
        spread_p = self.params.pair(pair_index).spread_p
        spread = price * spread_p // PRECISION // 100
        with_spread = price + spread if buy else price - spread

        impact_p = self.price_impact_p(pair_index, buy, notional)
        impact = with_spread * impact_p // PRECISION // 100
        final = with_spread + impact if buy else with_spread - impact
        return final, impact_p

    @staticmethod
    def liquidation_price(open_price: int, buy: bool, collateral: int, leverage: int,
                          rollover_fee: int, funding_fee: int) -> int:
        """Price at which remaining value hits 10 % of collateral."""
        dist = sdiv(sdiv(open_price * (collateral * 90 // 100 - rollover_fee - funding_fee),
                         collateral), leverage)
        liq = open_price - dist if buy else open_price + dist
        return max(liq, 0)

    def get_statistics(self) -> Dict[int, Dict[str, int]]:
        stats = {}
        for pair_index in list(self._accruals):
            acc = self._projected(pair_index)
            stats[pair_index] = {
                "rollover_acc": acc.rollover_acc,
                "funding_acc_long": acc.funding_acc_long,
                "funding_acc_short": acc.funding_acc_short,
            }
        logger.debug(f"PairInfos snapshot for {len(stats)} pairs")
        return stats
