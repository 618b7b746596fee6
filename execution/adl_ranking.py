"""
ADL ranking strategies.

The engine executes whatever the caller submits; a ranking only decides the
order entries are applied in, which matters once the vault runs short
mid-batch.

  CallerOrder         — keep the submitted order (default)
  PnlLeverageRanking  — PnL percentile x leverage percentile, highest first
  build_adl_queue     — off-chain helper: pick profitable candidates to submit
"""
from __future__ import annotations

from typing import Any, Dict, List, Sequence, Tuple

from execution.models import AdlEntry, AdlType, PositionKey, Trade
from execution.trade_math import percent_profit


class CallerOrder:
    def order(self, entries: List[AdlEntry], context: Dict[str, Any]) -> List[AdlEntry]:
        return list(entries)


def _percentile_ranks(values: Sequence[int]) -> List[int]:
    """Percentile rank of each value, scaled to 0..2n (count_below*2 + count_equal)."""
    ordered = sorted(values)
    ranks = []
    for value in values:
        below = sum(1 for v in ordered if v < value)
        equal = sum(1 for v in ordered if v == value)
        ranks.append(below * 2 + equal)
    return ranks


def _score(trades: Sequence[Trade], prices: Dict[int, int], max_gain_p: int) -> List[int]:
    pnl = [percent_profit(t.open_price, prices[t.pair_index], t.buy, t.leverage, max_gain_p)
           for t in trades]
    lev = [t.leverage for t in trades]
    return [p * l for p, l in zip(_percentile_ranks(pnl), _percentile_ranks(lev))]


class PnlLeverageRanking:
    """
    Highest PnL-percentile x leverage-percentile first.

    Ties break on (pair_index, trader, index) so the order is deterministic.
    Entries whose trade is gone keep their relative order at the end.
    """

    def order(self, entries: List[AdlEntry], context: Dict[str, Any]) -> List[AdlEntry]:
        trades: Dict[PositionKey, Trade] = context["trades"]
        live = [e for e in entries if e.key in trades]
        gone = [e for e in entries if e.key not in trades]
        if not live:
            return gone
        scores = _score([trades[e.key] for e in live], context["prices"], context["max_gain_p"])
        ranked = sorted(zip(live, scores),
                        key=lambda pair: (-pair[1], pair[0].pair_index, pair[0].trader, pair[0].index))
        return [e for e, _ in ranked] + gone


def build_adl_queue(trades: Sequence[Trade], prices: Dict[int, int], max_gain_p: int,
                    limit: int = 0) -> List[AdlEntry]:
    """Profitable trades ranked for deleveraging; ``limit`` 0 means all."""
    profitable: List[Tuple[Trade, int]] = []
    for trade in trades:
        if trade.pair_index not in prices:
            continue
        pct = percent_profit(trade.open_price, prices[trade.pair_index], trade.buy,
                             trade.leverage, max_gain_p)
        if pct > 0:
            profitable.append((trade, pct))
    if not profitable:
        return []

    entries = [AdlEntry(AdlType.PROFIT, t.trader, t.pair_index, t.index) for t, _ in profitable]
    context = {"trades": {t.key: t for t, _ in profitable}, "prices": prices,
               "max_gain_p": max_gain_p}
    queue = PnlLeverageRanking().order(entries, context)
    return queue[:limit] if limit else queue
