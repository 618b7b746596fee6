"""
Auto-Deleverage Engine
Mechanical executor for involuntary batch closes.

Candidate selection happens off-chain (see adl_ranking.build_adl_queue); this
engine only validates the batch, prices every listed pair in ONE round and
closes each position with the same routine as an ordinary market close.

Workflow:
1. execute_adl_order: validate batch, mark positions as being closed
2. one batch price round for all listed pairs
3. on fulfillment: rank entries, close matching positions, skip mismatches
4. AdlUsdtFlow reports the batch's net vault flow
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from core.access_control import Action
from core.errors import ValidationError
from core.events import (
    AdlClosingExecuted, AdlOrderCanceled, AdlOrderInitiated, AdlSkipped, AdlUsdtFlow,
)
from core.fixed_point import fmt_amount
from execution.adl_ranking import CallerOrder
from execution.models import AdlEntry, AdlType, PendingAdlOrder, PendingKind, SettlementResult
from interfaces import IAdlRanking


class AutoDeleverageEngine:
    """Batch force-close on top of an OrderExecutionEngine."""

    def __init__(self, engine, ranking: Optional[IAdlRanking] = None):
        self.engine = engine
        self.ledger = engine.ledger
        self.params = engine.params
        self.gateway = engine.gateway
        self.policy = engine.policy
        self.bus = engine.bus
        self.clock = engine.clock
        self.ranking = ranking or CallerOrder()

        self._executed_batches = 0
        self._closed_positions = 0
        self._skipped_positions = 0
        self._total_vault_flow = 0

        logger.info(f"Initialized ADL engine: ranking={type(self.ranking).__name__}")

    # ── Intake ───────────────────────────────────────────────────────────

    def _parse_entries(self, adl_types: Sequence[int], traders: Sequence[str],
                       pair_indices: Sequence[int], indices: Sequence[int],
                       price_feed_indices: Sequence[int]) -> List[AdlEntry]:
        n = len(traders)
        if n == 0 or any(len(arr) != n for arr in (adl_types, pair_indices, indices)):
            raise ValidationError("WRONG_PARAMS", "ADL arrays must be non-empty and equal length")
        if not price_feed_indices or len(set(price_feed_indices)) != len(price_feed_indices):
            raise ValidationError("WRONG_PARAMS", "bad price feed indices")

        entries: List[AdlEntry] = []
        seen = set()
        for raw_type, trader, pair_index, index in zip(adl_types, traders, pair_indices, indices):
            try:
                adl_type = AdlType(raw_type)
            except ValueError:
                raise ValidationError("WRONG_PARAMS", f"unknown ADL type {raw_type}")
            if pair_index not in price_feed_indices:
                raise ValidationError("WRONG_PARAMS", f"pair #{pair_index} not in price feeds")
            entry = AdlEntry(adl_type, trader, pair_index, index)
            if entry.key in seen:
                raise ValidationError("WRONG_PARAMS", f"duplicate position {entry.key}")
            seen.add(entry.key)
            entries.append(entry)
        return entries

    def execute_adl_order(
            self,
            caller: str,
            adl_types: Sequence[int],
            traders: Sequence[str],
            pair_indices: Sequence[int],
            indices: Sequence[int],
            price_feed_indices: Sequence[int],
    ) -> int:
        """
        Queue a batch of forced closes.

        Enforces:
        - caller holds the bot role
        - arrays are aligned, non-empty, duplicate-free
        - every position's pair is priced by the batch
        - every position exists and is not already being closed

        Returns:
            request id of the batch price round
        """
        self.policy.require(caller, Action.EXECUTE_ADL)
        self.engine._require_live()
        entries = self._parse_entries(adl_types, traders, pair_indices, indices, price_feed_indices)
        for pair_index in price_feed_indices:
            self.params.pair(pair_index)
        for entry in entries:
            self.ledger.require_trade(*entry.key)
            if self.ledger.is_being_closed(entry.key):
                raise ValidationError("ALREADY_BEING_CLOSED", str(entry.key))

        feeds = tuple(price_feed_indices)
        order_id = self.gateway.request_prices(feeds, self._on_prices)
        self.ledger.add_pending(PendingKind.ADL, PendingAdlOrder(
            order_id=order_id, bot=caller, entries=entries,
            pair_indices=feeds, created_at=self.clock(),
        ))
        for entry in entries:
            self.ledger.set_being_closed(entry.key, True)
        self.bus.publish(AdlOrderInitiated(order_id, caller, len(entries), feeds))
        logger.info(f"ADL order #{order_id}: {caller} {len(entries)} positions on pairs {list(feeds)}")
        return order_id

    # ── Settlement ───────────────────────────────────────────────────────

    def _release(self, entries: Sequence[AdlEntry]) -> None:
        for entry in entries:
            if self.ledger.trade(*entry.key) is not None:
                self.ledger.set_being_closed(entry.key, False)

    def _cancel(self, record: PendingAdlOrder, reason: str) -> SettlementResult:
        self._release(record.entries)
        self.bus.publish(AdlOrderCanceled(record.order_id, reason))
        logger.warning(f"ADL order #{record.order_id} canceled ({reason})")
        return SettlementResult(record.order_id, PendingKind.ADL, False, reason)

    def _skip(self, order_id: int, entry: AdlEntry, reason: str) -> None:
        self._skipped_positions += 1
        if self.ledger.trade(*entry.key) is not None:
            self.ledger.set_being_closed(entry.key, False)
        self.bus.publish(AdlSkipped(order_id, entry.trader, entry.pair_index, entry.index, reason))
        logger.warning(f"ADL #{order_id}: skipped {entry.key} ({reason})")

    def _ranking_context(self, prices: Dict[int, int]) -> Dict[str, Any]:
        return {
            "prices": prices,
            "trades": {t.key: t for t in self.ledger.open_trades()},
            "max_gain_p": self.params.max_gain_p,
        }

    def _on_prices(self, result) -> Optional[SettlementResult]:
        entry = self.ledger.get_pending(result.request_id)
        if entry is None or entry[0] is not PendingKind.ADL:
            logger.warning(f"No pending ADL order for request #{result.request_id}, ignoring")
            return None
        _, record = entry
        self.ledger.pop_pending(result.request_id)
        if not result.ok:
            return self._cancel(record, result.error or "PRICE_FAILED")

        prices = {pair_index: result.price_of(pair_index) for pair_index in record.pair_indices}
        ordered = self.ranking.order(list(record.entries), self._ranking_context(prices))

        outcomes = []
        total_flow = 0
        for adl in ordered:
            trade = self.ledger.trade(*adl.key)
            if trade is None:
                self._skip(record.order_id, adl, "NO_TRADE")
                continue
            price = prices[adl.pair_index]
            preview = self.engine.close_outcome(trade, price)
            in_profit = preview.percent_profit > 0
            if in_profit != (adl.adl_type is AdlType.PROFIT):
                self._skip(record.order_id, adl, "ADL_TYPE_MISMATCH")
                continue

            outcome = self.engine.settle_close(trade, price)
            if outcome is None:
                self._skip(record.order_id, adl, "VAULT_INSUFFICIENT")
                continue
            outcomes.append(outcome)
            total_flow += outcome.vault_flow
            self._closed_positions += 1
            self.bus.publish(AdlClosingExecuted(
                order_id=record.order_id, adl_type=adl.adl_type.name, trader=trade.trader,
                pair_index=trade.pair_index, index=trade.index, price=price,
                percent_profit=outcome.percent_profit, realized_pnl=outcome.realized_pnl,
                sent_to_trader=outcome.sent_to_trader, closing_fee=outcome.closing_fee,
                vault_flow=outcome.vault_flow,
            ))

        self._executed_batches += 1
        self._total_vault_flow += total_flow
        self.bus.publish(AdlUsdtFlow(record.order_id, len(outcomes), total_flow))
        logger.info(f"ADL order #{record.order_id} settled: closed={len(outcomes)}/"
                    f"{len(record.entries)} vault_flow={fmt_amount(total_flow)}")
        return SettlementResult(record.order_id, PendingKind.ADL, True, outcomes=outcomes)

    # ── Timeouts ─────────────────────────────────────────────────────────

    def sweep_expired(self, now: Optional[int] = None) -> List[int]:
        """Cancel ADL batches whose price round never completed."""
        now = self.clock() if now is None else now
        expired = [record.order_id for record in self.ledger.pending_orders(PendingKind.ADL)
                   if now - record.created_at >= self.engine.market_orders_timeout]
        for order_id in expired:
            _, record = self.ledger.pop_pending(order_id)
            self.gateway.cancel(order_id)
            self._cancel(record, "TIMEOUT")
        return expired

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "ranking": type(self.ranking).__name__,
            "executed_batches": self._executed_batches,
            "closed_positions": self._closed_positions,
            "skipped_positions": self._skipped_positions,
            "total_vault_flow": self._total_vault_flow,
            "pending": len(self.ledger.pending_orders(PendingKind.ADL)),
        }
