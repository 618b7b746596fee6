"""
PositionLifecycleMixin — price settlement: executing opens, closing trades,
bot triggers and SL updates once a price round is fulfilled.

SRP: Turns a PriceFulfillment into ledger, escrow and vault mutations.
A settlement that cannot execute becomes a cancel event with any escrow
refunded; it never raises back into the oracle.
"""
from __future__ import annotations

from typing import Optional, Tuple

from loguru import logger

from core.events import (
    BotOrderCanceled, LimitExecuted, MarketCloseCanceled, MarketExecuted,
    MarketOpenCanceled, SlCanceled, SlUpdated,
)
from core.fixed_point import fmt_amount, fmt_price
from execution.models import (
    BotOrderKind, CloseOutcome, PendingBotOrder, PendingKind, PendingMarketOrder,
    PendingSlUpdate, SettlementResult, Trade, TradeRequest,
)
from execution.trade_math import (
    liq_hit, percent_profit, sl_hit, tp_hit, trade_value, within_slippage,
)


class PositionLifecycleMixin:
    """Settlement side of OrderExecutionEngine."""

    # ── Dispatch ─────────────────────────────────────────────────────────

    def _on_price(self, result) -> Optional[SettlementResult]:
        """Gateway callback.  The pending record is removed before any payout."""
        entry = self.ledger.get_pending(result.request_id)
        if entry is None:
            logger.warning(f"No pending order for request #{result.request_id}, ignoring")
            return None
        kind, record = entry
        if kind is PendingKind.ADL:
            logger.error(f"ADL request #{result.request_id} routed to the order engine")
            return None
        self.ledger.pop_pending(result.request_id)
        if kind is PendingKind.MARKET_OPEN:
            return self._settle_market_open(record, result)
        if kind is PendingKind.MARKET_CLOSE:
            return self._settle_market_close(record, result)
        if kind is PendingKind.BOT:
            return self._settle_bot_order(record, result)
        return self._settle_sl_update(record, result)

    # ── Shared open / close routines ─────────────────────────────────────

    def _open_checks(self, req: TradeRequest, exec_price: int, impact_p: int) -> Optional[str]:
        """Settlement-time admission.  Returns a cancel reason or None."""
        if self.control.is_paused():
            return "PAUSED"
        if impact_p * req.leverage > self.params.max_negative_pnl_on_open_p:
            return "PRICE_IMPACT_TOO_HIGH"
        if tp_hit(req.buy, exec_price, req.tp):
            return "TP_REACHED"
        if sl_hit(req.buy, exec_price, req.sl):
            return "SL_REACHED"
        ok, _ = self.ledger.check_exposure(req.pair_index, req.buy,
                                           req.collateral * req.leverage, self.vault.total_assets)
        if not ok:
            return "OUT_EXPOSURELIMITS"
        if self.ledger.first_empty_trade_index(req.trader, req.pair_index) is None:
            return "MAX_TRADES_PER_PAIR"
        return None

    def _register_trade(self, req: TradeRequest, open_price: int,
                        bot: Optional[str] = None) -> Tuple[Trade, int, int]:
        """Charge open fees on escrowed collateral and store the trade."""
        open_fee = self.params.open_fee(req.pair_index, req.collateral, req.leverage)
        bot_fee = self.params.bot_fee(req.pair_index, req.collateral, req.leverage) if bot else 0

        referral_fee = 0
        if self.referrals is not None and self.referrals.has_referrer(req.trader):
            referral_fee = min(self.params.referral_fee(req.pair_index, req.collateral, req.leverage),
                               open_fee)
            if referral_fee:
                self.ledger.pay(self.referrals.account, referral_fee)
                self.referrals.credit(req.trader, referral_fee)

        self.ledger.accrue_platform_fee(open_fee - referral_fee)
        if bot:
            self.ledger.accrue_bot_reward(bot, bot_fee)

        trade = Trade(
            trader=req.trader, pair_index=req.pair_index,
            index=self.ledger.first_empty_trade_index(req.trader, req.pair_index),
            collateral=req.collateral - open_fee - bot_fee, open_price=open_price,
            buy=req.buy, leverage=req.leverage, tp=req.tp, sl=req.sl,
        )
        self.ledger.store_trade(trade)
        logger.info(
            f"Trade opened: {trade.key} {'LONG' if trade.buy else 'SHORT'} x{trade.leverage} "
            f"@ ${fmt_price(open_price)} collateral={fmt_amount(trade.collateral)} "
            f"fee={fmt_amount(open_fee)}"
        )
        return trade, open_fee, bot_fee

    def close_outcome(self, trade: Trade, price: int, bot: Optional[str] = None) -> CloseOutcome:
        """What closing ``trade`` at ``price`` would pay, without mutating anything."""
        rollover_fee, funding_fee = self.ledger.accrued_fees(trade)
        pct = percent_profit(trade.open_price, price, trade.buy, trade.leverage,
                             self.params.max_gain_p)
        closing_fee = self.params.close_fee(trade.pair_index, trade.collateral, trade.leverage)
        bot_fee = self.params.bot_fee(trade.pair_index, trade.collateral, trade.leverage) if bot else 0
        sent, liquidated = trade_value(trade.collateral, pct, rollover_fee, funding_fee,
                                       closing_fee + bot_fee)
        if liquidated:
            closing_fee = bot_fee = 0
        return CloseOutcome(
            price=price, percent_profit=pct, collateral=trade.collateral,
            rollover_fee=rollover_fee, funding_fee=funding_fee,
            closing_fee=closing_fee, bot_fee=bot_fee, sent_to_trader=sent,
            vault_flow=trade.collateral - closing_fee - bot_fee - sent,
            liquidated=liquidated,
        )

    def settle_close(self, trade: Trade, price: int,
                     bot: Optional[str] = None) -> Optional[CloseOutcome]:
        """
        Remove a trade and move its funds.  Shared by market, bot and ADL closes.

        Returns None (nothing changed) when the vault cannot fund the payout.
        """
        outcome = self.close_outcome(trade, price, bot)
        if outcome.vault_flow < 0 and not self.vault.can_send(-outcome.vault_flow):
            logger.error(f"Vault cannot fund {fmt_amount(-outcome.vault_flow)} for {trade.key}")
            return None

        self.ledger.remove_trade(*trade.key)
        if outcome.vault_flow > 0:
            self.vault.receive_assets(self.identity, outcome.vault_flow, self.ledger.account)
        elif outcome.vault_flow < 0:
            self.vault.send_assets(self.identity, -outcome.vault_flow, self.ledger.account)
        self.ledger.pay(trade.trader, outcome.sent_to_trader)
        self.ledger.accrue_platform_fee(outcome.closing_fee)
        if bot:
            self.ledger.accrue_bot_reward(bot, outcome.bot_fee)

        logger.info(
            f"Trade closed: {trade.key} @ ${fmt_price(price)} "
            f"pnl={fmt_price(outcome.percent_profit)}% sent={fmt_amount(outcome.sent_to_trader)} "
            f"vault_flow={fmt_amount(outcome.vault_flow)}"
            f"{' LIQUIDATED' if outcome.liquidated else ''}"
        )
        return outcome

    # ── Market orders ────────────────────────────────────────────────────

    def _cancel_market_open(self, record: PendingMarketOrder, reason: str) -> SettlementResult:
        req = record.request
        self.ledger.pay(req.trader, req.collateral)
        self.bus.publish(MarketOpenCanceled(record.order_id, req.trader, req.pair_index, reason))
        logger.warning(f"Market open #{record.order_id} canceled ({reason}), "
                       f"refunded {fmt_amount(req.collateral)}")
        return SettlementResult(record.order_id, PendingKind.MARKET_OPEN, False, reason)

    def _settle_market_open(self, record: PendingMarketOrder, result) -> SettlementResult:
        req = record.request
        if not result.ok:
            return self._cancel_market_open(record, result.error or "PRICE_FAILED")

        exec_price, impact_p = self.ledger.pair_infos.execution_price(
            req.pair_index, result.price, req.buy, req.collateral * req.leverage)
        if not within_slippage(req.buy, exec_price, req.wanted_price, record.slippage_p):
            return self._cancel_market_open(record, "SLIPPAGE")
        reason = self._open_checks(req, exec_price, impact_p)
        if reason:
            return self._cancel_market_open(record, reason)

        trade, open_fee, _ = self._register_trade(req, exec_price)
        self.bus.publish(MarketExecuted(
            order_id=record.order_id, trader=trade.trader, pair_index=trade.pair_index,
            index=trade.index, open=True, buy=trade.buy, leverage=trade.leverage,
            price=exec_price, price_impact_p=impact_p, position_size=trade.collateral,
            percent_profit=0, sent_to_trader=0, fee=open_fee,
        ))
        return SettlementResult(record.order_id, PendingKind.MARKET_OPEN, True)

    def _settle_market_close(self, record: PendingMarketOrder, result) -> SettlementResult:
        trader, pair_index, index = record.position
        trade = self.ledger.trade(trader, pair_index, index)

        reason = None
        if trade is None:
            reason = "NO_TRADE"
        elif not result.ok:
            reason = result.error or "PRICE_FAILED"
        outcome = None if reason else self.settle_close(trade, result.price)
        if outcome is None:
            reason = reason or "VAULT_INSUFFICIENT"
            self.ledger.set_being_closed(record.position, False)
            self.bus.publish(MarketCloseCanceled(record.order_id, trader, pair_index, index, reason))
            logger.warning(f"Market close #{record.order_id} canceled ({reason})")
            return SettlementResult(record.order_id, PendingKind.MARKET_CLOSE, False, reason)

        self.bus.publish(MarketExecuted(
            order_id=record.order_id, trader=trader, pair_index=pair_index, index=index,
            open=False, buy=trade.buy, leverage=trade.leverage, price=result.price,
            price_impact_p=0, position_size=trade.collateral,
            percent_profit=outcome.percent_profit, sent_to_trader=outcome.sent_to_trader,
            fee=outcome.closing_fee, rollover_fee=outcome.rollover_fee,
            funding_fee=outcome.funding_fee, vault_flow=outcome.vault_flow,
        ))
        return SettlementResult(record.order_id, PendingKind.MARKET_CLOSE, True, outcomes=[outcome])

    # ── Bot orders ───────────────────────────────────────────────────────

    def _cancel_bot_order(self, record: PendingBotOrder, reason: str) -> SettlementResult:
        if record.kind is not BotOrderKind.LIMIT_OPEN:
            self.ledger.set_being_closed(record.key, False)
        self.bus.publish(BotOrderCanceled(record.order_id, record.bot, record.kind.value,
                                          record.trader, record.pair_index, record.index, reason))
        logger.warning(f"Bot order #{record.order_id} {record.kind.value} on {record.key} "
                       f"canceled ({reason})")
        return SettlementResult(record.order_id, PendingKind.BOT, False, reason)

    def _settle_bot_order(self, record: PendingBotOrder, result) -> SettlementResult:
        if not result.ok:
            return self._cancel_bot_order(record, result.error or "PRICE_FAILED")
        if record.kind is BotOrderKind.LIMIT_OPEN:
            return self._settle_limit_open(record, result.price)

        trade = self.ledger.trade(*record.key)
        if trade is None:
            return self._cancel_bot_order(record, "NO_TRADE")

        price = result.price
        if record.kind is BotOrderKind.TP:
            close_price = trade.tp if tp_hit(trade.buy, price, trade.tp) else None
        elif record.kind is BotOrderKind.SL:
            close_price = trade.sl if sl_hit(trade.buy, price, trade.sl) else None
        else:
            rollover_fee, funding_fee = self.ledger.accrued_fees(trade)
            liq_price = self.ledger.pair_infos.liquidation_price(
                trade.open_price, trade.buy, trade.collateral, trade.leverage,
                rollover_fee, funding_fee)
            close_price = price if liq_hit(trade.buy, price, liq_price) else None
        if close_price is None:
            return self._cancel_bot_order(record, "PRICE_NOT_HIT")

        outcome = self.settle_close(trade, close_price, bot=record.bot)
        if outcome is None:
            return self._cancel_bot_order(record, "VAULT_INSUFFICIENT")

        self.bus.publish(LimitExecuted(
            order_id=record.order_id, bot=record.bot, kind=record.kind.value,
            trader=trade.trader, pair_index=trade.pair_index, index=trade.index,
            price=close_price, price_impact_p=0, position_size=trade.collateral,
            percent_profit=outcome.percent_profit, sent_to_trader=outcome.sent_to_trader,
            fee=outcome.closing_fee, bot_fee=outcome.bot_fee,
            rollover_fee=outcome.rollover_fee, funding_fee=outcome.funding_fee,
            vault_flow=outcome.vault_flow,
        ))
        return SettlementResult(record.order_id, PendingKind.BOT, True, outcomes=[outcome])

    def _settle_limit_open(self, record: PendingBotOrder, price: int) -> SettlementResult:
        order = self.ledger.limit_order(*record.key)
        if order is None:
            return self._cancel_bot_order(record, "NO_LIMIT")
        if not within_slippage(order.buy, price, order.wanted_price, order.slippage_p):
            return self._cancel_bot_order(record, "PRICE_NOT_HIT")

        req = order.to_request()
        exec_price, impact_p = self.ledger.pair_infos.execution_price(
            order.pair_index, order.wanted_price, order.buy, order.collateral * order.leverage)
        reason = self._open_checks(req, exec_price, impact_p)
        if reason:
            return self._cancel_bot_order(record, reason)

        self.ledger.remove_limit(*order.key)
        trade, open_fee, bot_fee = self._register_trade(req, exec_price, bot=record.bot)
        self.bus.publish(LimitExecuted(
            order_id=record.order_id, bot=record.bot, kind=record.kind.value,
            trader=trade.trader, pair_index=trade.pair_index, index=trade.index,
            price=exec_price, price_impact_p=impact_p, position_size=trade.collateral,
            percent_profit=0, sent_to_trader=0, fee=open_fee, bot_fee=bot_fee,
        ))
        return SettlementResult(record.order_id, PendingKind.BOT, True)

    # ── SL updates ───────────────────────────────────────────────────────

    def _settle_sl_update(self, record: PendingSlUpdate, result) -> SettlementResult:
        key = (record.trader, record.pair_index, record.index)
        trade = self.ledger.trade(*key)
        info = self.ledger.trade_info(*key)
        reason = None
        if trade is None or info.trade_id != record.trade_id:
            reason = "NO_TRADE"
        elif not result.ok:
            reason = result.error or "PRICE_FAILED"
        else:
            _, reason = self.params.check_sl(trade.open_price, record.new_sl,
                                             trade.buy, trade.leverage)
            if reason is None and sl_hit(trade.buy, result.price, record.new_sl):
                reason = "SL_REACHED"
        if reason:
            self.bus.publish(SlCanceled(record.order_id, record.trader, record.pair_index,
                                        record.index, reason))
            logger.warning(f"SL update #{record.order_id} canceled ({reason})")
            return SettlementResult(record.order_id, PendingKind.SL_UPDATE, False, reason)

        self.ledger.update_sl(record.trader, record.pair_index, record.index, record.new_sl)
        self.bus.publish(SlUpdated(record.order_id, record.trader, record.pair_index,
                                   record.index, record.new_sl))
        logger.info(f"SL updated #{record.order_id}: {trade.key} -> ${fmt_price(record.new_sl)}")
        return SettlementResult(record.order_id, PendingKind.SL_UPDATE, True)
