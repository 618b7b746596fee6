"""
OrderManagerMixin — order intake: opens, closes, TP/SL and limit updates,
bot triggers, market-order timeouts.

SRP: Validates intents and records pending work; never prices or settles.
Every method validates fully before the first mutation, so a raised error
leaves the ledger, escrow and gateway untouched.
"""
from __future__ import annotations

from dataclasses import replace
from typing import List, Optional

from loguru import logger

from core.access_control import Action
from core.errors import AuthorizationError, TokenError, TradingHaltedError, ValidationError
from core.events import (
    BotOrderCanceled, BotOrderInitiated, MarketCloseTimeoutExecuted, MarketOpenTimeoutExecuted,
    MarketOrderInitiated, OpenLimitCanceled, OpenLimitPlaced, OpenLimitUpdated,
    SlCanceled, SlUpdated, SlUpdateInitiated, TpUpdated,
)
from core.fixed_point import fmt_amount, fmt_price
from execution.models import (
    BotOrderKind, LimitOrder, OrderType, PendingBotOrder, PendingKind,
    PendingMarketOrder, PendingSlUpdate, TradeRequest,
)


class OrderManagerMixin:
    """Trader- and bot-initiated intake for OrderExecutionEngine."""

    # ── Guards ───────────────────────────────────────────────────────────

    def _require_live(self) -> None:
        if self.control.is_done():
            raise TradingHaltedError("DONE")

    def _require_open_allowed(self) -> None:
        self._require_live()
        if self.control.is_paused():
            raise TradingHaltedError("PAUSED")

    def _require_timelock(self, since: int, what: str) -> None:
        if self.clock() - since < self.limit_orders_timelock:
            raise ValidationError("LIMIT_TIMELOCK", f"{what} updated {self.clock() - since}s ago")

    # ── Opens ────────────────────────────────────────────────────────────

    def open_trade(
            self,
            caller: str,
            order: TradeRequest,
            order_type: OrderType,
            slippage_p: int,
            referral: Optional[str] = None,
    ) -> int:
        """
        Escrow collateral and either request a price (market) or place a
        limit order.

        Returns:
            request id for market orders, limit slot index for limit orders
        """
        if caller != order.trader:
            raise AuthorizationError("NOT_OWNER", f"{caller} opening for {order.trader}")
        self._require_open_allowed()
        self.params.pair(order.pair_index)
        if order.collateral > self.max_pos_collateral:
            raise ValidationError("ABOVE_MAX_POS", f"{order.collateral} > {self.max_pos_collateral}")
        if slippage_p < 0:
            raise ValidationError("WRONG_PARAMS", "negative slippage")
        self.params.validate_trade_params(
            order.pair_index, order.collateral, order.wanted_price,
            order.buy, order.leverage, order.tp, order.sl,
        )
        if self.ledger.slots_used(order.trader, order.pair_index) >= self.ledger.max_trades_per_pair:
            raise ValidationError("MAX_TRADES_PER_PAIR", f"{order.trader} pair #{order.pair_index}")
        if order_type is OrderType.MARKET and \
                self.ledger.pending_market_count(order.trader) >= self.ledger.max_pending_market_orders:
            raise ValidationError("MAX_PENDING_ORDERS", order.trader)
        self.ledger.require_exposure(order.pair_index, order.buy,
                                     order.collateral * order.leverage, self.vault.total_assets)
        ok, reason = self.ledger.can_escrow(order.trader, order.collateral)
        if not ok:
            raise TokenError(reason, f"{order.trader} escrow {order.collateral}")

        if referral and self.referrals is not None:
            self.referrals.register_referrer(order.trader, referral)
        self.ledger.escrow(order.trader, order.collateral)
        request = replace(order)

        side = "LONG" if order.buy else "SHORT"
        if order_type is OrderType.MARKET:
            order_id = self.gateway.request_price(order.pair_index, self._on_price)
            self.ledger.add_pending(PendingKind.MARKET_OPEN, PendingMarketOrder(
                order_id=order_id, open=True, created_at=self.clock(),
                slippage_p=slippage_p, request=request,
            ))
            self.bus.publish(MarketOrderInitiated(order_id, order.trader, order.pair_index, True))
            logger.info(f"Market open #{order_id}: {order.trader} {side} pair #{order.pair_index} "
                        f"{fmt_amount(order.collateral)} x{order.leverage} @ ~${fmt_price(order.wanted_price)}")
            return order_id

        index = self.ledger.first_empty_limit_index(order.trader, order.pair_index)
        now = self.clock()
        self.ledger.store_limit(LimitOrder(
            trader=order.trader, pair_index=order.pair_index, index=index,
            collateral=order.collateral, wanted_price=order.wanted_price, buy=order.buy,
            leverage=order.leverage, tp=order.tp, sl=order.sl, slippage_p=slippage_p,
            placed_at=now, updated_at=now,
        ))
        self.bus.publish(OpenLimitPlaced(order.trader, order.pair_index, index))
        logger.info(f"Limit placed: {order.trader} {side} pair #{order.pair_index} slot {index} "
                    f"@ ${fmt_price(order.wanted_price)}")
        return index

    # ── Closes ───────────────────────────────────────────────────────────

    def close_trade_market(self, caller: str, pair_index: int, index: int) -> int:
        self._require_live()
        trade = self.ledger.require_trade(caller, pair_index, index)
        if self.ledger.is_being_closed(trade.key):
            raise ValidationError("ALREADY_BEING_CLOSED", str(trade.key))
        if self.ledger.pending_market_count(caller) >= self.ledger.max_pending_market_orders:
            raise ValidationError("MAX_PENDING_ORDERS", caller)

        order_id = self.gateway.request_price(pair_index, self._on_price)
        self.ledger.add_pending(PendingKind.MARKET_CLOSE, PendingMarketOrder(
            order_id=order_id, open=False, created_at=self.clock(), position=trade.key,
        ))
        self.ledger.set_being_closed(trade.key, True)
        self.bus.publish(MarketOrderInitiated(order_id, caller, pair_index, False))
        logger.info(f"Market close #{order_id}: {caller} pair #{pair_index} slot {index}")
        return order_id

    # ── TP / SL ──────────────────────────────────────────────────────────

    def update_tp(self, caller: str, pair_index: int, index: int, new_tp: int) -> None:
        self._require_live()
        trade = self.ledger.require_trade(caller, pair_index, index)
        ok, reason = self.params.check_tp(trade.open_price, new_tp, trade.buy, trade.leverage)
        if not ok:
            raise ValidationError(reason, f"tp ${fmt_price(new_tp)} on {trade.key}")
        self.ledger.update_tp(caller, pair_index, index, new_tp)
        self.bus.publish(TpUpdated(caller, pair_index, index, new_tp))
        logger.info(f"TP updated: {trade.key} -> ${fmt_price(new_tp)}")

    def update_sl(self, caller: str, pair_index: int, index: int, new_sl: int) -> Optional[int]:
        """
        Disable (0) applies immediately; any other level needs a price round
        to make sure the new stop is not already crossed.

        Returns:
            request id, or None when applied synchronously
        """
        self._require_live()
        trade = self.ledger.require_trade(caller, pair_index, index)
        ok, reason = self.params.check_sl(trade.open_price, new_sl, trade.buy, trade.leverage)
        if not ok:
            raise ValidationError(reason, f"sl ${fmt_price(new_sl)} on {trade.key}")

        if new_sl == 0:
            self.ledger.update_sl(caller, pair_index, index, 0)
            self.bus.publish(SlUpdated(None, caller, pair_index, index, 0))
            logger.info(f"SL removed: {trade.key}")
            return None

        order_id = self.gateway.request_price(pair_index, self._on_price)
        self.ledger.add_pending(PendingKind.SL_UPDATE, PendingSlUpdate(
            order_id=order_id, trader=caller, pair_index=pair_index, index=index,
            new_sl=new_sl, created_at=self.clock(),
            trade_id=self.ledger.trade_info(*trade.key).trade_id,
        ))
        self.bus.publish(SlUpdateInitiated(order_id, caller, pair_index, index, new_sl))
        logger.info(f"SL update #{order_id} requested: {trade.key} -> ${fmt_price(new_sl)}")
        return order_id

    # ── Limit orders ─────────────────────────────────────────────────────

    def update_open_limit_order(self, caller: str, pair_index: int, index: int,
                                price: int, tp: int, sl: int) -> None:
        self._require_live()
        order = self.ledger.require_limit(caller, pair_index, index)
        self._require_timelock(order.updated_at, f"limit {order.key}")
        if self.ledger.pending_bot_order(order.key, limit=True):
            raise ValidationError("ALREADY_TRIGGERED", str(order.key))
        if price <= 0:
            raise ValidationError("WRONG_PARAMS", "limit price must be > 0")
        for ok, reason in (self.params.check_tp(price, tp, order.buy, order.leverage),
                           self.params.check_sl(price, sl, order.buy, order.leverage)):
            if not ok:
                raise ValidationError(reason, f"limit {order.key}")

        order.wanted_price, order.tp, order.sl = price, tp, sl
        order.updated_at = self.clock()
        self.bus.publish(OpenLimitUpdated(caller, pair_index, index, price, tp, sl))
        logger.info(f"Limit updated: {order.key} @ ${fmt_price(price)}")

    def cancel_open_limit_order(self, caller: str, pair_index: int, index: int) -> int:
        """Remove a limit order and refund its collateral.  Returns the refund."""
        self._require_live()
        order = self.ledger.require_limit(caller, pair_index, index)
        self._require_timelock(order.updated_at, f"limit {order.key}")
        if self.ledger.pending_bot_order(order.key, limit=True):
            raise ValidationError("ALREADY_TRIGGERED", str(order.key))

        self.ledger.remove_limit(caller, pair_index, index)
        self.ledger.pay(caller, order.collateral)
        self.bus.publish(OpenLimitCanceled(caller, pair_index, index))
        logger.info(f"Limit canceled: {order.key}, refunded {fmt_amount(order.collateral)}")
        return order.collateral

    # ── Bot triggers ─────────────────────────────────────────────────────

    def execute_bot_order(self, caller: str, kind: BotOrderKind, trader: str,
                          pair_index: int, index: int) -> int:
        """Trigger a limit open, TP, SL or liquidation on behalf of any trader."""
        self.policy.require(caller, Action.EXECUTE_BOT_ORDER)
        self._require_live()
        key = (trader, pair_index, index)
        limit = kind is BotOrderKind.LIMIT_OPEN
        if self.ledger.pending_bot_order(key, limit=limit):
            raise ValidationError("ALREADY_TRIGGERED", str(key))

        if limit:
            if self.control.is_paused():
                raise TradingHaltedError("PAUSED")
            order = self.ledger.require_limit(*key)
            self._require_timelock(order.updated_at, f"limit {key}")
            if self.ledger.open_trades_count(trader, pair_index) >= self.ledger.max_trades_per_pair:
                raise ValidationError("MAX_TRADES_PER_PAIR", str(key))
            self.ledger.require_exposure(pair_index, order.buy, order.collateral * order.leverage,
                                         self.vault.total_assets)
        else:
            trade = self.ledger.require_trade(*key)
            info = self.ledger.trade_info(*key)
            if self.ledger.is_being_closed(key):
                raise ValidationError("ALREADY_BEING_CLOSED", str(key))
            if kind is BotOrderKind.TP:
                if trade.tp == 0:
                    raise ValidationError("NO_TP", str(key))
                self._require_timelock(info.tp_updated_at, f"tp {key}")
            elif kind is BotOrderKind.SL:
                if trade.sl == 0:
                    raise ValidationError("NO_SL", str(key))
                self._require_timelock(info.sl_updated_at, f"sl {key}")

        order_id = self.gateway.request_price(pair_index, self._on_price)
        self.ledger.add_pending(PendingKind.BOT, PendingBotOrder(
            order_id=order_id, kind=kind, bot=caller, trader=trader,
            pair_index=pair_index, index=index, created_at=self.clock(),
        ))
        if not limit:
            self.ledger.set_being_closed(key, True)
        self.bus.publish(BotOrderInitiated(order_id, caller, kind.value, trader, pair_index, index))
        logger.info(f"Bot order #{order_id}: {caller} {kind.value.upper()} on {key}")
        return order_id

    # ── Timeouts ─────────────────────────────────────────────────────────

    def _timed_out_pending(self, caller: str, order_id: int, kind: PendingKind) -> PendingMarketOrder:
        entry = self.ledger.get_pending(order_id)
        if entry is None or entry[0] is not kind:
            raise ValidationError("NO_ORDER", f"#{order_id}")
        record = entry[1]
        if record.trader != caller:
            raise AuthorizationError("NOT_OWNER", f"{caller} on #{order_id}")
        if self.clock() - record.created_at < self.market_orders_timeout:
            raise ValidationError("WAIT_TIMEOUT", f"#{order_id}")
        return record

    def open_trade_market_timeout(self, caller: str, order_id: int) -> int:
        """Give up on an unanswered market open and refund its escrow."""
        self._timed_out_pending(caller, order_id, PendingKind.MARKET_OPEN)
        return self._expire(order_id)

    def close_trade_market_timeout(self, caller: str, order_id: int) -> None:
        """Give up on an unanswered market close; the trade stays open."""
        self._timed_out_pending(caller, order_id, PendingKind.MARKET_CLOSE)
        self._expire(order_id)

    def _expire(self, order_id: int) -> int:
        """Cancel one pending record and undo its intake.  Returns refunded collateral."""
        entry = self.ledger.get_pending(order_id)
        if entry is None or entry[0] is PendingKind.ADL:
            return 0
        kind, record = entry
        self.ledger.pop_pending(order_id)
        self.gateway.cancel(order_id)
        refunded = 0
        if kind is PendingKind.MARKET_OPEN:
            refunded = record.request.collateral
            self.ledger.pay(record.trader, refunded)
            self.bus.publish(MarketOpenTimeoutExecuted(order_id, record.trader,
                                                       record.pair_index, refunded))
        elif kind is PendingKind.MARKET_CLOSE:
            self.ledger.set_being_closed(record.position, False)
            self.bus.publish(MarketCloseTimeoutExecuted(order_id, record.trader,
                                                        record.pair_index, record.position[2]))
        elif kind is PendingKind.BOT:
            if record.kind is not BotOrderKind.LIMIT_OPEN:
                self.ledger.set_being_closed(record.key, False)
            self.bus.publish(BotOrderCanceled(order_id, record.bot, record.kind.value, record.trader,
                                              record.pair_index, record.index, "TIMEOUT"))
        elif kind is PendingKind.SL_UPDATE:
            self.bus.publish(SlCanceled(order_id, record.trader, record.pair_index,
                                        record.index, "TIMEOUT"))
        logger.warning(f"Pending {kind.value} #{order_id} expired"
                       f"{f', refunded {fmt_amount(refunded)}' if refunded else ''}")
        return refunded

    def sweep_expired(self, now: Optional[int] = None) -> List[int]:
        """Keeper path: expire every market, bot and SL request past the timeout."""
        now = self.clock() if now is None else now
        expired = [
            record.order_id for kind in (PendingKind.MARKET_OPEN, PendingKind.MARKET_CLOSE,
                                         PendingKind.BOT, PendingKind.SL_UPDATE)
            for record in self.ledger.pending_orders(kind)
            if now - record.created_at >= self.market_orders_timeout
        ]
        for order_id in expired:
            self._expire(order_id)
        return expired
