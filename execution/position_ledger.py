"""
Position Ledger
Authoritative store of open trades, limit orders, price-dependent pending
orders and open-interest counters.  Holds trader collateral in escrow on the
``trading_storage`` token account.

Invariants:
  open_interest(pair, side) == sum(collateral * leverage) of open trades on that side
  a request id maps to at most one pending record
  OI and accruals only change inside store_trade / remove_trade
"""
from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable, DefaultDict, Dict, List, Optional, Tuple, Union

from loguru import logger

from config import TradingConfig
from core.access_control import AccessPolicy, Action, Role
from core.errors import AdmissionError, AuthorizationError, ValidationError
from core.events import EventBus, UpnlLastIdUpdated
from core.fixed_point import fmt_amount
from core.token_ledger import TRADING_STORAGE, TokenLedger
from execution.models import (
    BotOrderKind, LimitOrder, PendingAdlOrder, PendingBotOrder, PendingKind, PendingMarketOrder,
    PendingSlUpdate, PositionKey, Trade, TradeInfo,
)
from execution.pair_infos import PairInfos
from execution.risk_engine import RiskParameterStore

PendingRecord = Union[PendingMarketOrder, PendingBotOrder, PendingSlUpdate, PendingAdlOrder]


class PositionLedger:
    """
    Position and order storage plus exposure admission.

    Enforces:
    - Per pair, per side open-interest cap
    - Vault-derived cap (vault assets * multiplier) per pair side
    - Unique request ids across every pending order kind
    """

    def __init__(
            self,
            params: RiskParameterStore,
            token: TokenLedger,
            policy: AccessPolicy,
            clock: Callable[[], int],
            bus: Optional[EventBus] = None,
            cfg: Optional[TradingConfig] = None,
            account: str = TRADING_STORAGE,
    ):
        cfg = cfg or TradingConfig()
        self.params = params
        self.token = token
        self.policy = policy
        self.clock = clock
        self.bus = bus or EventBus()
        self.account = account

        self.max_trades_per_pair = cfg.max_trades_per_pair
        self.max_pending_market_orders = cfg.max_pending_market_orders
        self.vault_exposure_multiplier = cfg.vault_exposure_multiplier

        self._trades: Dict[PositionKey, Trade] = {}
        self._trade_infos: Dict[PositionKey, TradeInfo] = {}
        self._limits: Dict[PositionKey, LimitOrder] = {}
        self._pending: Dict[int, Tuple[PendingKind, PendingRecord]] = {}
        self._oi: DefaultDict[Tuple[int, bool], int] = defaultdict(int)

        self.platform_fee = 0
        self._bot_rewards: DefaultDict[str, int] = defaultdict(int)
        self.upnl_last_id = 0
        self._last_trade_id = 0

        self.pair_infos = PairInfos(params, clock, self.pair_open_interest)

        logger.info(
            f"Initialized Position Ledger: max_trades_per_pair={self.max_trades_per_pair}, "
            f"vault_multiplier={self.vault_exposure_multiplier}x"
        )

    # ── Open interest / exposure ─────────────────────────────────────────

    def open_interest(self, pair_index: int, buy: bool) -> int:
        return self._oi.get((pair_index, buy), 0)

    def pair_open_interest(self, pair_index: int) -> Tuple[int, int]:
        return self.open_interest(pair_index, True), self.open_interest(pair_index, False)

    def check_exposure(self, pair_index: int, buy: bool, notional: int,
                       vault_assets: int) -> Tuple[bool, Optional[str]]:
        after = self.open_interest(pair_index, buy) + notional
        cap = self.params.max_open_interest(pair_index)
        if after > cap:
            return False, f"pair #{pair_index} OI {after} > cap {cap}"
        vault_cap = vault_assets * self.vault_exposure_multiplier
        if after > vault_cap:
            return False, f"pair #{pair_index} OI {after} > vault cap {vault_cap}"
        return True, None

    def require_exposure(self, pair_index: int, buy: bool, notional: int,
                         vault_assets: int) -> None:
        ok, detail = self.check_exposure(pair_index, buy, notional, vault_assets)
        if not ok:
            raise AdmissionError("OUT_EXPOSURELIMITS", detail)

    # ── Trades ───────────────────────────────────────────────────────────

    def trade(self, trader: str, pair_index: int, index: int) -> Optional[Trade]:
        return self._trades.get((trader, pair_index, index))

    def trade_info(self, trader: str, pair_index: int, index: int) -> Optional[TradeInfo]:
        return self._trade_infos.get((trader, pair_index, index))

    def require_trade(self, trader: str, pair_index: int, index: int) -> Trade:
        trade = self.trade(trader, pair_index, index)
        if trade is None:
            raise ValidationError("NO_TRADE", f"{trader} pair #{pair_index} index {index}")
        return trade

    def open_trades(self, trader: Optional[str] = None) -> List[Trade]:
        return [t for t in self._trades.values() if trader is None or t.trader == trader]

    def open_trades_count(self, trader: str, pair_index: int) -> int:
        return sum(1 for (t, p, _) in self._trades if t == trader and p == pair_index)

    def first_empty_trade_index(self, trader: str, pair_index: int) -> Optional[int]:
        for index in range(self.max_trades_per_pair):
            if (trader, pair_index, index) not in self._trades:
                return index
        return None

    def _bump_upnl_id(self) -> None:
        self.upnl_last_id += 1
        self.bus.publish(UpnlLastIdUpdated(self.upnl_last_id))

    def store_trade(self, trade: Trade) -> Trade:
        if trade.key in self._trades:
            raise ValidationError("WRONG_PARAMS", f"slot {trade.key} already used")
        rollover_acc, funding_acc = self.pair_infos.snapshot(trade.pair_index, trade.buy)
        now = self.clock()
        self._last_trade_id += 1
        self._trades[trade.key] = trade
        self._trade_infos[trade.key] = TradeInfo(
            trade_id=self._last_trade_id, opened_at=now, open_notional=trade.notional,
            rollover_acc=rollover_acc, funding_acc=funding_acc,
            tp_updated_at=now, sl_updated_at=now,
        )
        self._oi[(trade.pair_index, trade.buy)] += trade.notional
        self._bump_upnl_id()
        return trade

    def remove_trade(self, trader: str, pair_index: int, index: int) -> Tuple[Trade, TradeInfo]:
        key = (trader, pair_index, index)
        trade = self.require_trade(*key)
        self.pair_infos.sync(pair_index)
        info = self._trade_infos.pop(key)
        del self._trades[key]
        self._oi[(pair_index, trade.buy)] -= info.open_notional
        self._bump_upnl_id()
        return trade, info

    def update_tp(self, trader: str, pair_index: int, index: int, tp: int) -> None:
        self.require_trade(trader, pair_index, index).tp = tp
        self._trade_infos[(trader, pair_index, index)].tp_updated_at = self.clock()

    def update_sl(self, trader: str, pair_index: int, index: int, sl: int) -> None:
        self.require_trade(trader, pair_index, index).sl = sl
        self._trade_infos[(trader, pair_index, index)].sl_updated_at = self.clock()

    def set_being_closed(self, key: PositionKey, flag: bool) -> None:
        info = self._trade_infos.get(key)
        if info is not None:
            info.being_market_closed = flag

    def is_being_closed(self, key: PositionKey) -> bool:
        info = self._trade_infos.get(key)
        return bool(info and info.being_market_closed)

    def accrued_fees(self, trade: Trade) -> Tuple[int, int]:
        """(rollover_fee, funding_fee) accrued on a trade so far."""
        info = self._trade_infos[trade.key]
        rollover = self.pair_infos.rollover_fee(trade.pair_index, trade.collateral, info.rollover_acc)
        funding = self.pair_infos.funding_fee(trade.pair_index, trade.buy,
                                              info.open_notional, info.funding_acc)
        return rollover, funding

    # ── Limit orders ─────────────────────────────────────────────────────

    def limit_order(self, trader: str, pair_index: int, index: int) -> Optional[LimitOrder]:
        return self._limits.get((trader, pair_index, index))

    def require_limit(self, trader: str, pair_index: int, index: int) -> LimitOrder:
        order = self.limit_order(trader, pair_index, index)
        if order is None:
            raise ValidationError("NO_LIMIT", f"{trader} pair #{pair_index} index {index}")
        return order

    def open_limit_orders(self, trader: Optional[str] = None) -> List[LimitOrder]:
        return [o for o in self._limits.values() if trader is None or o.trader == trader]

    def open_limit_count(self, trader: str, pair_index: int) -> int:
        return sum(1 for (t, p, _) in self._limits if t == trader and p == pair_index)

    def first_empty_limit_index(self, trader: str, pair_index: int) -> Optional[int]:
        for index in range(self.max_trades_per_pair):
            if (trader, pair_index, index) not in self._limits:
                return index
        return None

    def store_limit(self, order: LimitOrder) -> None:
        self._limits[order.key] = order

    def remove_limit(self, trader: str, pair_index: int, index: int) -> LimitOrder:
        order = self.require_limit(trader, pair_index, index)
        del self._limits[order.key]
        return order

    # ── Pending (price-dependent) orders ─────────────────────────────────

    def add_pending(self, kind: PendingKind, record: PendingRecord) -> None:
        if record.order_id in self._pending:
            raise ValidationError("WRONG_PARAMS", f"request #{record.order_id} already pending")
        self._pending[record.order_id] = (kind, record)

    def get_pending(self, order_id: int) -> Optional[Tuple[PendingKind, PendingRecord]]:
        return self._pending.get(order_id)

    def pop_pending(self, order_id: int) -> Optional[Tuple[PendingKind, PendingRecord]]:
        return self._pending.pop(order_id, None)

    def pending_orders(self, kind: Optional[PendingKind] = None) -> List[PendingRecord]:
        return [r for k, r in self._pending.values() if kind is None or k is kind]

    def pending_market_count(self, trader: str) -> int:
        return sum(1 for r in self.pending_orders(PendingKind.MARKET_OPEN) if r.trader == trader) + \
            sum(1 for r in self.pending_orders(PendingKind.MARKET_CLOSE) if r.trader == trader)

    def pending_open_count(self, trader: str, pair_index: int) -> int:
        return sum(1 for r in self.pending_orders(PendingKind.MARKET_OPEN)
                   if r.trader == trader and r.pair_index == pair_index)

    def pending_bot_order(self, key: PositionKey, limit: bool = False) -> Optional[PendingBotOrder]:
        """Pending bot order on a limit slot (limit=True) or on an open trade."""
        for record in self.pending_orders(PendingKind.BOT):
            if record.key == key and (record.kind is BotOrderKind.LIMIT_OPEN) == limit:
                return record
        return None

    def slots_used(self, trader: str, pair_index: int) -> int:
        return (self.open_trades_count(trader, pair_index)
                + self.pending_open_count(trader, pair_index)
                + self.open_limit_count(trader, pair_index))

    # ── Escrow / fees ────────────────────────────────────────────────────

    def can_escrow(self, trader: str, amount: int) -> Tuple[bool, str]:
        return self.token.can_pull(trader, self.account, amount)

    def escrow(self, trader: str, amount: int) -> None:
        self.token.transfer_from(self.account, trader, self.account, amount)

    def pay(self, receiver: str, amount: int) -> None:
        if amount > 0:
            self.token.transfer(self.account, receiver, amount)

    def accrue_platform_fee(self, amount: int) -> None:
        self.platform_fee += amount

    def accrue_bot_reward(self, bot: str, amount: int) -> None:
        if amount > 0:
            self._bot_rewards[bot] += amount

    def bot_rewards(self, bot: str) -> int:
        return self._bot_rewards.get(bot, 0)

    def claim_platform_fee(self, caller: str, to: str) -> int:
        self.policy.require(caller, Action.CLAIM_PLATFORM_FEE)
        amount, self.platform_fee = self.platform_fee, 0
        self.pay(to, amount)
        logger.info(f"Platform fee claimed: {fmt_amount(amount, self.token.decimals)} -> {to}")
        return amount

    def claim_bot_rewards(self, bot: str) -> int:
        if not self.policy.has_role(bot, Role.BOT):
            raise AuthorizationError("NOT_BOT", bot)
        amount = self._bot_rewards.pop(bot, 0)
        self.pay(bot, amount)
        logger.info(f"Bot rewards claimed: {bot} {fmt_amount(amount, self.token.decimals)}")
        return amount

    def escrowed_total(self) -> int:
        """Collateral the ledger owes: trades, limits and pending opens."""
        pending = sum(r.request.collateral for r in self.pending_orders(PendingKind.MARKET_OPEN))
        return (sum(t.collateral for t in self._trades.values())
                + sum(o.collateral for o in self._limits.values())
                + pending)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "open_trades": len(self._trades),
            "open_limits": len(self._limits),
            "pending": {kind.value: len(self.pending_orders(kind)) for kind in PendingKind},
            "open_interest": {f"{p}:{'long' if b else 'short'}": v for (p, b), v in self._oi.items()},
            "platform_fee": self.platform_fee,
            "bot_rewards": dict(self._bot_rewards),
            "upnl_last_id": self.upnl_last_id,
        }
