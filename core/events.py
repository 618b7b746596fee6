"""
Completion events and the in-process EventBus.

Bots and indexers consume these instead of polling state.  Every public state
transition publishes exactly one event describing what happened, including a
full breakdown for executions (fees, PnL, amount sent, vault flow).

A subscriber that raises is logged and skipped; it never rolls back the
transition that produced the event.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Any, Callable, ClassVar, DefaultDict, Dict, List, Optional, Tuple

from loguru import logger


@dataclass(frozen=True)
class Event:
    name: ClassVar[str] = "Event"

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.name, **asdict(self)}


# ── Oracle ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PriceRequested(Event):
    name: ClassVar[str] = "PriceRequested"
    request_id: int
    pair_index: int


@dataclass(frozen=True)
class BatchPriceRequested(Event):
    name: ClassVar[str] = "BatchPriceRequested"
    request_id: int
    pair_indices: Tuple[int, ...]


@dataclass(frozen=True)
class PriceReceived(Event):
    name: ClassVar[str] = "PriceReceived"
    request_id: int
    pair_index: int
    price: int
    answers: int
    error: Optional[str] = None


@dataclass(frozen=True)
class BatchPriceReceived(Event):
    name: ClassVar[str] = "BatchPriceReceived"
    request_id: int
    prices: Tuple[int, ...]
    answers: int
    error: Optional[str] = None


@dataclass(frozen=True)
class PriceRequestCanceled(Event):
    name: ClassVar[str] = "PriceRequestCanceled"
    request_id: int


# ── Market orders ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MarketOrderInitiated(Event):
    name: ClassVar[str] = "MarketOrderInitiated"
    order_id: int
    trader: str
    pair_index: int
    open: bool


@dataclass(frozen=True)
class MarketExecuted(Event):
    name: ClassVar[str] = "MarketExecuted"
    order_id: int
    trader: str
    pair_index: int
    index: int
    open: bool
    buy: bool
    leverage: int
    price: int
    price_impact_p: int
    position_size: int
    percent_profit: int
    sent_to_trader: int
    fee: int
    rollover_fee: int = 0
    funding_fee: int = 0
    vault_flow: int = 0


@dataclass(frozen=True)
class MarketOpenCanceled(Event):
    name: ClassVar[str] = "MarketOpenCanceled"
    order_id: int
    trader: str
    pair_index: int
    reason: str


@dataclass(frozen=True)
class MarketCloseCanceled(Event):
    name: ClassVar[str] = "MarketCloseCanceled"
    order_id: int
    trader: str
    pair_index: int
    index: int
    reason: str


@dataclass(frozen=True)
class MarketOpenTimeoutExecuted(Event):
    name: ClassVar[str] = "MarketOpenTimeoutExecuted"
    order_id: int
    trader: str
    pair_index: int
    refunded: int


@dataclass(frozen=True)
class MarketCloseTimeoutExecuted(Event):
    name: ClassVar[str] = "MarketCloseTimeoutExecuted"
    order_id: int
    trader: str
    pair_index: int
    index: int


# ── Limit / bot orders ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class OpenLimitPlaced(Event):
    name: ClassVar[str] = "OpenLimitPlaced"
    trader: str
    pair_index: int
    index: int


@dataclass(frozen=True)
class OpenLimitUpdated(Event):
    name: ClassVar[str] = "OpenLimitUpdated"
    trader: str
    pair_index: int
    index: int
    price: int
    tp: int
    sl: int


@dataclass(frozen=True)
class OpenLimitCanceled(Event):
    name: ClassVar[str] = "OpenLimitCanceled"
    trader: str
    pair_index: int
    index: int


@dataclass(frozen=True)
class BotOrderInitiated(Event):
    name: ClassVar[str] = "BotOrderInitiated"
    order_id: int
    bot: str
    kind: str
    trader: str
    pair_index: int
    index: int


@dataclass(frozen=True)
class LimitExecuted(Event):
    name: ClassVar[str] = "LimitExecuted"
    order_id: int
    bot: str
    kind: str
    trader: str
    pair_index: int
    index: int
    price: int
    price_impact_p: int
    position_size: int
    percent_profit: int
    sent_to_trader: int
    fee: int
    bot_fee: int
    rollover_fee: int = 0
    funding_fee: int = 0
    vault_flow: int = 0


@dataclass(frozen=True)
class BotOrderCanceled(Event):
    name: ClassVar[str] = "BotOrderCanceled"
    order_id: int
    bot: str
    kind: str
    trader: str
    pair_index: int
    index: int
    reason: str


# ── TP / SL ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TpUpdated(Event):
    name: ClassVar[str] = "TpUpdated"
    trader: str
    pair_index: int
    index: int
    new_tp: int


@dataclass(frozen=True)
class SlUpdateInitiated(Event):
    name: ClassVar[str] = "SlUpdateInitiated"
    order_id: int
    trader: str
    pair_index: int
    index: int
    new_sl: int


@dataclass(frozen=True)
class SlUpdated(Event):
    name: ClassVar[str] = "SlUpdated"
    order_id: Optional[int]
    trader: str
    pair_index: int
    index: int
    new_sl: int


@dataclass(frozen=True)
class SlCanceled(Event):
    name: ClassVar[str] = "SlCanceled"
    order_id: int
    trader: str
    pair_index: int
    index: int
    reason: str


# ── ADL ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AdlOrderInitiated(Event):
    name: ClassVar[str] = "AdlOrderInitiated"
    order_id: int
    bot: str
    positions: int
    pair_indices: Tuple[int, ...]


@dataclass(frozen=True)
class AdlClosingExecuted(Event):
    name: ClassVar[str] = "AdlClosingExecuted"
    order_id: int
    adl_type: str
    trader: str
    pair_index: int
    index: int
    price: int
    percent_profit: int
    realized_pnl: int
    sent_to_trader: int
    closing_fee: int
    vault_flow: int


@dataclass(frozen=True)
class AdlSkipped(Event):
    name: ClassVar[str] = "AdlSkipped"
    order_id: int
    trader: str
    pair_index: int
    index: int
    reason: str


@dataclass(frozen=True)
class AdlUsdtFlow(Event):
    name: ClassVar[str] = "AdlUsdtFlow"
    order_id: int
    closed: int
    total_vault_flow: int


@dataclass(frozen=True)
class AdlOrderCanceled(Event):
    name: ClassVar[str] = "AdlOrderCanceled"
    order_id: int
    reason: str


# ── Ledger / parameters ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class UpnlLastIdUpdated(Event):
    name: ClassVar[str] = "UpnlLastIdUpdated"
    upnl_last_id: int


@dataclass(frozen=True)
class PairUpdated(Event):
    name: ClassVar[str] = "PairUpdated"
    pair_index: int
    added: bool


@dataclass(frozen=True)
class SlTpParamsUpdated(Event):
    name: ClassVar[str] = "SlTpParamsUpdated"
    max_sl_p: int
    max_gain_p: int


# ── Vault ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class VaultApplyDeposit(Event):
    name: ClassVar[str] = "VaultApplyDeposit"
    request_id: int
    applicant: str
    receiver: str
    amount: int


@dataclass(frozen=True)
class VaultRunDeposit(Event):
    name: ClassVar[str] = "VaultRunDeposit"
    request_id: int
    applicant: str
    receiver: str
    amount: int
    shares: int
    upnl: int
    lock_id: int


@dataclass(frozen=True)
class VaultApplyWithdraw(Event):
    name: ClassVar[str] = "VaultApplyWithdraw"
    request_id: int
    applicant: str
    receiver: str
    shares: int


@dataclass(frozen=True)
class VaultRunWithdraw(Event):
    name: ClassVar[str] = "VaultRunWithdraw"
    request_id: int
    applicant: str
    receiver: str
    shares: int
    amount: int
    upnl: int


@dataclass(frozen=True)
class VaultApplyCanceled(Event):
    name: ClassVar[str] = "VaultApplyCanceled"
    request_id: int
    applicant: str
    deposit: bool


@dataclass(frozen=True)
class VaultTransfer(Event):
    name: ClassVar[str] = "VaultTransfer"
    sender: str
    recipient: str
    shares: int


@dataclass(frozen=True)
class VaultAssetsReceived(Event):
    name: ClassVar[str] = "VaultAssetsReceived"
    payer: str
    amount: int


@dataclass(frozen=True)
class VaultAssetsSent(Event):
    name: ClassVar[str] = "VaultAssetsSent"
    receiver: str
    amount: int


# ── Bus ──────────────────────────────────────────────────────────────────────

Handler = Callable[[Event], None]


class EventBus:
    """
    Synchronous publish/subscribe.

    Subscribe to a single event name, or to "*" for everything.  With
    ``keep_history`` every published event is also retained for replay and
    assertions; long-running engines leave it off.
    """

    def __init__(self, keep_history: bool = False):
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)
        self._history: List[Event] = []
        self._keep_history = keep_history

    def subscribe(self, name: str, handler: Handler) -> None:
        self._handlers[name].append(handler)

    def unsubscribe(self, name: str, handler: Handler) -> None:
        if handler in self._handlers.get(name, []):
            self._handlers[name].remove(handler)

    def publish(self, event: Event) -> None:
        if self._keep_history:
            self._history.append(event)
        for handler in self._handlers.get(event.name, []) + self._handlers.get("*", []):
            try:
                handler(event)
            except Exception as e:
                logger.warning(f"Event handler for '{event.name}' failed: {e}")

    @property
    def history(self) -> List[Event]:
        return list(self._history)

    def named(self, name: str) -> List[Event]:
        return [e for e in self._history if e.name == name]

    def last(self, name: str) -> Optional[Event]:
        for event in reversed(self._history):
            if event.name == name:
                return event
        return None

    def clear(self) -> None:
        self._history.clear()
