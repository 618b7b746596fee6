"""
Domain records for positions and price-dependent pending orders.

All prices and percents are PRECISION-scaled ints, collateral amounts are in
collateral-token units.  Records are plain mutable dataclasses; only the
PositionLedger mutates them.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple


class OrderType(Enum):
    MARKET = "market"
    LIMIT = "limit"


class BotOrderKind(Enum):
    LIMIT_OPEN = "limit_open"
    TP = "tp"
    SL = "sl"
    LIQ = "liq"


class AdlType(Enum):
    PROFIT = 0
    LOSS = 1


class PendingKind(Enum):
    MARKET_OPEN = "market_open"
    MARKET_CLOSE = "market_close"
    BOT = "bot"
    SL_UPDATE = "sl_update"
    ADL = "adl"


# A position is identified by (trader, pair_index, index).
PositionKey = Tuple[str, int, int]


@dataclass
class TradeRequest:
    """Trader intent, collateral quoted before the open fee."""
    trader: str
    pair_index: int
    collateral: int
    wanted_price: int
    buy: bool
    leverage: int
    tp: int = 0
    sl: int = 0


@dataclass
class Trade:
    """An open position.  ``collateral`` is collateral after the open fee."""
    trader: str
    pair_index: int
    index: int
    collateral: int
    open_price: int
    buy: bool
    leverage: int
    tp: int = 0
    sl: int = 0

    @property
    def key(self) -> PositionKey:
        return self.trader, self.pair_index, self.index

    @property
    def notional(self) -> int:
        return self.collateral * self.leverage


@dataclass
class TradeInfo:
    """Accrual snapshots and bookkeeping captured when the trade was stored."""
    trade_id: int
    opened_at: int
    open_notional: int
    rollover_acc: int
    funding_acc: int
    tp_updated_at: int
    sl_updated_at: int
    being_market_closed: bool = False


@dataclass
class LimitOrder:
    trader: str
    pair_index: int
    index: int
    collateral: int
    wanted_price: int
    buy: bool
    leverage: int
    tp: int
    sl: int
    slippage_p: int
    placed_at: int
    updated_at: int

    @property
    def key(self) -> PositionKey:
        return self.trader, self.pair_index, self.index

    def to_request(self) -> TradeRequest:
        return TradeRequest(
            trader=self.trader, pair_index=self.pair_index,
            collateral=self.collateral, wanted_price=self.wanted_price,
            buy=self.buy, leverage=self.leverage, tp=self.tp, sl=self.sl,
        )


@dataclass
class PendingMarketOrder:
    order_id: int
    open: bool
    created_at: int
    slippage_p: int = 0
    request: Optional[TradeRequest] = None   # opens
    position: Optional[PositionKey] = None   # closes

    @property
    def trader(self) -> str:
        return self.request.trader if self.open else self.position[0]

    @property
    def pair_index(self) -> int:
        return self.request.pair_index if self.open else self.position[1]


@dataclass
class PendingBotOrder:
    order_id: int
    kind: BotOrderKind
    bot: str
    trader: str
    pair_index: int
    index: int
    created_at: int

    @property
    def key(self) -> PositionKey:
        return self.trader, self.pair_index, self.index


@dataclass
class PendingSlUpdate:
    order_id: int
    trader: str
    pair_index: int
    index: int
    new_sl: int
    created_at: int
    trade_id: int = 0      # position the stop was validated against


@dataclass
class AdlEntry:
    adl_type: AdlType
    trader: str
    pair_index: int
    index: int

    @property
    def key(self) -> PositionKey:
        return self.trader, self.pair_index, self.index


@dataclass
class PendingAdlOrder:
    order_id: int
    bot: str
    entries: List[AdlEntry]
    pair_indices: Tuple[int, ...]
    created_at: int


@dataclass
class CloseOutcome:
    """
    Breakdown of one close.

    Conservation: collateral == sent_to_trader + closing_fee + bot_fee + vault_flow
    (vault_flow < 0 means the vault paid the trader's profit).
    """
    price: int
    percent_profit: int
    collateral: int
    rollover_fee: int
    funding_fee: int
    closing_fee: int
    bot_fee: int
    sent_to_trader: int
    vault_flow: int
    liquidated: bool = False

    @property
    def realized_pnl(self) -> int:
        return -self.vault_flow


@dataclass
class SettlementResult:
    """What a single settlement callback did, for callers that poll."""
    order_id: int
    kind: PendingKind
    executed: bool
    reason: Optional[str] = None
    outcomes: List[CloseOutcome] = field(default_factory=list)
