"""
Order Execution Engine
Drives the order -> trade state machine:

  market:  Intake -> PriceRequested -> {Executed | Canceled}
  limit:   Placed -> Triggered -> PriceRequested -> {Executed | Canceled}

Intake and settlement live in mixins (order_manager.py, position_lifecycle.py);
this module wires collaborators and exposes read paths.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from config import TradingConfig
from core.access_control import AccessPolicy, Action
from core.events import EventBus
from execution.models import LimitOrder, Trade
from execution.order_manager import OrderManagerMixin
from execution.position_ledger import PositionLedger
from execution.position_lifecycle import PositionLifecycleMixin
from execution.risk_engine import RiskParameterStore
from interfaces import IControlSwitch, IPriceGateway, IReferralLedger, IVault

ENGINE_IDENTITY = "trading_callbacks"


class OrderExecutionEngine(OrderManagerMixin, PositionLifecycleMixin):
    """
    Execution engine that manages the order lifecycle.

    Workflow:
    1. Validate intent (leverage, TP/SL, notional, exposure)
    2. Escrow collateral
    3. Request a price from the oracle gateway
    4. On fulfillment: execute or cancel-and-refund
    5. Closes pay the trader and settle the difference with the vault
    """

    def __init__(
            self,
            params: RiskParameterStore,
            ledger: PositionLedger,
            gateway: IPriceGateway,
            vault: IVault,
            policy: AccessPolicy,
            control: IControlSwitch,
            clock: Callable[[], int],
            bus: Optional[EventBus] = None,
            cfg: Optional[TradingConfig] = None,
            referrals: Optional[IReferralLedger] = None,
            identity: str = ENGINE_IDENTITY,
    ):
        cfg = cfg or TradingConfig()
        self.params = params
        self.ledger = ledger
        self.gateway = gateway
        self.vault = vault
        self.policy = policy
        self.control = control
        self.clock = clock
        self.bus = bus or ledger.bus
        self.referrals = referrals
        self.identity = identity

        self.max_pos_collateral = cfg.max_pos_collateral
        self.market_orders_timeout = cfg.market_orders_timeout_sec
        self.limit_orders_timelock = cfg.limit_orders_timelock_sec

        logger.info(
            f"Initialized Order Execution Engine: "
            f"timeout={self.market_orders_timeout}s timelock={self.limit_orders_timelock}s"
        )

    # ── Governance ───────────────────────────────────────────────────────

    def set_paused(self, caller: str, paused: bool) -> None:
        self.policy.require(caller, Action.SET_TRADING_STATE)
        self.control.set_paused(paused)

    def set_done(self, caller: str, done: bool) -> None:
        self.policy.require(caller, Action.SET_TRADING_STATE)
        self.control.set_done(done)

    # ── Read paths ───────────────────────────────────────────────────────

    def open_trades(self, trader: str) -> List[Trade]:
        return self.ledger.open_trades(trader)

    def open_limit_orders(self, trader: str) -> List[LimitOrder]:
        return self.ledger.open_limit_orders(trader)

    def open_interest(self, pair_index: int, buy: bool) -> int:
        return self.ledger.open_interest(pair_index, buy)

    @property
    def platform_fee(self) -> int:
        return self.ledger.platform_fee

    def unrealized_pnl(self, prices: Dict[int, int]) -> int:
        """
        Aggregate trader uPnL at the given prices (what the vault feeder signs).

        Positive means traders are up, i.e. a vault liability.
        """
        total = 0
        for trade in self.ledger.open_trades():
            if trade.pair_index not in prices:
                continue
            outcome = self.close_outcome(trade, prices[trade.pair_index])
            total -= outcome.vault_flow
        return total

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "paused": self.control.is_paused(),
            "done": self.control.is_done(),
            "ledger": self.ledger.get_statistics(),
            "risk": self.params.get_risk_summary(),
        }
