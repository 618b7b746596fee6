"""
Shared fixtures: a fully wired settlement engine on a fake clock.

Price nodes are fakes that only record deliveries; tests answer explicitly,
which keeps every settlement step visible in the test body.
"""
from typing import List, Optional

import pytest

from config import OracleConfig, RiskBoundsConfig, TradingConfig, VaultConfig
from core.access_control import AccessPolicy, Role
from core.control_switch import LocalControlSwitch
from core.events import EventBus
from core.fixed_point import to_amount, to_percent, to_price
from core.token_ledger import TRADING_STORAGE, VAULT_ACCOUNT, TokenLedger
from execution.adl_engine import AutoDeleverageEngine
from execution.execution_engine import OrderExecutionEngine
from execution.models import OrderType, TradeRequest
from execution.position_ledger import PositionLedger
from execution.risk_engine import FeeSchedule, FeedDescriptor, Group, Pair, RiskParameterStore
from oracle.price_gateway import PriceOracleGateway
from vault.liquidity_vault import LiquidityVault
from vault.upnl_verifier import HmacUpnlVerifier

GOV = "gov"
BOT = "bot"
FEEDER = "feeder"
LP = "lp"
ALICE = "alice"
BOB = "bob"
ETH = 0


class FakeClock:
    def __init__(self, start: int = 1_700_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


class FakeNode:
    """Price node that records requests; tests call answer()."""

    def __init__(self, node_id: str, gateway):
        self.node_id = node_id
        self.gateway = gateway
        self.requests: List = []

    def deliver(self, request) -> None:
        self.requests.append(request)

    def answer(self, *prices: int, request_id: Optional[int] = None) -> bool:
        if request_id is None:
            request_id = self.requests[-1].request_id
        return self.gateway.submit_answer(request_id, self.node_id, list(prices))


class FakeReferrals:
    account = "referral_storage"

    def __init__(self):
        self.referrer_of = {}
        self.credited = {}

    def register_referrer(self, trader: str, code: str) -> None:
        self.referrer_of.setdefault(trader, code)

    def has_referrer(self, trader: str) -> bool:
        return trader in self.referrer_of

    def credit(self, trader: str, amount: int) -> None:
        self.credited[trader] = self.credited.get(trader, 0) + amount


class SettlementWorld:
    """
    One ETH/USD pair (2x-100x, 0.08 % open/close fee, 0.01 % bot fee),
    a vault seeded with 100k by the LP, and two funded traders.
    """

    def __init__(self, vault_seed: int = to_amount(100_000), min_answers: int = 1):
        self.clock = FakeClock()
        self.bus = EventBus(keep_history=True)
        self.policy = AccessPolicy(GOV)
        self.token = TokenLedger()
        self.referrals = FakeReferrals()
        self.control = LocalControlSwitch()

        self.params = RiskParameterStore(self.policy, RiskBoundsConfig(), self.bus)
        self.ledger = PositionLedger(self.params, self.token, self.policy, self.clock,
                                     self.bus, TradingConfig())
        self.gateway = PriceOracleGateway(self.params, self.policy, self.clock, self.bus,
                                          OracleConfig(min_answers=min_answers))
        self.verifier = HmacUpnlVerifier("test-signing-key")
        self.vault = LiquidityVault(self.token, self.policy, self.clock, self.verifier,
                                    self.bus, VaultConfig())
        self.engine = OrderExecutionEngine(
            self.params, self.ledger, self.gateway, self.vault, self.policy,
            self.control, self.clock, self.bus, TradingConfig(), self.referrals,
        )
        self.adl = AutoDeleverageEngine(self.engine)

        self.policy.grant(GOV, Role.PNL_HANDLER, [self.engine.identity])
        self.policy.grant(GOV, Role.BOT, [BOT])
        self.policy.grant(GOV, Role.PNL_FEEDER, [FEEDER])

        self.params.add_group(GOV, Group("crypto", 2, 100, 100))
        self.params.add_fee(GOV, FeeSchedule(
            name="crypto", open_fee_p=to_percent("0.08"), close_fee_p=to_percent("0.08"),
            oracle_fee_p=0, bot_fee_p=to_percent("0.01"), referral_fee_p=to_percent("0.02"),
            min_lev_pos=to_amount(100),
        ))
        self.params.add_pair(GOV, Pair("ETH", "USD", FeedDescriptor(None), 0, 0, 0))
        self.params.set_max_open_interest(GOV, ETH, to_amount(1_000_000))

        self.nodes = [FakeNode(f"node-{i}", self.gateway) for i in range(min_answers)]
        for node in self.nodes:
            self.gateway.register_node(GOV, node)

        if vault_seed:
            self.seed_vault(vault_seed)
        for trader in (ALICE, BOB):
            self.token.mint(trader, to_amount(10_000))
            self.token.approve(trader, TRADING_STORAGE, 10 ** 18)

    # ── Helpers ──────────────────────────────────────────────────────────

    def seed_vault(self, amount: int) -> None:
        self.token.mint(LP, amount)
        self.token.approve(LP, VAULT_ACCOUNT, amount)
        request_id = self.vault.apply_deposit(LP, amount)
        self.vault.run_deposit(FEEDER, request_id, 0, self.verifier.sign(request_id, 0))

    def answer(self, price: int, request_id: Optional[int] = None) -> None:
        for node in self.nodes:
            node.answer(price, request_id=request_id)

    def open_market(self, trader: str = ALICE, collateral: int = to_amount(1000),
                    buy: bool = True, leverage: int = 10, price: int = to_price(2000),
                    tp: int = 0, sl: int = 0, slippage_p: int = to_percent(1)) -> int:
        order = TradeRequest(trader, ETH, collateral, price, buy, leverage, tp, sl)
        return self.engine.open_trade(trader, order, OrderType.MARKET, slippage_p)

    def open_filled(self, trader: str = ALICE, price: int = to_price(2000), **kwargs):
        """Open a market order and settle it at ``price``; returns the trade."""
        self.open_market(trader, price=price, **kwargs)
        self.answer(price)
        return self.ledger.open_trades(trader)[-1]

    def events(self, name: str):
        return self.bus.named(name)


@pytest.fixture
def world() -> SettlementWorld:
    return SettlementWorld()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_world():
    return SettlementWorld
