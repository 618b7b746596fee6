"""
Service Container — wires and owns all shared service instances.

SRP:  This module's only job is construction + lifecycle of shared services.
DIP:  Consumers receive collaborators through constructors, never globals.
OCP:  Adding a new service = one new property; existing code untouched.

Usage:
    container = ServiceContainer(cfg)       # build once at startup
    engine    = container.engine
    vault     = container.vault

    # Tests swap pieces before first access:
    container.override(clock=fake_clock, control=LocalControlSwitch())
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from loguru import logger

from config import EngineConfig, get_config
from core.access_control import AccessPolicy, Role
from core.control_switch import LocalControlSwitch, RedisControlSwitch, get_redis_client
from core.log_setup import configure_logging
from core.events import EventBus
from core.token_ledger import TokenLedger
from interfaces import (
    IAdlRanking, IControlSwitch, IMetricsExporter, IPriceGateway,
    IReferenceFeed, IReferralLedger, IUpnlVerifier, IVault,
)


class ServiceContainer:
    """
    Owns and lazily constructs all shared service instances.

    Construction order follows the dependency graph:
    clock/bus/policy/token -> params -> ledger -> gateway, vault -> engine -> adl
    """

    def __init__(self, cfg: Optional[EngineConfig] = None):
        self.cfg = cfg or get_config()
        self._clock: Optional[Callable[[], int]] = None
        self._bus: Optional[EventBus] = None
        self._policy: Optional[AccessPolicy] = None
        self._token: Optional[TokenLedger] = None
        self._params = None
        self._ledger = None
        self._gateway: Optional[IPriceGateway] = None
        self._reference_feed: Optional[IReferenceFeed] = None
        self._verifier: Optional[IUpnlVerifier] = None
        self._vault: Optional[IVault] = None
        self._control: Optional[IControlSwitch] = None
        self._referrals: Optional[IReferralLedger] = None
        self._engine = None
        self._adl_ranking: Optional[IAdlRanking] = None
        self._adl = None
        self._metrics_exporter: Optional[IMetricsExporter] = None
        logger.info("ServiceContainer initialised")

    # ── Primitives ───────────────────────────────────────────────────────

    @property
    def clock(self) -> Callable[[], int]:
        if self._clock is None:
            self._clock = lambda: int(time.time())
        return self._clock

    @property
    def bus(self) -> EventBus:
        if self._bus is None:
            self._bus = EventBus(keep_history=False)
        return self._bus

    @property
    def policy(self) -> AccessPolicy:
        if self._policy is None:
            self._policy = AccessPolicy(self.cfg.gov_address)
        return self._policy

    @property
    def token(self) -> TokenLedger:
        if self._token is None:
            self._token = TokenLedger(decimals=self.cfg.trading.collateral_decimals)
        return self._token

    @property
    def control(self) -> IControlSwitch:
        if self._control is None:
            client = get_redis_client(self.cfg.redis) if self.cfg.redis.enabled else None
            if client is not None:
                self._control = RedisControlSwitch(client, self.cfg.redis.prefix)
            else:
                self._control = LocalControlSwitch()
        return self._control

    # ── Engine components ────────────────────────────────────────────────

    @property
    def params(self):
        if self._params is None:
            from execution.risk_engine import RiskParameterStore
            self._params = RiskParameterStore(self.policy, self.cfg.risk, self.bus)
        return self._params

    @property
    def ledger(self):
        if self._ledger is None:
            from execution.position_ledger import PositionLedger
            self._ledger = PositionLedger(self.params, self.token, self.policy, self.clock,
                                          self.bus, self.cfg.trading)
        return self._ledger

    @property
    def reference_feed(self) -> Optional[IReferenceFeed]:
        return self._reference_feed

    @property
    def gateway(self) -> IPriceGateway:
        if self._gateway is None:
            from oracle.price_gateway import PriceOracleGateway
            self._gateway = PriceOracleGateway(self.params, self.policy, self.clock, self.bus,
                                               self.cfg.oracle, self.reference_feed)
        return self._gateway

    @property
    def verifier(self) -> IUpnlVerifier:
        if self._verifier is None:
            from vault.upnl_verifier import HmacUpnlVerifier
            self._verifier = HmacUpnlVerifier(self.cfg.vault.upnl_signing_key)
        return self._verifier

    @property
    def vault(self) -> IVault:
        if self._vault is None:
            from vault.liquidity_vault import LiquidityVault
            self._vault = LiquidityVault(self.token, self.policy, self.clock, self.verifier,
                                         self.bus, self.cfg.vault)
        return self._vault

    @property
    def referrals(self) -> Optional[IReferralLedger]:
        return self._referrals

    @property
    def engine(self):
        if self._engine is None:
            from execution.execution_engine import OrderExecutionEngine
            self._engine = OrderExecutionEngine(
                self.params, self.ledger, self.gateway, self.vault, self.policy,
                self.control, self.clock, self.bus, self.cfg.trading, self.referrals,
            )
            self.policy.grant(self.cfg.gov_address, Role.PNL_HANDLER, [self._engine.identity])
        return self._engine

    @property
    def adl(self):
        if self._adl is None:
            from execution.adl_engine import AutoDeleverageEngine
            self._adl = AutoDeleverageEngine(self.engine, self._adl_ranking)
        return self._adl

    @property
    def metrics_exporter(self) -> Optional[IMetricsExporter]:
        if self._metrics_exporter is None and self.cfg.metrics.enabled:
            from monitoring.metrics_exporter import SettlementMetricsExporter
            self._metrics_exporter = SettlementMetricsExporter(self.bus, self.ledger, self.vault,
                                                               self.cfg.metrics)
        return self._metrics_exporter

    # ── Inject overrides (for testing / simulation) ──────────────────────

    def override(self, **kwargs):
        """
        Override any service with a mock/stub.

        Example:
            container.override(clock=FakeClock(), reference_feed=StaticReferenceFeed({}))
        """
        for key, value in kwargs.items():
            attr = f"_{key}"
            if hasattr(self, attr):
                setattr(self, attr, value)
                logger.debug(f"ServiceContainer: overrode {key}")
            else:
                raise KeyError(f"Unknown service: {key}")


# ── Module-level singleton ───────────────────────────────────────────────────

_container: Optional[ServiceContainer] = None


def get_container(cfg: Optional[EngineConfig] = None) -> ServiceContainer:
    """Get or create the global service container."""
    global _container
    if _container is None:
        cfg = cfg or get_config()
        configure_logging(cfg.logging.level, cfg.logging.file or None)
        _container = ServiceContainer(cfg)
    return _container
