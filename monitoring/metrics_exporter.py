"""
Settlement Metrics Exporter
Exports settlement-engine metrics in Prometheus format for Grafana.

Counters follow the event bus; gauges (open interest, vault NAV inputs,
accrued platform fee) are refreshed from the ledger and vault after every
event and on render.
"""
from typing import Any, Dict, Optional

from loguru import logger
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
    start_http_server,
)

from config import MetricsConfig
from core.events import Event, EventBus

# Event name -> (outcome label) for the orders counter
_EXECUTED = {"MarketExecuted", "LimitExecuted", "AdlClosingExecuted"}
_CANCELED = {"MarketOpenCanceled", "MarketCloseCanceled", "BotOrderCanceled",
             "SlCanceled", "AdlSkipped", "AdlOrderCanceled"}
_TIMEOUTS = {"MarketOpenTimeoutExecuted", "MarketCloseTimeoutExecuted"}


class SettlementMetricsExporter:
    """
    Prometheus exporter for one engine instance.

    Uses a private CollectorRegistry so several engines (or test runs) can
    coexist in one process.
    """

    def __init__(self, bus: EventBus, ledger=None, vault=None,
                 cfg: Optional[MetricsConfig] = None):
        cfg = cfg or MetricsConfig()
        self.port = cfg.port
        self.bus = bus
        self.ledger = ledger
        self.vault = vault
        self.registry = CollectorRegistry()
        self._setup_metrics()
        self._is_running = False
        bus.subscribe("*", self.on_event)
        logger.info(f"Settlement Metrics Exporter (port {self.port})")

    def _setup_metrics(self) -> None:
        self.events_total = Counter(
            'settlement_events_total', 'Engine events by name',
            ['event'], registry=self.registry)
        self.orders_total = Counter(
            'settlement_orders_total', 'Settled orders by outcome',
            ['outcome'], registry=self.registry)
        self.cancel_reasons_total = Counter(
            'settlement_cancel_reasons_total', 'Canceled orders by reason',
            ['reason'], registry=self.registry)
        self.fees_collected = Counter(
            'settlement_fees_collected', 'Open/close fees charged (collateral units)',
            registry=self.registry)
        self.vault_inflow = Counter(
            'settlement_vault_inflow', 'Trader losses received by the vault',
            registry=self.registry)
        self.vault_outflow = Counter(
            'settlement_vault_outflow', 'Trader profits paid by the vault',
            registry=self.registry)

        gauge_defs = [
            ('open_trades', 'settlement_open_trades', 'Number of open trades'),
            ('pending_orders', 'settlement_pending_orders', 'Orders awaiting a price'),
            ('platform_fee', 'settlement_platform_fee', 'Unclaimed platform fee'),
            ('vault_assets', 'settlement_vault_total_assets', 'Vault total assets'),
            ('vault_supply', 'settlement_vault_total_supply', 'Vault share supply'),
        ]
        for attr, name, desc in gauge_defs:
            setattr(self, attr, Gauge(name, desc, registry=self.registry))
        self.open_interest = Gauge(
            'settlement_open_interest', 'Open interest per pair and side',
            ['pair', 'side'], registry=self.registry)

    # ── Event feed ───────────────────────────────────────────────────────

    def on_event(self, event: Event) -> None:
        self.events_total.labels(event=event.name).inc()
        if event.name in _EXECUTED:
            self.orders_total.labels(outcome="executed").inc()
            fee = getattr(event, "fee", None)
            if fee is None:
                fee = getattr(event, "closing_fee", 0)
            self.fees_collected.inc(max(fee, 0))
            flow = getattr(event, "vault_flow", 0)
            if flow > 0:
                self.vault_inflow.inc(flow)
            elif flow < 0:
                self.vault_outflow.inc(-flow)
        elif event.name in _CANCELED:
            self.orders_total.labels(outcome="canceled").inc()
            self.cancel_reasons_total.labels(reason=event.reason).inc()
        elif event.name in _TIMEOUTS:
            self.orders_total.labels(outcome="timeout").inc()
        self.update_metrics()

    # ── Gauges ───────────────────────────────────────────────────────────

    def update_metrics(self) -> None:
        """Refresh gauges from ledger and vault state."""
        if self.ledger is not None:
            stats = self.ledger.get_statistics()
            self.open_trades.set(stats["open_trades"])
            self.pending_orders.set(sum(stats["pending"].values()))
            self.platform_fee.set(stats["platform_fee"])
            for pair_index in range(self.ledger.params.pairs_count):
                long_oi, short_oi = self.ledger.pair_open_interest(pair_index)
                self.open_interest.labels(pair=str(pair_index), side="long").set(long_oi)
                self.open_interest.labels(pair=str(pair_index), side="short").set(short_oi)
        if self.vault is not None:
            self.vault_assets.set(self.vault.total_assets)
            self.vault_supply.set(self.vault.total_supply)

    def render(self) -> bytes:
        """Prometheus text exposition of the current state."""
        self.update_metrics()
        return generate_latest(self.registry)

    def start(self) -> None:
        """Serve /metrics on the configured port (daemon thread)."""
        if self._is_running:
            logger.warning("Metrics exporter already running")
            return
        self.update_metrics()
        start_http_server(self.port, registry=self.registry)
        self._is_running = True
        logger.info(f"✓ Metrics server started on http://localhost:{self.port}/metrics")

    def get_statistics(self) -> Dict[str, Any]:
        return {"running": self.is_running, "port": self.port}

    @property
    def is_running(self) -> bool:
        return self._is_running
