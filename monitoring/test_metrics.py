"""Tests for the Prometheus settlement exporter (no HTTP server)."""
import pytest

from conftest import ALICE, ETH
from core.fixed_point import to_amount, to_price
from monitoring.metrics_exporter import SettlementMetricsExporter


@pytest.fixture
def exporter(world):
    return SettlementMetricsExporter(world.bus, world.ledger, world.vault)


def sample(exporter, name, **labels):
    return exporter.registry.get_sample_value(name, labels or None)


def test_open_and_profitable_close_are_counted(world, exporter):
    world.open_filled()
    assert sample(exporter, "settlement_orders_total", outcome="executed") == 1
    assert sample(exporter, "settlement_open_interest", pair=str(ETH), side="long") == to_amount(9_920)
    assert sample(exporter, "settlement_open_trades") == 1

    world.engine.close_trade_market(ALICE, ETH, 0)
    assert sample(exporter, "settlement_pending_orders") == 1
    world.answer(to_price(2100))

    assert sample(exporter, "settlement_orders_total", outcome="executed") == 2
    assert sample(exporter, "settlement_vault_outflow_total") == to_amount(496)
    assert sample(exporter, "settlement_open_interest", pair=str(ETH), side="long") == 0
    assert sample(exporter, "settlement_platform_fee") == world.engine.platform_fee
    assert sample(exporter, "settlement_vault_total_assets") == world.vault.total_assets
    assert sample(exporter, "settlement_events_total", event="MarketExecuted") == 2


def test_cancellations_are_counted_by_reason(world, exporter):
    world.open_market()
    world.answer(to_price(2030))
    assert sample(exporter, "settlement_orders_total", outcome="canceled") == 1
    assert sample(exporter, "settlement_cancel_reasons_total", reason="SLIPPAGE") == 1
    assert sample(exporter, "settlement_open_trades") == 0


def test_render_exposes_text_format(world, exporter):
    world.open_filled()
    body = exporter.render().decode()
    assert 'settlement_orders_total{outcome="executed"} 1.0' in body
    assert "settlement_vault_total_supply" in body
    assert exporter.get_statistics() == {"running": False, "port": exporter.port}


def test_private_registries_do_not_collide(world):
    first = SettlementMetricsExporter(world.bus, world.ledger, world.vault)
    second = SettlementMetricsExporter(world.bus, world.ledger, world.vault)
    world.open_filled()
    assert sample(first, "settlement_orders_total", outcome="executed") == 1
    assert sample(second, "settlement_orders_total", outcome="executed") == 1
