"""Tests for ServiceContainer wiring."""
from dataclasses import replace

import pytest

from config import EngineConfig, MetricsConfig, RedisConfig, VaultConfig
from conftest import FakeClock
from core.access_control import Role
from core.control_switch import LocalControlSwitch


@pytest.fixture
def cfg():
    return replace(
        EngineConfig(),
        vault=VaultConfig(upnl_signing_key="container-key"),
        redis=RedisConfig(enabled=False),
        metrics=MetricsConfig(enabled=False),
        gov_address="gov",
    )


def test_engine_graph_shares_collaborators(cfg):
    from container import ServiceContainer

    container = ServiceContainer(cfg)
    engine = container.engine
    assert engine.ledger is container.ledger
    assert engine.vault is container.vault
    assert engine.gateway is container.gateway
    assert container.adl.engine is engine
    assert container.policy.has_role(engine.identity, Role.PNL_HANDLER)
    assert isinstance(container.control, LocalControlSwitch)
    assert container.metrics_exporter is None


def test_override_before_first_access(cfg):
    from container import ServiceContainer

    container = ServiceContainer(cfg)
    clock = FakeClock(start=42)
    container.override(clock=clock)
    assert container.engine.clock() == 42
    with pytest.raises(KeyError):
        container.override(nonexistent=object())


def test_metrics_exporter_built_when_enabled(cfg):
    from container import ServiceContainer

    container = ServiceContainer(replace(cfg, metrics=MetricsConfig(enabled=True, port=9999)))
    exporter = container.metrics_exporter
    assert exporter is container.metrics_exporter
    assert exporter.port == 9999 and not exporter.is_running
