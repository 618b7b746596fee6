"""
Typed configuration — single source of truth for all engine settings.

SRP: This module's sole responsibility is loading and validating configuration.
All env-var reads are consolidated here; no other module should call os.getenv().

Percent-valued settings are read in human units ("0.08" = 0.08 %) and stored
as PRECISION-scaled ints, matching the engine's fixed-point arithmetic.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from dotenv import load_dotenv

from core.fixed_point import PRECISION

load_dotenv()


def _env(key: str, default: str) -> str:
    return os.getenv(key, default)


def _env_bool(key: str, default: str = "true") -> bool:
    return _env(key, default).lower() == "true"


def _env_int(key: str, default: str) -> int:
    return int(_env(key, default))


def _env_percent(key: str, default: str) -> int:
    return int(Decimal(_env(key, default)) * PRECISION)


# ── Trading limits ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TradingConfig:
    """Per-trader order limits and lifecycle timers (seconds)."""
    collateral_decimals: int = _env_int("COLLATERAL_DECIMALS", "6")
    max_pos_collateral: int = _env_int("MAX_POS_COLLATERAL", str(100_000 * 10 ** 6))
    max_trades_per_pair: int = _env_int("MAX_TRADES_PER_PAIR", "3")
    max_pending_market_orders: int = _env_int("MAX_PENDING_MARKET_ORDERS", "5")
    market_orders_timeout_sec: int = _env_int("MARKET_ORDERS_TIMEOUT_SEC", "60")
    limit_orders_timelock_sec: int = _env_int("LIMIT_ORDERS_TIMELOCK_SEC", "30")
    vault_exposure_multiplier: int = _env_int("VAULT_EXPOSURE_MULTIPLIER", "10")


# ── Risk bounds ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RiskBoundsConfig:
    """TP/SL distance bounds (plain percent) and open-impact bound (scaled)."""
    max_gain_p: int = _env_int("MAX_GAIN_P", "900")
    max_sl_p: int = _env_int("MAX_SL_P", "75")
    max_negative_pnl_on_open_p: int = _env_percent("MAX_NEGATIVE_PNL_ON_OPEN_P", "40")


# ── Oracle ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class OracleConfig:
    """Price-node aggregation and HTTP source settings."""
    min_answers: int = _env_int("ORACLE_MIN_ANSWERS", "3")
    request_timeout_sec: int = _env_int("ORACLE_REQUEST_TIMEOUT_SEC", "60")
    settled_rounds_kept: int = _env_int("ORACLE_SETTLED_ROUNDS_KEPT", "1024")
    price_api_url: str = _env("PRICE_API_URL", "https://min-api.cryptocompare.com")
    price_api_key: str = _env("PRICE_API_KEY", "")
    http_timeout_sec: float = float(_env("PRICE_HTTP_TIMEOUT_SEC", "5"))


# ── Vault ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class VaultConfig:
    """Liquidity vault share token and lock settings."""
    share_symbol: str = _env("VAULT_SHARE_SYMBOL", "PLP")
    lock_duration_sec: int = _env_int("VAULT_LOCK_DURATION_SEC", str(3 * 24 * 3600))
    upnl_signing_key: str = _env("UPNL_SIGNING_KEY", "")


# ── Redis Config ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RedisConfig:
    """Redis connection settings (shared pause/done control flags)."""
    enabled: bool = _env_bool("USE_REDIS_CONTROL", "false")
    host: str = _env("REDIS_HOST", "localhost")
    port: int = _env_int("REDIS_PORT", "6379")
    db: int = _env_int("REDIS_DB", "2")
    prefix: str = _env("REDIS_CONTROL_PREFIX", "perp_settlement")


# ── Monitoring / logging ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class MetricsConfig:
    """Prometheus exporter settings."""
    enabled: bool = _env_bool("METRICS_ENABLED", "false")
    port: int = _env_int("METRICS_PORT", "8000")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = _env("LOG_LEVEL", "INFO")
    file: str = _env("LOG_FILE", "")


# ── Top-level aggregate ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class EngineConfig:
    """
    Root configuration object — compose all sub-configs.

    Usage:
        cfg = EngineConfig()              # loads from env
        print(cfg.trading.max_trades_per_pair)
        print(cfg.vault.lock_duration_sec)
    """
    trading: TradingConfig = field(default_factory=TradingConfig)
    risk: RiskBoundsConfig = field(default_factory=RiskBoundsConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    vault: VaultConfig = field(default_factory=VaultConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    gov_address: str = _env("GOV_ADDRESS", "gov")


# Module-level singleton (immutable, safe to share)
_cfg: EngineConfig | None = None


def get_config() -> EngineConfig:
    """Get the global immutable config. Created once, never mutated."""
    global _cfg
    if _cfg is None:
        _cfg = EngineConfig()
    return _cfg
