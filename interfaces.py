"""
Protocol interfaces for dependency injection (DIP — Dependency Inversion Principle).

High-level modules (execution, ADL, vault) depend on these abstractions,
not on concrete implementations.  This allows swapping live ↔ in-memory ↔ mock
price nodes, proof verifiers and control backends without touching
settlement logic.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, runtime_checkable


# ── Price Data Source ────────────────────────────────────────────────────────

@runtime_checkable
class IPriceSource(Protocol):
    """Where a price node reads a pair's current price (scaled int)."""

    async def get_price(self, pair: Any) -> Optional[int]: ...


@runtime_checkable
class IReferenceFeed(Protocol):
    """Reference price per feed name, used for the deviation check."""

    def latest_answer(self, feed: str) -> Optional[int]: ...


# ── Oracle ───────────────────────────────────────────────────────────────────

@runtime_checkable
class IPriceNode(Protocol):
    """
    An independent price node.

    ``deliver`` only enqueues the request; the node answers later through
    ``PriceOracleGateway.submit_answer``, never from inside ``deliver``.
    """

    node_id: str

    def deliver(self, request: Any) -> None: ...


@runtime_checkable
class IPriceGateway(Protocol):
    """Two-phase price protocol as seen by the engine."""

    def request_price(self, pair_index: int, callback: Callable[[Any], Any]) -> int: ...

    def request_prices(self, pair_indices: Sequence[int],
                       callback: Callable[[Any], Any]) -> int: ...

    def cancel(self, request_id: int) -> bool: ...


# ── Vault ────────────────────────────────────────────────────────────────────

@runtime_checkable
class IVault(Protocol):
    """Counterparty capital as seen by the engine."""

    @property
    def total_assets(self) -> int: ...

    def can_send(self, amount: int) -> bool: ...

    def receive_assets(self, caller: str, amount: int, payer: str) -> None: ...

    def send_assets(self, caller: str, amount: int, receiver: str) -> None: ...


@runtime_checkable
class IUpnlVerifier(Protocol):
    """Validates the uPnL figure a feeder attaches to a vault settlement."""

    def verify(self, request_id: int, upnl: int, proof: str) -> bool: ...


# ── Referral ─────────────────────────────────────────────────────────────────

@runtime_checkable
class IReferralLedger(Protocol):
    """External referral fee-sharing ledger."""

    account: str

    def register_referrer(self, trader: str, code: str) -> None: ...

    def has_referrer(self, trader: str) -> bool: ...

    def credit(self, trader: str, amount: int) -> None: ...


# ── Trading Control ──────────────────────────────────────────────────────────

@runtime_checkable
class IControlSwitch(Protocol):
    """Pause / done flags."""

    def is_paused(self) -> bool: ...

    def is_done(self) -> bool: ...

    def set_paused(self, paused: bool) -> None: ...

    def set_done(self, done: bool) -> None: ...


# ── ADL Ranking ──────────────────────────────────────────────────────────────

@runtime_checkable
class IAdlRanking(Protocol):
    """Orders ADL entries before settlement applies them."""

    def order(self, entries: List[Any], context: Dict[str, Any]) -> List[Any]: ...


# ── Metrics ──────────────────────────────────────────────────────────────────

@runtime_checkable
class IMetricsExporter(Protocol):
    """Exports engine metrics to Prometheus."""

    def start(self) -> None: ...

    def render(self) -> bytes: ...
