"""
Error taxonomy.

Every error carries a stable ``reason`` code so callers, bots and tests can
branch on it without parsing messages.  Errors are raised before any state is
touched, so a raised error always means "nothing happened".
"""
from __future__ import annotations

from typing import Optional


class SettlementError(Exception):
    """Base class for every reason-coded engine error."""

    def __init__(self, reason: str, detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class ValidationError(SettlementError):
    """Malformed or out-of-bounds input (arrays, TP/SL, pair ids, leverage)."""


class AdmissionError(SettlementError):
    """Exposure / open-interest / vault-capacity limit exceeded."""


class AuthorizationError(SettlementError):
    """Caller lacks the role or ownership the operation needs."""


class VaultStateError(SettlementError):
    """Vault request, lock or valuation precondition failed."""


class TokenError(SettlementError):
    """Collateral token balance / allowance shortfall."""


class TradingHaltedError(SettlementError):
    """Trading is paused or permanently done."""
