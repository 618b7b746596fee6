"""
Collateral token ledger — ERC20-like balances and allowances.

Holds the stablecoin the engine settles in.  Escrowed trader collateral sits
on the ``trading_storage`` account; the vault's assets sit on ``vault``.
"""
from __future__ import annotations

from collections import defaultdict
from typing import DefaultDict, Dict, Tuple

from loguru import logger

from core.errors import TokenError, ValidationError

TRADING_STORAGE = "trading_storage"
VAULT_ACCOUNT = "vault"


class TokenLedger:
    """Balances and allowances for one fungible token."""

    def __init__(self, symbol: str = "USDT", decimals: int = 6):
        self.symbol = symbol
        self.decimals = decimals
        self._balances: DefaultDict[str, int] = defaultdict(int)
        self._allowances: Dict[Tuple[str, str], int] = {}
        self.total_supply = 0

    @staticmethod
    def _check_amount(amount: int) -> None:
        if amount < 0:
            raise ValidationError("INVALID_AMOUNT", f"negative amount {amount}")

    def mint(self, to: str, amount: int) -> None:
        self._check_amount(amount)
        self._balances[to] += amount
        self.total_supply += amount
        logger.debug(f"{self.symbol}: minted {amount} to {to}")

    def balance_of(self, account: str) -> int:
        return self._balances.get(account, 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self._allowances.get((owner, spender), 0)

    def approve(self, owner: str, spender: str, amount: int) -> None:
        self._check_amount(amount)
        self._allowances[(owner, spender)] = amount

    def can_pull(self, owner: str, spender: str, amount: int) -> Tuple[bool, str]:
        """(ok, reason) for ``transfer_from(spender, owner, ..., amount)``."""
        if self.balance_of(owner) < amount:
            return False, "INSUFFICIENT_BALANCE"
        if self.allowance(owner, spender) < amount:
            return False, "INSUFFICIENT_ALLOWANCE"
        return True, ""

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        self._check_amount(amount)
        if self.balance_of(sender) < amount:
            raise TokenError("INSUFFICIENT_BALANCE",
                             f"{sender} has {self.balance_of(sender)}, needs {amount}")
        self._balances[sender] -= amount
        self._balances[recipient] += amount

    def transfer_from(self, spender: str, owner: str, recipient: str, amount: int) -> None:
        self._check_amount(amount)
        ok, reason = self.can_pull(owner, spender, amount)
        if not ok:
            raise TokenError(reason, f"{spender} pulling {amount} from {owner}")
        self._allowances[(owner, spender)] -= amount
        self._balances[owner] -= amount
        self._balances[recipient] += amount
