"""
Liquidity Vault
Share-token pool underwriting trader PnL, with time-locked deposits and a
two-step (apply -> run) deposit/withdraw queue.

Valuation:
  net_value = total_assets - upnl        (upnl = traders' unrealized PnL)
  deposit   : shares = amount * supply / net_value   (1:1 when supply == 0)
  withdraw  : amount = shares * net_value / supply

Locks:
  every settled deposit creates a VaultLockEntry for the receiver
  unlocked(addr) = balance - sum(entries not yet expired)
  shares received by transfer carry no entry, so they are unlocked
  every outflow (withdraw burn, transfer) consumes expired entries oldest-first
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, DefaultDict, Dict, List, Optional, Tuple

from loguru import logger

from config import VaultConfig
from core.access_control import AccessPolicy, Action
from core.errors import AuthorizationError, ValidationError, VaultStateError
from core.events import (
    EventBus, VaultApplyCanceled, VaultApplyDeposit, VaultApplyWithdraw,
    VaultAssetsReceived, VaultAssetsSent, VaultRunDeposit, VaultRunWithdraw,
    VaultTransfer,
)
from core.fixed_point import fmt_amount
from core.token_ledger import VAULT_ACCOUNT, TokenLedger
from interfaces import IUpnlVerifier


@dataclass
class VaultLockEntry:
    lock_id: int
    amount: int
    created_at: int
    duration: int

    @property
    def unlock_at(self) -> int:
        return self.created_at + self.duration

    def expired(self, now: int) -> bool:
        return now >= self.unlock_at


@dataclass
class ApplyRequest:
    request_id: int
    applicant: str
    receiver: str
    amount: int          # collateral for deposits, shares for withdrawals
    deposit: bool
    created_at: int


class LiquidityVault:
    """
    Vault share token plus the deposit/withdraw queue.

    Settlement (run_*) is driven by the uPnL feeder, who prices every request
    with a signed uPnL figure.  Realized trader PnL moves through
    receive_assets / send_assets, callable only by the PnL handler.
    """

    def __init__(
            self,
            token: TokenLedger,
            policy: AccessPolicy,
            clock: Callable[[], int],
            verifier: IUpnlVerifier,
            bus: Optional[EventBus] = None,
            cfg: Optional[VaultConfig] = None,
            account: str = VAULT_ACCOUNT,
    ):
        cfg = cfg or VaultConfig()
        self.token = token
        self.policy = policy
        self.clock = clock
        self.verifier = verifier
        self.bus = bus or EventBus()
        self.account = account
        self.symbol = cfg.share_symbol
        self.lock_duration = cfg.lock_duration_sec

        self._total_assets = 0
        self.total_supply = 0
        self._balances: DefaultDict[str, int] = defaultdict(int)
        self._allowances: Dict[Tuple[str, str], int] = {}

        self._locks: DefaultDict[str, List[VaultLockEntry]] = defaultdict(list)
        self._last_lock_id = 0

        self._requests: Dict[int, ApplyRequest] = {}
        self._deposit_of: Dict[str, int] = {}
        self._withdraw_of: Dict[str, int] = {}
        self._last_request_id = 0

        logger.info(f"Initialized Liquidity Vault {self.symbol}: "
                    f"lock={self.lock_duration}s")

    # ── Views ────────────────────────────────────────────────────────────

    @property
    def total_assets(self) -> int:
        return self._total_assets

    def balance_of(self, account: str) -> int:
        return self._balances.get(account, 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self._allowances.get((owner, spender), 0)

    def lock_entries(self, account: str) -> List[VaultLockEntry]:
        return list(self._locks.get(account, []))

    def locked_balance(self, account: str) -> int:
        now = self.clock()
        return sum(e.amount for e in self._locks.get(account, []) if not e.expired(now))

    def unlocked_balance(self, account: str) -> int:
        return max(self.balance_of(account) - self.locked_balance(account), 0)

    def pending_apply(self, account: str) -> Dict[str, Optional[ApplyRequest]]:
        dep = self._deposit_of.get(account)
        wd = self._withdraw_of.get(account)
        return {
            "deposit": self._requests.get(dep) if dep else None,
            "withdraw": self._requests.get(wd) if wd else None,
        }

    def request(self, request_id: int) -> Optional[ApplyRequest]:
        return self._requests.get(request_id)

    def net_value(self, upnl: int) -> int:
        return self._total_assets - upnl

    def nav_per_share(self, upnl: int, unit: int = 10 ** 6) -> int:
        """Assets per ``unit`` shares at the given uPnL (``unit`` when empty)."""
        if self.total_supply == 0:
            return unit
        return unit * self.net_value(upnl) // self.total_supply

    def can_send(self, amount: int) -> bool:
        return amount <= self._total_assets and amount <= self.token.balance_of(self.account)

    # ── Pricing ──────────────────────────────────────────────────────────

    def _shares_for_deposit(self, amount: int, upnl: int) -> int:
        if self.total_supply == 0:
            return amount
        value = self.net_value(upnl)
        if value <= 0:
            raise VaultStateError("vault insolvent", f"net value {value}")
        return amount * self.total_supply // value

    def _assets_for_withdraw(self, shares: int, upnl: int) -> int:
        value = self.net_value(upnl)
        if value <= 0 or self.total_supply == 0:
            raise VaultStateError("vault insolvent", f"net value {value}")
        return shares * value // self.total_supply

    # ── Locks ────────────────────────────────────────────────────────────

    def _add_lock(self, account: str, shares: int) -> VaultLockEntry:
        self._last_lock_id += 1
        entry = VaultLockEntry(
            lock_id=self._last_lock_id, amount=shares,
            created_at=self.clock(), duration=self.lock_duration,
        )
        self._locks[account].append(entry)
        return entry

    def _require_unlocked(self, account: str, shares: int) -> None:
        unlocked = self.unlocked_balance(account)
        if shares > unlocked:
            raise VaultStateError(
                "insufficient unlocked",
                f"{account} has {unlocked} unlocked, needs {shares}",
            )

    def _consume_locks(self, account: str, shares: int) -> None:
        """Decrement expired entries oldest-first; drop emptied entries."""
        now = self.clock()
        remaining = shares
        kept: List[VaultLockEntry] = []
        for entry in self._locks.get(account, []):
            if remaining > 0 and entry.expired(now):
                used = min(entry.amount, remaining)
                entry.amount -= used
                remaining -= used
            if entry.amount > 0:
                kept.append(entry)
        self._locks[account] = kept

    # ── Share token ──────────────────────────────────────────────────────

    def _move_shares(self, sender: str, recipient: str, shares: int) -> None:
        if shares <= 0:
            raise ValidationError("INVALID_AMOUNT", f"transfer of {shares} shares")
        self._require_unlocked(sender, shares)
        self._consume_locks(sender, shares)
        self._balances[sender] -= shares
        self._balances[recipient] += shares
        self.bus.publish(VaultTransfer(sender=sender, recipient=recipient, shares=shares))

    def transfer(self, caller: str, recipient: str, shares: int) -> None:
        self._move_shares(caller, recipient, shares)

    def approve(self, owner: str, spender: str, shares: int) -> None:
        if shares < 0:
            raise ValidationError("INVALID_AMOUNT", f"approve {shares}")
        if shares > self.unlocked_balance(owner):
            raise VaultStateError("insufficient unlocked",
                                  f"{owner} cannot approve {shares} locked shares")
        self._allowances[(owner, spender)] = shares

    def transfer_from(self, spender: str, owner: str, recipient: str, shares: int) -> None:
        if self.allowance(owner, spender) < shares:
            raise VaultStateError("insufficient allowance", f"{spender} on {owner}")
        self._move_shares(owner, recipient, shares)
        self._allowances[(owner, spender)] -= shares

    # ── Deposit queue ────────────────────────────────────────────────────

    def _next_request_id(self) -> int:
        self._last_request_id += 1
        return self._last_request_id

    def apply_deposit(self, caller: str, amount: int, receiver: Optional[str] = None) -> int:
        """Record a deposit intent.  No funds move until run_deposit."""
        if amount <= 0:
            raise ValidationError("INVALID_AMOUNT", f"deposit {amount}")
        if caller in self._deposit_of:
            raise VaultStateError("already applied",
                                  f"{caller} has deposit #{self._deposit_of[caller]} pending")
        request = ApplyRequest(
            request_id=self._next_request_id(), applicant=caller,
            receiver=receiver or caller, amount=amount, deposit=True,
            created_at=self.clock(),
        )
        self._requests[request.request_id] = request
        self._deposit_of[caller] = request.request_id
        self.bus.publish(VaultApplyDeposit(request.request_id, caller, request.receiver, amount))
        logger.info(f"Deposit #{request.request_id} applied: {caller} "
                    f"{fmt_amount(amount, self.token.decimals)} {self.token.symbol}")
        return request.request_id

    def _settle_checks(self, caller: str, request_id: int, upnl: int, proof: str,
                       deposit: bool) -> ApplyRequest:
        self.policy.require(caller, Action.RUN_VAULT_REQUEST)
        if not self.verifier.verify(request_id, upnl, proof):
            raise VaultStateError("uPnl verify failed", f"request #{request_id}")
        request = self._requests.get(request_id)
        if request is None or request.deposit is not deposit:
            raise VaultStateError("request id not found", f"#{request_id}")
        return request

    def run_deposit(self, caller: str, request_id: int, upnl: int, proof: str) -> int:
        """Settle a deposit at the fed uPnL.  Returns shares minted."""
        request = self._settle_checks(caller, request_id, upnl, proof, deposit=True)
        applicant, amount = request.applicant, request.amount
        if self.token.balance_of(applicant) < amount:
            raise VaultStateError("usdt amount not enough",
                                  f"{applicant} holds {self.token.balance_of(applicant)}")
        if self.token.allowance(applicant, self.account) < amount:
            raise VaultStateError("please approve", f"{applicant} -> {self.account}")
        shares = self._shares_for_deposit(amount, upnl)
        if shares <= 0:
            raise VaultStateError("zero shares", f"deposit #{request_id} of {amount}")

        self.token.transfer_from(self.account, applicant, self.account, amount)
        self._total_assets += amount
        self.total_supply += shares
        self._balances[request.receiver] += shares
        entry = self._add_lock(request.receiver, shares)

        del self._requests[request_id]
        del self._deposit_of[applicant]

        self.bus.publish(VaultRunDeposit(request_id, applicant, request.receiver,
                                         amount, shares, upnl, entry.lock_id))
        logger.info(f"Deposit #{request_id} settled: {request.receiver} +{shares} {self.symbol} "
                    f"(upnl={upnl}, lock #{entry.lock_id} until {entry.unlock_at})")
        return shares

    # ── Withdraw queue ───────────────────────────────────────────────────

    def apply_withdraw(self, caller: str, shares: int, receiver: Optional[str] = None) -> int:
        if shares <= 0:
            raise ValidationError("INVALID_AMOUNT", f"withdraw {shares}")
        self._require_unlocked(caller, shares)
        if caller in self._withdraw_of:
            raise VaultStateError("already applied",
                                  f"{caller} has withdraw #{self._withdraw_of[caller]} pending")
        request = ApplyRequest(
            request_id=self._next_request_id(), applicant=caller,
            receiver=receiver or caller, amount=shares, deposit=False,
            created_at=self.clock(),
        )
        self._requests[request.request_id] = request
        self._withdraw_of[caller] = request.request_id
        self.bus.publish(VaultApplyWithdraw(request.request_id, caller, request.receiver, shares))
        logger.info(f"Withdraw #{request.request_id} applied: {caller} {shares} {self.symbol}")
        return request.request_id

    def run_withdraw(self, caller: str, request_id: int, upnl: int, proof: str) -> int:
        """Settle a withdrawal at the fed uPnL.  Returns collateral paid."""
        request = self._settle_checks(caller, request_id, upnl, proof, deposit=False)
        applicant, shares = request.applicant, request.amount
        self._require_unlocked(applicant, shares)
        amount = self._assets_for_withdraw(shares, upnl)
        if not self.can_send(amount):
            raise VaultStateError("vault insolvent",
                                  f"cannot pay {amount} from {self._total_assets}")

        self._consume_locks(applicant, shares)
        self._balances[applicant] -= shares
        self.total_supply -= shares
        self._total_assets -= amount
        self.token.transfer(self.account, request.receiver, amount)

        del self._requests[request_id]
        del self._withdraw_of[applicant]

        self.bus.publish(VaultRunWithdraw(request_id, applicant, request.receiver,
                                          shares, amount, upnl))
        logger.info(f"Withdraw #{request_id} settled: {applicant} -{shares} {self.symbol} -> "
                    f"{fmt_amount(amount, self.token.decimals)} {self.token.symbol} (upnl={upnl})")
        return amount

    def cancel_apply(self, caller: str, request_id: int) -> None:
        request = self._requests.get(request_id)
        if request is None:
            raise VaultStateError("request id not found", f"#{request_id}")
        if request.applicant != caller:
            raise AuthorizationError("not applicant", f"{caller} on #{request_id}")
        del self._requests[request_id]
        if request.deposit:
            del self._deposit_of[caller]
        else:
            del self._withdraw_of[caller]
        self.bus.publish(VaultApplyCanceled(request_id, caller, request.deposit))
        logger.info(f"{'Deposit' if request.deposit else 'Withdraw'} #{request_id} canceled by {caller}")

    # ── Realized PnL ─────────────────────────────────────────────────────

    def receive_assets(self, caller: str, amount: int, payer: str) -> None:
        """Trader losses flowing into the vault."""
        self.policy.require(caller, Action.MOVE_VAULT_ASSETS)
        if amount <= 0:
            return
        self.token.transfer(payer, self.account, amount)
        self._total_assets += amount
        self.bus.publish(VaultAssetsReceived(payer=payer, amount=amount))

    def send_assets(self, caller: str, amount: int, receiver: str) -> None:
        """Trader profits paid out of the vault."""
        self.policy.require(caller, Action.MOVE_VAULT_ASSETS)
        if amount <= 0:
            return
        if not self.can_send(amount):
            raise VaultStateError("vault insolvent",
                                  f"cannot send {amount}, assets {self._total_assets}")
        self._total_assets -= amount
        self.token.transfer(self.account, receiver, amount)
        self.bus.publish(VaultAssetsSent(receiver=receiver, amount=amount))

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "total_assets": self._total_assets,
            "total_supply": self.total_supply,
            "holders": sum(1 for b in self._balances.values() if b > 0),
            "pending_deposits": len(self._deposit_of),
            "pending_withdrawals": len(self._withdraw_of),
            "last_lock_id": self._last_lock_id,
        }
