"""
Collateral ledger.

Per-principal accounting of pre-funded collateral across four buckets:

    available        free to lock or withdraw
    locked           reserved against a batch
    total_withdrawn  left the ledger back to the principal
    total_slashed    forfeited to the treasury

Conservation, always:
    available + locked + total_withdrawn + total_slashed == total_deposited

A paid claim (transfer_from_locked) is a permanent exit that is neither a
withdrawal nor a slash, so it reduces total_deposited along with locked.

Every call validates all guards before it mutates anything. A rejected call
leaves no trace.
"""

import logging
from dataclasses import asdict, dataclass, replace
from typing import Dict, List, Optional

from batchsettle.core.access import Component, Role
from batchsettle.core.config import MAX_WITHDRAWAL_DELAY, MIN_WITHDRAWAL_DELAY
from batchsettle.core.exceptions import (
    BalanceError,
    Reason,
    StateError,
    TemporalError,
    ValidationError,
)
from batchsettle.core.models import EventType
from batchsettle.core.time import DAY
from batchsettle.core.transactions import TransactionManager
from batchsettle.core.units import DECIMALS, require_amount, units
from batchsettle.ledger.asset import InMemoryAsset

log = logging.getLogger(__name__)


@dataclass
class CollateralAccount:
    total_deposited: int = 0
    available:       int = 0
    locked:          int = 0
    total_withdrawn: int = 0
    total_slashed:   int = 0

    def is_balanced(self) -> bool:
        return (
            self.available + self.locked + self.total_withdrawn + self.total_slashed
            == self.total_deposited
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class WithdrawalRequest:
    amount:       int
    requested_at: int
    executed:     bool = False


class CollateralLedger(Component):

    def __init__(
        self,
        asset: InMemoryAsset,
        tx: TransactionManager,
        *,
        admin: str,
        treasury: str,
        identity: str = "collateral-ledger",
        minimum_deposit: int = units(1000),
        withdrawal_delay: int = DAY,
    ) -> None:
        super().__init__(identity, admin, tx)
        if not treasury:
            raise ValidationError(Reason.INVALID_ADDRESS, "treasury required")
        self.asset            = asset
        self.treasury         = treasury
        self.minimum_deposit  = minimum_deposit
        self.withdrawal_delay = withdrawal_delay
        self._accounts:    Dict[str, CollateralAccount] = {}
        self._withdrawals: Dict[str, WithdrawalRequest] = {}
        self._tvl = 0

    # ── Views ─────────────────────────────────────────────────

    def get_account(self, principal: str) -> CollateralAccount:
        """Copy of the principal's account; zeroes for unknown principals."""
        return replace(self._accounts.get(principal, CollateralAccount()))

    def get_withdrawal_request(self, principal: str) -> Optional[WithdrawalRequest]:
        request = self._withdrawals.get(principal)
        return replace(request) if request else None

    def is_withdrawal_ready(self, principal: str) -> bool:
        request = self._withdrawals.get(principal)
        if request is None or request.executed:
            return False
        return self.tx.now() >= request.requested_at + self.withdrawal_delay

    def total_value_locked(self) -> int:
        """Collateral currently held: sum of available + locked over all accounts."""
        return self._tvl

    def principals(self) -> List[str]:
        return sorted(self._accounts)

    # ── Principal entry points ────────────────────────────────

    def deposit(self, caller: str, amount: int) -> CollateralAccount:
        with self.tx.atomic():
            self._ensure_not_paused()
            _require_principal(caller)
            require_amount(amount)
            if amount < self.minimum_deposit:
                raise BalanceError(
                    Reason.BELOW_MINIMUM_DEPOSIT,
                    details={"amount": amount, "minimum": self.minimum_deposit},
                )

            self.asset.transfer(caller, self.identity, amount)

            account = self._touch(caller)
            account.total_deposited += amount
            account.available       += amount
            self._tvl               += amount

            self._emit(EventType.DEPOSITED, self._payload(caller, account, amount=amount))
            log.info("deposit principal=%s amount=%d", caller, amount)
            return replace(account)

    def request_withdrawal(self, caller: str, amount: int) -> WithdrawalRequest:
        with self.tx.atomic():
            self._ensure_not_paused()
            _require_principal(caller)
            require_amount(amount)
            if self._pending_withdrawal(caller) is not None:
                raise StateError(Reason.PENDING_WITHDRAWAL, details={"principal": caller})
            account = self._accounts.get(caller, CollateralAccount())
            _require_covers(account.available, amount, Reason.INSUFFICIENT_AVAILABLE)

            now = self.tx.now()
            request = WithdrawalRequest(amount=amount, requested_at=now)
            self.tx.remember(self._withdrawals, caller)
            self._withdrawals[caller] = request

            self._emit(EventType.WITHDRAWAL_REQUESTED, {
                "principal":    caller,
                "amount":       amount,
                "requested_at": now,
                "unlock_at":    now + self.withdrawal_delay,
                "decimals":     DECIMALS,
            })
            log.info("withdrawal requested principal=%s amount=%d", caller, amount)
            return replace(request)

    def execute_withdrawal(self, caller: str) -> CollateralAccount:
        with self.tx.atomic():
            self._ensure_not_paused()
            request = self._pending_withdrawal(caller)
            if request is None:
                raise StateError(Reason.NO_WITHDRAWAL_REQUEST, details={"principal": caller})
            unlock_at = request.requested_at + self.withdrawal_delay
            if self.tx.now() < unlock_at:
                raise TemporalError(
                    Reason.WITHDRAWAL_DELAY_NOT_MET,
                    details={"unlock_at": unlock_at, "now": self.tx.now()},
                )
            account = self._touch(caller)
            # available may have shrunk through locks since the request
            _require_covers(account.available, request.amount, Reason.INSUFFICIENT_AVAILABLE)

            self.asset.transfer(self.identity, caller, request.amount)

            account.available       -= request.amount
            account.total_withdrawn += request.amount
            self._tvl               -= request.amount
            self.tx.remember(self._withdrawals, caller)
            request.executed = True
            del self._withdrawals[caller]

            self._emit(EventType.WITHDRAWN, self._payload(caller, account, amount=request.amount))
            log.info("withdrawal executed principal=%s amount=%d", caller, request.amount)
            return replace(account)

    def cancel_withdrawal(self, caller: str) -> None:
        with self.tx.atomic():
            self._ensure_not_paused()
            request = self._pending_withdrawal(caller)
            if request is None:
                raise StateError(Reason.NO_WITHDRAWAL_REQUEST, details={"principal": caller})
            self.tx.remember(self._withdrawals, caller)
            del self._withdrawals[caller]
            self._emit(EventType.WITHDRAWAL_CANCELLED, {
                "principal": caller,
                "amount":    request.amount,
                "decimals":  DECIMALS,
            })
            log.info("withdrawal cancelled principal=%s", caller)

    # ── Settlement-operator entry points ──────────────────────

    def lock(self, caller: str, principal: str, amount: int, batch_ref: str) -> CollateralAccount:
        with self.tx.atomic():
            self._ensure_not_paused()
            self.access.require(Role.SETTLEMENT_OPERATOR, caller)
            require_amount(amount)
            account = self._accounts.get(principal, CollateralAccount())
            _require_covers(account.available, amount, Reason.INSUFFICIENT_AVAILABLE)

            account = self._touch(principal)
            account.available -= amount
            account.locked    += amount

            self._emit(EventType.COLLATERAL_LOCKED,
                       self._payload(principal, account, amount=amount, batch_ref=batch_ref))
            log.info("lock principal=%s amount=%d batch=%s", principal, amount, batch_ref)
            return replace(account)

    def unlock(self, caller: str, principal: str, amount: int, batch_ref: str) -> CollateralAccount:
        # not pause-gated: fail/timeout must be able to release collateral
        with self.tx.atomic():
            self.access.require(Role.SETTLEMENT_OPERATOR, caller)
            require_amount(amount)
            account = self._accounts.get(principal, CollateralAccount())
            _require_covers(account.locked, amount, Reason.INSUFFICIENT_LOCKED)

            account = self._touch(principal)
            account.locked    -= amount
            account.available += amount

            self._emit(EventType.COLLATERAL_UNLOCKED,
                       self._payload(principal, account, amount=amount, batch_ref=batch_ref))
            log.info("unlock principal=%s amount=%d batch=%s", principal, amount, batch_ref)
            return replace(account)

    def transfer_from_locked(
        self,
        caller: str,
        principal: str,
        payee: str,
        amount: int,
        batch_ref: str,
    ) -> CollateralAccount:
        with self.tx.atomic():
            self._ensure_not_paused()
            self.access.require(Role.SETTLEMENT_OPERATOR, caller)
            if not payee:
                raise ValidationError(Reason.INVALID_PAYEE)
            require_amount(amount)
            account = self._accounts.get(principal, CollateralAccount())
            _require_covers(account.locked, amount, Reason.INSUFFICIENT_LOCKED)

            self.asset.transfer(self.identity, payee, amount)

            account = self._touch(principal)
            account.locked          -= amount
            account.total_deposited -= amount
            self._tvl               -= amount

            self._emit(EventType.COLLATERAL_TRANSFERRED,
                       self._payload(principal, account, amount=amount,
                                     payee=payee, batch_ref=batch_ref))
            log.info("transfer principal=%s payee=%s amount=%d batch=%s",
                     principal, payee, amount, batch_ref)
            return replace(account)

    # ── Slasher entry point ───────────────────────────────────

    def slash(self, caller: str, principal: str, amount: int, reason: str) -> CollateralAccount:
        with self.tx.atomic():
            self._ensure_not_paused()
            self.access.require(Role.SLASHER, caller)
            require_amount(amount)
            account = self._accounts.get(principal, CollateralAccount())
            _require_covers(account.locked, amount, Reason.INSUFFICIENT_LOCKED)

            self.asset.transfer(self.identity, self.treasury, amount)

            account = self._touch(principal)
            account.locked        -= amount
            account.total_slashed += amount
            self._tvl             -= amount

            self._emit(EventType.COLLATERAL_SLASHED,
                       self._payload(principal, account, amount=amount,
                                     reason=reason, treasury=self.treasury))
            log.warning("slash principal=%s amount=%d reason=%s", principal, amount, reason)
            return replace(account)

    # ── Admin entry points ────────────────────────────────────

    def emergency_withdraw(self, caller: str, principal: str, amount: int) -> CollateralAccount:
        """Incident response: pay out available collateral without the delay."""
        with self.tx.atomic():
            self.access.require(Role.ADMIN, caller)
            require_amount(amount)
            account = self._accounts.get(principal, CollateralAccount())
            _require_covers(account.available, amount, Reason.INSUFFICIENT_AVAILABLE)

            self.asset.transfer(self.identity, principal, amount)

            account = self._touch(principal)
            account.available       -= amount
            account.total_withdrawn += amount
            self._tvl               -= amount

            self._emit(EventType.EMERGENCY_WITHDRAWAL,
                       self._payload(principal, account, amount=amount, by=caller))
            log.warning("emergency withdrawal principal=%s amount=%d by=%s",
                        principal, amount, caller)
            return replace(account)

    def set_withdrawal_delay(self, caller: str, delay: int) -> None:
        with self.tx.atomic():
            self.access.require(Role.ADMIN, caller)
            if delay < MIN_WITHDRAWAL_DELAY:
                raise ValidationError(Reason.DELAY_TOO_SHORT, details={"delay": delay})
            if delay > MAX_WITHDRAWAL_DELAY:
                raise ValidationError(Reason.DELAY_TOO_LONG, details={"delay": delay})
            self.tx.remember_attr(self, "withdrawal_delay")
            old, self.withdrawal_delay = self.withdrawal_delay, delay
            self._emit(EventType.WITHDRAWAL_DELAY_UPDATED, {"old": old, "new": delay})

    def set_treasury(self, caller: str, treasury: str) -> None:
        with self.tx.atomic():
            self.access.require(Role.ADMIN, caller)
            if not treasury:
                raise ValidationError(Reason.INVALID_ADDRESS, "treasury required")
            self.tx.remember_attr(self, "treasury")
            old, self.treasury = self.treasury, treasury
            self._emit(EventType.TREASURY_UPDATED, {"old": old, "new": treasury})

    # ── Internal ──────────────────────────────────────────────

    def _account(self, principal: str) -> CollateralAccount:
        return self._accounts.setdefault(principal, CollateralAccount())

    def _touch(self, principal: str) -> CollateralAccount:
        """The principal's account, registered for rollback before it changes."""
        self.tx.remember(self._accounts, principal)
        self.tx.remember_attr(self, "_tvl")
        return self._account(principal)

    def _pending_withdrawal(self, principal: str) -> Optional[WithdrawalRequest]:
        request = self._withdrawals.get(principal)
        if request is None or request.executed:
            return None
        return request

    def _payload(self, principal: str, account: CollateralAccount, **extra) -> dict:
        payload = {"principal": principal, "decimals": DECIMALS}
        payload.update(extra)
        payload["account"] = account.to_dict()
        payload["total_value_locked"] = self._tvl
        return payload


def _require_principal(principal: str) -> None:
    if not principal:
        raise ValidationError(Reason.INVALID_PRINCIPAL)


def _require_covers(balance: int, amount: int, reason: str) -> None:
    if balance < amount:
        raise BalanceError(reason, details={"balance": balance, "amount": amount})
