"""
batchsettle/settlement/engine.py

Batch settlement: pull-payment claims against locked collateral.

A principal creates a batch, which locks its total on the ledger. Once the
oracle layer approves it, each payee claims its own line, and each claim
moves funds straight out of locked collateral to the payee. When every line
has been claimed the batch completes. On cancel, fail or timeout only the
unclaimed remainder returns to the principal's available balance; claims
already paid are never reversed.

Every ledger call happens before the batch record changes, so a ledger
rejection aborts the whole operation with the batch untouched.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from batchsettle.core.access import Component, Role
from batchsettle.core.canonical import canonical_hash
from batchsettle.core.exceptions import (
    AuthorizationError,
    Reason,
    StateError,
    TemporalError,
    ValidationError,
)
from batchsettle.core.models import EventType
from batchsettle.core.time import DAY
from batchsettle.core.transactions import TransactionManager
from batchsettle.core.units import DECIMALS, UINT256_MAX
from batchsettle.ledger.collateral import CollateralLedger
from batchsettle.settlement.machine import (
    BatchAction,
    BatchStatus,
    next_status,
    timeout_reference,
)

log = logging.getLogger(__name__)


@dataclass
class Payment:
    payee:   str
    amount:  int
    claimed: bool = False


@dataclass
class Batch:
    id:             str
    owner:          str
    payments:       List[Payment]
    total_amount:   int
    claimed_total:  int = 0
    claimed_count:  int = 0
    status:         BatchStatus = BatchStatus.PENDING
    created_at:     int = 0
    processed_at:   int = 0
    completed_at:   int = 0
    failure_reason: Optional[str] = None

    @property
    def unclaimed(self) -> int:
        return self.total_amount - self.claimed_total

    def copy(self) -> "Batch":
        return replace(self, payments=[replace(p) for p in self.payments])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id":             self.id,
            "owner":          self.owner,
            "payments":       [
                {"payee": p.payee, "amount": p.amount, "claimed": p.claimed}
                for p in self.payments
            ],
            "total_amount":   self.total_amount,
            "claimed_total":  self.claimed_total,
            "claimed_count":  self.claimed_count,
            "status":         self.status.name,
            "created_at":     self.created_at,
            "processed_at":   self.processed_at,
            "completed_at":   self.completed_at,
            "failure_reason": self.failure_reason,
        }


@dataclass
class _Metrics:
    total_batches:   int = 0
    total_completed: int = 0
    total_failed:    int = 0
    total_settled:   int = 0


class SettlementEngine(Component):

    def __init__(
        self,
        ledger: CollateralLedger,
        tx: TransactionManager,
        *,
        admin: str,
        identity: str = "settlement-engine",
        settlement_timeout: int = 2 * DAY,
        max_batch_size: int = 100,
    ) -> None:
        super().__init__(identity, admin, tx)
        self.ledger             = ledger
        self.settlement_timeout = settlement_timeout
        self.max_batch_size     = max_batch_size
        self._batches: Dict[str, Batch] = {}
        self._nonces:  Dict[str, int]   = {}
        self._metrics = _Metrics()

    # ── Views ─────────────────────────────────────────────────

    def get_batch(self, batch_id: str) -> Batch:
        return self._batch(batch_id).copy()

    def get_payment(self, batch_id: str, index: int) -> Payment:
        payments = self._batch(batch_id).payments
        if not 0 <= index < len(payments):
            raise ValidationError(Reason.NOT_IN_BATCH, f"no payment line {index}")
        return replace(payments[index])

    def can_claim(self, batch_id: str, payee: str) -> Tuple[bool, int]:
        """(True, amount) if ``payee`` has an unclaimed line on a processing batch."""
        batch = self._batches.get(batch_id)
        if batch is None or batch.status != BatchStatus.PROCESSING:
            return False, 0
        index = _first_unclaimed(batch, payee)
        if index is None:
            return False, 0
        return True, batch.payments[index].amount

    def batch_ids(self, owner: Optional[str] = None) -> List[str]:
        return [b.id for b in self._batches.values() if owner is None or b.owner == owner]

    def metrics(self) -> Dict[str, int]:
        return {
            "total_batches":   self._metrics.total_batches,
            "total_completed": self._metrics.total_completed,
            "total_failed":    self._metrics.total_failed,
            "total_settled":   self._metrics.total_settled,
        }

    # ── Principal entry points ────────────────────────────────

    def create_batch(self, caller: str, payees: Sequence[str], amounts: Sequence[int]) -> str:
        """Lock the batch total on the ledger and record a PENDING batch. Returns the id."""
        with self.tx.atomic():
            self._ensure_not_paused()
            if not caller:
                raise ValidationError(Reason.INVALID_PRINCIPAL)
            total = self._validate_lines(payees, amounts)

            nonce = self._nonces.get(caller, 0)
            batch_id = canonical_hash({"owner": caller, "nonce": nonce})

            self.ledger.lock(self.identity, caller, total, batch_id)

            now = self.tx.now()
            batch = Batch(
                id=           batch_id,
                owner=        caller,
                payments=     [Payment(p, a) for p, a in zip(payees, amounts)],
                total_amount= total,
                created_at=   now,
            )
            self.tx.remember(self._batches, batch_id)
            self.tx.remember(self._nonces, caller)
            self.tx.remember_attr(self, "_metrics")
            self._batches[batch_id] = batch
            self._nonces[caller] = nonce + 1
            self._metrics.total_batches += 1

            self._emit(EventType.BATCH_CREATED, {
                "batch_id":     batch_id,
                "owner":        caller,
                "nonce":        nonce,
                "payees":       list(payees),
                "amounts":      list(amounts),
                "total_amount": total,
                "decimals":     DECIMALS,
            })
            log.info("batch created id=%s owner=%s lines=%d total=%d",
                     batch_id[:12], caller, len(payees), total)
            return batch_id

    def cancel(self, caller: str, batch_id: str) -> None:
        with self.tx.atomic():
            self._ensure_not_paused()
            batch = self._touch(batch_id)
            if caller != batch.owner:
                raise AuthorizationError(
                    Reason.NOT_BATCH_OWNER,
                    details={"caller": caller, "batch_id": batch_id},
                )
            target = next_status(batch.status, BatchAction.CANCEL)

            released = self._release(batch, batch.total_amount)

            self._close(batch, target, "cancelled by owner")
            self._emit(EventType.BATCH_CANCELLED, self._closing_payload(batch, released))
            log.info("batch cancelled id=%s", batch_id[:12])

    # ── Oracle-gated entry points ─────────────────────────────

    def approve(self, caller: str, batch_id: str) -> None:
        with self.tx.atomic():
            self._ensure_not_paused()
            self.access.require(Role.ORACLE_CALLER, caller)
            batch = self._touch(batch_id)
            target = next_status(batch.status, BatchAction.APPROVE)
            now = self.tx.now()
            deadline = batch.created_at + self.settlement_timeout
            if now > deadline:
                raise TemporalError(
                    Reason.BATCH_TIMEOUT,
                    "approval window has passed",
                    {"deadline": deadline, "now": now},
                )

            batch.status       = target
            batch.processed_at = now

            self._emit(EventType.BATCH_APPROVED, {
                "batch_id":     batch_id,
                "approved_by":  caller,
                "processed_at": now,
                "status":       target.name,
            })
            log.info("batch approved id=%s by=%s", batch_id[:12], caller)

    def fail(self, caller: str, batch_id: str, reason: str) -> int:
        """Fail a live batch. Returns the unclaimed amount released to the owner."""
        with self.tx.atomic():
            self.access.require_any(
                (Role.ORACLE_CALLER, Role.FRAUD_CALLER), caller, Reason.UNAUTHORIZED,
            )
            batch = self._touch(batch_id)
            target = next_status(batch.status, BatchAction.FAIL)
            released = self._release(batch, batch.unclaimed)

            self._close(batch, target, reason)
            payload = self._closing_payload(batch, released)
            payload["failed_by"] = caller
            self._emit(EventType.BATCH_FAILED, payload)
            log.warning("batch failed id=%s by=%s reason=%s released=%d",
                        batch_id[:12], caller, reason, released)
            return released

    # ── Payee entry point ─────────────────────────────────────

    def claim(self, caller: str, batch_id: str) -> int:
        """Pay the caller's first unclaimed line. Returns the amount paid."""
        with self.tx.atomic():
            self._ensure_not_paused()
            batch = self._touch(batch_id)
            next_status(batch.status, BatchAction.CLAIM)
            index = _first_unclaimed(batch, caller)
            if index is None:
                reason = (Reason.ALREADY_CLAIMED
                          if any(p.payee == caller for p in batch.payments)
                          else Reason.NOT_IN_BATCH)
                raise StateError(reason, details={"payee": caller, "batch_id": batch_id})
            payment = batch.payments[index]

            completes = batch.claimed_count + 1 == len(batch.payments)
            residual = batch.unclaimed - payment.amount

            self.ledger.transfer_from_locked(
                self.identity, batch.owner, caller, payment.amount, batch_id,
            )
            if completes:
                residual = self._release(batch, residual)

            payment.claimed = True
            batch.claimed_count += 1
            batch.claimed_total += payment.amount
            self._metrics.total_settled += payment.amount

            self._emit(EventType.PAYMENT_CLAIMED, {
                "batch_id":      batch_id,
                "payee":         caller,
                "line":          index,
                "amount":        payment.amount,
                "claimed_count": batch.claimed_count,
                "claimed_total": batch.claimed_total,
                "decimals":      DECIMALS,
            })
            log.info("claim batch=%s payee=%s amount=%d", batch_id[:12], caller, payment.amount)

            if completes:
                batch.status       = next_status(batch.status, BatchAction.COMPLETE)
                batch.completed_at = self.tx.now()
                self._metrics.total_completed += 1
                self._emit(EventType.BATCH_COMPLETED, self._closing_payload(batch, residual))
                log.info("batch completed id=%s", batch_id[:12])
            return payment.amount

    # ── Permissionless recovery ───────────────────────────────

    def timeout(self, caller: str, batch_id: str) -> int:
        """
        Time out a stalled batch. Callable by anyone.

        Returns the unclaimed amount released to the owner.
        """
        with self.tx.atomic():
            batch = self._touch(batch_id)
            target = next_status(batch.status, BatchAction.TIMEOUT)
            now = self.tx.now()
            reference = timeout_reference(batch.status, batch.created_at, batch.processed_at)
            deadline = reference + self.settlement_timeout
            if now <= deadline:
                raise TemporalError(
                    Reason.NOT_TIMED_OUT,
                    details={"deadline": deadline, "now": now},
                )
            released = self._release(batch, batch.unclaimed)

            self._close(batch, target, "settlement timeout")
            payload = self._closing_payload(batch, released)
            payload["triggered_by"] = caller
            self._emit(EventType.BATCH_TIMED_OUT, payload)
            log.warning("batch timed out id=%s released=%d", batch_id[:12], released)
            return released

    # ── Internal ──────────────────────────────────────────────

    def _batch(self, batch_id: str) -> Batch:
        batch = self._batches.get(batch_id)
        if batch is None:
            raise StateError(Reason.BATCH_NOT_FOUND, details={"batch_id": batch_id})
        return batch

    def _touch(self, batch_id: str) -> Batch:
        """Look up a batch for a mutating call, registered for rollback."""
        batch = self._batch(batch_id)
        self.tx.remember(self._batches, batch_id)
        self.tx.remember_attr(self, "_metrics")
        return batch

    def _release(self, batch: Batch, amount: int) -> int:
        """
        Unlock up to amount of the owner's collateral for this batch.

        Capped at what the ledger still holds locked for the owner: a ledger
        slash may have taken part of it. Returns the amount released.
        """
        released = min(amount, self.ledger.get_account(batch.owner).locked)
        if released:
            self.ledger.unlock(self.identity, batch.owner, released, batch.id)
        if released < amount:
            log.warning("batch %s released %d of %d; the rest was slashed",
                        batch.id[:12], released, amount)
        return released

    def _validate_lines(self, payees: Sequence[str], amounts: Sequence[int]) -> int:
        if len(payees) == 0:
            raise ValidationError(Reason.EMPTY_BATCH)
        if len(payees) != len(amounts):
            raise ValidationError(
                Reason.LENGTH_MISMATCH,
                details={"payees": len(payees), "amounts": len(amounts)},
            )
        if len(payees) > self.max_batch_size:
            raise ValidationError(
                Reason.BATCH_TOO_LARGE,
                details={"size": len(payees), "max": self.max_batch_size},
            )
        total = 0
        for i, (payee, amount) in enumerate(zip(payees, amounts)):
            if not payee:
                raise ValidationError(Reason.INVALID_PAYEE, details={"line": i})
            if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
                raise ValidationError(Reason.ZERO_AMOUNT, details={"line": i})
            total += amount
            if total > UINT256_MAX:
                raise ValidationError(Reason.AMOUNT_OVERFLOW, details={"line": i})
        return total

    def _close(self, batch: Batch, target: BatchStatus, reason: str) -> None:
        batch.status         = target
        batch.completed_at   = self.tx.now()
        batch.failure_reason = reason
        self._metrics.total_failed += 1

    def _closing_payload(self, batch: Batch, released: int) -> dict:
        return {
            "batch_id":      batch.id,
            "owner":         batch.owner,
            "status":        batch.status.name,
            "reason":        batch.failure_reason,
            "total_amount":  batch.total_amount,
            "claimed_total": batch.claimed_total,
            "claimed_count": batch.claimed_count,
            "released":      released,
            "decimals":      DECIMALS,
        }


def _first_unclaimed(batch: Batch, payee: str) -> Optional[int]:
    for i, payment in enumerate(batch.payments):
        if payment.payee == payee and not payment.claimed:
            return i
    return None
