"""
Staked oracle registry with threshold voting.

Oracles lock stake to register, then vote to approve or reject pending
batches. Each (oracle, batch) pair votes once. The first tally to reach the
approval threshold fires exactly once: approval calls SettlementEngine.approve,
rejection calls SettlementEngine.fail. After that the batch's vote record is
closed and further votes are refused with ``already_processed``.

A vote is only taken on a batch that exists and is still pending. The
settlement call runs before the vote is recorded, so a settlement rejection
(approval window passed, role revoked) rejects the vote too.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Set, Tuple

from batchsettle.core.access import Component, Role
from batchsettle.core.exceptions import BalanceError, Reason, StateError, ValidationError
from batchsettle.core.models import EventType
from batchsettle.core.transactions import TransactionManager
from batchsettle.core.units import DECIMALS, require_amount, units
from batchsettle.ledger.asset import InMemoryAsset
from batchsettle.settlement.engine import SettlementEngine
from batchsettle.settlement.machine import BatchStatus

log = logging.getLogger(__name__)

APPROVE = "approve"
REJECT  = "reject"


@dataclass
class OracleRecord:
    is_registered:    bool = False
    is_active:        bool = False
    stake:            int = 0
    approvals_cast:   int = 0
    rejections_cast:  int = 0
    slash_count:      int = 0
    registered_at:    int = 0
    last_activity_at: int = 0


@dataclass
class BatchVoteRecord:
    voters:          Set[str] = field(default_factory=set)
    approval_count:  int = 0
    rejection_count: int = 0
    processed:       bool = False
    decision:        Optional[str] = None


class OracleRegistry(Component):

    def __init__(
        self,
        settlement: SettlementEngine,
        stake_asset: InMemoryAsset,
        tx: TransactionManager,
        *,
        admin: str,
        treasury: str,
        identity: str = "oracle-registry",
        minimum_stake: int = units(1000),
        approval_threshold: int = 1,
    ) -> None:
        super().__init__(identity, admin, tx)
        if not treasury:
            raise ValidationError(Reason.INVALID_ADDRESS, "treasury required")
        if minimum_stake <= 0:
            raise ValidationError(Reason.ZERO_AMOUNT, "minimum stake must be positive")
        if approval_threshold <= 0:
            raise ValidationError(Reason.INVALID_THRESHOLD)
        self.settlement         = settlement
        self.stake_asset        = stake_asset
        self.treasury           = treasury
        self.minimum_stake      = minimum_stake
        self.slash_amount       = minimum_stake // 10
        self.approval_threshold = approval_threshold

        self._oracles: Dict[str, OracleRecord]    = {}
        self._votes:   Dict[str, BatchVoteRecord] = {}
        self._active_count = 0
        self._total_approvals  = 0
        self._total_rejections = 0
        self._total_slashed    = 0

    # ── Views ─────────────────────────────────────────────────

    def get_oracle(self, oracle: str) -> OracleRecord:
        return replace(self._oracles.get(oracle, OracleRecord()))

    def is_active_oracle(self, oracle: str) -> bool:
        record = self._oracles.get(oracle)
        return bool(record and record.is_registered and record.is_active)

    def oracles(self) -> List[str]:
        return list(self._oracles)

    def oracle_count(self) -> Tuple[int, int]:
        """(identities ever registered, currently active)"""
        return len(self._oracles), self._active_count

    @property
    def active_oracle_count(self) -> int:
        return self._active_count

    def vote_status(self, batch_id: str) -> Tuple[int, int, bool]:
        record = self._votes.get(batch_id, BatchVoteRecord())
        return record.approval_count, record.rejection_count, record.processed

    def has_voted(self, batch_id: str, oracle: str) -> bool:
        record = self._votes.get(batch_id)
        return bool(record and oracle in record.voters)

    def metrics(self) -> Dict[str, int]:
        return {
            "total_approvals_processed":  self._total_approvals,
            "total_rejections_processed": self._total_rejections,
            "total_slashed":              self._total_slashed,
            "active_oracles":             self._active_count,
        }

    # ── Membership ────────────────────────────────────────────

    def register_oracle(self, caller: str, stake: int) -> OracleRecord:
        with self.tx.atomic():
            self._ensure_not_paused()
            if not caller:
                raise ValidationError(Reason.INVALID_ADDRESS)
            require_amount(stake)
            if stake < self.minimum_stake:
                raise BalanceError(
                    Reason.INSUFFICIENT_STAKE,
                    details={"stake": stake, "minimum": self.minimum_stake},
                )
            existing = self._oracles.get(caller)
            if existing is not None and existing.is_registered:
                raise StateError(Reason.ALREADY_REGISTERED, details={"oracle": caller})

            self.stake_asset.transfer(caller, self.identity, stake)

            now = self.tx.now()
            self._touch(caller)
            record = self._oracles.setdefault(caller, OracleRecord())
            record.is_registered    = True
            record.is_active        = True
            record.stake            = stake
            record.registered_at    = now
            record.last_activity_at = now
            self._active_count += 1

            self._emit(EventType.ORACLE_REGISTERED, {
                "oracle":         caller,
                "stake":          stake,
                "active_oracles": self._active_count,
                "decimals":       DECIMALS,
            })
            log.info("oracle registered oracle=%s stake=%d", caller, stake)
            return replace(record)

    def deregister_oracle(self, caller: str) -> int:
        """Leave the registry. Returns the stake paid back."""
        with self.tx.atomic():
            self._ensure_not_paused()
            record = self._registered(caller)
            refund = record.stake
            self._touch(caller)

            if refund:
                self.stake_asset.transfer(self.identity, caller, refund)

            if record.is_active:
                self._active_count -= 1
            record.is_registered    = False
            record.is_active        = False
            record.stake            = 0
            record.last_activity_at = self.tx.now()

            self._emit(EventType.ORACLE_DEREGISTERED, {
                "oracle":         caller,
                "refund":         refund,
                "active_oracles": self._active_count,
                "decimals":       DECIMALS,
            })
            log.info("oracle deregistered oracle=%s refund=%d", caller, refund)
            return refund

    # ── Voting ────────────────────────────────────────────────

    def approve(self, caller: str, batch_id: str) -> bool:
        """Cast an approval. Returns True when this vote applied the decision."""
        return self._vote(caller, batch_id, APPROVE, None)

    def reject(self, caller: str, batch_id: str, reason: str) -> bool:
        """Cast a rejection. Returns True when this vote failed the batch."""
        return self._vote(caller, batch_id, REJECT, reason)

    def _vote(self, caller: str, batch_id: str, choice: str, reason: Optional[str]) -> bool:
        with self.tx.atomic():
            self._ensure_not_paused()
            oracle = self._registered(caller)
            if not oracle.is_active:
                raise StateError(Reason.NOT_ACTIVE, details={"oracle": caller})
            votes = self._votes.get(batch_id, BatchVoteRecord())
            if votes.processed:
                raise StateError(
                    Reason.ALREADY_PROCESSED,
                    details={"batch_id": batch_id, "decision": votes.decision},
                )
            if caller in votes.voters:
                raise StateError(Reason.ALREADY_VOTED, details={"oracle": caller, "batch_id": batch_id})
            batch = self.settlement.get_batch(batch_id)
            if batch.status != BatchStatus.PENDING:
                raise StateError(
                    Reason.INVALID_STATUS,
                    details={"batch_id": batch_id, "status": batch.status.name},
                )

            if choice == APPROVE:
                fires = votes.approval_count + 1 >= self.approval_threshold
            else:
                fires = votes.rejection_count + 1 >= self.approval_threshold

            if fires and choice == APPROVE:
                self.settlement.approve(self.identity, batch_id)
            elif fires:
                self.settlement.fail(self.identity, batch_id, reason or "rejected by oracles")

            self.tx.remember(self._votes, batch_id)
            self.tx.remember_attr(self, "_total_approvals", "_total_rejections")
            self._touch(caller)
            votes = self._votes.setdefault(batch_id, votes)
            votes.voters.add(caller)
            if choice == APPROVE:
                votes.approval_count += 1
                oracle.approvals_cast += 1
            else:
                votes.rejection_count += 1
                oracle.rejections_cast += 1
            oracle.last_activity_at = self.tx.now()

            self._emit(EventType.VOTE_CAST, {
                "batch_id":        batch_id,
                "oracle":          caller,
                "vote":            choice,
                "reason":          reason,
                "approval_count":  votes.approval_count,
                "rejection_count": votes.rejection_count,
            })
            log.info("vote batch=%s oracle=%s vote=%s", batch_id[:12], caller, choice)

            if fires:
                votes.processed = True
                votes.decision  = choice
                if choice == APPROVE:
                    self._total_approvals += 1
                else:
                    self._total_rejections += 1
                log.info("threshold reached batch=%s decision=%s", batch_id[:12], choice)
            return fires

    # ── Admin ─────────────────────────────────────────────────

    def slash_oracle(self, caller: str, oracle: str, reason: str) -> OracleRecord:
        with self.tx.atomic():
            self.access.require(Role.ADMIN, caller)
            record = self._registered(oracle)
            amount = self.slash_amount
            self._touch(oracle)
            self.tx.remember_attr(self, "_total_slashed")
            if record.stake < amount:
                raise BalanceError(
                    Reason.INSUFFICIENT_STAKE,
                    details={"stake": record.stake, "slash_amount": amount},
                )

            if amount:
                self.stake_asset.transfer(self.identity, self.treasury, amount)

            record.stake       -= amount
            record.slash_count += 1
            self._total_slashed += amount
            deactivated = record.is_active and record.stake < self.minimum_stake
            if deactivated:
                record.is_active = False
                self._active_count -= 1

            self._emit(EventType.ORACLE_SLASHED, {
                "oracle":         oracle,
                "amount":         amount,
                "reason":         reason,
                "stake":          record.stake,
                "slash_count":    record.slash_count,
                "deactivated":    deactivated,
                "active_oracles": self._active_count,
                "decimals":       DECIMALS,
            })
            log.warning("oracle slashed oracle=%s amount=%d reason=%s", oracle, amount, reason)
            if deactivated:
                self._emit(EventType.ORACLE_DEACTIVATED, {
                    "oracle":         oracle,
                    "by":             caller,
                    "active_oracles": self._active_count,
                })
            return replace(record)

    def activate_oracle(self, caller: str, oracle: str) -> None:
        with self.tx.atomic():
            self.access.require(Role.ADMIN, caller)
            record = self._registered(oracle)
            if record.is_active:
                raise StateError(Reason.ORACLE_ACTIVE, details={"oracle": oracle})
            if record.stake < self.minimum_stake:
                raise BalanceError(
                    Reason.INSUFFICIENT_STAKE,
                    details={"stake": record.stake, "minimum": self.minimum_stake},
                )
            self._touch(oracle)
            record.is_active = True
            self._active_count += 1
            self._emit(EventType.ORACLE_ACTIVATED, {
                "oracle":         oracle,
                "by":             caller,
                "active_oracles": self._active_count,
            })
            log.info("oracle activated oracle=%s", oracle)

    def deactivate_oracle(self, caller: str, oracle: str) -> None:
        with self.tx.atomic():
            self.access.require(Role.ADMIN, caller)
            record = self._registered(oracle)
            if not record.is_active:
                raise StateError(Reason.ORACLE_INACTIVE, details={"oracle": oracle})
            self._touch(oracle)
            record.is_active = False
            self._active_count -= 1
            self._emit(EventType.ORACLE_DEACTIVATED, {
                "oracle":         oracle,
                "by":             caller,
                "active_oracles": self._active_count,
            })
            log.info("oracle deactivated oracle=%s", oracle)

    def set_approval_threshold(self, caller: str, threshold: int) -> None:
        with self.tx.atomic():
            self.access.require(Role.ADMIN, caller)
            if threshold <= 0:
                raise ValidationError(Reason.INVALID_THRESHOLD, details={"threshold": threshold})
            if threshold > self._active_count:
                raise StateError(
                    Reason.THRESHOLD_TOO_HIGH,
                    details={"threshold": threshold, "active_oracles": self._active_count},
                )
            self.tx.remember_attr(self, "approval_threshold")
            old, self.approval_threshold = self.approval_threshold, threshold
            self._emit(EventType.THRESHOLD_UPDATED, {"old": old, "new": threshold})

    def set_minimum_stake(self, caller: str, minimum_stake: int) -> None:
        with self.tx.atomic():
            self.access.require(Role.ADMIN, caller)
            require_amount(minimum_stake)
            self.tx.remember_attr(self, "minimum_stake", "slash_amount")
            old, self.minimum_stake = self.minimum_stake, minimum_stake
            self.slash_amount = minimum_stake // 10
            self._emit(EventType.MINIMUM_STAKE_UPDATED, {
                "old":          old,
                "new":          minimum_stake,
                "slash_amount": self.slash_amount,
                "decimals":     DECIMALS,
            })

    # ── Internal ──────────────────────────────────────────────

    def _touch(self, oracle: str) -> None:
        self.tx.remember(self._oracles, oracle)
        self.tx.remember_attr(self, "_active_count")

    def _registered(self, oracle: str) -> OracleRecord:
        record = self._oracles.get(oracle)
        if record is None or not record.is_registered:
            raise StateError(Reason.NOT_REGISTERED, details={"oracle": oracle})
        return record
