"""
Batch lifecycle as an explicit finite-state machine.

    PENDING ──approve──▶ PROCESSING ──complete──▶ COMPLETED
       │                    │
       ├──cancel/fail──▶ FAILED ◀──fail───────────┤
       └──timeout─────▶ TIMEOUT ◀──timeout────────┘

PENDING and PROCESSING are the only states with outgoing edges. The three
terminal states absorb every action.

All status guards go through next_status(). The reference timestamp used by
the timeout edge is chosen only by timeout_reference().
"""

from enum import Enum, IntEnum
from typing import Dict, Tuple

from batchsettle.core.exceptions import Reason, StateError


class BatchStatus(IntEnum):
    PENDING    = 0
    PROCESSING = 1
    COMPLETED  = 2
    FAILED     = 3
    TIMEOUT    = 4


class BatchAction(Enum):
    APPROVE  = "approve"
    CLAIM    = "claim"
    COMPLETE = "complete"
    CANCEL   = "cancel"
    FAIL     = "fail"
    TIMEOUT  = "timeout"


TRANSITIONS: Dict[Tuple[BatchStatus, BatchAction], BatchStatus] = {
    (BatchStatus.PENDING,    BatchAction.APPROVE):  BatchStatus.PROCESSING,
    (BatchStatus.PENDING,    BatchAction.CANCEL):   BatchStatus.FAILED,
    (BatchStatus.PENDING,    BatchAction.FAIL):     BatchStatus.FAILED,
    (BatchStatus.PENDING,    BatchAction.TIMEOUT):  BatchStatus.TIMEOUT,
    (BatchStatus.PROCESSING, BatchAction.CLAIM):    BatchStatus.PROCESSING,
    (BatchStatus.PROCESSING, BatchAction.COMPLETE): BatchStatus.COMPLETED,
    (BatchStatus.PROCESSING, BatchAction.FAIL):     BatchStatus.FAILED,
    (BatchStatus.PROCESSING, BatchAction.TIMEOUT):  BatchStatus.TIMEOUT,
}

# Reason raised when an action is attempted from a state with no edge for it.
REJECTIONS: Dict[BatchAction, str] = {
    BatchAction.APPROVE:  Reason.INVALID_STATUS,
    BatchAction.CLAIM:    Reason.NOT_PROCESSING,
    BatchAction.COMPLETE: Reason.NOT_PROCESSING,
    BatchAction.CANCEL:   Reason.CANNOT_CANCEL,
    BatchAction.FAIL:     Reason.INVALID_STATUS,
    BatchAction.TIMEOUT:  Reason.INVALID_STATUS,
}

TERMINAL = frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.TIMEOUT})


def next_status(status: BatchStatus, action: BatchAction) -> BatchStatus:
    """Target status for ``action`` from ``status``, or StateError."""
    try:
        return TRANSITIONS[(status, action)]
    except KeyError:
        raise StateError(
            REJECTIONS[action],
            f"cannot {action.value} a {status.name.lower()} batch",
            {"status": status.name, "action": action.value},
        ) from None


def is_terminal(status: BatchStatus) -> bool:
    return status in TERMINAL


def timeout_reference(status: BatchStatus, created_at: int, processed_at: int) -> int:
    """
    Timestamp the settlement timeout is measured from.

    A pending batch times out relative to its creation, a processing batch
    relative to its approval.
    """
    if status == BatchStatus.PROCESSING:
        return processed_at
    return created_at
