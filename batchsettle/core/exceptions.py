"""
batchsettle exception hierarchy

All exceptions inherit from BatchSettleError for easy catching.

Every rejection carries a stable ``reason`` string. Downstream tooling and
tests key off the reason, never the message text. The ``category`` names the
rejection class:

    validation     malformed input, rejected before any state read
    balance        insufficient bucket balance, below-minimum deposit/stake
    state          operation invalid for the current status
    temporal       timelock not elapsed, window passed
    authorization  caller lacks the required role
"""

from typing import Any, Dict, Optional


class BatchSettleError(Exception):
    """Base exception for all batchsettle errors"""

    category = "error"

    def __init__(
        self,
        reason: str,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.reason = reason
        self.message = message or reason.replace("_", " ")
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.reason}] {self.message} ({details_str})"
        return f"[{self.reason}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason":   self.reason,
            "category": self.category,
            "message":  self.message,
            "details":  dict(self.details),
        }


class ValidationError(BatchSettleError):
    """Raised when input is malformed"""
    category = "validation"


class BalanceError(BatchSettleError):
    """Raised when a balance bucket or stake cannot cover an operation"""
    category = "balance"


class StateError(BatchSettleError):
    """Raised when an operation is invalid for the current state"""
    category = "state"


class PausedError(StateError):
    """Raised when a paused component receives a gated call"""

    def __init__(self, component: str):
        super().__init__(
            Reason.PAUSED,
            f"{component} is paused",
            {"component": component},
        )


class TemporalError(BatchSettleError):
    """Raised when a time gate has not opened or has already closed"""
    category = "temporal"


class AuthorizationError(BatchSettleError):
    """Raised when the caller lacks the required role"""
    category = "authorization"


class JournalError(BatchSettleError):
    """Raised when the event journal cannot be written or read"""
    category = "journal"


class ConfigError(BatchSettleError):
    """Raised when configuration is invalid"""
    category = "config"


class Reason:
    """
    Stable rejection reason strings.

    These values are part of the public contract. Never rename one.
    """
    # validation
    ZERO_AMOUNT          = "zero_amount"
    INVALID_PRINCIPAL    = "invalid_principal"
    INVALID_PAYEE        = "invalid_payee"
    INVALID_ADDRESS      = "invalid_address"
    EMPTY_BATCH          = "empty_batch"
    BATCH_TOO_LARGE      = "batch_too_large"
    LENGTH_MISMATCH      = "length_mismatch"
    AMOUNT_OVERFLOW      = "amount_overflow"
    INVALID_THRESHOLD    = "invalid_threshold"
    DELAY_TOO_SHORT      = "delay_too_short"
    DELAY_TOO_LONG       = "delay_too_long"
    INVALID_CONFIG       = "invalid_config"

    # balance
    BELOW_MINIMUM_DEPOSIT      = "below_minimum_deposit"
    INSUFFICIENT_AVAILABLE     = "insufficient_available_balance"
    INSUFFICIENT_LOCKED        = "insufficient_locked_balance"
    INSUFFICIENT_ASSET_BALANCE = "insufficient_asset_balance"
    INSUFFICIENT_STAKE         = "insufficient_stake"

    # state
    PAUSED                = "paused"
    PENDING_WITHDRAWAL    = "pending_withdrawal_exists"
    NO_WITHDRAWAL_REQUEST = "no_withdrawal_request"
    BATCH_NOT_FOUND       = "batch_not_found"
    INVALID_STATUS        = "invalid_status"
    NOT_PROCESSING        = "not_processing"
    NOT_IN_BATCH          = "not_in_batch"
    ALREADY_CLAIMED       = "already_claimed"
    CANNOT_CANCEL         = "cannot_cancel"
    ALREADY_REGISTERED    = "already_registered"
    NOT_REGISTERED        = "not_registered"
    NOT_ACTIVE            = "not_active"
    ORACLE_ACTIVE         = "oracle_active"
    ORACLE_INACTIVE       = "oracle_inactive"
    ALREADY_VOTED         = "already_voted"
    ALREADY_PROCESSED     = "already_processed"
    THRESHOLD_TOO_HIGH    = "threshold_too_high"

    # temporal
    WITHDRAWAL_DELAY_NOT_MET = "withdrawal_delay_not_met"
    BATCH_TIMEOUT            = "batch_timeout"
    NOT_TIMED_OUT            = "not_timed_out"

    # authorization
    MISSING_ROLE    = "missing_role"
    NOT_BATCH_OWNER = "not_batch_owner"
    UNAUTHORIZED    = "unauthorized"

    # ambient
    JOURNAL_WRITE_FAILED = "journal_write_failed"
    JOURNAL_CORRUPT      = "journal_corrupt"
    SIGNING_KEY_INVALID  = "signing_key_invalid"
