"""
batchsettle/core/models.py

Journal Data Model.

CONTRACT 1: Signing
    bytes_signed = canonicalize(env.to_signing_dict())
    algorithm    = Ed25519
    encoding     = base64url, no padding

CONTRACT 2: Chain
    causal_hash  = SHA-256(canonicalize(prev.to_signing_dict()))
    first_entry  = GENESIS_HASH ("0" * 64)

CONTRACT 3: Timestamp
    format = YYYY-MM-DDTHH:MM:SS.mmmZ, rendered from engine clock seconds

CONTRACT 4: Vocabulary
    event_type must be an EventType constant; enforced at create().

CONTRACT 5: Numbers
    payload numbers are integers in base units with an explicit
    "decimals" field. Floats are rejected at create().
"""

import hashlib
import re
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from batchsettle.core.canonical import canonicalize
from batchsettle.core.crypto import Ed25519KeyManager


JOURNAL_VERSION = "1.0"
GENESIS_HASH    = "0" * 64

_NONCE_HEX_LENGTH      = 32
_PUBLIC_KEY_HEX_LENGTH = 64

_TIMESTAMP_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$"
)


class EventType:
    """
    Journal event_type constants, one per observable state transition.
    """
    # collateral ledger
    DEPOSITED                = "deposited"
    WITHDRAWAL_REQUESTED     = "withdrawal_requested"
    WITHDRAWN                = "withdrawn"
    WITHDRAWAL_CANCELLED     = "withdrawal_cancelled"
    EMERGENCY_WITHDRAWAL     = "emergency_withdrawal"
    COLLATERAL_LOCKED        = "collateral_locked"
    COLLATERAL_UNLOCKED      = "collateral_unlocked"
    COLLATERAL_TRANSFERRED   = "collateral_transferred"
    COLLATERAL_SLASHED       = "collateral_slashed"
    WITHDRAWAL_DELAY_UPDATED = "withdrawal_delay_updated"
    TREASURY_UPDATED         = "treasury_updated"

    # settlement
    BATCH_CREATED   = "batch_created"
    BATCH_APPROVED  = "batch_approved"
    PAYMENT_CLAIMED = "payment_claimed"
    BATCH_COMPLETED = "batch_completed"
    BATCH_CANCELLED = "batch_cancelled"
    BATCH_FAILED    = "batch_failed"
    BATCH_TIMED_OUT = "batch_timed_out"

    # oracle consensus
    ORACLE_REGISTERED     = "oracle_registered"
    ORACLE_DEREGISTERED   = "oracle_deregistered"
    ORACLE_ACTIVATED      = "oracle_activated"
    ORACLE_DEACTIVATED    = "oracle_deactivated"
    ORACLE_SLASHED        = "oracle_slashed"
    VOTE_CAST             = "vote_cast"
    THRESHOLD_UPDATED     = "threshold_updated"
    MINIMUM_STAKE_UPDATED = "minimum_stake_updated"

    # administration
    ROLE_GRANTED = "role_granted"
    ROLE_REVOKED = "role_revoked"
    PAUSED       = "paused"
    UNPAUSED     = "unpaused"


_VALID_EVENT_TYPES: Set[str] = {
    value
    for name, value in vars(EventType).items()
    if not name.startswith("_") and isinstance(value, str)
}


def _reject_floats(value: Any, path: str = "payload") -> None:
    if isinstance(value, float):
        raise TypeError(f"{path} contains a float; amounts must be integers")
    if isinstance(value, dict):
        for k, v in value.items():
            _reject_floats(v, f"{path}.{k}")
    elif isinstance(value, (list, tuple)):
        for i, v in enumerate(value):
            _reject_floats(v, f"{path}[{i}]")


def check_event(event_type: str, payload: Any) -> None:
    """
    Reject an unknown event_type, a non-dict payload or any float in it.

    Runs when an event is recorded, so a bad event aborts the call that
    produced it instead of failing later at commit.
    """
    if event_type not in _VALID_EVENT_TYPES:
        raise ValueError(
            f"Invalid event_type '{event_type}'. "
            f"Valid: {sorted(_VALID_EVENT_TYPES)}"
        )
    if not isinstance(payload, dict):
        raise TypeError(
            f"payload must be dict, got {type(payload).__name__}"
        )
    _reject_floats(payload)


@dataclass
class SchemaValidationResult:
    """
    Result of EventEnvelope.validate_schema().

    Returned, not raised, so callers can choose hard fail vs report.
    bool(result) is True iff valid.
    """
    valid:  bool
    errors: List[str]

    def __bool__(self) -> bool:
        return self.valid


@dataclass
class EventEnvelope:
    """One signed, chained journal entry."""

    version:           str
    record_id:         str
    event_type:        str
    source:            str
    signer_public_key: str
    sequence:          int
    nonce:             str
    timestamp:         str
    causal_hash:       str
    payload:           Dict[str, Any]
    signature:         Optional[str] = None

    @classmethod
    def create(
        cls,
        event_type:        str,
        source:            str,
        signer_public_key: str,
        sequence:          int,
        timestamp:         str,
        payload:           Dict[str, Any],
        prev:              Optional["EventEnvelope"] = None,
    ) -> "EventEnvelope":
        """
        Create an unsigned envelope with the correct causal_hash.

        Call .sign(key_manager) immediately after.
        """
        check_event(event_type, payload)
        if not isinstance(sequence, int) or sequence < 0:
            raise ValueError(
                f"sequence must be non-negative int, got {sequence!r}"
            )
        if (
            not isinstance(signer_public_key, str)
            or len(signer_public_key) != _PUBLIC_KEY_HEX_LENGTH
        ):
            raise ValueError(
                f"signer_public_key must be {_PUBLIC_KEY_HEX_LENGTH}-char hex string"
            )

        return cls(
            version=           JOURNAL_VERSION,
            record_id=         f"evt-{uuid.uuid4()}",
            event_type=        event_type,
            source=            source,
            signer_public_key= signer_public_key,
            sequence=          sequence,
            nonce=             secrets.token_hex(_NONCE_HEX_LENGTH // 2),
            timestamp=         timestamp,
            causal_hash=       cls._compute_causal_hash(prev),
            payload=           payload,
            signature=         None,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventEnvelope":
        """
        Deserialize from a JSONL line dict.

        Trusts persisted data. Callers MUST call validate_schema().
        """
        return cls(
            version=           data["version"],
            record_id=         data["record_id"],
            event_type=        data["event_type"],
            source=            data["source"],
            signer_public_key= data["signer_public_key"],
            sequence=          data["sequence"],
            nonce=             data["nonce"],
            timestamp=         data["timestamp"],
            causal_hash=       data["causal_hash"],
            payload=           data.get("payload", {}),
            signature=         data.get("signature"),
        )

    def validate_schema(self) -> SchemaValidationResult:
        errors: List[str] = []

        if self.version != JOURNAL_VERSION:
            errors.append(
                f"version: expected '{JOURNAL_VERSION}', got '{self.version}'"
            )
        if self.event_type not in _VALID_EVENT_TYPES:
            errors.append(f"event_type '{self.event_type}' is not a known event")
        if not isinstance(self.record_id, str) or not self.record_id.startswith("evt-"):
            errors.append(
                f"record_id must be a string starting with 'evt-', got {self.record_id!r}"
            )
        if not isinstance(self.source, str) or not self.source:
            errors.append("source must be a non-empty string")
        if not _is_hex(self.signer_public_key, _PUBLIC_KEY_HEX_LENGTH):
            errors.append(
                f"signer_public_key must be exactly {_PUBLIC_KEY_HEX_LENGTH} hex chars"
            )
        if not isinstance(self.sequence, int) or self.sequence < 0:
            errors.append(f"sequence must be non-negative int, got {self.sequence!r}")
        if not _is_hex(self.nonce, _NONCE_HEX_LENGTH):
            errors.append(f"nonce must be exactly {_NONCE_HEX_LENGTH} hex chars")
        if not isinstance(self.timestamp, str) or not _TIMESTAMP_RE.match(self.timestamp):
            errors.append(
                f"timestamp {self.timestamp!r} does not match YYYY-MM-DDTHH:MM:SS.mmmZ"
            )
        if not _is_hex(self.causal_hash, 64):
            errors.append("causal_hash must be 64 hex chars")
        if not isinstance(self.payload, dict):
            errors.append(f"payload must be dict, got {type(self.payload).__name__}")
        else:
            try:
                _reject_floats(self.payload)
            except TypeError as exc:
                errors.append(str(exc))

        return SchemaValidationResult(valid=len(errors) == 0, errors=errors)

    # ── Canonical forms ───────────────────────────────────────

    def to_signing_dict(self) -> Dict[str, Any]:
        """The exact dict that is signed and chained. Excludes signature."""
        return {
            "causal_hash":       self.causal_hash,
            "event_type":        self.event_type,
            "nonce":             self.nonce,
            "payload":           self.payload,
            "record_id":         self.record_id,
            "sequence":          self.sequence,
            "signer_public_key": self.signer_public_key,
            "source":            self.source,
            "timestamp":         self.timestamp,
            "version":           self.version,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Full serialization including signature. Used for JSONL persistence."""
        d = self.to_signing_dict().copy()
        d["signature"] = self.signature
        return d

    def canonical_bytes_for_signing(self) -> bytes:
        return canonicalize(self.to_signing_dict())

    @staticmethod
    def _compute_causal_hash(prev: Optional["EventEnvelope"]) -> str:
        if prev is None:
            return GENESIS_HASH
        return hashlib.sha256(
            canonicalize(prev.to_signing_dict())
        ).hexdigest()

    def expected_causal_hash_from(self, prev: Optional["EventEnvelope"]) -> str:
        return EventEnvelope._compute_causal_hash(prev)

    # ── Signing / Verification ────────────────────────────────

    def sign(self, key_manager: Ed25519KeyManager) -> "EventEnvelope":
        """Sign in place. Returns self for chaining."""
        self.signature = key_manager.sign(self.canonical_bytes_for_signing())
        return self

    def verify_signature(self, override_public_key_hex: Optional[str] = None) -> bool:
        """
        Verify the signature over the current canonical bytes.
        False for unsigned, tampered or wrong-key envelopes. Never raises.
        """
        if not self.signature:
            return False
        pubkey_hex = override_public_key_hex or self.signer_public_key
        return Ed25519KeyManager.verify_detached(
            self.canonical_bytes_for_signing(), self.signature, pubkey_hex
        )

    def verify_chain(self, prev: Optional["EventEnvelope"]) -> bool:
        return self.causal_hash == self.expected_causal_hash_from(prev)

    def verify_sequence(self, expected: int) -> bool:
        return self.sequence == expected


def _is_hex(value: Any, length: int) -> bool:
    if not isinstance(value, str) or len(value) != length:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True
