"""
batchsettle/core/replay.py

Journal replay: offline audit of a persisted event journal.

Checks enforced here:
    1. Load    → EventEnvelope.from_dict(line), the only deserialization path
    2. Schema  → env.validate_schema(), fail fast
    3. Chain   → env.verify_chain(prev), sequential
    4. Sig     → env.verify_signature()
    5. Nonce   → no two envelopes in a journal may share a nonce
    6. Signer  → optionally, every envelope is signed by one trusted key
    7. Account → every collateral account snapshot in a payload balances
    8. Batch   → batch events only follow that batch's batch_created

Cryptographic checks delegate to EventEnvelope methods. This file contains no
hash computation and no canonicalization.
"""

import json
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set

from batchsettle.core.models import EventEnvelope, EventType

VIOLATION_TYPES = (
    "sequence_gap",
    "chain_break",
    "duplicate_nonce",
    "invalid_signature",
    "untrusted_signer",
    "unbalanced_account",
    "unknown_batch",
)

_ACCOUNT_FIELDS = ("available", "locked", "total_withdrawn", "total_slashed")


@dataclass
class ChainViolation:
    """A single detected violation in the journal."""
    at_sequence:    int
    record_id:      str
    violation_type: str   # see VIOLATION_TYPES
    detail:         str


@dataclass
class ReplaySummary:
    """Aggregate result of a full journal verification pass."""
    total_entries:      int
    chain_valid:        bool
    violations:         List[ChainViolation]
    valid_signatures:   int
    invalid_signatures: int
    event_type_counts:  Dict[str, int]
    sources_seen:       List[str]
    first_timestamp:    Optional[str]
    last_timestamp:     Optional[str]
    signers:            List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_entries":      self.total_entries,
            "chain_valid":        self.chain_valid,
            "valid_signatures":   self.valid_signatures,
            "invalid_signatures": self.invalid_signatures,
            "event_type_counts":  self.event_type_counts,
            "sources_seen":       self.sources_seen,
            "signers":            self.signers,
            "first_timestamp":    self.first_timestamp,
            "last_timestamp":     self.last_timestamp,
            "violations": [
                {
                    "at_sequence":    v.at_sequence,
                    "record_id":      v.record_id,
                    "violation_type": v.violation_type,
                    "detail":         v.detail,
                }
                for v in self.violations
            ],
        }


class ReplayEngine:
    """
    Usage:
        engine = ReplayEngine()
        engine.load(Path("journal.jsonl"))
        summary = engine.verify()

    trusted_signer:
        When set, envelopes signed by any other public key are reported as
        "untrusted_signer" even if their signature is valid.
    """

    def __init__(self, trusted_signer: Optional[str] = None):
        self.envelopes:       List[EventEnvelope]  = []
        self.violations:      List[ChainViolation] = []
        self._trusted_signer: Optional[str]        = trusted_signer

    def load(self, journal_path: Path) -> None:
        """
        Load a JSONL journal.

        Raises:
            FileNotFoundError: journal file does not exist
            ValueError       : malformed JSON, missing field or schema violation
        """
        journal_path    = Path(journal_path)
        self.envelopes  = []
        self.violations = []

        if not journal_path.exists():
            raise FileNotFoundError(f"journal not found: {journal_path}")

        with open(journal_path, "r", encoding="utf-8") as f:
            for line_num, raw in enumerate(f, 1):
                raw = raw.strip()
                if not raw:
                    continue

                try:
                    data = json.loads(raw)
                except json.JSONDecodeError as e:
                    raise ValueError(
                        f"Malformed JSON at journal line {line_num}: {e}"
                    ) from e

                try:
                    env = EventEnvelope.from_dict(data)
                except KeyError as e:
                    raise ValueError(
                        f"Missing required field at line {line_num}: {e}"
                    ) from e

                schema = env.validate_schema()
                if not schema:
                    raise ValueError(
                        f"Schema violation at line {line_num} "
                        f"(record_id={data.get('record_id', '?')}): "
                        f"{schema.errors}"
                    )

                self.envelopes.append(env)

        self.envelopes.sort(key=lambda e: e.sequence)

    def verify(self) -> ReplaySummary:
        """Full verification pass over all loaded envelopes."""
        self.violations = []

        if not self.envelopes:
            return ReplaySummary(
                total_entries=      0,
                chain_valid=        True,
                violations=         [],
                valid_signatures=   0,
                invalid_signatures= 0,
                event_type_counts=  {},
                sources_seen=       [],
                first_timestamp=    None,
                last_timestamp=     None,
            )

        seen_nonces:   Set[str] = set()
        known_batches: Set[str] = set()
        valid_sigs   = 0
        invalid_sigs = 0

        for i, env in enumerate(self.envelopes):
            prev = self.envelopes[i - 1] if i > 0 else None

            if not env.verify_sequence(i):
                self._violation(env, "sequence_gap", f"Expected sequence {i}, got {env.sequence}")

            if not env.verify_chain(prev):
                expected = env.expected_causal_hash_from(prev)
                self._violation(
                    env,
                    "chain_break",
                    f"causal_hash mismatch: expected ...{expected[-12:]}, "
                    f"got ...{env.causal_hash[-12:]}",
                )

            if env.nonce in seen_nonces:
                self._violation(env, "duplicate_nonce", f"Duplicate nonce '{env.nonce}'")
            seen_nonces.add(env.nonce)

            if env.verify_signature():
                valid_sigs += 1
            else:
                invalid_sigs += 1
                self._violation(
                    env,
                    "invalid_signature",
                    f"Signature invalid (signer: {env.signer_public_key[:16]}...)",
                )

            if self._trusted_signer and env.signer_public_key != self._trusted_signer:
                self._violation(
                    env,
                    "untrusted_signer",
                    f"Signed by {env.signer_public_key[:16]}..., "
                    f"expected {self._trusted_signer[:16]}...",
                )

            self._check_account(env)
            self._check_batch(env, known_batches)

        counts: Dict[str, int] = defaultdict(int)
        for env in self.envelopes:
            counts[env.event_type] += 1

        return ReplaySummary(
            total_entries=      len(self.envelopes),
            chain_valid=        len(self.violations) == 0,
            violations=         list(self.violations),
            valid_signatures=   valid_sigs,
            invalid_signatures= invalid_sigs,
            event_type_counts=  dict(counts),
            sources_seen=       sorted({e.source for e in self.envelopes}),
            first_timestamp=    self.envelopes[0].timestamp,
            last_timestamp=     self.envelopes[-1].timestamp,
            signers=            sorted({e.signer_public_key for e in self.envelopes}),
        )

    def _violation(self, env: EventEnvelope, kind: str, detail: str) -> None:
        self.violations.append(ChainViolation(
            at_sequence=    env.sequence,
            record_id=      env.record_id,
            violation_type= kind,
            detail=         detail,
        ))

    def _check_account(self, env: EventEnvelope) -> None:
        account = env.payload.get("account")
        if not isinstance(account, dict):
            return
        try:
            held = sum(account[name] for name in _ACCOUNT_FIELDS)
            deposited = account["total_deposited"]
        except (KeyError, TypeError):
            self._violation(env, "unbalanced_account", "Account snapshot is incomplete")
            return
        if held != deposited:
            self._violation(
                env,
                "unbalanced_account",
                f"Account for '{env.payload.get('principal')}' holds {held}, "
                f"deposited {deposited}",
            )

    def _check_batch(self, env: EventEnvelope, known: Set[str]) -> None:
        batch_id = env.payload.get("batch_id")
        if batch_id is None:
            return
        if env.event_type == EventType.BATCH_CREATED:
            known.add(batch_id)
        elif batch_id not in known:
            self._violation(
                env,
                "unknown_batch",
                f"{env.event_type} for batch ...{str(batch_id)[-12:]} before batch_created",
            )
