"""
batchsettle/core/emitter.py

Event Journal: the notification surface of the settlement core.

emit_all() MUST, in this exact order:
  1. Acquire lock
  2. For each event: EventEnvelope.create(..., prev=previous), sign, and
     assert chain invariants (causal_hash, sequence)
  3. Append every line to the JSONL journal in one write, if persistent
  4. Advance internal state, only after confirmed write
  5. Return the signed envelopes

emit() is emit_all() for a single event.

Components do not call emit() directly. They record events on the
TransactionManager, which flushes them here when the outermost operation
commits.
"""

import json
import threading
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from batchsettle.core.crypto import Ed25519KeyManager
from batchsettle.core.exceptions import JournalError, Reason
from batchsettle.core.models import (
    EventEnvelope,
    GENESIS_HASH,
    JOURNAL_VERSION,
)


class EventJournal:
    """
    Synchronous, signed, hash-chained event journal.

    Maintains chain state:
        _sequence       : monotonically increasing integer (0, 1, 2, ...)
        _last_envelope  : the last EventEnvelope appended (or None)

    With a journal_path, envelopes are appended to a JSONL file and state
    survives restart by reading the file on __init__. Without one, the
    journal lives in memory only.

    Thread-safe via internal lock (single-process only).
    """

    def __init__(
        self,
        key_manager:  Ed25519KeyManager,
        journal_path: Optional[Union[str, Path]] = None,
    ) -> None:
        self.key_manager = key_manager

        self._lock:          threading.Lock          = threading.Lock()
        self._sequence:      int                     = 0
        self._last_envelope: Optional[EventEnvelope] = None
        self._envelopes:     List[EventEnvelope]     = []

        self._journal_file: Optional[Path] = None
        if journal_path is not None:
            self._journal_file = Path(journal_path)
            self._journal_file.parent.mkdir(parents=True, exist_ok=True)
            self._restore_state()

    # ── Public API ────────────────────────────────────────────

    def emit(
        self,
        event_type: str,
        source:     str,
        timestamp:  str,
        payload:    Dict[str, Any],
    ) -> EventEnvelope:
        """
        Emit one signed EventEnvelope.

        Raises JournalError on any invariant violation or write failure.
        """
        return self.emit_all([(event_type, source, payload)], timestamp)[0]

    def emit_all(
        self,
        events:    Sequence[Tuple[str, str, Dict[str, Any]]],
        timestamp: str,
    ) -> List[EventEnvelope]:
        """
        Emit (event_type, source, payload) triples as one unit.

        Every envelope is signed and chained before anything is written, and
        all lines go to the file in a single append. If signing, the chain
        check or the write fails, nothing is appended and journal state is
        unchanged.
        """
        with self._lock:
            envelopes: List[EventEnvelope] = []
            prev = self._last_envelope
            for event_type, source, payload in events:
                sequence = self._sequence + len(envelopes)
                envelope = EventEnvelope.create(
                    event_type=        event_type,
                    source=            source,
                    signer_public_key= self.key_manager.public_key_hex,
                    sequence=          sequence,
                    timestamp=         timestamp,
                    payload=           payload,
                    prev=              prev,
                ).sign(self.key_manager)
                self._assert_chain_invariants(envelope, sequence, prev)
                envelopes.append(envelope)
                prev = envelope

            if not envelopes:
                return envelopes
            if self._journal_file is not None:
                self._append_to_file(envelopes)

            self._sequence      += len(envelopes)
            self._last_envelope  = envelopes[-1]
            self._envelopes.extend(envelopes)
            return envelopes

    def envelopes(self, event_type: Optional[str] = None) -> List[EventEnvelope]:
        """Envelopes emitted or restored by this instance, oldest first."""
        with self._lock:
            if event_type is None:
                return list(self._envelopes)
            return [e for e in self._envelopes if e.event_type == event_type]

    def last(self, event_type: Optional[str] = None) -> Optional[EventEnvelope]:
        matching = self.envelopes(event_type)
        return matching[-1] if matching else None

    def verify_chain(self) -> bool:
        """
        Verify the full chain from genesis.

        Reads the JSONL file when persistent, otherwise the in-memory list.
        Returns True if every entry has the right sequence, causal_hash and a
        valid signature.
        """
        try:
            if self._journal_file is not None:
                envelopes = load_envelopes(self._journal_file)
            else:
                envelopes = self.envelopes()
        except JournalError:
            return False

        for i, env in enumerate(envelopes):
            prev = envelopes[i - 1] if i > 0 else None
            if not env.verify_sequence(i):
                return False
            if not env.verify_chain(prev):
                return False
            if not env.verify_signature():
                return False
        return True

    def get_stats(self) -> Dict[str, Any]:
        """Return current journal state snapshot."""
        with self._lock:
            return {
                "next_sequence":    self._sequence,
                "last_record_id":   (
                    self._last_envelope.record_id
                    if self._last_envelope else None
                ),
                "last_causal_hash": (
                    self._last_envelope.causal_hash
                    if self._last_envelope else GENESIS_HASH
                ),
                "journal_file":     (
                    str(self._journal_file) if self._journal_file else None
                ),
                "signer_fingerprint": self.key_manager.fingerprint,
                "version":          JOURNAL_VERSION,
            }

    # ── Internal ──────────────────────────────────────────────

    def _restore_state(self) -> None:
        """
        Restore sequence and last envelope from an existing journal.
        A corrupted file leaves state at genesis and issues a RuntimeWarning.
        """
        if not self._journal_file.exists():
            return

        try:
            envelopes = load_envelopes(self._journal_file)
        except JournalError as exc:
            warnings.warn(
                f"EventJournal: could not restore state from {self._journal_file}: "
                f"{exc}. Run `batchsettle verify` before emitting.",
                RuntimeWarning,
                stacklevel=3,
            )
            return

        if not envelopes:
            return

        last = envelopes[-1]
        schema = last.validate_schema()
        if not schema:
            warnings.warn(
                f"EventJournal: last entry of {self._journal_file} fails schema "
                f"validation: {schema.errors}",
                RuntimeWarning,
                stacklevel=3,
            )
            return

        self._envelopes     = envelopes
        self._sequence      = last.sequence + 1
        self._last_envelope = last

    def _assert_chain_invariants(
        self,
        envelope: EventEnvelope,
        sequence: int,
        prev:     Optional[EventEnvelope],
    ) -> None:
        if not envelope.verify_sequence(sequence):
            raise JournalError(
                Reason.JOURNAL_CORRUPT,
                "sequence mismatch",
                {"expected": sequence, "got": envelope.sequence},
            )
        if not envelope.verify_chain(prev):
            raise JournalError(
                Reason.JOURNAL_CORRUPT,
                "causal_hash mismatch",
                {"sequence": envelope.sequence},
            )

    def _append_to_file(self, envelopes: List[EventEnvelope]) -> None:
        """
        Append signed envelopes as newline-terminated JSON lines in one write.
        State MUST NOT advance if this raises.
        """
        lines = "".join(json.dumps(e.to_dict()) + "\n" for e in envelopes)
        try:
            with open(self._journal_file, "a", encoding="utf-8") as f:
                f.write(lines)
        except OSError as exc:
            raise JournalError(
                Reason.JOURNAL_WRITE_FAILED,
                f"journal write failed: {exc}",
            ) from exc


def load_envelopes(path: Union[str, Path]) -> List[EventEnvelope]:
    """
    Read every envelope from a JSONL journal.
    Raises JournalError on unreadable files, bad JSON or missing fields.
    """
    envelopes: List[EventEnvelope] = []
    try:
        with open(path, "r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    envelopes.append(EventEnvelope.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError) as exc:
                    raise JournalError(
                        Reason.JOURNAL_CORRUPT,
                        f"invalid entry at line {line_num}: {exc}",
                    ) from exc
    except OSError as exc:
        raise JournalError(
            Reason.JOURNAL_CORRUPT,
            f"cannot read journal {path}: {exc}",
        ) from exc
    return envelopes
