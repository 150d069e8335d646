"""
tests/test_event_journal.py

Laws of the signed event journal and the transaction layer that feeds it.

  SIGNING   any mutation of a signed field breaks the signature
  CHAIN     causal_hash links every entry to its predecessor from genesis
  SCHEMA    unknown events, floats and malformed fields are refused
  REPLAY    tampering in a persisted journal is located by ReplayEngine
  RESTORE   a reopened journal continues the chain
  TX        events are buffered per transaction and dropped on rejection
"""

import hashlib
import json
from pathlib import Path
from typing import List

import pytest

from batchsettle.core.canonical import canonicalize
from batchsettle.core.crypto import Ed25519KeyManager
from batchsettle.core.emitter import EventJournal
from batchsettle.core.exceptions import JournalError
from batchsettle.core.models import (
    GENESIS_HASH,
    JOURNAL_VERSION,
    EventEnvelope,
    EventType,
)
from batchsettle.core.replay import ReplayEngine
from batchsettle.core.time import ManualClock, wire_timestamp
from batchsettle.core.transactions import TransactionManager

TS = "2023-11-14T22:13:20.000Z"


@pytest.fixture
def key():
    return Ed25519KeyManager.generate()


@pytest.fixture
def key2():
    return Ed25519KeyManager.generate()


def make_env(
    key: Ed25519KeyManager,
    event_type: str = EventType.DEPOSITED,
    sequence: int = 0,
    payload: dict = None,
    prev: EventEnvelope = None,
) -> EventEnvelope:
    return EventEnvelope.create(
        event_type=        event_type,
        source=            "collateral-ledger",
        signer_public_key= key.public_key_hex,
        sequence=          sequence,
        timestamp=         TS,
        payload=           payload or {"principal": "p", "amount": 1, "decimals": 6},
        prev=              prev,
    ).sign(key)


def make_chain(key: Ed25519KeyManager, n: int) -> List[EventEnvelope]:
    chain, prev = [], None
    for i in range(n):
        prev = make_env(key, sequence=i, payload={"i": i}, prev=prev)
        chain.append(prev)
    return chain


def write_journal(envelopes: List[EventEnvelope], path: Path) -> None:
    with open(path, "w", encoding="utf-8") as f:
        for env in envelopes:
            f.write(json.dumps(env.to_dict()) + "\n")


def replay(path: Path, trusted_signer: str = None):
    engine = ReplayEngine(trusted_signer=trusted_signer)
    engine.load(path)
    return engine.verify()


# ─────────────────────────────────────────────────────────────
# Signing
# ─────────────────────────────────────────────────────────────

class TestSigning:

    def test_signed_envelope_verifies(self, key):
        env = make_env(key)
        assert env.signature
        assert env.verify_signature()

    @pytest.mark.parametrize("field,value", [
        ("payload",    {"principal": "p", "amount": 2, "decimals": 6}),
        ("event_type", EventType.WITHDRAWN),
        ("timestamp",  "2000-01-01T00:00:00.000Z"),
        ("source",     "intruder"),
        ("nonce",      "ab" * 16),
        ("sequence",   999),
        ("version",    "9.9"),
    ])
    def test_mutation_breaks_signature(self, key, field, value):
        env = make_env(key)
        setattr(env, field, value)
        assert not env.verify_signature()

    def test_wrong_key_cannot_verify(self, key, key2):
        env = make_env(key)
        assert not env.verify_signature(key2.public_key_hex)

    def test_unsigned_envelope_fails(self, key):
        env = EventEnvelope.create(
            event_type=        EventType.PAUSED,
            source=            "x",
            signer_public_key= key.public_key_hex,
            sequence=          0,
            timestamp=         TS,
            payload=           {},
        )
        assert not env.verify_signature()

    def test_signing_bytes_are_deterministic(self, key):
        env = make_env(key)
        assert env.canonical_bytes_for_signing() == env.canonical_bytes_for_signing()
        assert "signature" not in env.to_signing_dict()
        assert env.to_dict()["signature"] == env.signature


# ─────────────────────────────────────────────────────────────
# Chain
# ─────────────────────────────────────────────────────────────

class TestChain:

    def test_first_entry_points_at_genesis(self, key):
        assert make_env(key).causal_hash == GENESIS_HASH

    def test_second_entry_hashes_first(self, key):
        first, second = make_chain(key, 2)
        expected = hashlib.sha256(canonicalize(first.to_signing_dict())).hexdigest()
        assert second.causal_hash == expected
        assert second.verify_chain(first)

    def test_mutating_prev_breaks_link(self, key):
        first, second = make_chain(key, 2)
        first.payload = {"i": 42}
        assert not second.verify_chain(first)

    def test_nonces_unique(self, key):
        chain = make_chain(key, 50)
        assert len({e.nonce for e in chain}) == 50


# ─────────────────────────────────────────────────────────────
# Schema
# ─────────────────────────────────────────────────────────────

class TestSchema:

    def test_unknown_event_type_refused(self, key):
        with pytest.raises(ValueError):
            make_env(key, event_type="teleported")

    def test_floats_refused(self, key):
        with pytest.raises(TypeError):
            make_env(key, payload={"amount": 1.5})
        with pytest.raises(TypeError):
            make_env(key, payload={"account": {"locked": 0.1}})

    def test_negative_sequence_refused(self, key):
        with pytest.raises(ValueError):
            make_env(key, sequence=-1)

    def test_validate_schema_reports_fields(self, key):
        env = make_env(key)
        assert env.validate_schema()
        env.nonce = "short"
        env.timestamp = "2023-11-14T22:13:20Z"
        env.record_id = "rec-1"
        result = env.validate_schema()
        assert not result
        assert len(result.errors) == 3

    def test_wire_timestamp_format(self):
        assert wire_timestamp(1_700_000_000) == "2023-11-14T22:13:20.000Z"


# ─────────────────────────────────────────────────────────────
# Replay
# ─────────────────────────────────────────────────────────────

class TestReplay:

    def test_clean_journal(self, key, tmp_path):
        path = tmp_path / "j.jsonl"
        write_journal(make_chain(key, 5), path)
        summary = replay(path, trusted_signer=key.public_key_hex)
        assert summary.chain_valid
        assert summary.total_entries == 5
        assert summary.valid_signatures == 5
        assert summary.event_type_counts == {EventType.DEPOSITED: 5}

    def test_tampered_payload_located(self, key, tmp_path):
        chain = make_chain(key, 5)
        chain[2].payload = {"i": 999}
        path = tmp_path / "j.jsonl"
        write_journal(chain, path)

        summary = replay(path)
        kinds = {(v.at_sequence, v.violation_type) for v in summary.violations}
        assert (2, "invalid_signature") in kinds
        assert (3, "chain_break") in kinds

    def test_deleted_entry_is_gap(self, key, tmp_path):
        chain = make_chain(key, 5)
        del chain[2]
        path = tmp_path / "j.jsonl"
        write_journal(chain, path)
        kinds = {v.violation_type for v in replay(path).violations}
        assert {"sequence_gap", "chain_break"} <= kinds

    def test_foreign_signer_flagged(self, key, key2, tmp_path):
        path = tmp_path / "j.jsonl"
        write_journal(make_chain(key, 2), path)
        summary = replay(path, trusted_signer=key2.public_key_hex)
        assert [v.violation_type for v in summary.violations] == ["untrusted_signer"] * 2

    def test_unbalanced_account_flagged(self, key, tmp_path):
        account = {
            "total_deposited": 100, "available": 60, "locked": 30,
            "total_withdrawn": 0, "total_slashed": 0,
        }
        env = make_env(key, payload={"principal": "p", "decimals": 6, "account": account})
        path = tmp_path / "j.jsonl"
        write_journal([env], path)
        assert [v.violation_type for v in replay(path).violations] == ["unbalanced_account"]

    def test_batch_event_before_creation_flagged(self, key, tmp_path):
        first = make_env(key, EventType.BATCH_APPROVED, payload={"batch_id": "b1"})
        second = make_env(key, EventType.BATCH_CREATED, sequence=1,
                          payload={"batch_id": "b2"}, prev=first)
        third = make_env(key, EventType.BATCH_CANCELLED, sequence=2,
                         payload={"batch_id": "b2"}, prev=second)
        path = tmp_path / "j.jsonl"
        write_journal([first, second, third], path)
        summary = replay(path)
        assert [(v.at_sequence, v.violation_type) for v in summary.violations] == [
            (0, "unknown_batch"),
        ]

    def test_malformed_line_raises(self, tmp_path):
        path = tmp_path / "j.jsonl"
        path.write_text("{not json\n")
        with pytest.raises(ValueError):
            ReplayEngine().load(path)

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ReplayEngine().load(tmp_path / "absent.jsonl")


# ─────────────────────────────────────────────────────────────
# Journal persistence
# ─────────────────────────────────────────────────────────────

class TestJournal:

    def test_in_memory_journal(self, key):
        journal = EventJournal(key)
        journal.emit(EventType.PAUSED, "ledger", TS, {"by": "admin"})
        journal.emit(EventType.UNPAUSED, "ledger", TS, {"by": "admin"})
        assert journal.verify_chain()
        assert journal.get_stats()["next_sequence"] == 2
        assert journal.get_stats()["journal_file"] is None
        assert journal.last().event_type == EventType.UNPAUSED
        assert [e.event_type for e in journal.envelopes(EventType.PAUSED)] == [EventType.PAUSED]

    def test_reopen_continues_chain(self, key, tmp_path):
        path = tmp_path / "j.jsonl"
        first = EventJournal(key, path)
        first.emit(EventType.PAUSED, "ledger", TS, {"by": "admin"})
        last_before = first.last()

        second = EventJournal(key, path)
        env = second.emit(EventType.UNPAUSED, "ledger", TS, {"by": "admin"})
        assert env.sequence == 1
        assert env.verify_chain(last_before)
        assert second.verify_chain()
        assert replay(path).violations == []

    def test_corrupt_file_warns_on_open(self, key, tmp_path):
        path = tmp_path / "j.jsonl"
        path.write_text("garbage\n")
        with pytest.warns(RuntimeWarning):
            journal = EventJournal(key, path)
        assert journal.get_stats()["next_sequence"] == 0
        assert not journal.verify_chain()

    def test_load_failure_is_journal_error(self, tmp_path):
        from batchsettle.core.emitter import load_envelopes
        path = tmp_path / "j.jsonl"
        path.write_text('{"version": "1.0"}\n')
        with pytest.raises(JournalError):
            load_envelopes(path)


# ─────────────────────────────────────────────────────────────
# Signing keys
# ─────────────────────────────────────────────────────────────

class TestSigningKeys:

    def test_save_and_load_same_key(self, key, tmp_path):
        path = tmp_path / "keys" / "journal.pem"
        key.save(path)
        loaded = Ed25519KeyManager.from_file(path)
        assert loaded.public_key_hex == key.public_key_hex
        assert loaded.fingerprint == key.fingerprint
        sig = loaded.sign(b"payload")
        assert Ed25519KeyManager.verify_detached(b"payload", sig, key.public_key_hex)

    def test_missing_key_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Ed25519KeyManager.from_file(tmp_path / "absent.pem")

    def test_garbage_key_file(self, tmp_path):
        path = tmp_path / "bad.pem"
        path.write_text("not a key")
        with pytest.raises(JournalError) as exc:
            Ed25519KeyManager.from_file(path)
        assert exc.value.reason == "signing_key_invalid"

    @pytest.mark.parametrize("signature, pubkey", [
        ("!!!", None),
        ("AAAA", None),
        (None, "zz" * 32),
        (None, "ab"),
    ])
    def test_verify_detached_never_raises(self, key, signature, pubkey):
        good_sig = key.sign(b"data")
        assert not Ed25519KeyManager.verify_detached(
            b"data",
            signature if signature is not None else good_sig,
            pubkey if pubkey is not None else key.public_key_hex,
        )

    def test_stats_carry_fingerprint(self, key):
        journal = EventJournal(key)
        assert journal.get_stats()["signer_fingerprint"] == key.fingerprint
        assert len(key.fingerprint) == 16


# ─────────────────────────────────────────────────────────────
# Transactions
# ─────────────────────────────────────────────────────────────

class TestTransactions:

    @pytest.fixture
    def tx(self, key):
        return TransactionManager(EventJournal(key), ManualClock(start=1_700_000_000))

    def test_record_outside_transaction(self, tx):
        with pytest.raises(RuntimeError):
            tx.record(EventType.PAUSED, "x", {})

    def test_events_flush_on_commit(self, tx):
        with tx.atomic():
            tx.record(EventType.PAUSED, "x", {"by": "a"})
            assert tx.journal.envelopes() == []
        envs = tx.journal.envelopes()
        assert len(envs) == 1
        assert envs[0].timestamp == "2023-11-14T22:13:20.000Z"

    def test_rejection_discards_events(self, tx):
        with pytest.raises(ValueError):
            with tx.atomic():
                tx.record(EventType.PAUSED, "x", {"by": "a"})
                raise ValueError("rejected")
        assert tx.journal.envelopes() == []
        assert not tx.in_transaction

    def test_caught_inner_failure_keeps_outer_events(self, tx):
        with tx.atomic():
            tx.record(EventType.PAUSED, "outer", {})
            try:
                with tx.atomic():
                    tx.record(EventType.UNPAUSED, "inner", {})
                    raise ValueError("inner rejected")
            except ValueError:
                pass
        assert [e.source for e in tx.journal.envelopes()] == ["outer"]

    def test_time_frozen_within_transaction(self, tx):
        with tx.atomic():
            start = tx.now()
            tx.clock.advance(500)
            assert tx.now() == start
        assert tx.now() == start + 500

    def test_journal_version(self, tx):
        with tx.atomic():
            tx.record(EventType.PAUSED, "x", {})
        assert tx.journal.last().version == JOURNAL_VERSION
