"""
batchsettle: Canonical JSON Encoding: RFC 8785 (JCS)

This is the ONLY canonicalization permitted in batchsettle.
Journal signing, chain hashing and batch id derivation all use this module.

RFC 8785: https://www.rfc-editor.org/rfc/rfc8785
"""

import hashlib

import jcs


def canonicalize(obj: dict) -> bytes:
    """
    Encode a dict to RFC 8785 canonical JSON bytes.

    Output is deterministic regardless of key insertion order.
    Values must be JSON-primitive (str, int, bool, None, list, dict).
    Amounts are integers in base units, never floats.

    Returns:
        UTF-8 encoded canonical JSON bytes, suitable for signing.
    """
    return jcs.canonicalize(obj)


def canonical_hash(obj: dict) -> str:
    """
    SHA-256 of the RFC 8785 canonical form.

    Returns:
        Lowercase hex-encoded SHA-256 digest (64 characters).
    """
    return hashlib.sha256(canonicalize(obj)).hexdigest()
