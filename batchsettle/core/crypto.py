"""
Journal signing keys.

One Ed25519 key signs every envelope a SettlementSystem emits. Envelopes
carry the signer's raw public key as hex, so a persisted journal can be
audited with nothing but that hex string (see ReplayEngine and
`batchsettle verify --trusted-signer`).

Wire forms:
    public key : 32 raw bytes, lowercase hex (64 chars)
    signature  : 64 raw bytes, base64url without "=" padding
    key file   : PEM, PKCS8, unencrypted
"""

import base64
import binascii
import hashlib
from pathlib import Path
from typing import Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
)

from batchsettle.core.exceptions import JournalError, Reason

PUBLIC_KEY_HEX_LENGTH = 64
SIGNATURE_LENGTH      = 64


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class Ed25519KeyManager:
    """Holds the journal's private key and verifies signatures by public key."""

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key = private_key
        self._public_key_hex = (
            private_key.public_key()
            .public_bytes(Encoding.Raw, PublicFormat.Raw)
            .hex()
        )

    @classmethod
    def generate(cls) -> "Ed25519KeyManager":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Ed25519KeyManager":
        """
        Load a PEM private key written by save() or `batchsettle keygen`.

        Raises FileNotFoundError if the file is missing and JournalError
        (signing_key_invalid) if it does not hold an Ed25519 key.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"signing key not found: {path}")
        try:
            private_key = load_pem_private_key(path.read_bytes(), password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise JournalError(
                Reason.SIGNING_KEY_INVALID,
                f"cannot load signing key from {path}: {exc}",
                {"path": str(path)},
            ) from exc
        if not isinstance(private_key, Ed25519PrivateKey):
            raise JournalError(
                Reason.SIGNING_KEY_INVALID,
                f"{path} does not hold an Ed25519 private key",
                {"path": str(path), "key_type": type(private_key).__name__},
            )
        return cls(private_key)

    @property
    def public_key_hex(self) -> str:
        return self._public_key_hex

    @property
    def fingerprint(self) -> str:
        """Short SHA-256 fingerprint of the public key, for logs and reports."""
        digest = hashlib.sha256(bytes.fromhex(self._public_key_hex)).hexdigest()
        return digest[:16]

    def sign(self, data: bytes) -> str:
        return _b64url_encode(self._private_key.sign(data))

    @staticmethod
    def verify_detached(data: bytes, signature_b64: str, public_key_hex: str) -> bool:
        """
        Check an envelope signature against a bare public key hex string.

        Malformed keys or signatures count as invalid; this never raises.
        """
        if not isinstance(public_key_hex, str) or len(public_key_hex) != PUBLIC_KEY_HEX_LENGTH:
            return False
        if not isinstance(signature_b64, str):
            return False
        try:
            public_key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex))
            raw_sig = _b64url_decode(signature_b64)
        except (ValueError, binascii.Error):
            return False
        if len(raw_sig) != SIGNATURE_LENGTH:
            return False
        try:
            public_key.verify(raw_sig, data)
        except InvalidSignature:
            return False
        return True

    def save(self, path: Union[str, Path]) -> None:
        """Write the private key as unencrypted PKCS8 PEM, creating parent dirs."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(
            self._private_key.private_bytes(
                encoding=             Encoding.PEM,
                format=               PrivateFormat.PKCS8,
                encryption_algorithm= NoEncryption(),
            )
        )

    def __repr__(self) -> str:
        return f"Ed25519KeyManager(fingerprint={self.fingerprint})"
