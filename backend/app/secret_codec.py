from __future__ import annotations

"""Encryption at rest and display masking for provider credentials.

Credentials are sealed with Fernet using a key derived from the host master
key, which is configured outside the settings payload. The sealed token is the
"opaque reference" persisted in settings; only ``reveal`` turns it back into a
usable key.
"""

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionError

MASK_LENGTH = 16
_VISIBLE_PREFIX = 3
_VISIBLE_SUFFIX = 4
_MIN_PARTIAL_LENGTH = 12
_MASK_FILLERS = ("*", "#", "x")
_KDF_SALT = b"content-flow:provider-credentials:v1"
_KDF_ITERATIONS = 390_000


def derive_fernet_key(master_key: str) -> bytes:
    """Derive a urlsafe Fernet key from a free-form master key."""

    if not master_key:
        raise ValueError("A non-empty master key is required")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_KDF_SALT,
        iterations=_KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(master_key.encode("utf-8")))


def mask(secret: str | None) -> str:
    """Return a fixed-length display form that never contains ``secret``.

    An unset secret masks to ``""`` so callers can tell "unset" apart from
    "set but hidden".
    """

    if not secret:
        return ""

    for filler in _MASK_FILLERS:
        if len(secret) >= _MIN_PARTIAL_LENGTH:
            hidden = MASK_LENGTH - _VISIBLE_PREFIX - _VISIBLE_SUFFIX
            candidate = secret[:_VISIBLE_PREFIX] + filler * hidden + secret[-_VISIBLE_SUFFIX:]
        else:
            candidate = filler * MASK_LENGTH
        if secret not in candidate:
            return candidate
    # Unreachable for real keys; a uniform filler differs from any mixed secret.
    return "-" * MASK_LENGTH


def fingerprint_secret(secret: str) -> str:
    """Short non-reversible identifier used in logs to correlate credentials."""

    if not secret:
        return ""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:8]


class SecretCodec:
    """Seals, reveals and masks provider credentials."""

    def __init__(self, key: bytes) -> None:
        """Initialize from a raw Fernet key (see ``from_master_key``)."""

        self._fernet = Fernet(key)

    @classmethod
    def from_master_key(cls, master_key: str) -> "SecretCodec":
        """Build a codec from the host-provided master key."""

        return cls(derive_fernet_key(master_key))

    def store(self, secret: str | None) -> str:
        """Encrypt ``secret`` into an opaque reference; unset stays ``""``."""

        if not secret:
            return ""
        return self._fernet.encrypt(secret.encode("utf-8")).decode("ascii")

    def reveal(self, reference: str | None) -> str:
        """Decrypt an opaque reference produced by ``store``."""

        if not reference:
            return ""
        try:
            plaintext = self._fernet.decrypt(reference.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError, ValueError) as exc:
            raise DecryptionError(
                "Stored credential could not be decrypted; it is corrupted or "
                "the master key has changed."
            ) from exc
        secret = plaintext.decode("utf-8")
        if not secret:
            raise DecryptionError("Stored credential decrypted to an empty value.")
        return secret

    @staticmethod
    def mask(secret: str | None) -> str:
        """Display form of a plaintext secret."""

        return mask(secret)
