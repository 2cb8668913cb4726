"""
auth/keys.py -- Versioned signing-key material for locally issued tokens.

A KeySet is immutable: one active SigningKey that signs new tokens plus any
retired keys still accepted for verification. KeyRing holds the current
KeySet and swaps it atomically on rotate(). Verification takes a snapshot
once and resolves the token's `kid` header against that snapshot only, so a
rotation that lands mid-verification cannot mix key material.

Supported algorithms: HS256/384/512 (SECRET_KEY or a configured secret),
RS256 and ES256 (PEM private key; the public half is derived here).

Layer rule: may import from core/ (settings); no imports from api/.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass

from cryptography.hazmat.primitives import serialization

from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.keys")


@dataclass(frozen=True)
class SigningKey:
    kid: str
    algorithm: str
    private: str
    public: str

    @property
    def symmetric(self) -> bool:
        return self.algorithm.startswith("HS")


@dataclass(frozen=True)
class KeySet:
    version: int
    active: SigningKey
    retired: tuple[SigningKey, ...] = ()

    def find(self, kid: str | None) -> SigningKey | None:
        """Return the key matching kid. A token without kid maps to the active key."""
        if kid is None:
            return self.active
        for key in (self.active, *self.retired):
            if key.kid == kid:
                return key
        return None

    def rotated(self, new_active: SigningKey, keep_retired: int = 2) -> KeySet:
        retired = (self.active, *self.retired)[:keep_retired]
        return KeySet(version=self.version + 1, active=new_active, retired=retired)


class KeyRing:
    """Thread-safe holder of the current KeySet."""

    def __init__(self, keyset: KeySet) -> None:
        self._lock = threading.Lock()
        self._keyset = keyset

    def snapshot(self) -> KeySet:
        with self._lock:
            return self._keyset

    def rotate(self, new_active: SigningKey, keep_retired: int = 2) -> KeySet:
        """Make new_active the signing key; the previous key keeps verifying."""
        with self._lock:
            if new_active.kid == self._keyset.active.kid:
                raise ValueError("New signing key must have a different kid.")
            self._keyset = self._keyset.rotated(new_active, keep_retired)
            keyset = self._keyset
        logger.info("Signing keys rotated: version=%d kid=%s", keyset.version, new_active.kid)
        return keyset


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def _derive_kid(material: str) -> str:
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]


def public_pem_from_private(private_pem: str) -> str:
    """Derive the SubjectPublicKeyInfo PEM for an RSA or EC private key."""
    private_key = serialization.load_pem_private_key(private_pem.encode("utf-8"), password=None)
    return (
        private_key.public_key()
        .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
        .decode("utf-8")
    )


def build_signing_key(algorithm: str, material: str, kid: str = "") -> SigningKey:
    """Build a SigningKey from a shared secret (HS*) or PEM private key (RS256/ES256)."""
    algorithm = algorithm.upper()
    if algorithm.startswith("HS"):
        return SigningKey(kid=kid or _derive_kid(material), algorithm=algorithm, private=material, public=material)
    public = public_pem_from_private(material)
    return SigningKey(kid=kid or _derive_kid(public), algorithm=algorithm, private=material, public=public)


def load_keyset(settings: Settings) -> KeySet:
    """Build the startup KeySet from settings. Version 1, nothing retired."""
    if settings.jwt_algorithm.startswith("HS"):
        key = build_signing_key(settings.jwt_algorithm, settings.secret_key, settings.jwt_key_id)
    else:
        key = build_signing_key(settings.jwt_algorithm, settings.load_private_key_pem(), settings.jwt_key_id)
    logger.info("Loaded signing key: algorithm=%s kid=%s", key.algorithm, key.kid)
    return KeySet(version=1, active=key)
