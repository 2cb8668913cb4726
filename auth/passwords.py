"""
auth/passwords.py -- Password hashing and constant-time credential checks.

Passwords: bcrypt used directly (no passlib wrapper). passlib's wrap-bug
detection builds a password longer than 72 bytes, which bcrypt 4.x rejects,
so the wrapper adds nothing but a compatibility shim.

The _DUMMY_HASH constant enables timing equalization in check_credentials()
so response time does not reveal whether an email is registered [C1].

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import bcrypt

if TYPE_CHECKING:
    from auth.models import Account
    from auth.store import AccountStore

logger = logging.getLogger("gatekeeper.auth.passwords")

MIN_PASSWORD_LENGTH = 6


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input beyond 72 bytes. The API layer caps passwords at
    128 characters (Pydantic field), which keeps inputs near that threshold.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the store; treat as a mismatch.
        logger.warning("Stored password hash could not be parsed")
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than later ones [C1].
_DUMMY_HASH: str = hash_password("gatekeeper_timing_dummy")


def check_credentials(store: AccountStore, email: str, password: str) -> Account | None:
    """Return the Account whose password matches, or None.

    Always runs bcrypt whether or not the account exists:
    - Unknown email or provider-only account: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Account status is not checked here; the caller decides what an inactive
    account means for its flow.
    """
    account = store.get_by_email(email)
    if account is None or not account.password_hash:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, account.password_hash):
        return None
    return account
