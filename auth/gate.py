"""
auth/gate.py -- Request-boundary authentication and permission checks.

authenticate() is the full trust decision for an access token:
  1. signature, expiry, nbf, issuer, audience   (TokenIssuer.verify_access)
  2. jti not in the revocation ledger
  3. jti still has a credential record
A token that passes (1) but fails (2) or (3) was revoked or rotated away and
is rejected even though its signature is fine.

authorize() checks the scope embedded at issuance. Role changes made after a
token was minted are not seen until the next issue or refresh, bounded by the
access-token TTL. Pair a role change with a revoke when that window matters.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from auth.claims import AccessClaims
from auth.credentials import CredentialStore
from auth.errors import Forbidden, Unauthenticated
from auth.models import Permission
from auth.tokens import TokenIssuer

logger = logging.getLogger("gatekeeper.auth.gate")


class PermissionGate:
    def __init__(self, issuer: TokenIssuer, credentials: CredentialStore, touch_sessions: bool = True) -> None:
        self.issuer = issuer
        self.credentials = credentials
        self.touch_sessions = touch_sessions

    def authenticate(self, token: str | None) -> AccessClaims:
        if not token:
            raise Unauthenticated()
        claims = self.issuer.verify_access(token)
        revoked = self.credentials.get_ledger_entry(claims.jti)
        if revoked is not None:
            logger.info(
                "Rejected revoked token: jti=%s account=%s revoked_at=%s", claims.jti, claims.sub, revoked.blacklisted_at
            )
            raise Unauthenticated("Token has been revoked.")
        record = self.credentials.find_by_jti(claims.jti)
        if record is None or record.account_id != claims.sub:
            raise Unauthenticated("Token is no longer valid.")
        if self.touch_sessions:
            self.credentials.touch_session(claims.sid)
        return claims

    @staticmethod
    def authorize(
        claims: AccessClaims,
        all_of: Iterable[Permission] = (),
        any_of: Iterable[Permission] = (),
    ) -> AccessClaims:
        """Raise Forbidden unless claims satisfy both the all-of and any-of sets."""
        all_of = list(all_of)
        any_of = list(any_of)
        if all_of and not claims.has_all(*all_of):
            raise Forbidden()
        if any_of and not claims.has_any(*any_of):
            raise Forbidden()
        return claims

    def check(
        self,
        token: str | None,
        all_of: Iterable[Permission] = (),
        any_of: Iterable[Permission] = (),
    ) -> AccessClaims:
        return self.authorize(self.authenticate(token), all_of, any_of)
