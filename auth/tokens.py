"""
auth/tokens.py -- Token issuer / verifier for locally minted credentials.

Security design decisions:
  Signing: python-jose. The algorithm and key come from the KeyRing snapshot
       (auth/keys.py); every token carries a `kid` header so verification
       resolves the exact key it was signed with, including keys retired by a
       rotation.

  Claims: iss, sub, aud, exp, nbf, iat, jti, sid, type, plus scopes/roles on
       access tokens. `type` is checked by the claim variant the caller asks
       for (auth/claims.py), so a refresh token can never pass as an access
       token and the reverse.

  Records before signatures: issue() writes both credential records before
       signing, so a jti collision can be retried with a fresh value, and a
       signed token never exists without its record.

  Verification is stateless: verify_*() check signature, expiry, not-before,
       issuer and audience only. The store and ledger checks belong to the
       caller (PermissionGate for access tokens, refresh_rotate() for refresh
       tokens).

  Rotation: refresh_rotate() issues the new pair before deleting the old
       refresh row, so a crash in between leaves the caller able to refresh.
       The delete doubles as the single-use guard: if it removes nothing, a
       concurrent rotation already won, and the pair just issued is revoked.

Layer rule: may import from core/ (settings); no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JOSEError, JWTClaimsError

from auth.claims import (
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    AccessClaims,
    EmailVerificationClaims,
    PasswordResetClaims,
    RefreshClaims,
)
from auth.errors import Conflict, Unauthenticated
from auth.models import Account, CredentialRecord, DeviceInfo, Role, TokenPair, TokenType
from auth.rbac import union_permissions
from auth.store import utcnow

if TYPE_CHECKING:
    from auth.credentials import CredentialStore
    from auth.keys import KeyRing, KeySet
    from auth.rbac import RoleDirectory
    from auth.store import AccountStore
    from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.tokens")

_JTI_ATTEMPTS = 3


def new_token_id() -> str:
    return uuid.uuid4().hex


class TokenIssuer:
    """Issues, verifies, rotates and revokes bearer credentials."""

    def __init__(
        self,
        keyring: KeyRing,
        credentials: CredentialStore,
        roles: RoleDirectory,
        accounts: AccountStore,
        *,
        issuer: str,
        audience: str,
        access_ttl: int = 3600,
        refresh_ttl: int = 30 * 24 * 3600,
        email_verification_ttl: int = 24 * 3600,
        password_reset_ttl: int = 3600,
        leeway: int = 0,
    ) -> None:
        self.keyring = keyring
        self.credentials = credentials
        self.roles = roles
        self.accounts = accounts
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.email_verification_ttl = email_verification_ttl
        self.password_reset_ttl = password_reset_ttl
        self.leeway = leeway

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        keyring: KeyRing,
        credentials: CredentialStore,
        roles: RoleDirectory,
        accounts: AccountStore,
    ) -> TokenIssuer:
        return cls(
            keyring,
            credentials,
            roles,
            accounts,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=settings.access_token_ttl_seconds,
            refresh_ttl=settings.refresh_token_ttl_seconds,
            email_verification_ttl=settings.email_verification_ttl_seconds,
            password_reset_ttl=settings.password_reset_ttl_seconds,
            leeway=settings.clock_skew_seconds,
        )

    # ------------------------------------------------------------------
    # Signing primitives
    # ------------------------------------------------------------------

    def _sign(self, payload: dict, keyset: KeySet) -> str:
        key = keyset.active
        return jwt.encode(payload, key.private, algorithm=key.algorithm, headers={"kid": key.kid})

    def _decode(self, token: str) -> dict:
        """Check signature, exp, nbf, iss and aud. Raises Unauthenticated."""
        keyset = self.keyring.snapshot()
        try:
            header = jwt.get_unverified_header(token)
        except JOSEError as exc:
            raise Unauthenticated("Malformed token.") from exc
        key = keyset.find(header.get("kid"))
        if key is None:
            raise Unauthenticated("Token was signed with an unknown key.")
        try:
            return jwt.decode(
                token,
                key.public,
                algorithms=[key.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={"leeway": self.leeway},
            )
        except ExpiredSignatureError as exc:
            raise Unauthenticated("Token has expired.") from exc
        except JWTClaimsError as exc:
            raise Unauthenticated("Token claims are invalid.") from exc
        except JOSEError as exc:
            raise Unauthenticated("Token signature is invalid.") from exc

    def _base_claims(self, subject: str, jti: str, now: datetime, ttl: int, token_type: str) -> dict:
        issued = int(now.timestamp())
        return {
            "iss": self.issuer,
            "sub": subject,
            "aud": self.audience,
            "iat": issued,
            "nbf": issued,
            "exp": issued + ttl,
            "jti": jti,
            "type": token_type,
        }

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def _record(
        self,
        account_id: str,
        token_type: TokenType,
        expires_at: datetime,
        session_id: str,
        device: DeviceInfo | None,
    ) -> CredentialRecord:
        """Create a credential record, retrying with a fresh jti on collision."""
        for attempt in range(1, _JTI_ATTEMPTS + 1):
            record = CredentialRecord(
                jti=new_token_id(),
                account_id=account_id,
                type=token_type,
                expires_at=expires_at,
                session_id=session_id,
                device_info=device,
            )
            try:
                return self.credentials.create(record)
            except Conflict:
                logger.warning("jti collision on attempt %d, regenerating", attempt)
        raise Conflict("Could not allocate a unique token identifier.")

    def issue(
        self,
        account: Account,
        roles: list[Role] | None = None,
        device: DeviceInfo | None = None,
        session_id: str | None = None,
    ) -> TokenPair:
        """Mint and record an access/refresh pair for a persisted account.

        roles defaults to the account's current assignments. session_id is
        passed by refresh_rotate() to keep the device's session identity.
        """
        if roles is None:
            roles = self.roles.roles_for_account(account.id)
        scopes = [p.value for p in union_permissions(roles)]
        session_id = session_id or new_token_id()
        keyset = self.keyring.snapshot()
        now = utcnow().replace(microsecond=0)

        access = self._record(
            account.id, TokenType.access, now + timedelta(seconds=self.access_ttl), session_id, device
        )
        refresh = self._record(
            account.id, TokenType.refresh, now + timedelta(seconds=self.refresh_ttl), session_id, device
        )

        access_claims = self._base_claims(account.id, access.jti, now, self.access_ttl, TokenType.access.value)
        access_claims.update({"sid": session_id, "scopes": scopes, "roles": [r.name for r in roles]})
        refresh_claims = self._base_claims(account.id, refresh.jti, now, self.refresh_ttl, TokenType.refresh.value)
        refresh_claims.update({"sid": session_id, "scopes": []})

        try:
            access_token = self._sign(access_claims, keyset)
            refresh_token = self._sign(refresh_claims, keyset)
        except JOSEError:
            logger.error("Token signing failed for kid=%s; check signing key configuration", keyset.active.kid)
            self.credentials.delete_by_jti(access.jti)
            self.credentials.delete_by_jti(refresh.jti)
            raise

        logger.info("Issued token pair: account=%s session=%s", account.id, session_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl,
            access_jti=access.jti,
            refresh_jti=refresh.jti,
            session_id=session_id,
        )

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify_access(self, token: str) -> AccessClaims:
        return AccessClaims.from_payload(self._decode(token))

    def verify_refresh(self, token: str) -> RefreshClaims:
        return RefreshClaims.from_payload(self._decode(token))

    # ------------------------------------------------------------------
    # Rotate / revoke
    # ------------------------------------------------------------------

    def refresh_rotate(self, refresh_token: str, device: DeviceInfo | None = None) -> tuple[Account, TokenPair]:
        """Exchange a refresh token for a new pair. The old refresh token is single-use."""
        claims = self.verify_refresh(refresh_token)
        record = self.credentials.find_by_jti(claims.jti)
        if record is None or record.type != TokenType.refresh or record.account_id != claims.sub:
            raise Unauthenticated("Refresh token is not valid.")
        if self.credentials.is_blacklisted(claims.jti):
            raise Unauthenticated("Refresh token has been revoked.")

        account = self.accounts.get_by_id(claims.sub)
        if account is None or not account.is_active:
            raise Unauthenticated("Account is not available.")

        pair = self.issue(account, device=device or record.device_info, session_id=record.session_id)
        if not self.credentials.delete_by_jti(claims.jti):
            # Lost a race with another rotation of the same token.
            self.credentials.delete_by_jti(pair.access_jti)
            self.credentials.delete_by_jti(pair.refresh_jti)
            raise Unauthenticated("Refresh token has already been used.")
        logger.info("Rotated refresh token: account=%s session=%s", account.id, record.session_id)
        return account, pair

    def revoke(self, claims: AccessClaims | RefreshClaims) -> None:
        """Blacklist a verified credential and drop its record."""
        self.credentials.blacklist(claims.jti, claims.sub, claims.exp, claims.type)
        self.credentials.delete_by_jti(claims.jti)

    # ------------------------------------------------------------------
    # Single-purpose tokens (not recorded in the credential store)
    # ------------------------------------------------------------------

    def _purpose_token(self, account: Account, purpose: str, ttl: int) -> str:
        now = utcnow()
        payload = self._base_claims(account.id, new_token_id(), now, ttl, purpose)
        payload["email"] = account.email
        return self._sign(payload, self.keyring.snapshot())

    def create_email_verification_token(self, account: Account) -> str:
        return self._purpose_token(account, EMAIL_VERIFICATION, self.email_verification_ttl)

    def verify_email_verification_token(self, token: str) -> EmailVerificationClaims:
        return EmailVerificationClaims.from_payload(self._decode(token))

    def create_password_reset_token(self, account: Account) -> str:
        return self._purpose_token(account, PASSWORD_RESET, self.password_reset_ttl)

    def verify_password_reset_token(self, token: str) -> PasswordResetClaims:
        return PasswordResetClaims.from_payload(self._decode(token))
