"""
auth/claims.py -- Tagged claim variants carried by signed tokens.

Every token this service signs has a `type` claim. Decoding goes through the
variant the caller expects (AccessClaims.from_payload, RefreshClaims.from_payload,
...), which checks the tag and the required fields. A refresh token presented
where an access token is expected is therefore rejected at parse time, before
any store lookup.

ExternalIdentityClaims is the normalised view of a third-party ID token or
OAuth userinfo response. It is never signed by us.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from auth.errors import InvalidAssertion, Unauthenticated
from auth.models import Permission, Provider, TokenType

EMAIL_VERIFICATION = "email_verification"
PASSWORD_RESET = "password_reset"


def _timestamp(payload: dict, key: str, required: bool = True) -> datetime | None:
    value = payload.get(key)
    if value is None:
        if required:
            raise Unauthenticated(f"Token is missing the '{key}' claim.")
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError) as exc:
        raise Unauthenticated(f"Token claim '{key}' is not a timestamp.") from exc


def _required_str(payload: dict, key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise Unauthenticated(f"Token is missing the '{key}' claim.")
    return value


def _expect_type(payload: dict, expected: str) -> None:
    if payload.get("type") != expected:
        raise Unauthenticated(f"Expected a {expected} token.")


def _audience(payload: dict) -> str | None:
    aud = payload.get("aud")
    if isinstance(aud, list):
        return aud[0] if aud else None
    return aud


# ---------------------------------------------------------------------------
# Credentials issued by TokenIssuer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccessClaims:
    """Short-lived credential with the permission scope fixed at issuance."""

    sub: str
    jti: str
    sid: str
    iss: str
    aud: str | None
    iat: datetime
    exp: datetime
    nbf: datetime | None = None
    scopes: tuple[str, ...] = ()
    roles: tuple[str, ...] = ()

    type = TokenType.access

    @classmethod
    def from_payload(cls, payload: dict) -> AccessClaims:
        _expect_type(payload, TokenType.access.value)
        scopes = payload.get("scopes") or []
        roles = payload.get("roles") or []
        if not isinstance(scopes, list) or not isinstance(roles, list):
            raise Unauthenticated("Malformed scope claim.")
        return cls(
            sub=_required_str(payload, "sub"),
            jti=_required_str(payload, "jti"),
            sid=_required_str(payload, "sid"),
            iss=_required_str(payload, "iss"),
            aud=_audience(payload),
            iat=_timestamp(payload, "iat"),
            exp=_timestamp(payload, "exp"),
            nbf=_timestamp(payload, "nbf", required=False),
            scopes=tuple(str(s) for s in scopes),
            roles=tuple(str(r) for r in roles),
        )

    @property
    def permissions(self) -> list[Permission]:
        return Permission.parse(self.scopes)

    def has_all(self, *permissions: Permission) -> bool:
        granted = set(self.scopes)
        return all(p.value in granted for p in permissions)

    def has_any(self, *permissions: Permission) -> bool:
        granted = set(self.scopes)
        return any(p.value in granted for p in permissions)


@dataclass(frozen=True)
class RefreshClaims:
    """Long-lived, scope-less credential that can only mint a new pair."""

    sub: str
    jti: str
    sid: str
    iss: str
    aud: str | None
    iat: datetime
    exp: datetime
    nbf: datetime | None = None

    type = TokenType.refresh

    @classmethod
    def from_payload(cls, payload: dict) -> RefreshClaims:
        _expect_type(payload, TokenType.refresh.value)
        if payload.get("scopes"):
            raise Unauthenticated("Refresh tokens carry no scope.")
        return cls(
            sub=_required_str(payload, "sub"),
            jti=_required_str(payload, "jti"),
            sid=_required_str(payload, "sid"),
            iss=_required_str(payload, "iss"),
            aud=_audience(payload),
            iat=_timestamp(payload, "iat"),
            exp=_timestamp(payload, "exp"),
            nbf=_timestamp(payload, "nbf", required=False),
        )


@dataclass(frozen=True)
class EmailVerificationClaims:
    sub: str
    email: str
    jti: str
    exp: datetime
    iat: datetime | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> EmailVerificationClaims:
        _expect_type(payload, EMAIL_VERIFICATION)
        return cls(
            sub=_required_str(payload, "sub"),
            email=_required_str(payload, "email"),
            jti=_required_str(payload, "jti"),
            exp=_timestamp(payload, "exp"),
            iat=_timestamp(payload, "iat", required=False),
        )


@dataclass(frozen=True)
class PasswordResetClaims:
    sub: str
    email: str
    jti: str
    exp: datetime
    iat: datetime | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> PasswordResetClaims:
        _expect_type(payload, PASSWORD_RESET)
        return cls(
            sub=_required_str(payload, "sub"),
            email=_required_str(payload, "email"),
            jti=_required_str(payload, "jti"),
            exp=_timestamp(payload, "exp"),
            iat=_timestamp(payload, "iat", required=False),
        )


# ---------------------------------------------------------------------------
# Third-party assertions
# ---------------------------------------------------------------------------


def _truthy(value) -> bool:
    # Apple sends email_verified as the string "true".
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


@dataclass(frozen=True)
class ExternalIdentityClaims:
    """Verified identity asserted by an external provider.

    from_payload enforces that an email is present and that the provider has
    verified it [H1]. An unverified email could be used to take over an
    existing local account with the same address.
    """

    provider: Provider
    subject: str
    email: str
    email_verified: bool = True
    name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    picture: str | None = None

    @classmethod
    def from_payload(cls, provider: Provider, payload: dict) -> ExternalIdentityClaims:
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidAssertion("Identity token has no subject.")
        email = payload.get("email")
        if not isinstance(email, str) or not email.strip():
            raise InvalidAssertion("Identity token has no email address.")
        if not _truthy(payload.get("email_verified")):
            raise InvalidAssertion("Provider has not verified this email address.")
        return cls(
            provider=provider,
            subject=subject,
            email=email.strip().lower(),
            email_verified=True,
            name=payload.get("name"),
            given_name=payload.get("given_name"),
            family_name=payload.get("family_name"),
            picture=payload.get("picture"),
        )

    @property
    def display_name(self) -> str | None:
        if self.name:
            return self.name
        parts = [p for p in (self.given_name, self.family_name) if p]
        return " ".join(parts) or None
