"""
API request and response models for the Gatekeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two
through the from_* factory classmethods colocated with each response model.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import (
    Account,
    AccountStatus,
    DeviceInfo,
    DeviceSummary,
    LinkedIdentity,
    Permission,
    Provider,
    Role,
    TokenPair,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: deliverability is proven by the verification email,
# not by a regex.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

PASSWORD_MIN = 6
# bcrypt truncates beyond 72 bytes; this cap keeps inputs close to that.
PASSWORD_MAX = 128


class _EmailModel(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320, pattern=EMAIL_PATTERN)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(_EmailModel):
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)


class LoginRequest(_EmailModel):
    password: str = Field(min_length=1, max_length=PASSWORD_MAX)


class EmailRequest(_EmailModel):
    """Body for resend-verification and forgot-password."""


class TokenRequest(BaseModel):
    """Body for POST /api/v1/auth/token.

    Exactly one credential field is read, chosen by grant_type. The route
    rejects a missing field with 400 rather than relying on model validation,
    so the error names the grant.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    grant_type: Literal["refresh_token", "token_info", "id_token"]
    refresh_token: Optional[str] = Field(default=None, max_length=8192)
    access_token: Optional[str] = Field(default=None, max_length=8192)
    id_token: Optional[str] = Field(default=None, max_length=16384)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=8192)
    new_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=PASSWORD_MAX)
    new_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=8192)


class LinkProviderRequest(BaseModel):
    id_token: str = Field(min_length=1, max_length=16384)


class UnlinkProviderRequest(BaseModel):
    provider: Provider

    @field_validator("provider")
    @classmethod
    def reject_local(cls, value: Provider) -> Provider:
        if value == Provider.local:
            raise ValueError("local sign-in cannot be unlinked")
        return value


class RoleCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    permissions: list[Permission] = Field(default_factory=list)


class RolePermissionsUpdate(BaseModel):
    permissions: list[Permission]


class AccountStatusUpdate(BaseModel):
    status: AccountStatus


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class RevokeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: str
    permissions: list[str]
    is_system: bool

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            permissions=[p.value for p in role.permissions],
            is_system=role.is_system,
        )


class LinkedIdentityResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    provider_id: str
    email: Optional[str]
    display_name: Optional[str]
    photo_url: Optional[str]
    linked_at: Optional[datetime]

    @classmethod
    def from_identity(cls, identity: LinkedIdentity) -> "LinkedIdentityResponse":
        return cls(
            provider=identity.provider.value,
            provider_id=identity.provider_id,
            email=identity.email,
            display_name=identity.display_name,
            photo_url=identity.photo_url,
            linked_at=identity.linked_at,
        )


class AccountResponse(BaseModel):
    """Public view of an Account. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    status: str
    provider: str
    email_verified: bool
    phone_number: Optional[str]
    phone_verified: bool
    linked_providers: list[str]
    last_login_at: Optional[datetime]
    created_at: Optional[datetime]
    roles: Optional[list[RoleResponse]] = None

    @classmethod
    def from_account(cls, account: Account, roles: Optional[list[Role]] = None) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            status=account.status.value,
            provider=account.provider.value,
            email_verified=account.email_verified,
            phone_number=account.phone_number,
            phone_verified=account.phone_verified,
            linked_providers=[i.provider.value for i in account.linked_identities],
            last_login_at=account.last_login_at,
            created_at=account.created_at,
            roles=[RoleResponse.from_role(r) for r in roles] if roles is not None else None,
        )


class PageMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int
    per: int
    total: int


class AccountListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: list[AccountResponse]
    metadata: PageMetadata


class TokenResponse(BaseModel):
    """Credential pair returned by login, refresh and external sign-in."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: AccountResponse
    is_new_user: Optional[bool] = None

    @classmethod
    def from_pair(cls, pair: TokenPair, account: Account, is_new_user: Optional[bool] = None) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            user=AccountResponse.from_account(account),
            is_new_user=is_new_user,
        )


class TokenInfoResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    active: bool = True
    sub: str
    session_id: str
    scopes: list[str]
    roles: list[str]
    issued_at: datetime
    expires_at: datetime
    user: AccountResponse


class LinkedProvidersResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    primary_provider: str
    providers: list[LinkedIdentityResponse]


class DeviceInfoResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_type: str
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    device_model: Optional[str] = None
    os_name: Optional[str] = None
    os_version: Optional[str] = None
    app_version: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    last_location: Optional[str] = None

    @classmethod
    def from_info(cls, info: DeviceInfo) -> "DeviceInfoResponse":
        return cls(
            device_type=info.device_type.value,
            device_id=info.device_id,
            device_name=info.device_name,
            device_model=info.device_model,
            os_name=info.os_name,
            os_version=info.os_version,
            app_version=info.app_version,
            ip_address=info.ip_address,
            user_agent=info.user_agent,
            last_location=info.last_location,
        )


class DeviceResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    device_info: Optional[DeviceInfoResponse]
    last_used_at: Optional[datetime]
    created_at: Optional[datetime]
    expires_at: datetime
    current: bool

    @classmethod
    def from_summary(cls, summary: DeviceSummary) -> "DeviceResponse":
        return cls(
            id=summary.id,
            device_info=DeviceInfoResponse.from_info(summary.device_info) if summary.device_info else None,
            last_used_at=summary.last_used_at,
            created_at=summary.created_at,
            expires_at=summary.expires_at,
            current=summary.current,
        )


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str
    redirect: bool
