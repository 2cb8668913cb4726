"""
api/routes/v1/auth.py -- Authentication, session and account REST endpoints.

Routes:
  POST   /api/v1/auth/signup               -- create local account; 201
  POST   /api/v1/auth/login                -- password login; token pair
  POST   /api/v1/auth/token                -- grant_type refresh_token | token_info | id_token
  GET    /api/v1/auth/verify-email         -- ?token=...; marks email verified
  POST   /api/v1/auth/resend-verification  -- new verification email
  POST   /api/v1/auth/forgot-password      -- always 200 [C2]
  POST   /api/v1/auth/reset-password       -- token + new password
  GET    /api/v1/auth/providers            -- configured external providers (public)
  GET    /api/v1/auth/me                   -- current account with roles
  POST   /api/v1/auth/logout               -- revoke current session (+ optional refresh token); 204
  POST   /api/v1/auth/change-password      -- 204
  GET    /api/v1/auth/devices              -- active sessions of the caller
  DELETE /api/v1/auth/devices/{id}         -- revoke one session; 204
  POST   /api/v1/auth/devices/revoke-all   -- revoke every other session
  POST   /api/v1/auth/link-provider        -- bind an external identity (ID token)
  POST   /api/v1/auth/unlink-provider      -- remove a binding
  GET    /api/v1/auth/linked-providers     -- primary provider + bindings
  GET    /api/v1/auth/users                -- paginated account list   (user:list)
  GET    /api/v1/auth/users/{id}           -- one account              (user:details)
  PATCH  /api/v1/auth/users/{id}/status    -- activate / suspend       (user:status)

Security:
  [H2] Credential endpoints are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] AccountService.login() provides timing equalization -- use it, never inline.
  [M4] PATCH /users/{id}/status blocks self-suspension.
  [M5] Cache-Control: no-store on every response that carries tokens.

Handlers are plain `def`: store calls block, so FastAPI runs them in its
threadpool instead of on the event loop.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import credential_rate_limit, limiter
from api.models import (
    AccountListResponse,
    AccountResponse,
    AccountStatusUpdate,
    ChangePasswordRequest,
    DeviceResponse,
    EmailRequest,
    LinkedIdentityResponse,
    LinkedProvidersResponse,
    LinkProviderRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    OAuthProviderInfo,
    PageMetadata,
    ResetPasswordRequest,
    RevokeResponse,
    SignupRequest,
    TokenInfoResponse,
    TokenRequest,
    TokenResponse,
    UnlinkProviderRequest,
)
from auth.claims import AccessClaims
from auth.dependencies import (
    client_ip,
    get_components,
    get_current_account,
    get_current_claims,
    request_device,
    require_permissions,
)
from auth.errors import BadRequest
from auth.models import Account, AccountStatus, Permission, Provider
from auth.oauth import get_enabled_providers
from core.config import get_settings

# Auth policy:
# - signup, login, token, verify-email, resend-verification,
#   forgot-password, reset-password, providers:   public
# - me, logout, change-password, devices*, link/unlink, linked-providers:
#                                                  requires access token (get_current_claims)
# - users, users/{id}, users/{id}/status:          requires permission (require_permissions)
router = APIRouter()


def _token_json(body: TokenResponse, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(credential_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/signup", response_model=AccountResponse, status_code=201)
def signup(request: Request, body: SignupRequest) -> AccountResponse:
    """Create a local account with the default role. A verification email is sent."""
    service = get_components(request).account_service
    account = service.signup(body.email, body.password, body.first_name, body.last_name)
    return AccountResponse.from_account(account)


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return an access/refresh pair.

    Wrong email and wrong password produce the same 401 body so the response
    does not reveal which emails are registered [C1].
    """
    service = get_components(request).account_service
    account, pair = service.login(body.email, body.password, request_device(request), client_ip(request))
    return _token_json(TokenResponse.from_pair(pair, account))


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/token", response_model=TokenResponse)
def token(request: Request, body: TokenRequest) -> JSONResponse:
    """OAuth-style token endpoint.

    refresh_token -- rotate a refresh token (single-use) into a new pair.
    token_info    -- introspect an access token.
    id_token      -- sign in with a Google / Apple / OIDC ID token.
    """
    auth = get_components(request)

    if body.grant_type == "refresh_token":
        if not body.refresh_token:
            raise BadRequest("refresh_token is required for this grant.")
        account, pair = auth.issuer.refresh_rotate(body.refresh_token, device=request_device(request))
        return _token_json(TokenResponse.from_pair(pair, account))

    if body.grant_type == "token_info":
        if not body.access_token:
            raise BadRequest("access_token is required for this grant.")
        claims, account = auth.account_service.token_info(body.access_token)
        info = TokenInfoResponse(
            sub=claims.sub,
            session_id=claims.sid,
            scopes=list(claims.scopes),
            roles=list(claims.roles),
            issued_at=claims.iat,
            expires_at=claims.exp,
            user=AccountResponse.from_account(account),
        )
        resp = JSONResponse(content=info.model_dump(mode="json"))
        resp.headers["Cache-Control"] = "no-store"
        return resp

    if not body.id_token:
        raise BadRequest("id_token is required for this grant.")
    result = auth.identity.login_with_assertion(body.id_token, request_device(request), client_ip(request))
    return _token_json(
        TokenResponse.from_pair(result.tokens, result.account, is_new_user=result.is_new_user),
        status_code=201 if result.is_new_user else 200,
    )


@router.get("/auth/verify-email", response_model=MessageResponse)
def verify_email(request: Request, token: str = Query(min_length=1, max_length=8192)) -> MessageResponse:
    get_components(request).account_service.verify_email(token)
    return MessageResponse(message="Email verified.")


@router.post("/auth/resend-verification", response_model=MessageResponse)
def resend_verification(request: Request, body: EmailRequest) -> MessageResponse:
    get_components(request).account_service.resend_verification(body.email)
    return MessageResponse(message="Verification email sent.")


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: EmailRequest) -> MessageResponse:
    """Always 200 so the response cannot be used to enumerate accounts [C2]."""
    get_components(request).account_service.forgot_password(body.email)
    return MessageResponse(message="If the account exists, a reset link has been sent.")


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    get_components(request).account_service.reset_password(body.token, body.new_password)
    return MessageResponse(message="Password has been reset.")


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured external sign-in providers.

    Public endpoint -- clients call this to decide which provider buttons to
    render. Returns an empty list if no provider env vars are set.
    """
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(get_settings())]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AccountResponse)
def me(request: Request, account: Account = Depends(get_current_account)) -> AccountResponse:
    """Return the current account with its roles."""
    roles = get_components(request).roles.roles_for_account(account.id)
    return AccountResponse.from_account(account, roles)


@router.post("/auth/logout", status_code=204)
def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    claims: AccessClaims = Depends(get_current_claims),
) -> Response:
    """Revoke the current session. A refresh token in the body revokes its session too."""
    refresh_token = body.refresh_token if body else None
    get_components(request).account_service.logout(claims, refresh_token)
    return Response(status_code=204)


@router.post("/auth/change-password", status_code=204)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    claims: AccessClaims = Depends(get_current_claims),
) -> Response:
    get_components(request).account_service.change_password(claims.sub, body.current_password, body.new_password)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Devices (the caller's own sessions)
# ---------------------------------------------------------------------------


@router.get("/auth/devices", response_model=list[DeviceResponse])
def list_devices(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> list[DeviceResponse]:
    devices = get_components(request).sessions.list_devices(claims.sub, current_session_id=claims.sid)
    return [DeviceResponse.from_summary(d) for d in devices]


@router.delete("/auth/devices/{device_id}", status_code=204)
def revoke_device(request: Request, device_id: int, claims: AccessClaims = Depends(get_current_claims)) -> Response:
    """Revoke one session. 404 for ids that are unknown or owned by someone else."""
    get_components(request).sessions.revoke_device(claims.sub, device_id)
    return Response(status_code=204)


@router.post("/auth/devices/revoke-all", response_model=RevokeResponse)
def revoke_all_devices(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> RevokeResponse:
    """Revoke every session except the one making this request."""
    revoked = get_components(request).sessions.revoke_all_except_current(claims.sub, current_jti=claims.jti)
    return RevokeResponse(revoked=revoked)


# ---------------------------------------------------------------------------
# Provider linking
# ---------------------------------------------------------------------------


@router.post("/auth/link-provider", response_model=AccountResponse)
def link_provider(
    request: Request,
    body: LinkProviderRequest,
    claims: AccessClaims = Depends(get_current_claims),
) -> AccountResponse:
    account = get_components(request).identity.link_provider(claims.sub, body.id_token)
    return AccountResponse.from_account(account)


@router.post("/auth/unlink-provider", response_model=AccountResponse)
def unlink_provider(
    request: Request,
    body: UnlinkProviderRequest,
    claims: AccessClaims = Depends(get_current_claims),
) -> AccountResponse:
    account = get_components(request).identity.unlink_provider(claims.sub, body.provider)
    return AccountResponse.from_account(account)


@router.get("/auth/linked-providers", response_model=LinkedProvidersResponse)
def linked_providers(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> LinkedProvidersResponse:
    primary, identities = get_components(request).identity.linked_providers(claims.sub)
    return LinkedProvidersResponse(
        primary_provider=primary.value,
        providers=[LinkedIdentityResponse.from_identity(i) for i in identities],
    )


# ---------------------------------------------------------------------------
# Account management (permission-gated)
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=AccountListResponse)
def list_users(
    request: Request,
    page: int = Query(default=1, ge=1),
    per: int = Query(default=10, ge=1, le=100),
    provider: Optional[Provider] = None,
    email_verified: Optional[bool] = None,
    status: Optional[AccountStatus] = None,
    role_id: Optional[int] = None,
    search: Optional[str] = Query(default=None, max_length=100),
    claims: AccessClaims = Depends(require_permissions(Permission.list_users)),
) -> AccountListResponse:
    accounts, total = get_components(request).account_service.list_accounts(
        page=page,
        per=per,
        provider=provider,
        email_verified=email_verified,
        status=status,
        role_id=role_id,
        search=search,
    )
    return AccountListResponse(
        items=[AccountResponse.from_account(a) for a in accounts],
        metadata=PageMetadata(page=page, per=per, total=total),
    )


@router.get("/auth/users/{account_id}", response_model=AccountResponse)
def get_user(
    request: Request,
    account_id: str,
    claims: AccessClaims = Depends(require_permissions(Permission.view_user_details)),
) -> AccountResponse:
    """One account. Roles are included only for callers holding user:roles."""
    account, roles = get_components(request).account_service.profile(account_id)
    if not claims.has_all(Permission.view_user_roles):
        roles = None
    return AccountResponse.from_account(account, roles)


@router.patch("/auth/users/{account_id}/status", response_model=AccountResponse)
def update_user_status(
    request: Request,
    account_id: str,
    body: AccountStatusUpdate,
    claims: AccessClaims = Depends(require_permissions(Permission.manage_user_status)),
) -> AccountResponse:
    """Activate, deactivate or suspend an account. Leaving `active` revokes all sessions.

    [M4] Blocks self-suspension (an operator locking themselves out).
    """
    if account_id == claims.sub and body.status != AccountStatus.active:
        raise BadRequest("You cannot deactivate your own account.")
    account = get_components(request).account_service.set_status(account_id, body.status)
    return AccountResponse.from_account(account)
