"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Credentials arrive as `Authorization: Bearer <access token>`. Every helper
converges on PermissionGate.authenticate(), so ledger and record checks can
never be skipped by a route that forgets them.

get_current_claims() is the base dependency. get_current_account() adds an
account lookup for routes that need the profile. require_permissions() and
require_any_permission() are factories that return a dependency enforcing
an all-of or any-of permission set.

Failures raise AuthError subclasses; api/main.py turns them into the
ErrorResponse envelope (401 with WWW-Authenticate, 403, ...).

Layer rule: auth/dependencies.py may import from fastapi (for Depends/Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.claims import AccessClaims
from auth.container import AuthComponents
from auth.errors import Unauthenticated
from auth.models import Account, DeviceInfo, Permission
from auth.sessions import device_info_from_headers


def get_components(request: Request) -> AuthComponents:
    return request.app.state.auth


def bearer_token(request: Request) -> str | None:
    """Return the raw bearer token from the Authorization header, if any."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def request_device(request: Request) -> DeviceInfo:
    """Device metadata for credentials issued during this request."""
    return device_info_from_headers(request.headers, client_ip(request))


def get_current_claims(request: Request) -> AccessClaims:
    """Require a valid, unrevoked access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: AccessClaims = Depends(get_current_claims)): ...
    """
    return get_components(request).gate.authenticate(bearer_token(request))


def get_current_account(
    request: Request,
    claims: AccessClaims = Depends(get_current_claims),
) -> Account:
    """Require authentication and return the live, active account."""
    account = get_components(request).accounts.get_by_id(claims.sub)
    if account is None or not account.is_active:
        raise Unauthenticated("Account is not available.")
    return account


def require_permissions(*permissions: Permission) -> Callable[..., AccessClaims]:
    """Dependency factory: every listed permission must be in the token scope.

    Use as a FastAPI dependency:
        @router.get("/users")
        def route(claims: AccessClaims = Depends(require_permissions(Permission.list_users))): ...
    """

    def dependency(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> AccessClaims:
        return get_components(request).gate.authorize(claims, all_of=permissions)

    return dependency


def require_any_permission(*permissions: Permission) -> Callable[..., AccessClaims]:
    """Dependency factory: at least one listed permission must be in the token scope."""

    def dependency(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> AccessClaims:
        return get_components(request).gate.authorize(claims, any_of=permissions)

    return dependency
