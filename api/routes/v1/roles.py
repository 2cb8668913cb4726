"""
api/routes/v1/roles.py -- Role directory management.

Routes:
  GET    /api/v1/roles                                  -- list roles          (user:roles)
  POST   /api/v1/roles                                  -- create role; 201    (system:settings)
  PUT    /api/v1/roles/{role_id}/permissions            -- replace grants      (system:settings)
  DELETE /api/v1/roles/{role_id}                        -- delete non-system   (system:settings); 204
  GET    /api/v1/users/{account_id}/roles               -- account's roles     (user:roles)
  PUT    /api/v1/users/{account_id}/roles/{role_id}     -- assign; 204         (system:settings)
  DELETE /api/v1/users/{account_id}/roles/{role_id}     -- unassign; 204       (system:settings)

Role changes take effect at the account's next token issuance: scopes are
captured in the access token when it is minted.
"""

from fastapi import APIRouter, Depends, Request, Response

from api.models import RoleCreate, RolePermissionsUpdate, RoleResponse
from auth.claims import AccessClaims
from auth.dependencies import get_components, require_permissions
from auth.errors import NotFound
from auth.models import Permission, Role

router = APIRouter()

_can_view = require_permissions(Permission.view_user_roles)
_can_manage = require_permissions(Permission.manage_settings)


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request, claims: AccessClaims = Depends(_can_view)) -> list[RoleResponse]:
    return [RoleResponse.from_role(r) for r in get_components(request).roles.list_roles()]


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(request: Request, body: RoleCreate, claims: AccessClaims = Depends(_can_manage)) -> RoleResponse:
    """Create a custom role. 409 if the name is taken."""
    role = Role(name=body.name, description=body.description, permissions=list(dict.fromkeys(body.permissions)))
    return RoleResponse.from_role(get_components(request).roles.create_role(role))


@router.put("/roles/{role_id}/permissions", response_model=RoleResponse)
def update_role_permissions(
    request: Request,
    role_id: int,
    body: RolePermissionsUpdate,
    claims: AccessClaims = Depends(_can_manage),
) -> RoleResponse:
    role = get_components(request).roles.update_permissions(role_id, list(dict.fromkeys(body.permissions)))
    return RoleResponse.from_role(role)


@router.delete("/roles/{role_id}", status_code=204)
def delete_role(request: Request, role_id: int, claims: AccessClaims = Depends(_can_manage)) -> Response:
    get_components(request).roles.delete_role(role_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------


def _require_account(request: Request, account_id: str) -> None:
    if get_components(request).accounts.get_by_id(account_id) is None:
        raise NotFound("Account not found.")


@router.get("/users/{account_id}/roles", response_model=list[RoleResponse])
def account_roles(request: Request, account_id: str, claims: AccessClaims = Depends(_can_view)) -> list[RoleResponse]:
    _require_account(request, account_id)
    return [RoleResponse.from_role(r) for r in get_components(request).roles.roles_for_account(account_id)]


@router.put("/users/{account_id}/roles/{role_id}", status_code=204)
def assign_role(
    request: Request,
    account_id: str,
    role_id: int,
    claims: AccessClaims = Depends(_can_manage),
) -> Response:
    """Idempotent: assigning a role the account already holds is still 204."""
    _require_account(request, account_id)
    get_components(request).roles.assign(account_id, role_id)
    return Response(status_code=204)


@router.delete("/users/{account_id}/roles/{role_id}", status_code=204)
def unassign_role(
    request: Request,
    account_id: str,
    role_id: int,
    claims: AccessClaims = Depends(_can_manage),
) -> Response:
    _require_account(request, account_id)
    if not get_components(request).roles.unassign(account_id, role_id):
        raise NotFound("Role assignment not found.")
    return Response(status_code=204)
