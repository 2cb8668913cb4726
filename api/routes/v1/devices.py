"""
api/routes/v1/devices.py -- Operator view of another account's sessions.

Routes (all require user:devices):
  GET    /api/v1/users/{account_id}/devices              -- active sessions
  DELETE /api/v1/users/{account_id}/devices/{device_id}  -- revoke one session; 204
  POST   /api/v1/users/{account_id}/devices/revoke-all   -- revoke every session

An unknown account_id is 404 before any session lookup, so operators get a
clear error instead of an empty list for a typo.
"""

from fastapi import APIRouter, Depends, Request, Response

from api.models import DeviceResponse, RevokeResponse
from auth.dependencies import get_components, require_permissions
from auth.errors import NotFound
from auth.models import Permission

router = APIRouter(dependencies=[Depends(require_permissions(Permission.view_user_devices))])


def _require_account(request: Request, account_id: str) -> None:
    if get_components(request).accounts.get_by_id(account_id) is None:
        raise NotFound("Account not found.")


@router.get("/users/{account_id}/devices", response_model=list[DeviceResponse])
def list_account_devices(request: Request, account_id: str) -> list[DeviceResponse]:
    _require_account(request, account_id)
    devices = get_components(request).sessions.list_devices(account_id)
    return [DeviceResponse.from_summary(d) for d in devices]


@router.delete("/users/{account_id}/devices/{device_id}", status_code=204)
def revoke_account_device(request: Request, account_id: str, device_id: int) -> Response:
    _require_account(request, account_id)
    get_components(request).sessions.revoke_device(account_id, device_id)
    return Response(status_code=204)


@router.post("/users/{account_id}/devices/revoke-all", response_model=RevokeResponse)
def revoke_account_devices(request: Request, account_id: str) -> RevokeResponse:
    """Sign the account out everywhere. The operator's own session is unaffected."""
    _require_account(request, account_id)
    revoked = get_components(request).sessions.revoke_all_except_current(account_id)
    return RevokeResponse(revoked=revoked)
