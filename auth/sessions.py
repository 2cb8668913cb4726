"""
auth/sessions.py -- Session / device registry built on the credential store.

A "device" is one live refresh-token record plus the device metadata captured
when its session was first issued. Revoking a device revokes the whole session:
the refresh row and any sibling access rows sharing its session_id.

Ownership is checked before anything is revealed: a row id that exists but
belongs to another account yields the same NotFound as one that does not
exist, so ids cannot be probed across accounts.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timedelta

from auth.credentials import CredentialStore
from auth.errors import NotFound
from auth.models import DeviceInfo, DeviceSummary, DeviceType, TokenType

logger = logging.getLogger("gatekeeper.auth.sessions")

_MAX_HEADER_LENGTH = 255

DEVICE_HEADERS = {
    "device_id": "x-device-id",
    "device_name": "x-device-name",
    "device_model": "x-device-model",
    "os_name": "x-os-name",
    "os_version": "x-os-version",
    "app_version": "x-app-version",
    "last_location": "x-location",
}


def classify_user_agent(user_agent: str | None) -> DeviceType:
    """Coarse device class from a User-Agent string."""
    if not user_agent:
        return DeviceType.other
    ua = user_agent.lower()
    if "mobile" in ua:
        return DeviceType.mobile
    if "tablet" in ua:
        return DeviceType.tablet
    if "mozilla" in ua or "chrome" in ua or "safari" in ua:
        return DeviceType.desktop
    return DeviceType.other


def _clip(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value[:_MAX_HEADER_LENGTH] or None


def device_info_from_headers(headers: Mapping[str, str], client_host: str | None = None) -> DeviceInfo:
    """Build DeviceInfo from request headers and the peer address.

    Accepts any mapping. Lookups are case-insensitive so a plain dict works
    as well as Starlette's Headers.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    user_agent = _clip(lowered.get("user-agent"))
    fields = {name: _clip(lowered.get(header)) for name, header in DEVICE_HEADERS.items()}
    return DeviceInfo(
        device_type=classify_user_agent(user_agent),
        ip_address=client_host,
        user_agent=user_agent,
        **fields,
    )


class SessionRegistry:
    def __init__(self, credentials: CredentialStore) -> None:
        self.credentials = credentials

    def list_devices(self, account_id: str, current_session_id: str | None = None) -> list[DeviceSummary]:
        """Active devices for an account, most recently used first. No secrets."""
        summaries = []
        for record in self.credentials.list_active_refresh_tokens(account_id):
            summaries.append(
                DeviceSummary(
                    id=record.id,
                    device_info=record.device_info,
                    last_used_at=record.last_used_at,
                    created_at=record.created_at,
                    expires_at=record.expires_at,
                    current=current_session_id is not None and record.session_id == current_session_id,
                )
            )
        return summaries

    def revoke_device(self, account_id: str, row_id: int) -> int:
        """Revoke the session behind one device row. Returns rows revoked."""
        record = self.credentials.find_by_id(row_id)
        if record is None or record.account_id != account_id or record.type != TokenType.refresh:
            raise NotFound("Device not found.")
        revoked = self.credentials.revoke_session(account_id, record.session_id)
        logger.info("Device revoked: account=%s device=%d rows=%d", account_id, row_id, revoked)
        return revoked

    def revoke_all_except_current(self, account_id: str, current_jti: str | None = None) -> int:
        """Revoke every session except the one current_jti belongs to.

        current_jti may be the refresh jti or the access jti of the current
        session; both resolve to the same session. With no current_jti every
        session is revoked.
        """
        revoked = self.credentials.revoke_all(account_id, except_jti=current_jti)
        logger.info("Revoked other sessions: account=%s rows=%d", account_id, revoked)
        return revoked

    def purge_expired(self) -> tuple[int, int]:
        """Maintenance sweep. Returns (ledger rows purged, token rows purged)."""
        ledger = self.credentials.purge_expired_ledger_entries()
        records = self.credentials.purge_expired_tokens()
        if ledger or records:
            logger.info("Purged %d ledger entr(ies) and %d expired token record(s)", ledger, records)
        return ledger, records


def seconds_until_next_sweep(now: datetime, offset_minutes: int) -> float:
    """Seconds from `now` until the next HH:offset_minutes:00 boundary.

    A `now` sitting exactly on the boundary schedules the following hour, so
    a sweep that finishes instantly never runs twice in the same hour.
    """
    target = now.replace(minute=offset_minutes, second=0, microsecond=0)
    if target <= now:
        target += timedelta(hours=1)
    return (target - now).total_seconds()
