"""Unit tests for auth/sessions.py -- device registry, header parsing, sweep timing.

Covers:
- Device metadata from request headers (case-insensitive, clipped, UA class)
- list_devices() marks the current session and never exposes other accounts
- revoke_device() revokes the whole session and hides foreign ids as NotFound
- revoke_all_except_current() keeps the caller's session
- purge_expired() and the hourly sweep schedule
"""

from datetime import datetime, timezone

import pytest

from auth.errors import NotFound, Unauthenticated
from auth.models import DeviceInfo, DeviceType
from auth.sessions import classify_user_agent, device_info_from_headers, seconds_until_next_sweep


def _member(components, email):
    return components.account_service.signup(email, "member-pass")


class TestDeviceHeaders:
    def test_headers_are_case_insensitive(self) -> None:
        info = device_info_from_headers(
            {"X-Device-Name": "Work laptop", "x-os-name": "macOS", "User-Agent": "Mozilla/5.0"},
            client_host="203.0.113.7",
        )
        assert info.device_name == "Work laptop"
        assert info.os_name == "macOS"
        assert info.device_type == DeviceType.desktop
        assert info.ip_address == "203.0.113.7"

    def test_long_values_are_clipped(self) -> None:
        info = device_info_from_headers({"X-Device-ID": "x" * 1000})
        assert len(info.device_id) == 255

    def test_blank_values_become_none(self) -> None:
        assert device_info_from_headers({"X-App-Version": "   "}).app_version is None

    @pytest.mark.parametrize(
        "ua, expected",
        [
            ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Mobile/15E148", DeviceType.mobile),
            ("Mozilla/5.0 (Linux; Android 13; Tablet)", DeviceType.tablet),
            ("Mozilla/5.0 (X11; Linux x86_64) Chrome/120", DeviceType.desktop),
            ("curl/8.4.0", DeviceType.other),
            (None, DeviceType.other),
        ],
    )
    def test_classify_user_agent(self, ua, expected) -> None:
        assert classify_user_agent(ua) == expected


class TestDeviceRegistry:
    def test_list_marks_current_session(self, components) -> None:
        account = _member(components, "devices@example.com")
        phone = components.issuer.issue(account, device=DeviceInfo(device_type=DeviceType.mobile, device_name="Phone"))
        laptop = components.issuer.issue(account, device=DeviceInfo(device_type=DeviceType.desktop))

        devices = components.sessions.list_devices(account.id, current_session_id=laptop.session_id)

        assert len(devices) == 2
        current = [d for d in devices if d.current]
        assert len(current) == 1
        named = [d for d in devices if d.device_info and d.device_info.device_name == "Phone"]
        assert named and not named[0].current
        assert phone.session_id != laptop.session_id

    def test_revoke_device_revokes_whole_session(self, components) -> None:
        """Both the refresh row and its access sibling stop working."""
        account = _member(components, "revoke@example.com")
        pair = components.issuer.issue(account)
        device = components.sessions.list_devices(account.id)[0]

        assert components.sessions.revoke_device(account.id, device.id) == 2

        with pytest.raises(Unauthenticated):
            components.gate.authenticate(pair.access_token)
        with pytest.raises(Unauthenticated):
            components.issuer.refresh_rotate(pair.refresh_token)
        assert components.sessions.list_devices(account.id) == []

    def test_foreign_device_is_not_found(self, components) -> None:
        """Another account's device id is indistinguishable from a missing one."""
        owner = _member(components, "owner@example.com")
        other = _member(components, "other@example.com")
        components.issuer.issue(owner)
        device = components.sessions.list_devices(owner.id)[0]

        with pytest.raises(NotFound):
            components.sessions.revoke_device(other.id, device.id)
        with pytest.raises(NotFound):
            components.sessions.revoke_device(other.id, 999999)
        assert len(components.sessions.list_devices(owner.id)) == 1

    def test_access_row_id_is_not_a_device(self, components) -> None:
        account = _member(components, "rows@example.com")
        pair = components.issuer.issue(account)
        access_row = components.credentials.find_by_jti(pair.access_jti)
        with pytest.raises(NotFound):
            components.sessions.revoke_device(account.id, access_row.id)

    def test_revoke_all_except_current(self, components) -> None:
        account = _member(components, "many@example.com")
        current = components.issuer.issue(account)
        components.issuer.issue(account)
        components.issuer.issue(account)

        revoked = components.sessions.revoke_all_except_current(account.id, current_jti=current.access_jti)

        assert revoked == 4
        remaining = components.sessions.list_devices(account.id, current_session_id=current.session_id)
        assert len(remaining) == 1 and remaining[0].current
        assert components.gate.authenticate(current.access_token).sid == current.session_id

    def test_purge_expired(self, components) -> None:
        components.issuer.access_ttl = -60
        account = _member(components, "purge@example.com")
        pair = components.issuer.issue(account)
        components.issuer.revoke(components.issuer.verify_refresh(pair.refresh_token))

        ledger, records = components.sessions.purge_expired()

        assert records == 1  # the expired access row
        assert ledger == 0  # the refresh entry expires in 30 days
        assert components.credentials.is_blacklisted(pair.refresh_jti)


class TestSweepSchedule:
    def _at(self, minute: int, second: int = 0) -> datetime:
        return datetime(2024, 5, 1, 10, minute, second, tzinfo=timezone.utc)

    def test_before_offset_waits_until_offset(self) -> None:
        assert seconds_until_next_sweep(self._at(2), 5) == 3 * 60

    def test_after_offset_waits_until_next_hour(self) -> None:
        assert seconds_until_next_sweep(self._at(10), 5) == 55 * 60

    def test_on_the_boundary_schedules_next_hour(self) -> None:
        assert seconds_until_next_sweep(self._at(5), 5) == 3600

    def test_crosses_midnight(self) -> None:
        now = datetime(2024, 5, 1, 23, 59, 30, tzinfo=timezone.utc)
        assert seconds_until_next_sweep(now, 0) == 30
