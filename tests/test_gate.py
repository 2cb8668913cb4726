"""Unit tests for auth/gate.py -- request-boundary authentication and authorization.

Covers:
- Missing, malformed, revoked and rotated-away tokens are rejected
- A valid token authenticates and touches its session
- all-of / any-of permission checks
"""

from datetime import timedelta

import pytest

from auth.errors import Forbidden, Unauthenticated
from auth.models import Permission
from auth.store import utcnow


@pytest.fixture
def member(components):
    account = components.account_service.signup("gate@example.com", "member-pass")
    return account, components.issuer.issue(account)


class TestAuthenticate:
    def test_valid_token(self, components, member) -> None:
        account, pair = member
        claims = components.gate.authenticate(pair.access_token)
        assert claims.sub == account.id
        assert claims.sid == pair.session_id

    @pytest.mark.parametrize("token", [None, "", "garbage"])
    def test_missing_or_malformed(self, components, token) -> None:
        with pytest.raises(Unauthenticated):
            components.gate.authenticate(token)

    def test_revoked_token(self, components, member) -> None:
        """A token in the ledger is rejected even though its signature is fine."""
        _, pair = member
        components.issuer.revoke(components.issuer.verify_access(pair.access_token))
        with pytest.raises(Unauthenticated, match="revoked"):
            components.gate.authenticate(pair.access_token)

    def test_token_without_record(self, components, member) -> None:
        _, pair = member
        components.credentials.delete_by_jti(pair.access_jti)
        with pytest.raises(Unauthenticated):
            components.gate.authenticate(pair.access_token)

    def test_refresh_token_is_not_a_bearer_credential(self, components, member) -> None:
        _, pair = member
        with pytest.raises(Unauthenticated):
            components.gate.authenticate(pair.refresh_token)

    def test_touches_session(self, components, member) -> None:
        _, pair = member
        stale = utcnow() - timedelta(days=3)
        components.credentials.touch_session(pair.session_id, when=stale)

        components.gate.authenticate(pair.access_token)

        refresh = components.credentials.find_by_jti(pair.refresh_jti)
        assert refresh.last_used_at > stale + timedelta(days=2)


class TestAuthorize:
    def test_all_of(self, components, member) -> None:
        _, pair = member
        claims = components.gate.authenticate(pair.access_token)
        assert components.gate.authorize(claims, all_of=[Permission.read_product, Permission.read_order]) is claims
        with pytest.raises(Forbidden):
            components.gate.authorize(claims, all_of=[Permission.read_product, Permission.list_users])

    def test_any_of(self, components, member) -> None:
        _, pair = member
        claims = components.gate.authenticate(pair.access_token)
        components.gate.authorize(claims, any_of=[Permission.list_users, Permission.create_order])
        with pytest.raises(Forbidden):
            components.gate.authorize(claims, any_of=[Permission.list_users, Permission.system_admin])

    def test_empty_requirements_pass(self, components, member) -> None:
        _, pair = member
        claims = components.gate.authenticate(pair.access_token)
        assert components.gate.authorize(claims) is claims

    def test_check_combines_both(self, components, member) -> None:
        _, pair = member
        with pytest.raises(Forbidden):
            components.gate.check(pair.access_token, all_of=[Permission.system_admin])
        assert components.gate.check(pair.access_token, any_of=[Permission.read_order]).sub == member[0].id
