"""
auth/container.py -- Wires the auth core together from Settings.

api/main.py builds one AuthComponents at startup and keeps it on
app.state.auth. The CLI and tests call build_components() directly, passing
their own engine, key fetcher or mailer where needed.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.engine import Engine

from auth.accounts import AccountService
from auth.credentials import CredentialStore
from auth.gate import PermissionGate
from auth.identity import AssertionVerifier, IdentityResolver, JwksCache, configured_providers, fetch_json
from auth.keys import KeyRing, KeySet, load_keyset
from auth.mailer import LoggingMailer, Mailer
from auth.rbac import RoleDirectory
from auth.sessions import SessionRegistry
from auth.store import AccountStore, create_store_engine
from auth.tokens import TokenIssuer
from core.config import Settings


@dataclass
class AuthComponents:
    engine: Engine
    keyring: KeyRing
    accounts: AccountStore
    credentials: CredentialStore
    roles: RoleDirectory
    issuer: TokenIssuer
    sessions: SessionRegistry
    verifier: AssertionVerifier
    identity: IdentityResolver
    account_service: AccountService
    gate: PermissionGate


def build_components(
    settings: Settings,
    engine: Engine | None = None,
    jwks_fetcher: Callable[[str, float], dict] | None = None,
    mailer: Mailer | None = None,
    keyset: KeySet | None = None,
) -> AuthComponents:
    if engine is None:
        engine = create_store_engine(settings.database_url, settings.store_timeout_seconds)
    keyring = KeyRing(keyset or load_keyset(settings))
    accounts = AccountStore(engine)
    credentials = CredentialStore(engine)
    roles = RoleDirectory(engine)
    issuer = TokenIssuer.from_settings(settings, keyring, credentials, roles, accounts)
    cache = JwksCache(
        fetcher=jwks_fetcher or fetch_json,
        ttl_seconds=settings.jwks_cache_seconds,
        retries=settings.jwks_fetch_retries,
        timeout=settings.jwks_fetch_timeout_seconds,
    )
    verifier = AssertionVerifier(configured_providers(settings), cache, leeway=settings.clock_skew_seconds)
    return AuthComponents(
        engine=engine,
        keyring=keyring,
        accounts=accounts,
        credentials=credentials,
        roles=roles,
        issuer=issuer,
        sessions=SessionRegistry(credentials),
        verifier=verifier,
        identity=IdentityResolver(accounts, roles, issuer, verifier, default_role=settings.default_role),
        account_service=AccountService(
            accounts,
            roles,
            issuer,
            credentials,
            mailer or LoggingMailer(),
            default_role=settings.default_role,
            self_registration_enabled=settings.self_registration_enabled,
        ),
        gate=PermissionGate(issuer, credentials),
    )
