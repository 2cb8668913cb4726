"""
tests/conftest.py -- Shared test fixtures for Gatekeeper unit and integration tests.

This module provides:
  - RecordingMailer: Mailer fake that keeps every token it was handed
  - IdentityProviderKeys: an RSA key pair posing as Google's JWKS, plus an
    ID-token minting helper
  - components: a fully wired AuthComponents on a private in-memory DB
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - api_client: TestClient with an admin access token for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API tests because TestClient runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

Environment variables must be set before any api/auth/core import so the
cached get_settings() sees them: DEBUG (auto-generated SECRET_KEY), a generous
LOGIN_RATE_LIMIT, and a Google client so the id_token grant and redirect
sign-in are enabled.
"""

from __future__ import annotations

import asyncio
import os
import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client.apps.googleusercontent.com")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-google-secret")

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jose import jwk, jwt

from api.main import app
from auth.container import AuthComponents, build_components
from auth.identity import GOOGLE_JWKS_URL
from auth.store import create_store_engine
from core.config import Settings, get_settings

GOOGLE_CLIENT_ID = os.environ["GOOGLE_CLIENT_ID"]
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin-pass-123"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingMailer:
    """Mailer that records (kind, to, token) instead of sending anything."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str | None]] = []

    def send_verification_email(self, to: str, name: str | None, token: str) -> None:
        self.sent.append(("verification", to, token))

    def send_welcome_email(self, to: str, name: str | None) -> None:
        self.sent.append(("welcome", to, None))

    def send_password_reset_email(self, to: str, name: str | None, token: str) -> None:
        self.sent.append(("password_reset", to, token))

    def last_token(self, kind: str, to: str) -> str:
        for sent_kind, sent_to, token in reversed(self.sent):
            if sent_kind == kind and sent_to == to:
                return token
        raise AssertionError(f"no {kind} email sent to {to}")


class IdentityProviderKeys:
    """An RSA signing key published as a one-key JWKS document."""

    def __init__(self, kid: str = "test-kid-1") -> None:
        self.kid = kid
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.private_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("utf-8")
        public_pem = (
            key.public_key()
            .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
            .decode("utf-8")
        )
        self.public_jwk = jwk.construct(public_pem, "RS256").to_dict()
        self.public_jwk["kid"] = kid
        self.fetches: list[str] = []

    def jwks(self) -> dict:
        return {"keys": [self.public_jwk]}

    def fetcher(self, url: str, timeout: float) -> dict:
        self.fetches.append(url)
        if url != GOOGLE_JWKS_URL:
            raise ValueError(f"unexpected url {url}")
        return self.jwks()

    def id_token(self, subject: str, email: str, **overrides) -> str:
        """A Google-style ID token for our client id, valid for five minutes."""
        kid = overrides.pop("kid", self.kid)
        now = int(time.time())
        claims = {
            "iss": "https://accounts.google.com",
            "aud": GOOGLE_CLIENT_ID,
            "sub": subject,
            "email": email,
            "email_verified": True,
            "given_name": "Test",
            "family_name": "User",
            "iat": now,
            "exp": now + 300,
        }
        claims.update(overrides)
        return jwt.encode(claims, self.private_pem, algorithm="RS256", headers={"kid": kid})


def unique_email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def idp_keys() -> IdentityProviderKeys:
    """One RSA key for the session; generating 2048-bit keys is slow."""
    return IdentityProviderKeys()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debug=True,
        secret_key="unit-test-secret-key-0123456789abcdef",
        google_client_id=GOOGLE_CLIENT_ID,
        google_client_secret="",
        jwks_fetch_retries=1,
    )


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def components(settings: Settings, mailer: RecordingMailer, idp_keys: IdentityProviderKeys) -> AuthComponents:
    """AuthComponents on a private in-memory DB with the default roles seeded."""
    engine = create_store_engine("sqlite:///:memory:")
    auth = build_components(settings, engine=engine, jwks_fetcher=idp_keys.fetcher, mailer=mailer)
    auth.verifier.cache.backoff_seconds = 0
    auth.roles.ensure_default_roles()
    return auth


# ---------------------------------------------------------------------------
# API integration fixtures
# ---------------------------------------------------------------------------


def _make_test_components(db_suffix: str, idp_keys: IdentityProviderKeys) -> AuthComponents:
    """Build components on an isolated named shared-memory SQLite DB.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    engine = create_store_engine(url)
    auth = build_components(get_settings(), engine=engine, jwks_fetcher=idp_keys.fetcher, mailer=RecordingMailer())
    auth.verifier.cache.backoff_seconds = 0
    auth.roles.ensure_default_roles()
    return auth


def _patch_lifespan(auth: AuthComponents):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built components into app.state so TestClient routes see an
    isolated test DB. The OAuth registry is a MagicMock so no test makes a
    real network call.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth = auth
        app.state.oauth = MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request, idp_keys: IdentityProviderKeys) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers against an isolated in-memory store. The
    System Admin account is created before the client starts.
    """
    auth = _make_test_components(request.module.__name__.rsplit(".", 1)[-1], idp_keys)
    admin = auth.account_service.create_admin(ADMIN_EMAIL, ADMIN_PASSWORD, "Admin")
    token = auth.issuer.issue(admin).access_token

    app.router.lifespan_context = _patch_lifespan(auth)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin.id

    auth.engine.dispose()
