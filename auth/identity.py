"""
auth/identity.py -- External identity assertions and account reconciliation.

Two layers:

  AssertionVerifier -- validates a third-party ID token (Google, Apple, one
      generic OIDC issuer). The provider is chosen by the token's unverified
      `iss`, then the token is fully verified against that provider's JWKS:
      signature, expiry, issuer, and an audience that must be one of our
      registered client ids. Keys are cached per URL and refetched once when
      a token names an unknown `kid` (provider key rotation).

  IdentityResolver -- the login / link / unlink state machine. A bare
      ID-token login never attaches a new provider to an existing account
      that signed up another way; that needs an authenticated link call.

Security notes:
  [H1] The asserted email must be present and verified by the provider
       (ExternalIdentityClaims.from_payload). Otherwise a provider account
       carrying a victim's unverified address could take over their account.

  [H2] Only asymmetric algorithms are accepted for provider tokens, so a
       token cannot downgrade verification to an HMAC keyed with public
       JWKS material.

  Outbound HTTP goes through a module-level requests.Session with
  max_redirects=3; the JWKS endpoints are known hosts and do not need more.

Layer rule: may import from core/ (settings); no imports from api/.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import requests
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JOSEError, JWTClaimsError

from auth.claims import ExternalIdentityClaims
from auth.errors import (
    AccountLinkingRequired,
    BadRequest,
    Conflict,
    InvalidAssertion,
    NotFound,
    ProviderUnavailable,
    Unauthenticated,
)
from auth.models import Account, DeviceInfo, LinkedIdentity, Provider, TokenPair, new_account_id

if TYPE_CHECKING:
    from auth.rbac import RoleDirectory
    from auth.store import AccountStore
    from auth.tokens import TokenIssuer
    from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.identity")

GOOGLE_ISSUERS = ("https://accounts.google.com", "accounts.google.com")
GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
APPLE_ISSUER = "https://appleid.apple.com"
APPLE_JWKS_URL = "https://appleid.apple.com/auth/keys"

ASYMMETRIC_ALGORITHMS = ("RS256", "RS384", "RS512", "ES256", "ES384")

# Shared across all JWKS fetches for connection pooling.
_session = requests.Session()
_session.max_redirects = 3


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IdentityProvider:
    provider: Provider
    label: str
    issuers: tuple[str, ...]
    client_ids: tuple[str, ...]
    jwks_url: str = ""
    discovery_url: str = ""


def configured_providers(settings: Settings) -> list[IdentityProvider]:
    """Providers with a client id configured. Others are disabled."""
    providers = []
    if settings.google_client_id:
        providers.append(
            IdentityProvider(
                provider=Provider.google,
                label="Google",
                issuers=GOOGLE_ISSUERS,
                client_ids=(settings.google_client_id,),
                jwks_url=GOOGLE_JWKS_URL,
            )
        )
    if settings.apple_client_id:
        providers.append(
            IdentityProvider(
                provider=Provider.apple,
                label="Apple",
                issuers=(APPLE_ISSUER,),
                client_ids=(settings.apple_client_id,),
                jwks_url=APPLE_JWKS_URL,
            )
        )
    if settings.oidc_client_id and settings.oidc_issuer and (settings.oidc_jwks_url or settings.oidc_discovery_url):
        providers.append(
            IdentityProvider(
                provider=Provider.oidc,
                label=settings.oidc_display_name,
                issuers=(settings.oidc_issuer.rstrip("/"), settings.oidc_issuer),
                client_ids=(settings.oidc_client_id,),
                jwks_url=settings.oidc_jwks_url,
                discovery_url=settings.oidc_discovery_url,
            )
        )
    return providers


# ---------------------------------------------------------------------------
# JWKS fetching and caching
# ---------------------------------------------------------------------------


def fetch_json(url: str, timeout: float = 10.0) -> dict:
    """GET a JSON document. Raises requests.RequestException or ValueError."""
    resp = _session.get(url, timeout=timeout)
    resp.raise_for_status()
    return resp.json()


class JwksCache:
    """Per-URL cache of JSON documents (JWKS sets and discovery documents).

    Fetches are idempotent, so they are retried a bounded number of times
    with a short backoff. If every attempt fails and a previous copy is
    cached, the stale copy is served; otherwise ProviderUnavailable.
    """

    def __init__(
        self,
        fetcher: Callable[[str, float], dict] = fetch_json,
        ttl_seconds: int = 3600,
        retries: int = 3,
        timeout: float = 10.0,
        backoff_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.fetcher = fetcher
        self.ttl_seconds = ttl_seconds
        self.retries = max(1, retries)
        self.timeout = timeout
        self.backoff_seconds = backoff_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, dict]] = {}

    def get(self, url: str, force: bool = False) -> dict:
        with self._lock:
            entry = self._entries.get(url)
        if entry and not force and self.clock() - entry[0] < self.ttl_seconds:
            return entry[1]

        last_error: Exception | None = None
        for attempt in range(1, self.retries + 1):
            try:
                document = self.fetcher(url, self.timeout)
                if not isinstance(document, dict):
                    raise ValueError("expected a JSON object")
            except (requests.RequestException, ValueError) as exc:
                last_error = exc
                logger.warning("Fetch of %s failed (attempt %d/%d): %s", url, attempt, self.retries, exc)
                if attempt < self.retries and self.backoff_seconds:
                    time.sleep(self.backoff_seconds * attempt)
                continue
            with self._lock:
                self._entries[url] = (self.clock(), document)
            return document

        if entry:
            logger.warning("Serving stale copy of %s after fetch failure", url)
            return entry[1]
        raise ProviderUnavailable(f"Could not fetch signing keys: {last_error}")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


# ---------------------------------------------------------------------------
# Assertion verification
# ---------------------------------------------------------------------------


class AssertionVerifier:
    def __init__(self, providers: list[IdentityProvider], cache: JwksCache, leeway: int = 0) -> None:
        self.providers = providers
        self.cache = cache
        self.leeway = leeway

    def provider_for_issuer(self, issuer: str | None) -> IdentityProvider | None:
        for provider in self.providers:
            if issuer in provider.issuers:
                return provider
        return None

    def _jwks_url(self, provider: IdentityProvider) -> str:
        if provider.jwks_url:
            return provider.jwks_url
        discovery = self.cache.get(provider.discovery_url)
        url = discovery.get("jwks_uri")
        if not url:
            raise ProviderUnavailable(f"{provider.label} discovery document has no jwks_uri.")
        return url

    def _find_key(self, provider: IdentityProvider, kid: str | None) -> dict:
        url = self._jwks_url(provider)
        for force in (False, True):
            keys = self.cache.get(url, force=force).get("keys", [])
            for key in keys:
                if kid is None or key.get("kid") == kid:
                    return key
            if force is False:
                logger.info("Unknown kid %s for %s, refetching keys", kid, provider.label)
        raise InvalidAssertion("Identity token was signed with an unknown key.")

    def verify(self, id_token: str) -> ExternalIdentityClaims:
        """Verify a provider ID token. Raises InvalidAssertion on any mismatch."""
        try:
            header = jwt.get_unverified_header(id_token)
            unverified = jwt.get_unverified_claims(id_token)
        except JOSEError as exc:
            raise InvalidAssertion("Identity token is malformed.") from exc

        provider = self.provider_for_issuer(unverified.get("iss"))
        if provider is None:
            raise InvalidAssertion("Identity token issuer is not accepted.")

        algorithm = header.get("alg")
        if algorithm not in ASYMMETRIC_ALGORITHMS:
            raise InvalidAssertion("Identity token algorithm is not accepted.")

        key = self._find_key(provider, header.get("kid"))
        try:
            payload = jwt.decode(
                id_token,
                key,
                algorithms=[algorithm],
                issuer=provider.issuers,
                options={"verify_aud": False, "verify_at_hash": False, "leeway": self.leeway},
            )
        except ExpiredSignatureError as exc:
            raise InvalidAssertion("Identity token has expired.") from exc
        except JWTClaimsError as exc:
            raise InvalidAssertion("Identity token claims are invalid.") from exc
        except JOSEError as exc:
            raise InvalidAssertion("Identity token signature is invalid.") from exc

        audience = payload.get("aud")
        audiences = audience if isinstance(audience, list) else [audience]
        if not any(a in provider.client_ids for a in audiences):
            raise InvalidAssertion("Identity token was issued for a different client.")

        return ExternalIdentityClaims.from_payload(provider.provider, payload)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExternalLoginResult:
    account: Account
    tokens: TokenPair
    is_new_user: bool


def _identity_from_claims(claims: ExternalIdentityClaims) -> LinkedIdentity:
    return LinkedIdentity(
        provider=claims.provider,
        provider_id=claims.subject,
        email=claims.email,
        display_name=claims.display_name,
        photo_url=claims.picture,
    )


class IdentityResolver:
    def __init__(
        self,
        accounts: AccountStore,
        roles: RoleDirectory,
        issuer: TokenIssuer,
        verifier: AssertionVerifier,
        default_role: str = "Member",
    ) -> None:
        self.accounts = accounts
        self.roles = roles
        self.issuer = issuer
        self.verifier = verifier
        self.default_role = default_role

    def login_with_assertion(
        self, id_token: str, device: DeviceInfo | None = None, ip_address: str | None = None
    ) -> ExternalLoginResult:
        claims = self.verifier.verify(id_token)
        return self.login_with_identity(claims, device, ip_address)

    def login_with_identity(
        self, claims: ExternalIdentityClaims, device: DeviceInfo | None = None, ip_address: str | None = None
    ) -> ExternalLoginResult:
        """Reconcile a verified external identity with local accounts and issue tokens."""
        existing = self.accounts.get_by_email(claims.email)
        if existing is not None:
            account = self._login_existing(existing, claims)
            is_new = False
        else:
            account = self._create_from_identity(claims)
            is_new = True

        self.accounts.record_login(account.id, ip_address)
        pair = self.issuer.issue(account, device=device)
        logger.info(
            "External login: provider=%s account=%s new=%s", claims.provider.value, account.id, is_new
        )
        return ExternalLoginResult(account=account, tokens=pair, is_new_user=is_new)

    def _login_existing(self, account: Account, claims: ExternalIdentityClaims) -> Account:
        if not account.is_active:
            raise Unauthenticated("Account is not active.")
        linked = account.linked(claims.provider)
        if linked is not None:
            if linked.provider_id != claims.subject:
                raise Conflict(f"A different {claims.provider.value} identity is linked to this account.")
            self.accounts.update_linked_profile(account.id, _identity_from_claims(claims))
        elif account.provider == claims.provider:
            self._ensure_unbound(account.id, claims)
            self.accounts.add_linked_identity(account.id, _identity_from_claims(claims))
            logger.info("Re-linked primary provider %s for account=%s", claims.provider.value, account.id)
        else:
            raise AccountLinkingRequired()
        return self.accounts.get_by_id(account.id)

    def _create_from_identity(self, claims: ExternalIdentityClaims) -> Account:
        self._ensure_unbound(None, claims)
        account = Account(
            id=new_account_id(self.default_role),
            email=claims.email,
            provider=claims.provider,
            first_name=claims.given_name,
            last_name=claims.family_name,
            email_verified=True,
            linked_identities=[_identity_from_claims(claims)],
        )
        self.accounts.create_account(account)
        self.roles.assign_by_name(account.id, self.default_role)
        logger.info("Account created from %s identity: %s", claims.provider.value, account.id)
        return account

    def _ensure_unbound(self, account_id: str | None, claims: ExternalIdentityClaims) -> None:
        owner = self.accounts.find_by_linked_identity(claims.provider, claims.subject)
        if owner is not None and owner.id != account_id:
            raise Conflict(f"This {claims.provider.value} identity is already linked to another account.")

    # ------------------------------------------------------------------
    # Link / unlink
    # ------------------------------------------------------------------

    def link_provider(self, account_id: str, id_token: str) -> Account:
        claims = self.verifier.verify(id_token)
        return self.link_identity(account_id, claims)

    def link_identity(self, account_id: str, claims: ExternalIdentityClaims) -> Account:
        """Bind a verified external identity to an authenticated account."""
        account = self.accounts.get_by_id(account_id)
        if account is None:
            raise NotFound("Account not found.")
        if claims.email.lower() != account.email.lower():
            raise BadRequest("The provider email does not match this account's email.")
        if account.linked(claims.provider) is not None:
            raise Conflict(f"{claims.provider.value} is already linked to this account.")
        self._ensure_unbound(account.id, claims)
        self.accounts.add_linked_identity(account.id, _identity_from_claims(claims))
        logger.info("Provider linked: provider=%s account=%s", claims.provider.value, account.id)
        return self.accounts.get_by_id(account.id)

    def unlink_provider(self, account_id: str, provider: Provider) -> Account:
        """Remove a binding, keeping at least one way to sign in."""
        account = self.accounts.get_by_id(account_id)
        if account is None:
            raise NotFound("Account not found.")
        if account.linked(provider) is None:
            raise BadRequest(f"{provider.value} is not linked to this account.")
        remaining = [i for i in account.linked_identities if i.provider != provider]
        if not account.has_password and not remaining:
            raise BadRequest("Cannot unlink the only sign-in method. Set a password or link another provider first.")

        self.accounts.remove_linked_identity(account.id, provider)
        if account.provider == provider:
            primary = Provider.local if account.has_password else remaining[0].provider
            self.accounts.update_account(account.id, provider=primary)
        logger.info("Provider unlinked: provider=%s account=%s", provider.value, account.id)
        return self.accounts.get_by_id(account.id)

    def linked_providers(self, account_id: str) -> tuple[Provider, list[LinkedIdentity]]:
        account = self.accounts.get_by_id(account_id)
        if account is None:
            raise NotFound("Account not found.")
        return account.provider, account.linked_identities
