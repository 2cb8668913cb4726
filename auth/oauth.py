"""
auth/oauth.py -- Authlib OAuth/OIDC registry for browser redirect sign-in.

The redirect flow is the browser counterpart of the ID-token login in
auth/identity.py: authlib runs the authorization-code exchange and OIDC
validation, and the resulting userinfo is fed into the same
IdentityResolver state machine, so both entry points obey one set of rules.

Only providers with both client ID and secret configured are registered.
Apple sign-in is ID-token only (it needs a signed client secret JWT that this
service does not mint), so it never appears here.

Security notes:
  [H1] Email verification is mandatory. claims_from_token() raises
       InvalidAssertion when the provider does not confirm the email.

  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware. The session stores the state between the
  authorization redirect and the callback -- never trust state from query params
  alone.

Layer rule: may import from core/ (settings); no imports from api/.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.claims import ExternalIdentityClaims
from auth.errors import InvalidAssertion
from auth.models import Provider
from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.oauth")

GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"

REDIRECT_PROVIDERS = {"google": Provider.google, "oidc": Provider.oidc}


def build_oauth(settings: Settings) -> OAuth:
    """Return an authlib registry with every configured redirect provider."""
    oauth = OAuth()

    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url=GOOGLE_DISCOVERY_URL,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    # Generic OIDC -- Okta, Azure AD, Keycloak, Authentik, etc.
    if settings.oidc_client_id and settings.oidc_client_secret and settings.oidc_discovery_url:
        oauth.register(
            name="oidc",
            client_id=settings.oidc_client_id,
            client_secret=settings.oidc_client_secret,
            server_metadata_url=settings.oidc_discovery_url,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Generic OIDC provider registered (display name: %s)", settings.oidc_display_name)

    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Metadata for every configured sign-in provider.

    Returns list of {"name", "label", "redirect"} dicts. redirect is False for
    providers that only accept a posted ID token (Apple, or OIDC without a
    client secret).
    """
    providers: list[dict] = []
    if settings.google_client_id:
        providers.append(
            {"name": "google", "label": "Google", "redirect": bool(settings.google_client_secret)}
        )
    if settings.apple_client_id:
        providers.append({"name": "apple", "label": "Apple", "redirect": False})
    if settings.oidc_client_id and settings.oidc_issuer:
        providers.append(
            {
                "name": "oidc",
                "label": settings.oidc_display_name,
                "redirect": bool(settings.oidc_client_secret and settings.oidc_discovery_url),
            }
        )
    return providers


def claims_from_token(provider_name: str, token: dict) -> ExternalIdentityClaims:
    """Normalise the authlib token response into ExternalIdentityClaims [H1].

    authlib has already validated the id_token (signature, nonce, audience)
    and placed its claims under token["userinfo"].
    """
    provider = REDIRECT_PROVIDERS.get(provider_name)
    if provider is None:
        raise InvalidAssertion(f"Unknown OAuth provider: {provider_name!r}")
    userinfo = token.get("userinfo")
    if not userinfo:
        raise InvalidAssertion(f"{provider_name} OAuth: no userinfo in token response")
    return ExternalIdentityClaims.from_payload(provider, dict(userinfo))
