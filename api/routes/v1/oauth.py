"""
api/routes/v1/oauth.py -- Browser redirect sign-in through authlib.

Routes:
  GET /api/v1/auth/oauth/{provider}/login     -- 302 to the provider's authorize page
  GET /api/v1/auth/oauth/{provider}/callback  -- code exchange; returns a token pair

The callback feeds the provider's verified userinfo into the same
IdentityResolver used by the id_token grant, so linking and account-creation
rules are identical for both entry points.

Security:
  [H1] Unverified provider emails are rejected in claims_from_token().
  Provider names are checked against the enabled list before any redirect, so
  a spoofed name can never steer the browser to an arbitrary URL.
"""

import asyncio
import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api.models import TokenResponse
from auth.dependencies import client_ip, get_components, request_device
from auth.errors import InvalidAssertion, NotFound
from auth.oauth import claims_from_token, get_enabled_providers
from core.config import get_settings

logger = logging.getLogger("gatekeeper.api.oauth")

router = APIRouter()


def _redirect_client(request: Request, provider: str):
    enabled = {p["name"] for p in get_enabled_providers(get_settings()) if p["redirect"]}
    client = request.app.state.oauth.create_client(provider) if provider in enabled else None
    if client is None:
        raise NotFound(f"Sign-in provider '{provider}' is not available.")
    return client


@router.get("/auth/oauth/{provider}/login", name="oauth_login")
async def oauth_login(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page."""
    client = _redirect_client(request, provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback", response_model=TokenResponse)
async def oauth_callback(request: Request, provider: str) -> JSONResponse:
    """Exchange the authorization code and sign the user in.

    authlib validates the state parameter against the session (CSRF) and the
    id_token signature before userinfo reaches us.
    """
    client = _redirect_client(request, provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        logger.warning("OAuth token exchange failed for provider %r: %s", provider, exc.error)
        raise InvalidAssertion("Sign-in with the provider failed.") from exc

    claims = claims_from_token(provider, token)
    result = await asyncio.to_thread(
        get_components(request).identity.login_with_identity,
        claims,
        request_device(request),
        client_ip(request),
    )
    body = TokenResponse.from_pair(result.tokens, result.account, is_new_user=result.is_new_user)
    resp = JSONResponse(status_code=201 if result.is_new_user else 200, content=body.model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"
    return resp
