"""
auth/errors.py -- Error taxonomy for the auth core.

Every failure the core raises on purpose is an AuthError subclass carrying the
HTTP status and machine-readable code the API layer should surface. The core
itself never imports fastapi; api/main.py owns the translation into the
ErrorResponse envelope.

  InvalidAssertion        400  malformed / expired / wrong-audience external token
  BadRequest              400  request is well-formed but not allowed in this state
  Unauthenticated         401  bad signature, expired, revoked, missing record
  AccountLinkingRequired  401  external login for an email owned by another method
  Forbidden               403  valid identity, insufficient permission
  NotFound                404  unknown device / account (after ownership check)
  Conflict                409  duplicate email or provider binding
  ProviderUnavailable     503  identity provider keys could not be fetched
  StoreUnavailable        503  backing store timed out or refused the connection

Layer rule: no imports from api/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for expected auth failures."""

    status_code: int = 400
    code: str = "auth_error"
    default_message: str = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidAssertion(AuthError):
    status_code = 400
    code = "invalid_assertion"
    default_message = "Identity token could not be verified."


class BadRequest(AuthError):
    status_code = 400
    code = "bad_request"
    default_message = "Request not allowed."


class Unauthenticated(AuthError):
    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required."


class AccountLinkingRequired(AuthError):
    status_code = 401
    code = "account_linking_required"
    default_message = "Provider not linked. Sign in and use /auth/link-provider to link this provider."


class Forbidden(AuthError):
    status_code = 403
    code = "forbidden"
    default_message = "Insufficient permissions."


class NotFound(AuthError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class Conflict(AuthError):
    status_code = 409
    code = "conflict"
    default_message = "Resource already exists."


class ProviderUnavailable(AuthError):
    status_code = 503
    code = "provider_unavailable"
    default_message = "Identity provider is temporarily unavailable."


class StoreUnavailable(AuthError):
    status_code = 503
    code = "store_unavailable"
    default_message = "Storage is temporarily unavailable."
