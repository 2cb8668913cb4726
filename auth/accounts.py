"""
auth/accounts.py -- Local account flows: signup, login, email verification,
password reset / change, logout, and operator account lookups.

Security notes:
  [C1] login() runs bcrypt whether or not the email exists (see
       auth/passwords.py), and every failure returns the same message, so
       neither response time nor body reveals which emails are registered.

  [C2] forgot_password() always succeeds. Whether an account exists is a
       normal branch, not an error, and never reaches the caller.

  [C3] Password reset tokens are stateless, so reuse is blocked through
       valid_since: a successful reset bumps it, and any reset token issued
       before that instant is rejected. A reset also revokes every session,
       since whoever held the old password may hold a refresh token too.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.claims import AccessClaims
from auth.credentials import CredentialStore
from auth.errors import BadRequest, Conflict, Forbidden, NotFound, Unauthenticated
from auth.mailer import Mailer
from auth.models import Account, AccountStatus, DeviceInfo, Provider, Role, TokenPair, new_account_id
from auth.passwords import MIN_PASSWORD_LENGTH, check_credentials, hash_password, verify_password
from auth.rbac import SYSTEM_ADMIN, RoleDirectory
from auth.store import AccountStore
from auth.tokens import TokenIssuer

logger = logging.getLogger("gatekeeper.auth.accounts")

MAX_PAGE_SIZE = 100

_INVALID_CREDENTIALS = "Invalid email or password."


def _check_password_policy(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise BadRequest(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")


class AccountService:
    def __init__(
        self,
        accounts: AccountStore,
        roles: RoleDirectory,
        issuer: TokenIssuer,
        credentials: CredentialStore,
        mailer: Mailer,
        default_role: str = "Member",
        self_registration_enabled: bool = True,
    ) -> None:
        self.accounts = accounts
        self.roles = roles
        self.issuer = issuer
        self.credentials = credentials
        self.mailer = mailer
        self.default_role = default_role
        self.self_registration_enabled = self_registration_enabled

    # ------------------------------------------------------------------
    # Signup / login
    # ------------------------------------------------------------------

    def signup(
        self,
        email: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> Account:
        """Create a local account with the default role and send verification mail."""
        if not self.self_registration_enabled:
            raise Forbidden("Self registration is disabled.")
        _check_password_policy(password)
        if self.accounts.email_exists(email):
            raise Conflict("An account with this email already exists.")

        account = Account(
            id=new_account_id(self.default_role),
            email=email,
            password_hash=hash_password(password),
            first_name=first_name,
            last_name=last_name,
            provider=Provider.local,
            status=AccountStatus.active,
            email_verified=False,
        )
        self.accounts.create_account(account)
        self.roles.assign_by_name(account.id, self.default_role)
        logger.info("Account signed up: %s", account.id)

        token = self.issuer.create_email_verification_token(account)
        self.mailer.send_verification_email(account.email, account.first_name, token)
        self.mailer.send_welcome_email(account.email, account.first_name)
        return account

    def login(
        self,
        email: str,
        password: str,
        device: DeviceInfo | None = None,
        ip_address: str | None = None,
    ) -> tuple[Account, TokenPair]:
        account = check_credentials(self.accounts, email, password)
        if account is None:
            logger.info("Failed login attempt from %s", ip_address or "unknown")
            raise Unauthenticated(_INVALID_CREDENTIALS)
        if not account.is_active:
            logger.info("Login refused for %s account %s", account.status.value, account.id)
            raise Unauthenticated(_INVALID_CREDENTIALS)
        self.accounts.record_login(account.id, ip_address)
        pair = self.issuer.issue(account, device=device)
        return account, pair

    def token_info(self, access_token: str) -> tuple[AccessClaims, Account]:
        """Introspect an access token: verified claims plus the live account."""
        claims = self.issuer.verify_access(access_token)
        if self.credentials.is_blacklisted(claims.jti) or self.credentials.find_by_jti(claims.jti) is None:
            raise Unauthenticated("Access token is no longer valid.")
        account = self.accounts.get_by_id(claims.sub)
        if account is None:
            raise Unauthenticated("Account is not available.")
        return claims, account

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verify_email(self, token: str) -> Account:
        claims = self.issuer.verify_email_verification_token(token)
        account = self.accounts.get_by_id(claims.sub)
        if account is None:
            raise NotFound("Account not found.")
        if account.email != claims.email.lower():
            raise BadRequest("Verification link does not match the current email address.")
        if not account.email_verified:
            self.accounts.update_account(account.id, email_verified=True)
            account.email_verified = True
            logger.info("Email verified for account %s", account.id)
        return account

    def resend_verification(self, email: str) -> None:
        account = self.accounts.get_by_email(email)
        if account is None:
            raise NotFound("Account not found.")
        if account.email_verified:
            raise BadRequest("Email is already verified.")
        token = self.issuer.create_email_verification_token(account)
        self.mailer.send_verification_email(account.email, account.first_name, token)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> None:
        """Send a reset link if the account exists. Always returns normally [C2]."""
        account = self.accounts.get_by_email(email)
        if account is None or not account.is_active:
            logger.info("Password reset requested for unknown or inactive email")
            return
        token = self.issuer.create_password_reset_token(account)
        self.mailer.send_password_reset_email(account.email, account.first_name, token)

    def reset_password(self, token: str, new_password: str) -> Account:
        claims = self.issuer.verify_password_reset_token(token)
        _check_password_policy(new_password)
        account = self.accounts.get_by_id(claims.sub)
        if account is None:
            raise NotFound("Account not found.")
        # iat has whole-second precision; compare at the same precision.
        cutoff = account.valid_since.replace(microsecond=0) if account.valid_since else None
        if cutoff is not None and (claims.iat is None or claims.iat < cutoff):
            raise Unauthenticated("Password reset link is no longer valid.")

        self.accounts.update_account(account.id, password_hash=hash_password(new_password))
        self.accounts.bump_valid_since(account.id)
        revoked = self.credentials.revoke_all(account.id)
        logger.info("Password reset for account %s; %d token(s) revoked", account.id, revoked)
        return self.accounts.get_by_id(account.id)

    def change_password(self, account_id: str, current_password: str, new_password: str) -> None:
        account = self.accounts.get_by_id(account_id)
        if account is None:
            raise NotFound("Account not found.")
        if not account.password_hash or not verify_password(current_password, account.password_hash):
            raise Unauthenticated("Invalid current password.")
        _check_password_policy(new_password)
        self.accounts.update_account(account.id, password_hash=hash_password(new_password))
        logger.info("Password changed for account %s", account.id)

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, claims: AccessClaims, refresh_token: str | None = None) -> int:
        """Revoke the caller's session and, if given, the session a refresh token belongs to.

        The refresh token must belong to the same account. Its whole session is
        revoked, sibling access tokens included. Returns the number of token
        rows revoked.
        """
        revoked = 0
        if refresh_token:
            refresh = self.issuer.verify_refresh(refresh_token)
            if refresh.sub != claims.sub:
                raise BadRequest("Refresh token belongs to a different account.")
            if refresh.sid != claims.sid:
                revoked += self.credentials.revoke_session(refresh.sub, refresh.sid)
        self.issuer.revoke(claims)
        revoked += 1 + self.credentials.revoke_session(claims.sub, claims.sid)
        self.accounts.bump_valid_since(claims.sub)
        logger.info("Logout: account=%s session=%s", claims.sub, claims.sid)
        return revoked

    # ------------------------------------------------------------------
    # Profiles and operator lookups
    # ------------------------------------------------------------------

    def profile(self, account_id: str) -> tuple[Account, list[Role]]:
        account = self.accounts.get_by_id(account_id)
        if account is None:
            raise NotFound("Account not found.")
        return account, self.roles.roles_for_account(account.id)

    def list_accounts(self, page: int = 1, per: int = 10, **filters) -> tuple[list[Account], int]:
        per = min(max(per, 1), MAX_PAGE_SIZE)
        return self.accounts.list_accounts(page=max(page, 1), per=per, **filters)

    def set_status(self, account_id: str, status: AccountStatus) -> Account:
        """Change account status. Leaving `active` revokes every session."""
        account = self.accounts.get_by_id(account_id)
        if account is None:
            raise NotFound("Account not found.")
        self.accounts.update_account(account.id, status=status)
        if status != AccountStatus.active:
            revoked = self.credentials.revoke_all(account.id)
            logger.info("Account %s set to %s; %d token(s) revoked", account.id, status.value, revoked)
        return self.accounts.get_by_id(account.id)

    def create_admin(self, email: str, password: str, first_name: str | None = None) -> Account:
        """Create a verified local account holding the System Admin role."""
        _check_password_policy(password)
        if self.accounts.email_exists(email):
            raise Conflict("An account with this email already exists.")
        account = Account(
            id=new_account_id(SYSTEM_ADMIN),
            email=email,
            password_hash=hash_password(password),
            first_name=first_name,
            email_verified=True,
        )
        self.accounts.create_account(account)
        self.roles.assign_by_name(account.id, SYSTEM_ADMIN)
        logger.info("Admin account created: %s", account.id)
        return account
