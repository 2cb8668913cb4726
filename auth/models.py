"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these classes own the domain shape.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Provider(str, Enum):
    """Sign-in methods. `local` is email + password."""

    local = "local"
    google = "google"
    apple = "apple"
    oidc = "oidc"


class AccountStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    suspended = "suspended"


class TokenType(str, Enum):
    access = "access"
    refresh = "refresh"


class DeviceType(str, Enum):
    mobile = "mobile"
    tablet = "tablet"
    desktop = "desktop"
    other = "other"


class Permission(str, Enum):
    """Closed set of permission tags, grouped by resource."""

    # Product
    create_product = "product:create"
    read_product = "product:read"
    update_product = "product:update"
    delete_product = "product:delete"
    manage_categories = "product:categories"
    manage_collections = "product:collections"

    # Order
    create_order = "order:create"
    read_order = "order:read"
    update_order = "order:update"
    delete_order = "order:delete"
    manage_order_status = "order:status"
    process_refunds = "order:refunds"

    # Customer
    create_customer = "customer:create"
    read_customer = "customer:read"
    update_customer = "customer:update"
    delete_customer = "customer:delete"
    view_customer_history = "customer:history"
    manage_customer_groups = "customer:groups"

    # Inventory
    manage_inventory = "inventory:manage"
    view_inventory = "inventory:read"
    adjust_stock = "inventory:adjust"
    view_stock_history = "inventory:history"

    # Payment
    process_payments = "payment:process"
    view_transactions = "payment:view"
    manage_payment_methods = "payment:methods"
    handle_disputes = "payment:disputes"

    # Analytics
    view_sales_reports = "analytics:sales"
    view_customer_reports = "analytics:customers"
    view_inventory_reports = "analytics:inventory"
    export_reports = "analytics:export"

    # System
    system_admin = "system:admin"
    system_audit = "system:audit"
    manage_settings = "system:settings"

    # User management
    list_users = "user:list"
    view_user_details = "user:details"
    view_user_roles = "user:roles"
    manage_user_status = "user:status"
    view_user_devices = "user:devices"

    @property
    def resource(self) -> str:
        return self.value.split(":", 1)[0]

    @classmethod
    def parse(cls, values) -> list[Permission]:
        """Map raw tags to members, silently dropping tags no longer in the set."""
        known = {p.value: p for p in cls}
        return [known[v] for v in values if v in known]


@dataclass
class LinkedIdentity:
    """An external provider account bound to a local Account.

    (provider, provider_id) is unique system-wide -- enforced by a UNIQUE
    constraint on linked_identities and re-checked in code before writes.
    """

    provider: Provider
    provider_id: str
    email: str | None = None
    display_name: str | None = None
    photo_url: str | None = None
    linked_at: datetime | None = None


@dataclass
class Account:
    """A local identity.

    email is stored lower-cased; uniqueness is case-insensitive.
    password_hash is None for accounts created through an external provider.
    provider is the primary sign-in method the account was created with.
    valid_since is bumped on logout and password reset.
    """

    id: str
    email: str
    provider: Provider = Provider.local
    password_hash: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    status: AccountStatus = AccountStatus.active
    email_verified: bool = False
    phone_number: str | None = None
    phone_verified: bool = False
    linked_identities: list[LinkedIdentity] = field(default_factory=list)
    last_login_at: datetime | None = None
    last_login_ip: str | None = None
    valid_since: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.active

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def linked(self, provider: Provider) -> LinkedIdentity | None:
        for identity in self.linked_identities:
            if identity.provider == provider:
                return identity
        return None


@dataclass
class Role:
    """A named permission set. System roles cannot be deleted."""

    name: str
    description: str = ""
    permissions: list[Permission] = field(default_factory=list)
    is_system: bool = False
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class DeviceInfo:
    """Client metadata captured when a credential is issued. Never holds secrets."""

    device_type: DeviceType = DeviceType.other
    device_id: str | None = None
    device_name: str | None = None
    device_model: str | None = None
    os_name: str | None = None
    os_version: str | None = None
    app_version: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    last_location: str | None = None


@dataclass
class CredentialRecord:
    """Server-side record of one issued token, keyed by jti.

    session_id ties together the access/refresh pair issued by one Issue()
    call; rotation carries it forward so a device keeps one session identity.
    """

    jti: str
    account_id: str
    type: TokenType
    expires_at: datetime
    session_id: str
    device_info: DeviceInfo | None = None
    last_used_at: datetime | None = None
    created_at: datetime | None = None
    id: int | None = None


@dataclass
class LedgerEntry:
    """Revocation ledger row -- a token explicitly invalidated before expiry."""

    jti: str
    account_id: str
    expires_at: datetime
    token_type: TokenType
    blacklisted_at: datetime | None = None
    id: int | None = None


@dataclass(frozen=True)
class TokenPair:
    """Result of Issue(): the two signed credentials handed to the client."""

    access_token: str
    refresh_token: str
    expires_in: int
    access_jti: str
    refresh_jti: str
    session_id: str
    token_type: str = "bearer"


@dataclass(frozen=True)
class DeviceSummary:
    """Projection of a refresh-token record for device listings."""

    id: int
    device_info: DeviceInfo | None
    last_used_at: datetime | None
    created_at: datetime | None
    expires_at: datetime
    current: bool = False


# ---------------------------------------------------------------------------
# Account id generation
# ---------------------------------------------------------------------------

_ROLE_ID_PREFIXES = {
    "Member": "cust",
    "Customer": "cust",
    "Staff": "staff",
    "Store Manager": "adm",
    "System Admin": "adm",
}


def new_account_id(role_name: str) -> str:
    """Return a prefixed account id such as cust_3f9a0c1e7b2d4a68.

    The prefix reflects the role the account was created with; unknown roles
    fall back to the customer prefix.
    """
    prefix = _ROLE_ID_PREFIXES.get(role_name, "cust")
    return f"{prefix}_{secrets.token_hex(8)}"
