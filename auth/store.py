"""
auth/store.py -- SQLAlchemy Core schema, engine factory, and the account repository.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_account / _row_to_identity are the mappers. Route and service code
never touches SQL directly. The credential store (auth/credentials.py) and the
RBAC directory (auth/rbac.py) share this module's MetaData so one
create_all() builds every auth table.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(provider, provider_subject) on linked_identities is the system-wide
  "one external identity, one account" invariant. UNIQUE(account_id, provider)
  keeps one binding per provider per account. Both are re-checked in code
  before writes so callers get a Conflict with a useful message rather than a
  raw IntegrityError.

  accounts.email is stored lower-cased with a UNIQUE index, which makes
  uniqueness case-insensitive regardless of the backing database's collation.

Timestamps:
  DateTime(timezone=True) columns. SQLite drops tzinfo on the way back, so
  every mapper passes datetimes through as_utc().

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import Conflict
from auth.models import Account, AccountStatus, LinkedIdentity, Provider

logger = logging.getLogger("gatekeeper.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", String(40), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for provider-only accounts
    Column("first_name", String(50)),
    Column("last_name", String(50)),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("provider", String(20), nullable=False, server_default="local"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("phone_number", String(32)),
    Column("phone_verified", Integer, nullable=False, server_default="0"),
    Column("last_login_at", DateTime(timezone=True)),
    Column("last_login_ip", String(64)),
    Column("valid_since", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

linked_identities = Table(
    "linked_identities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", String(40), nullable=False, index=True),
    Column("provider", String(20), nullable=False),
    Column("provider_subject", String(255), nullable=False),
    Column("email", String(320)),
    Column("display_name", String(255)),
    Column("photo_url", Text),
    Column("linked_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("provider", "provider_subject", name="uq_linked_identity_subject"),
    UniqueConstraint("account_id", "provider", name="uq_linked_identity_account_provider"),
)

roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
    Column("permissions", Text, nullable=False),  # JSON list of permission tags
    Column("is_system", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

account_roles = Table(
    "account_roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", String(40), nullable=False, index=True),
    Column("role_id", Integer, nullable=False, index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("account_id", "role_id", name="uq_account_role"),
)

tokens = Table(
    "tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("jti", String(64), nullable=False, unique=True),
    Column("account_id", String(40), nullable=False, index=True),
    Column("session_id", String(64), nullable=False, index=True),
    Column("type", String(16), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False, index=True),
    Column("device_info", Text),  # JSON blob, see auth.credentials
    Column("last_used_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

blacklisted_tokens = Table(
    "blacklisted_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("jti", String(64), nullable=False, unique=True),
    Column("account_id", String(40), nullable=False, index=True),
    Column("expires_at", DateTime(timezone=True), nullable=False, index=True),
    Column("token_type", String(16), nullable=False),
    Column("blacklisted_at", DateTime(timezone=True), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL lets readers proceed without blocking during writes, so the hourly
    ledger sweep never stalls request traffic. Set per-connection because
    SQLite PRAGMAs are not inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str, timeout_seconds: float = 5.0) -> Engine:
    """Create the engine for all auth tables and make sure the schema exists.

    timeout_seconds bounds how long a call waits on a locked SQLite file or
    for a pooled connection elsewhere; expiry surfaces as an OperationalError
    / TimeoutError, which the API layer maps to 503.
    """
    connect_args: dict = {}
    engine_kwargs: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout_seconds
    else:
        engine_kwargs["pool_timeout"] = timeout_seconds
        engine_kwargs["pool_pre_ping"] = True
    engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account and its embedded LinkedIdentity list.

    Usage:
        store = AccountStore(create_store_engine("sqlite:///:memory:"))
        store.create_account(Account(id=new_account_id("Member"), email="a@x.com"))
        account = store.get_by_email("A@x.com")
    """

    # Columns update_account() will touch. Anything else raises ValueError.
    _MUTABLE_FIELDS: set = {
        "password_hash",
        "first_name",
        "last_name",
        "status",
        "provider",
        "email_verified",
        "phone_number",
        "phone_verified",
        "last_login_at",
        "last_login_ip",
        "valid_since",
    }

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        """Insert an account and its linked identities in one transaction.

        Raises Conflict if the email or any (provider, subject) pair is taken.
        A concurrent signup racing on the same email lands here too.
        """
        now = utcnow()
        account.email = normalize_email(account.email)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    accounts.insert().values(
                        id=account.id,
                        email=account.email,
                        password_hash=account.password_hash,
                        first_name=account.first_name,
                        last_name=account.last_name,
                        status=account.status.value,
                        provider=account.provider.value,
                        email_verified=1 if account.email_verified else 0,
                        phone_number=account.phone_number,
                        phone_verified=1 if account.phone_verified else 0,
                        valid_since=account.valid_since,
                        created_at=now,
                    )
                )
                for identity in account.linked_identities:
                    identity.linked_at = identity.linked_at or now
                    conn.execute(_identity_insert(account.id, identity))
        except IntegrityError as exc:
            raise Conflict("An account with that email or provider identity already exists.") from exc
        account.created_at = now
        return account

    def get_by_id(self, account_id: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(accounts.select().where(accounts.c.id == account_id)).fetchone()
            if row is None:
                return None
            identities = self._identities_for(conn, [account_id])
        return _row_to_account(row, identities.get(account_id, []))

    def get_by_email(self, email: str) -> Account | None:
        """Case-insensitive email lookup. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(accounts.select().where(accounts.c.email == normalize_email(email))).fetchone()
            if row is None:
                return None
            identities = self._identities_for(conn, [row.id])
        return _row_to_account(row, identities.get(row.id, []))

    def email_exists(self, email: str) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(accounts).where(accounts.c.email == normalize_email(email))
            ).scalar()
        return (count or 0) > 0

    def update_account(self, account_id: str, **fields) -> bool:
        """Update mutable fields on an account.

        Enum values are stored by value; booleans are converted to 0/1.
        Returns True if a row was updated, False if account_id was not found.
        """
        unknown = set(fields) - self._MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        values = {}
        for key, value in fields.items():
            if isinstance(value, (Provider, AccountStatus)):
                value = value.value
            elif isinstance(value, bool):
                value = 1 if value else 0
            values[key] = value
        with self.engine.begin() as conn:
            result = conn.execute(accounts.update().where(accounts.c.id == account_id).values(**values))
        return result.rowcount > 0

    def record_login(self, account_id: str, ip_address: str | None) -> None:
        """Stamp last_login_at / last_login_ip after a successful sign-in."""
        self.update_account(account_id, last_login_at=utcnow(), last_login_ip=ip_address)

    def bump_valid_since(self, account_id: str) -> datetime:
        now = utcnow()
        self.update_account(account_id, valid_since=now)
        return now

    def count_accounts(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(accounts)).scalar()
        return result or 0

    def list_accounts(
        self,
        *,
        provider: Provider | None = None,
        email_verified: bool | None = None,
        status: AccountStatus | None = None,
        role_id: int | None = None,
        search: str | None = None,
        page: int = 1,
        per: int = 10,
    ) -> tuple[list[Account], int]:
        """Return one page of accounts ordered by email, plus the total match count."""
        conditions = []
        if provider is not None:
            conditions.append(accounts.c.provider == provider.value)
        if email_verified is not None:
            conditions.append(accounts.c.email_verified == (1 if email_verified else 0))
        if status is not None:
            conditions.append(accounts.c.status == status.value)
        if role_id is not None:
            members = select(account_roles.c.account_id).where(account_roles.c.role_id == role_id)
            conditions.append(accounts.c.id.in_(members))
        if search:
            pattern = f"%{search.strip()}%"
            conditions.append(
                or_(
                    accounts.c.email.ilike(pattern),
                    accounts.c.first_name.ilike(pattern),
                    accounts.c.last_name.ilike(pattern),
                    accounts.c.phone_number.ilike(pattern),
                )
            )

        page = max(page, 1)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(accounts).where(*conditions)).scalar() or 0
            rows = conn.execute(
                accounts.select().where(*conditions).order_by(accounts.c.email).limit(per).offset((page - 1) * per)
            ).fetchall()
            identities = self._identities_for(conn, [r.id for r in rows])
        return [_row_to_account(r, identities.get(r.id, [])) for r in rows], total

    # ------------------------------------------------------------------
    # Linked identities
    # ------------------------------------------------------------------

    def find_by_linked_identity(self, provider: Provider, subject: str) -> Account | None:
        """Return the account bound to (provider, subject), if any."""
        with self.engine.connect() as conn:
            owner = conn.execute(
                select(linked_identities.c.account_id).where(
                    (linked_identities.c.provider == provider.value)
                    & (linked_identities.c.provider_subject == subject)
                )
            ).scalar()
        return self.get_by_id(owner) if owner is not None else None

    def add_linked_identity(self, account_id: str, identity: LinkedIdentity) -> None:
        """Append a new binding. Raises Conflict on either uniqueness constraint."""
        identity.linked_at = identity.linked_at or utcnow()
        try:
            with self.engine.begin() as conn:
                conn.execute(_identity_insert(account_id, identity))
        except IntegrityError as exc:
            raise Conflict("Provider identity is already linked.") from exc

    def update_linked_profile(self, account_id: str, identity: LinkedIdentity) -> None:
        """Refresh the provider profile fields of an existing binding.

        The binding keys (provider, subject) and linked_at are left as they are.
        """
        with self.engine.begin() as conn:
            conn.execute(
                linked_identities.update()
                .where(
                    (linked_identities.c.account_id == account_id)
                    & (linked_identities.c.provider == identity.provider.value)
                    & (linked_identities.c.provider_subject == identity.provider_id)
                )
                .values(
                    email=normalize_email(identity.email) if identity.email else None,
                    display_name=identity.display_name,
                    photo_url=identity.photo_url,
                )
            )

    def remove_linked_identity(self, account_id: str, provider: Provider) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                linked_identities.delete().where(
                    (linked_identities.c.account_id == account_id) & (linked_identities.c.provider == provider.value)
                )
            )
        return result.rowcount > 0

    def _identities_for(self, conn, account_ids: list[str]) -> dict[str, list[LinkedIdentity]]:
        if not account_ids:
            return {}
        rows = conn.execute(
            linked_identities.select()
            .where(linked_identities.c.account_id.in_(account_ids))
            .order_by(linked_identities.c.linked_at, linked_identities.c.id)
        ).fetchall()
        grouped: dict[str, list[LinkedIdentity]] = {}
        for row in rows:
            grouped.setdefault(row.account_id, []).append(_row_to_identity(row))
        return grouped


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _identity_insert(account_id: str, identity: LinkedIdentity):
    return linked_identities.insert().values(
        account_id=account_id,
        provider=identity.provider.value,
        provider_subject=identity.provider_id,
        email=normalize_email(identity.email) if identity.email else None,
        display_name=identity.display_name,
        photo_url=identity.photo_url,
        linked_at=identity.linked_at,
    )


def _row_to_identity(row) -> LinkedIdentity:
    return LinkedIdentity(
        provider=Provider(row.provider),
        provider_id=row.provider_subject,
        email=row.email,
        display_name=row.display_name,
        photo_url=row.photo_url,
        linked_at=as_utc(row.linked_at),
    )


def _row_to_account(row, identities: list[LinkedIdentity]) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        provider=Provider(row.provider),
        password_hash=row.password_hash,
        first_name=row.first_name,
        last_name=row.last_name,
        status=AccountStatus(row.status),
        email_verified=bool(row.email_verified),
        phone_number=row.phone_number,
        phone_verified=bool(row.phone_verified),
        linked_identities=identities,
        last_login_at=as_utc(row.last_login_at),
        last_login_ip=row.last_login_ip,
        valid_since=as_utc(row.valid_since),
        created_at=as_utc(row.created_at),
    )
