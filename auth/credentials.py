"""
auth/credentials.py -- Credential store: issued-token records and the revocation ledger.

Pattern: Repository + Data Mapper, same shape as AccountStore.

Two tables, both defined in auth/store.py:
  tokens             -- one row per signed credential still considered live.
                        A signed token whose row is gone must be rejected even
                        when its signature and expiry check out.
  blacklisted_tokens -- the revocation ledger. Rows are written when a token
                        is explicitly revoked (logout, device revoke,
                        revoke-all), never on ordinary rotation. Rows whose
                        original expiry has passed carry no value and are
                        swept by purge_expired_ledger_entries().

Sessions: the access/refresh pair minted by one issue() call shares a
session_id, and rotation carries it forward. Session-scoped revocation
(revoke_session, revoke_all with an exception) therefore takes the refresh
row and its sibling access rows together.

Connections: every method opens exactly one connection. In-memory SQLite
uses a single pooled connection per thread, so nesting would deadlock or
share a transaction by accident.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import Conflict
from auth.models import CredentialRecord, DeviceInfo, DeviceType, LedgerEntry, TokenType
from auth.store import as_utc, blacklisted_tokens, tokens, utcnow

logger = logging.getLogger("gatekeeper.auth.credentials")


class CredentialStore:
    """Repository for CredentialRecord and LedgerEntry."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Token records
    # ------------------------------------------------------------------

    def create(self, record: CredentialRecord) -> CredentialRecord:
        """Insert a token record. Raises Conflict only on a jti collision."""
        now = utcnow()
        record.created_at = record.created_at or now
        record.last_used_at = record.last_used_at or now
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    tokens.insert().values(
                        jti=record.jti,
                        account_id=record.account_id,
                        session_id=record.session_id,
                        type=record.type.value,
                        expires_at=record.expires_at,
                        device_info=_device_to_json(record.device_info),
                        last_used_at=record.last_used_at,
                        created_at=record.created_at,
                    )
                )
                record.id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise Conflict(f"Token identifier collision: {record.jti}") from exc
        return record

    def find_by_jti(self, jti: str) -> CredentialRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(tokens.select().where(tokens.c.jti == jti)).fetchone()
        return _row_to_record(row) if row else None

    def find_by_id(self, row_id: int) -> CredentialRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(tokens.select().where(tokens.c.id == row_id)).fetchone()
        return _row_to_record(row) if row else None

    def list_active_refresh_tokens(self, account_id: str) -> list[CredentialRecord]:
        """Unexpired refresh records for an account, most recently used first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                tokens.select()
                .where(
                    (tokens.c.account_id == account_id)
                    & (tokens.c.type == TokenType.refresh.value)
                    & (tokens.c.expires_at > utcnow())
                )
                .order_by(tokens.c.last_used_at.desc(), tokens.c.id.desc())
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def delete_by_jti(self, jti: str) -> bool:
        """Idempotent delete. Returns True if this call removed the row.

        Refresh rotation relies on the return value: of two concurrent
        rotations of the same token, only one sees True.
        """
        with self.engine.begin() as conn:
            result = conn.execute(tokens.delete().where(tokens.c.jti == jti))
        return result.rowcount > 0

    def touch_session(self, session_id: str, when: datetime | None = None) -> None:
        """Stamp last_used_at on every row of a session."""
        with self.engine.begin() as conn:
            conn.execute(
                update(tokens).where(tokens.c.session_id == session_id).values(last_used_at=when or utcnow())
            )

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def blacklist(self, jti: str, account_id: str, expires_at: datetime, token_type: TokenType) -> bool:
        """Add a ledger entry. Returns False if the jti was already blacklisted."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    blacklisted_tokens.insert().values(
                        jti=jti,
                        account_id=account_id,
                        expires_at=expires_at,
                        token_type=token_type.value,
                        blacklisted_at=utcnow(),
                    )
                )
        except IntegrityError:
            return False
        logger.info("Token blacklisted: jti=%s account=%s type=%s", jti, account_id, token_type.value)
        return True

    def is_blacklisted(self, jti: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(blacklisted_tokens.c.id).where(blacklisted_tokens.c.jti == jti)).fetchone()
        return row is not None

    def get_ledger_entry(self, jti: str) -> LedgerEntry | None:
        with self.engine.connect() as conn:
            row = conn.execute(blacklisted_tokens.select().where(blacklisted_tokens.c.jti == jti)).fetchone()
        return _row_to_ledger(row) if row else None

    def revoke_session(self, account_id: str, session_id: str) -> int:
        """Blacklist and delete every row of one session owned by account_id."""
        condition = (tokens.c.account_id == account_id) & (tokens.c.session_id == session_id)
        return self._revoke_where(condition)

    def revoke_all(self, account_id: str, except_jti: str | None = None) -> int:
        """Move every live token of an account to the ledger, then delete it.

        With except_jti, the session that token belongs to is kept: the
        refresh token and its sibling access tokens stay valid. Returns the
        number of token rows revoked.
        """
        condition = tokens.c.account_id == account_id
        if except_jti is not None:
            current = self.find_by_jti(except_jti)
            if current is not None and current.account_id == account_id:
                condition = condition & (tokens.c.session_id != current.session_id)
            else:
                condition = condition & (tokens.c.jti != except_jti)
        return self._revoke_where(condition)

    def _revoke_where(self, condition) -> int:
        now = utcnow()
        with self.engine.begin() as conn:
            rows = conn.execute(tokens.select().where(condition)).fetchall()
            if not rows:
                return 0
            jtis = [r.jti for r in rows]
            already = set(
                conn.execute(
                    select(blacklisted_tokens.c.jti).where(blacklisted_tokens.c.jti.in_(jtis))
                ).scalars()
            )
            entries = [
                {
                    "jti": r.jti,
                    "account_id": r.account_id,
                    "expires_at": r.expires_at,
                    "token_type": r.type,
                    "blacklisted_at": now,
                }
                for r in rows
                if r.jti not in already
            ]
            if entries:
                conn.execute(blacklisted_tokens.insert(), entries)
            conn.execute(tokens.delete().where(tokens.c.jti.in_(jtis)))
        logger.info("Revoked %d token(s) for account=%s", len(rows), rows[0].account_id)
        return len(rows)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired_ledger_entries(self, now: datetime | None = None) -> int:
        """Delete ledger rows whose original expiry has passed."""
        with self.engine.begin() as conn:
            result = conn.execute(blacklisted_tokens.delete().where(blacklisted_tokens.c.expires_at < (now or utcnow())))
        return result.rowcount

    def purge_expired_tokens(self, now: datetime | None = None) -> int:
        """Delete token records that expired naturally."""
        with self.engine.begin() as conn:
            result = conn.execute(tokens.delete().where(tokens.c.expires_at < (now or utcnow())))
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _device_to_json(info: DeviceInfo | None) -> str | None:
    if info is None:
        return None
    data = asdict(info)
    data["device_type"] = info.device_type.value
    return json.dumps({k: v for k, v in data.items() if v is not None})


def _device_from_json(raw: str | None) -> DeviceInfo | None:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("Discarding unreadable device_info blob")
        return None
    known = set(DeviceInfo.__dataclass_fields__)
    data = {k: v for k, v in data.items() if k in known}
    try:
        data["device_type"] = DeviceType(data.get("device_type", DeviceType.other.value))
    except ValueError:
        data["device_type"] = DeviceType.other
    return DeviceInfo(**data)


def _row_to_record(row) -> CredentialRecord:
    return CredentialRecord(
        id=row.id,
        jti=row.jti,
        account_id=row.account_id,
        session_id=row.session_id,
        type=TokenType(row.type),
        expires_at=as_utc(row.expires_at),
        device_info=_device_from_json(row.device_info),
        last_used_at=as_utc(row.last_used_at),
        created_at=as_utc(row.created_at),
    )


def _row_to_ledger(row) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        jti=row.jti,
        account_id=row.account_id,
        expires_at=as_utc(row.expires_at),
        token_type=TokenType(row.token_type),
        blacklisted_at=as_utc(row.blacklisted_at),
    )
