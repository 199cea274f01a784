"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. The credential service, audit log, and admin
routes never touch SQL directly.

Collections:
  principals     -- indexed by id, and by email (partial UNIQUE index over
                    non-deleted rows, so a deleted account frees its email)
  sessions       -- primary key is the token HMAC; secondary index on principal_id
  audit_log      -- primary key is the ordinal allocated by auth/audit.py
  notifications  -- in-app notification store (out-of-band delivery channel)

The credential (verifier, rotation time, failure counter, lockout) is embedded
in the principal row.

Atomicity:
  Every write runs inside engine.begin(): the transaction commits when the
  block exits cleanly and rolls back on any exception, so a single-record
  write is all-or-nothing. rotate_password() and set_status() change the
  principal and revoke sessions in the same transaction.

Resilience:
  Every public method is @retried -- transient OperationalError /
  DisconnectionError is retried with bounded exponential backoff and surfaces
  as InternalFailure on exhaustion (core/retry.py). IntegrityError is not
  transient and propagates unchanged so callers can map it to a Conflict.

Security: all queries use bound parameters. No f-strings in SQL.

Timestamps are stored as ISO 8601 UTC strings, like the rest of the codebase,
and mapped back to aware datetimes.

Layer rule: no imports from api/ or clinic/.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import AuditEntry, Notification, Principal, Role, Session, Source, Status
from core.db import make_engine
from core.retry import RetryPolicy, retried

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'medportal.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_principals = Table(
    "principals",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False),
    Column("name", String(255), nullable=False),
    Column("role", String(20), nullable=False, server_default="patient"),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("profile_ref", String(255)),
    Column("last_login", String(32)),
    # Credential
    Column("password_hash", Text),  # NULL once the principal is deleted
    Column("password_rotated_at", String(32)),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("lockout_until", String(32)),
)

# Email is unique among live principals only. Both dialect kwargs are given so
# the same metadata works on SQLite (default) and PostgreSQL.
Index(
    "uq_principals_live_email",
    _principals.c.email,
    unique=True,
    sqlite_where=text("status != 'deleted'"),
    postgresql_where=text("status != 'deleted'"),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("token_hash", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("principal_id", String(32), nullable=False, index=True),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("source_ip", String(45)),
    Column("user_agent", String(255)),
)

_audit = Table(
    "audit_log",
    _metadata,
    Column("ordinal", Integer, primary_key=True, autoincrement=False),
    Column("timestamp", String(32), nullable=False),
    Column("action", String(64), nullable=False, index=True),
    Column("actor_id", String(32), nullable=False),
    Column("subject_id", String(32), index=True),
    Column("payload", Text, nullable=False),  # JSON object
    Column("source_ip", String(45)),
    Column("user_agent", String(255)),
)

_notifications = Table(
    "notifications",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("principal_id", String(32), nullable=False, index=True),
    Column("title", String(200), nullable=False),
    Column("message", Text, nullable=False),
    Column("type", String(20), nullable=False, server_default="info"),
    Column("created_at", String(32), nullable=False),
    Column("read_at", String(32)),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for Principal, Session, AuditEntry, and Notification rows.

    Usage:
        store = AuthStore("sqlite:///:memory:")
        store.create_principal(principal)
        principal = store.get_principal_by_email("alice@x.io")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, retry_policy: RetryPolicy | None = None) -> None:
        self.engine: Engine = make_engine(db_url or _DEFAULT_DB_URL)
        self.retry_policy = retry_policy or RetryPolicy()
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Principals
    # ------------------------------------------------------------------

    @retried
    def create_principal(self, principal: Principal) -> None:
        """Insert a principal.

        Raises sqlalchemy.exc.IntegrityError if a live principal already uses
        the email. The credential service maps that to EmailInUse; it is also
        the tie-breaker when two registrations race past the pre-check.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _principals.insert().values(
                    id=principal.id,
                    email=principal.email,
                    name=principal.name,
                    role=principal.role.value,
                    status=principal.status.value,
                    email_verified=1 if principal.email_verified else 0,
                    created_at=_iso(principal.created_at),
                    profile_ref=principal.profile_ref,
                    password_hash=principal.password_hash,
                    password_rotated_at=_iso(principal.password_rotated_at),
                    failed_attempts=principal.failed_attempts,
                    lockout_until=_iso(principal.lockout_until),
                )
            )

    @retried
    def get_principal(self, principal_id: str) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(_principals.select().where(_principals.c.id == principal_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    @retried
    def get_principal_by_email(self, email: str) -> Principal | None:
        """Look up the live (non-deleted) principal for a normalized email."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _principals.select().where(
                    (_principals.c.email == email) & (_principals.c.status != Status.deleted.value)
                )
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    @retried
    def list_principals(
        self,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Principal], int]:
        """Return (page of principals newest first, total matching count). Deleted rows are excluded."""
        conditions = [_principals.c.status != Status.deleted.value]
        if role:
            conditions.append(_principals.c.role == role)
        if is_active is True:
            conditions.append(_principals.c.status == Status.active.value)
        elif is_active is False:
            conditions.append(_principals.c.status != Status.active.value)
        if search:
            pattern = f"%{search.strip().lower()}%"
            conditions.append(or_(func.lower(_principals.c.name).like(pattern), _principals.c.email.like(pattern)))
        if created_from is not None:
            conditions.append(_principals.c.created_at >= _iso(created_from))
        if created_to is not None:
            conditions.append(_principals.c.created_at <= _iso(created_to))

        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_principals).where(*conditions)).scalar() or 0
            rows = conn.execute(
                _principals.select()
                .where(*conditions)
                .order_by(_principals.c.created_at.desc(), _principals.c.id)
                .offset(offset)
                .limit(limit)
            ).fetchall()
        return [_row_to_principal(r) for r in rows], total

    @retried
    def update_principal(self, principal_id: str, **fields) -> bool:
        """Update mutable columns. Enum and datetime values are converted for storage.

        Returns True if a row was updated, False if principal_id was not found.
        """
        values = {}
        for key, value in fields.items():
            if isinstance(value, (Role, Status)):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, bool):
                value = 1 if value else 0
            values[key] = value
        with self.engine.begin() as conn:
            result = conn.execute(_principals.update().where(_principals.c.id == principal_id).values(**values))
        return result.rowcount > 0

    @retried
    def rotate_password(self, principal_id: str, new_hash: str, now: datetime, keep_token_hash: str | None) -> int:
        """Replace the verifier and revoke every other live session in one transaction.

        Returns the number of sessions revoked.
        """
        revoke = _sessions.update().where(
            (_sessions.c.principal_id == principal_id) & (_sessions.c.revoked_at.is_(None))
        )
        if keep_token_hash is not None:
            revoke = revoke.where(_sessions.c.token_hash != keep_token_hash)
        with self.engine.begin() as conn:
            conn.execute(
                _principals.update()
                .where(_principals.c.id == principal_id)
                .values(
                    password_hash=new_hash,
                    password_rotated_at=now.isoformat(),
                    failed_attempts=0,
                    lockout_until=None,
                )
            )
            result = conn.execute(revoke.values(revoked_at=now.isoformat()))
        return result.rowcount

    @retried
    def set_status(self, principal_id: str, status: Status, now: datetime) -> int:
        """Change status; for any non-active status revoke all live sessions in the same transaction.

        Moving to deleted also drops the credential. Returns sessions revoked.
        """
        values: dict = {"status": status.value}
        if status is Status.deleted:
            values["password_hash"] = None
        with self.engine.begin() as conn:
            conn.execute(_principals.update().where(_principals.c.id == principal_id).values(**values))
            if status is Status.active:
                return 0
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.principal_id == principal_id) & (_sessions.c.revoked_at.is_(None)))
                .values(revoked_at=now.isoformat())
            )
        return result.rowcount

    @retried
    def count_principals_by(self, column: str) -> dict[str, int]:
        """Return {value: count} over live principals grouped by 'role' or 'status'."""
        col = {"role": _principals.c.role, "status": _principals.c.status}[column]
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(col, func.count())
                .where(_principals.c.status != Status.deleted.value)
                .group_by(col)
            ).fetchall()
        return {r[0]: r[1] for r in rows}

    @retried
    def registrations_since(self, since: datetime) -> list[str]:
        """Return created_at stamps of principals registered at or after since (for growth series)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_principals.c.created_at)
                .where(_principals.c.created_at >= since.isoformat())
                .order_by(_principals.c.created_at)
            ).fetchall()
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @retried
    def create_session(self, session: Session) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    token_hash=session.token_hash,
                    principal_id=session.principal_id,
                    issued_at=session.issued_at.isoformat(),
                    expires_at=session.expires_at.isoformat(),
                    source_ip=session.source_ip,
                    user_agent=session.user_agent,
                )
            )

    @retried
    def get_session(self, token_hash: str) -> Session | None:
        """Look up a session by its token HMAC. O(1) via primary key."""
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token_hash == token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    @retried
    def revoke_session(self, token_hash: str, now: datetime) -> bool:
        """Stamp revoked_at if not already revoked. Returns True only for the first revoke."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.token_hash == token_hash) & (_sessions.c.revoked_at.is_(None)))
                .values(revoked_at=now.isoformat())
            )
        return result.rowcount > 0

    @retried
    def revoke_sessions_for(self, principal_id: str, now: datetime) -> int:
        """Revoke every live session of a principal. Returns how many were revoked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.principal_id == principal_id) & (_sessions.c.revoked_at.is_(None)))
                .values(revoked_at=now.isoformat())
            )
        return result.rowcount

    @retried
    def count_active_sessions(self, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_sessions)
                .where(_sessions.c.revoked_at.is_(None) & (_sessions.c.expires_at > now.isoformat()))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    @retried
    def insert_audit(self, entry: AuditEntry) -> int:
        """Insert one audit row at max(ordinal) + 1 and return that ordinal.

        The read and the insert share one transaction. A concurrent writer
        that claimed the same ordinal first makes this raise IntegrityError
        (ordinal is the primary key); nothing is written in that case.
        """
        with self.engine.begin() as conn:
            ordinal = (conn.execute(select(func.max(_audit.c.ordinal))).scalar() or 0) + 1
            conn.execute(
                _audit.insert().values(
                    ordinal=ordinal,
                    timestamp=_iso(entry.timestamp),
                    action=entry.action,
                    actor_id=entry.actor_id,
                    subject_id=entry.subject_id,
                    payload=json.dumps(entry.payload, default=str, sort_keys=True),
                    source_ip=entry.source.ip,
                    user_agent=entry.source.user_agent,
                )
            )
        return ordinal

    @retried
    def list_audit(
        self,
        *,
        action: Optional[str] = None,
        actor_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        descending: bool = True,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[AuditEntry], int]:
        conditions = []
        if action:
            conditions.append(_audit.c.action == action)
        if actor_id:
            conditions.append(_audit.c.actor_id == actor_id)
        if subject_id:
            conditions.append(_audit.c.subject_id == subject_id)
        if date_from is not None:
            conditions.append(_audit.c.timestamp >= date_from.isoformat())
        if date_to is not None:
            conditions.append(_audit.c.timestamp <= date_to.isoformat())
        order = _audit.c.ordinal.desc() if descending else _audit.c.ordinal.asc()
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_audit).where(*conditions)).scalar() or 0
            rows = conn.execute(_audit.select().where(*conditions).order_by(order).offset(offset).limit(limit)).fetchall()
        return [_row_to_audit(r) for r in rows], total

    @retried
    def count_audit_by_action(self) -> dict[str, int]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(_audit.c.action, func.count()).group_by(_audit.c.action)).fetchall()
        return {r[0]: r[1] for r in rows}

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    @retried
    def create_notification(self, notification: Notification) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _notifications.insert().values(
                    principal_id=notification.principal_id,
                    title=notification.title,
                    message=notification.message,
                    type=notification.type,
                    created_at=_iso(notification.created_at),
                )
            )
        return result.inserted_primary_key[0]

    @retried
    def list_notifications(self, principal_id: str, limit: int = 50) -> list[Notification]:
        """Return a principal's notifications, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _notifications.select()
                .where(_notifications.c.principal_id == principal_id)
                .order_by(_notifications.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_notification(r) for r in rows]

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by health checks only."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        email=row.email,
        name=row.name,
        role=Role(row.role),
        status=Status(row.status),
        email_verified=bool(row.email_verified),
        created_at=_parse(row.created_at),
        profile_ref=row.profile_ref,
        last_login=_parse(row.last_login),
        password_hash=row.password_hash,
        password_rotated_at=_parse(row.password_rotated_at),
        failed_attempts=row.failed_attempts or 0,
        lockout_until=_parse(row.lockout_until),
    )


def _row_to_session(row) -> Session:
    return Session(
        token_hash=row.token_hash,
        principal_id=row.principal_id,
        issued_at=_parse(row.issued_at),
        expires_at=_parse(row.expires_at),
        revoked_at=_parse(row.revoked_at),
        source_ip=row.source_ip,
        user_agent=row.user_agent,
    )


def _row_to_audit(row) -> AuditEntry:
    return AuditEntry(
        ordinal=row.ordinal,
        timestamp=_parse(row.timestamp),
        action=row.action,
        actor_id=row.actor_id,
        subject_id=row.subject_id,
        payload=json.loads(row.payload),
        source=Source(ip=row.source_ip, user_agent=row.user_agent),
    )


def _row_to_notification(row) -> Notification:
    return Notification(
        id=row.id,
        principal_id=row.principal_id,
        title=row.title,
        message=row.message,
        type=row.type,
        created_at=_parse(row.created_at),
        read_at=_parse(row.read_at),
    )
