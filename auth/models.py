"""
auth/models.py -- Domain dataclasses and enumerations for the auth core.

Pattern: Data class (pure data container, almost zero logic). The store maps
rows into these; the service, policy engine, and mediator pass them around.
Nothing outside auth/ mutates them -- outside components hold ids and the
session token only.

Layer rule: no imports from api/ or clinic/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

SYSTEM_ACTOR = "system"


class Role(str, Enum):
    patient = "patient"
    doctor = "doctor"
    nurse = "nurse"
    provider = "provider"
    technician = "technician"
    staff = "staff"
    admin = "admin"

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Normalize a role label at the boundary. Raises ValueError for anything unrecognized.

        Exact match after trim + lowercase only -- no substring or alias mapping.
        """
        return cls(str(value).strip().lower())


class Status(str, Enum):
    active = "active"
    inactive = "inactive"
    suspended = "suspended"
    deleted = "deleted"  # terminal


@dataclass
class Principal:
    """An authenticated identity.

    The credential is embedded: password_hash, password_rotated_at,
    failed_attempts and lockout_until together are the Credential entity.
    password_hash is None only once the principal is deleted.
    """

    id: str
    email: str  # normalized: trimmed, lowercase
    name: str
    role: Role
    status: Status = Status.active
    email_verified: bool = False
    created_at: Optional[datetime] = None
    profile_ref: Optional[str] = None
    last_login: Optional[datetime] = None
    password_hash: Optional[str] = field(default=None, repr=False)
    password_rotated_at: Optional[datetime] = None
    failed_attempts: int = 0
    lockout_until: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status is Status.active


@dataclass
class Session:
    """A time-bounded, revocable binding of a bearer token to a principal.

    Only token_hash is persisted. token holds the raw value exactly once --
    on the object returned from a successful login -- and is None otherwise.
    """

    token_hash: str
    principal_id: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None
    token: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class Source:
    """Where a request came from. Recorded on sessions and audit entries."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuditEntry:
    """An append-only record of a consequential act.

    ordinal and timestamp are assigned by the audit log at append time;
    callers build entries with both left unset.
    """

    action: str  # e.g. "USER.CREATE", "AUTH.LOGIN", "BULK.DEACTIVATE"
    actor_id: str = SYSTEM_ACTOR
    subject_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    source: Source = field(default_factory=Source)
    ordinal: Optional[int] = None
    timestamp: Optional[datetime] = None


class BulkOperation(str, Enum):
    activate = "activate"
    deactivate = "deactivate"
    suspend = "suspend"
    assign_role = "assign_role"
    send_notification = "send_notification"


class BulkOutcome(str, Enum):
    ok = "ok"
    denied = "denied"
    not_found = "not_found"
    failed = "failed"
    cancelled = "cancelled"


@dataclass
class BulkOperationRequest:
    operation: BulkOperation
    user_ids: list[str]
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class BulkTargetResult:
    user_id: str
    outcome: BulkOutcome
    reason: Optional[str] = None
    warning: Optional[str] = None


@dataclass
class Notification:
    principal_id: str
    title: str
    message: str
    type: str = "info"
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
