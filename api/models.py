"""
API request and response models for the MedPortal REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py and
clinic/models.py, which own the internal domain representation. Route
handlers map between the two.

Wire format: camelCase keys (alias_generator=to_camel). Request models also
accept snake_case field names (populate_by_name=True). Successful responses
are wrapped as {"data": ..., "message": ...} by envelope(); errors use the
ErrorResponse envelope rendered by the handlers in api/main.py.

Separation of concerns: auth/ and clinic/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

from auth.models import AuditEntry, BulkTargetResult, Notification, Principal
from clinic.models import Appointment, LabTest, RecordShare


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


# Passwords are taken byte for byte; the model-wide whitespace stripping must not touch them.
Password = Annotated[str, StringConstraints(strip_whitespace=False, min_length=1, max_length=128)]


class _CamelResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


def envelope(data: Any, message: Optional[str] = None) -> dict:
    """Wrap a payload in the success envelope, serializing models with camelCase keys."""
    return {"data": _dump(data), "message": message}


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True, mode="json")
    if isinstance(value, dict):
        return {k: _dump(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_dump(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class StatusEnum(str, Enum):
    active = "active"
    inactive = "inactive"
    suspended = "suspended"


class SortOrderEnum(str, Enum):
    asc = "asc"
    desc = "desc"


NotificationType = Literal["info", "warning", "alert", "reminder"]
TestPriority = Literal["low", "normal", "high", "emergency"]
TestStatus = Literal["requested", "in_progress", "completed", "cancelled"]


# ---------------------------------------------------------------------------
# Users -- request models
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    """Request body for POST /api/v1/users/register.

    Email format and password strength are checked by the credential service
    so the rules live in one place; here we only bound the sizes.
    """

    name: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3, max_length=255)
    password: Password


class LoginRequest(_CamelModel):
    email: str = Field(min_length=1, max_length=255)
    password: Password


class ProfileUpdate(_CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    profile_ref: Optional[str] = Field(default=None, max_length=255)


class ChangePasswordRequest(_CamelModel):
    current_password: Password
    new_password: Password


# ---------------------------------------------------------------------------
# Users -- response models
# ---------------------------------------------------------------------------


class UserResponse(_CamelResponse):
    """A principal as the API shows it. Credential fields are never included."""

    id: str
    email: str
    name: str
    role: str
    status: str
    is_active: bool
    email_verified: bool
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    profile_ref: Optional[str] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "UserResponse":
        return cls(
            id=principal.id,
            email=principal.email,
            name=principal.name,
            role=principal.role.value,
            status=principal.status.value,
            is_active=principal.is_active,
            email_verified=principal.email_verified,
            created_at=principal.created_at,
            last_login=principal.last_login,
            profile_ref=principal.profile_ref,
        )


class LoginResponse(_CamelResponse):
    user: UserResponse
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime


class NotificationResponse(_CamelResponse):
    id: int
    title: str
    message: str
    type: str
    created_at: Optional[datetime] = None
    read_at: Optional[datetime] = None

    @classmethod
    def from_notification(cls, n: Notification) -> "NotificationResponse":
        return cls(
            id=n.id,
            title=n.title,
            message=n.message,
            type=n.type,
            created_at=n.created_at,
            read_at=n.read_at,
        )


# ---------------------------------------------------------------------------
# Admin -- request models
# ---------------------------------------------------------------------------


class AdminUserCreate(_CamelModel):
    """Request body for POST /api/v1/admin/users. Any role may be assigned here."""

    name: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3, max_length=255)
    password: Password
    role: str = Field(default="patient", max_length=20)


class AdminUserPatch(_CamelModel):
    status: Optional[StatusEnum] = None
    role: Optional[str] = Field(default=None, max_length=20)
    reason: Optional[str] = Field(default=None, max_length=500)


class AdminUserDelete(_CamelModel):
    """permanent=false deactivates (reversible); permanent=true deletes (terminal)."""

    reason: Optional[str] = Field(default=None, max_length=500)
    permanent: bool = False


class BulkOperationBody(_CamelModel):
    """Request body for POST /api/v1/admin/bulk-operations.

    operation stays a plain string so unknown operations reach the mediator's
    preflight and come back as unknown_operation rather than a schema error.
    """

    operation: str = Field(min_length=1, max_length=50)
    user_ids: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)


class BulkNotificationBody(_CamelModel):
    user_ids: list[str] = Field(default_factory=list)
    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=2000)
    type: NotificationType = "info"


# ---------------------------------------------------------------------------
# Admin -- response models
# ---------------------------------------------------------------------------


class BulkResultRow(_CamelResponse):
    user_id: str
    outcome: str
    reason: Optional[str] = None
    warning: Optional[str] = None

    @classmethod
    def from_result(cls, r: BulkTargetResult) -> "BulkResultRow":
        return cls(user_id=r.user_id, outcome=r.outcome.value, reason=r.reason, warning=r.warning)


class AuditEntryResponse(_CamelResponse):
    ordinal: int
    timestamp: Optional[datetime] = None
    action: str
    actor_id: str
    subject_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_entry(cls, e: AuditEntry) -> "AuditEntryResponse":
        return cls(
            ordinal=e.ordinal,
            timestamp=e.timestamp,
            action=e.action,
            actor_id=e.actor_id,
            subject_id=e.subject_id,
            payload=e.payload,
            source_ip=e.source.ip,
            user_agent=e.source.user_agent,
        )


# ---------------------------------------------------------------------------
# Clinic -- request models
# ---------------------------------------------------------------------------


class LabTestCreate(_CamelModel):
    patient_id: str = Field(min_length=1, max_length=32)
    test_type: str = Field(min_length=1, max_length=100)
    priority: TestPriority = "normal"
    assigned_technician_id: Optional[str] = Field(default=None, max_length=32)
    notes: Optional[str] = Field(default=None, max_length=2000)


class LabTestUpdate(_CamelModel):
    test_type: Optional[str] = Field(default=None, min_length=1, max_length=100)
    priority: Optional[TestPriority] = None
    status: Optional[TestStatus] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class LabTestAssign(_CamelModel):
    technician_id: str = Field(min_length=1, max_length=32)


class ShareCreate(_CamelModel):
    grantee_id: str = Field(min_length=1, max_length=32)


class AppointmentCreate(_CamelModel):
    """patient_id defaults to the caller; an admin may book for anyone."""

    doctor_id: str = Field(min_length=1, max_length=32)
    scheduled_at: datetime
    patient_id: Optional[str] = Field(default=None, max_length=32)
    reason: Optional[str] = Field(default=None, max_length=1000)


# ---------------------------------------------------------------------------
# Clinic -- response models
# ---------------------------------------------------------------------------


class LabTestResponse(_CamelResponse):
    id: int
    lab_code: str
    patient_id: str
    test_type: str
    priority: str
    status: str
    assigned_technician_id: Optional[str] = None
    notes: Optional[str] = None
    created_by: str
    created_at: str
    updated_at: str

    @classmethod
    def from_test(cls, t: LabTest) -> "LabTestResponse":
        return cls(
            id=t.id,
            lab_code=t.lab_code,
            patient_id=t.patient_id,
            test_type=t.test_type,
            priority=t.priority,
            status=t.status,
            assigned_technician_id=t.assigned_technician_id,
            notes=t.notes,
            created_by=t.created_by,
            created_at=t.created_at,
            updated_at=t.updated_at,
        )


class RecordShareResponse(_CamelResponse):
    patient_id: str
    grantee_id: str
    created_at: str = ""

    @classmethod
    def from_share(cls, s: RecordShare) -> "RecordShareResponse":
        return cls(patient_id=s.patient_id, grantee_id=s.grantee_id, created_at=s.created_at)


class AppointmentResponse(_CamelResponse):
    id: int
    patient_id: str
    doctor_id: str
    scheduled_at: str
    reason: Optional[str] = None
    status: str
    created_at: str

    @classmethod
    def from_appointment(cls, a: Appointment) -> "AppointmentResponse":
        return cls(
            id=a.id,
            patient_id=a.patient_id,
            doctor_id=a.doctor_id,
            scheduled_at=a.scheduled_at,
            reason=a.reason,
            status=a.status,
            created_at=a.created_at,
        )


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
