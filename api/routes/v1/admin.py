"""
api/routes/v1/admin.py -- Admin console endpoints: users, bulk operations, audit, metrics.

Routes (all admin-only via the policy matrix):
  GET    /api/v1/admin/dashboard                  -- stats: users, financial, appointments, system, medical
  GET    /api/v1/admin/users                      -- paginated, filtered user list
  POST   /api/v1/admin/users                      -- create a user with any role
  GET    /api/v1/admin/users/{id}                 -- one user
  PATCH  /api/v1/admin/users/{id}                 -- change status and/or role
  DELETE /api/v1/admin/users/{id}                 -- permanent=false -> inactive, true -> deleted
  POST   /api/v1/admin/users/{id}/unlock          -- clear a credential lockout
  POST   /api/v1/admin/bulk-operations            -- per-target bulk mutation
  POST   /api/v1/admin/notifications/bulk         -- in-app notification fan-out
  GET    /api/v1/admin/audit-logs                 -- paginated audit trail
  GET    /api/v1/admin/system-health              -- component status
  GET    /api/v1/admin/metrics                    -- counters
  GET    /api/v1/admin/analytics/{kind}           -- users | revenue | providers

Security:
  [M4] PATCH/DELETE block self-lockout (own deactivation/suspension/deletion)
       and self-demotion unless ALLOW_ADMIN_SELF_DEMOTION. Other admins are
       protected by the policy engine's target guard (protected_target).
  Deleting a user is terminal: status=deleted, credential dropped, every
  session revoked in the same transaction.
"""

from __future__ import annotations

import math
import time
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Body, Depends, Query, Request

from api.models import (
    AdminUserCreate,
    AdminUserDelete,
    AdminUserPatch,
    AuditEntryResponse,
    BulkNotificationBody,
    BulkOperationBody,
    BulkResultRow,
    SortOrderEnum,
    UserResponse,
    envelope,
)
from auth.dependencies import get_context, get_mediator
from auth.mediator import Mutation, RequestContext, RequestMediator, principal_snapshot
from auth.models import BulkOperationRequest, Principal, Role, Status
from auth.service import parse_role
from core.errors import Forbidden, ValidationFailed

router = APIRouter()


def _clinic(request: Request):
    return request.app.state.clinic_store


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


@router.get("/admin/dashboard")
def dashboard(
    request: Request,
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    clinic = _clinic(request)

    def handler(_principal: Principal) -> dict:
        users = mediator.service.user_stats()
        users["total"] = sum(users["byStatus"].values())
        appointments = clinic.appointment_counts()
        return {
            "stats": {
                "users": users,
                "financial": {"revenue": 0, "currency": "USD", "configured": False},
                "appointments": {"total": sum(appointments.values()), "byStatus": appointments},
                "system": _system_status(request),
                "medical": {"labTests": clinic.test_stats()},
            }
        }

    return envelope(mediator.mediate(ctx, "admin.metrics.read", handler))


def _system_status(request: Request) -> dict:
    state = request.app.state
    return {
        "uptimeSeconds": int(time.monotonic() - state.started_at),
        "components": {
            "authStore": "ok" if state.auth_store.ping() else "unavailable",
            "clinicStore": "ok" if state.clinic_store.ping() else "unavailable",
        },
    }


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/admin/users")
def list_users(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    role: Optional[str] = Query(default=None),
    is_active: Optional[bool] = Query(default=None, alias="isActive"),
    search: Optional[str] = Query(default=None, max_length=100),
    date_from: Optional[datetime] = Query(default=None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(default=None, alias="dateTo"),
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    role_filter = parse_role(role).value if role else None

    def handler(_principal: Principal) -> tuple[list[Principal], int]:
        return mediator.service.list_principals(
            page=page,
            limit=limit,
            role=role_filter,
            is_active=is_active,
            search=search,
            created_from=_aware(date_from),
            created_to=_aware(date_to),
        )

    users, total = mediator.mediate(ctx, "admin.users.list", handler)
    return envelope(
        {
            "users": [UserResponse.from_principal(u) for u in users],
            "total": total,
            "page": page,
            "totalPages": math.ceil(total / limit) if total else 0,
        }
    )


@router.post("/admin/users", status_code=201)
def create_user(
    body: AdminUserCreate,
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    """Create a user with any role. The credential service audits USER.CREATE with the admin as actor."""

    def handler(principal: Principal) -> Principal:
        return mediator.service.register(
            body.email,
            body.name,
            body.password,
            body.role,
            allowed_roles=Role,
            actor_id=principal.id,
            source=ctx.source,
        )

    created = mediator.mediate(ctx, "admin.users.create", handler)
    return envelope({"user": UserResponse.from_principal(created)}, "User created.")


@router.get("/admin/users/{user_id}")
def get_user(
    user_id: str,
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    user = mediator.mediate(
        ctx, "admin.users.read", lambda p: mediator.service.get_principal(user_id), target_id=user_id
    )
    return envelope({"user": UserResponse.from_principal(user)})


@router.patch("/admin/users/{user_id}")
def update_user(
    user_id: str,
    body: AdminUserPatch,
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    if body.status is None and body.role is None:
        raise ValidationFailed("Provide status and/or role to change.")
    new_role = parse_role(body.role) if body.role is not None else None
    new_status = Status(body.status.value) if body.status is not None else None

    def handler(principal: Principal) -> Mutation:
        reason = mediator.check_self_change(principal, user_id, status=new_status, role=new_role)  # [M4]
        if reason:
            raise Forbidden(reason, "You cannot lock yourself out or demote yourself.")
        before = principal_snapshot(mediator.service.get_principal(user_id))
        revoked = 0
        if new_role is not None:
            mediator.service.assign_role(user_id, new_role)
        if new_status is not None:
            _, revoked = mediator.service.set_status(user_id, new_status)
        updated = mediator.service.get_principal(user_id)
        return Mutation(
            result=updated,
            subject_id=user_id,
            before=before,
            after=principal_snapshot(updated),
            params={"reason": body.reason, "revokedSessions": revoked},
        )

    updated = mediator.mediate(ctx, "admin.users.update", handler, target_id=user_id, action="USER.UPDATE")
    return envelope({"user": UserResponse.from_principal(updated)}, "User updated.")


@router.delete("/admin/users/{user_id}")
def delete_user(
    user_id: str,
    body: Optional[AdminUserDelete] = Body(default=None),
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    """permanent=false: status -> inactive (reversible). permanent=true: status -> deleted (terminal)."""
    body = body or AdminUserDelete()
    target_status = Status.deleted if body.permanent else Status.inactive

    def handler(principal: Principal) -> Mutation:
        if user_id == principal.id:  # [M4]
            raise Forbidden("self_lockout", "You cannot delete your own account.")
        before = mediator.service.get_principal(user_id)
        snapshot = principal_snapshot(before)
        updated, revoked = mediator.service.set_status(user_id, target_status)
        return Mutation(
            result=updated,
            subject_id=user_id,
            before=snapshot,
            after=principal_snapshot(updated),
            params={"reason": body.reason, "permanent": body.permanent, "revokedSessions": revoked},
        )

    action = "USER.DELETE" if body.permanent else "USER.DEACTIVATE"
    mediator.mediate(ctx, "admin.users.delete", handler, target_id=user_id, action=action)
    message = "User deleted." if body.permanent else "User deactivated."
    return envelope({"userId": user_id, "status": target_status.value}, message)


@router.post("/admin/users/{user_id}/unlock")
def unlock_user(
    user_id: str,
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    """Manual Locked -> Open transition for a credential lockout."""

    def handler(_principal: Principal) -> Mutation:
        updated = mediator.service.reset_lockout(user_id)
        return Mutation(result=updated, subject_id=user_id)

    updated = mediator.mediate(
        ctx, "admin.users.update", handler, target_id=user_id, action="CREDENTIAL.UNLOCK"
    )
    return envelope({"user": UserResponse.from_principal(updated)}, "Lockout cleared.")


# ---------------------------------------------------------------------------
# Bulk
# ---------------------------------------------------------------------------


@router.post("/admin/bulk-operations")
def bulk_operations(
    body: BulkOperationBody,
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    """Apply one operation to many users. The response lists one outcome per user id, in request order."""
    results = mediator.bulk(ctx, BulkOperationRequest(body.operation, body.user_ids, body.data))
    return envelope({"results": [BulkResultRow.from_result(r) for r in results]})


@router.post("/admin/notifications/bulk")
def bulk_notifications(
    body: BulkNotificationBody,
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    results = mediator.send_notifications(ctx, body.user_ids, body.title, body.message, body.type)
    sent = sum(1 for r in results if r.outcome.value == "ok" and not r.warning)
    return envelope(
        {"results": [BulkResultRow.from_result(r) for r in results], "sent": sent},
        f"Notification sent to {sent} users.",
    )


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


@router.get("/admin/audit-logs")
def audit_logs(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    sort_order: SortOrderEnum = Query(default=SortOrderEnum.desc, alias="sortOrder"),
    action: Optional[str] = Query(default=None, max_length=64),
    actor_id: Optional[str] = Query(default=None, alias="actorId", max_length=32),
    subject_id: Optional[str] = Query(default=None, alias="subjectId", max_length=32),
    date_from: Optional[datetime] = Query(default=None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(default=None, alias="dateTo"),
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    def handler(_principal: Principal):
        return mediator.service.audit.query(
            action=action,
            actor_id=actor_id,
            subject_id=subject_id,
            date_from=_aware(date_from),
            date_to=_aware(date_to),
            descending=sort_order is SortOrderEnum.desc,
            offset=(page - 1) * limit,
            limit=limit,
        )

    entries, total = mediator.mediate(ctx, "admin.audit.read", handler)
    return envelope(
        {
            "auditLogs": [AuditEntryResponse.from_entry(e) for e in entries],
            "total": total,
            "page": page,
            "totalPages": math.ceil(total / limit) if total else 0,
        }
    )


# ---------------------------------------------------------------------------
# Health, metrics, analytics (descriptor documents)
# ---------------------------------------------------------------------------


@router.get("/admin/system-health")
def system_health(
    request: Request,
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    def handler(_principal: Principal) -> dict:
        status = _system_status(request)
        healthy = all(v == "ok" for v in status["components"].values())
        return {"status": "healthy" if healthy else "degraded", **status}

    return envelope(mediator.mediate(ctx, "admin.metrics.read", handler))


@router.get("/admin/metrics")
def metrics(
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    def handler(_principal: Principal) -> dict:
        return {
            "activeSessions": mediator.service.count_active_sessions(),
            "usersByRole": mediator.service.user_stats()["byRole"],
            "auditActions": mediator.service.audit.counts_by_action(),
        }

    return envelope(mediator.mediate(ctx, "admin.metrics.read", handler))


@router.get("/admin/analytics/{kind}")
def analytics(
    kind: Literal["users", "revenue", "providers"],
    request: Request,
    days: int = Query(default=30, ge=1, le=365),
    ctx: RequestContext = Depends(get_context),
    mediator: RequestMediator = Depends(get_mediator),
) -> dict:
    """Series for the admin charts. revenue is a descriptor only: no payment backend is wired in."""
    clinic = _clinic(request)

    def handler(_principal: Principal) -> dict:
        if kind == "users":
            since = datetime.now(timezone.utc) - timedelta(days=days)
            per_day = Counter(stamp[:10] for stamp in mediator.service.store.registrations_since(since))
            return {
                "kind": kind,
                "days": days,
                "registrations": [{"date": d, "count": per_day[d]} for d in sorted(per_day)],
                "byRole": mediator.service.user_stats()["byRole"],
            }
        if kind == "revenue":
            return {"kind": kind, "days": days, "currency": "USD", "series": [], "configured": False}
        providers = []
        for doctor_id, count in clinic.doctor_appointment_counts():
            doctor = mediator.service.find_principal(doctor_id)
            providers.append(
                {"doctorId": doctor_id, "name": doctor.name if doctor else None, "appointments": count}
            )
        return {"kind": kind, "providers": providers}

    return envelope(mediator.mediate(ctx, "admin.metrics.read", handler))


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive query datetimes as UTC so they compare with stored UTC stamps."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
