"""
auth/mediator.py -- Request Mediator: the choke point for every protected operation.

A mediated call:
  1. deadline check, then token -> CredentialService.resolve()
     any resolution failure -> AuthRequired with one uniform message, so a
     remote caller cannot tell "expired" from "revoked" from "never existed"
  2. PolicyEngine.check(principal, operation, target)
     deny -> AUTHZ.DENY audit entry + Forbidden(reason)
  3. deadline check, then the domain handler runs with the resolved principal
  4. a handler that returns a Mutation is a write: the mediator appends one
     audit entry (actor, subject, action, before/after, source) and returns
     Mutation.result
  5. any other return value is passed through untouched (reads)

Bulk operations (admin.bulk, admin.notifications.send):
  - preflight before any write: known operation, 1..BULK_MAX_TARGETS ids,
    no duplicates, assign_role carries a recognized role
  - one BULK.<OP> intent entry, then targets in caller order
  - each target is re-checked against the policy (target guards protect other
    admins) and the self-lockout / self-demotion rules
  - outcome per target: ok | denied | not_found | failed | cancelled
  - the deadline is checked before every target; once it passes the
    remaining targets are reported cancelled and nothing further is written
  - every applied target gets its own BULK.<OP>.TARGET audit entry

Layer rule: no imports from api/ or clinic/. Handlers are plain callables the
API layer hands in.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from auth.models import (
    AuditEntry,
    BulkOperation,
    BulkOperationRequest,
    BulkOutcome,
    BulkTargetResult,
    Principal,
    Role,
    Session,
    Source,
    Status,
)
from auth.notifications import NotificationOutbox
from auth.policy import PolicyEngine
from auth.service import CredentialService, parse_role
from core.config import Settings
from core.deadline import Deadline
from core.errors import (
    AuthRequired,
    BadCredentials,
    DuplicateTarget,
    Forbidden,
    NotFound,
    PortalError,
    UnknownOperation,
    ValidationFailed,
)

logger = logging.getLogger("medportal.auth")

_STATUS_FOR = {
    BulkOperation.activate: Status.active,
    BulkOperation.deactivate: Status.inactive,
    BulkOperation.suspend: Status.suspended,
}


@dataclass(frozen=True)
class RequestContext:
    """Everything the transport layer knows about the caller of one request."""

    token: Optional[str]
    source: Source = field(default_factory=Source)
    deadline: Deadline = field(default_factory=Deadline.never)


@dataclass
class Mutation:
    """Returned by write handlers so the mediator can audit them."""

    result: Any
    subject_id: Optional[str] = None
    before: Optional[dict] = None
    after: Optional[dict] = None
    params: dict = field(default_factory=dict)


def principal_snapshot(principal: Optional[Principal]) -> Optional[dict]:
    """The audited view of a principal: no credential material."""
    if principal is None:
        return None
    return {
        "email": principal.email,
        "name": principal.name,
        "role": principal.role.value,
        "status": principal.status.value,
    }


class RequestMediator:
    def __init__(
        self,
        service: CredentialService,
        policy: PolicyEngine,
        notifier: NotificationOutbox,
        settings: Settings,
    ) -> None:
        self.service = service
        self.policy = policy
        self.notifier = notifier
        self.settings = settings

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, source: Source) -> tuple[Principal, Session]:
        """Authenticate and return (principal, session with raw token).

        UnknownEmail and BadPassword are re-raised as a bare BadCredentials so
        the remote response is byte-identical for both. The audit trail written
        by the credential service keeps the distinction.
        """
        try:
            session = self.service.authenticate(email, password, source)
        except BadCredentials:
            raise BadCredentials() from None
        return self.service.get_principal(session.principal_id), session

    def logout(self, ctx: RequestContext) -> None:
        self.authenticate(ctx)
        self.service.revoke(ctx.token, source=ctx.source)

    # ------------------------------------------------------------------
    # Steps 1-2
    # ------------------------------------------------------------------

    def authenticate(self, ctx: RequestContext) -> Principal:
        ctx.deadline.check()
        if not ctx.token:
            raise AuthRequired()
        try:
            return self.service.resolve(ctx.token)
        except AuthRequired as exc:
            logger.debug("Session rejected: %s", type(exc).__name__)
            raise AuthRequired() from None

    def authorize(
        self,
        principal: Principal,
        operation: str,
        ctx: RequestContext,
        target_id: Optional[str] = None,
        target: Optional[Principal] = None,
    ) -> None:
        decision = self.policy.check(principal, operation, target_id=target_id, target=target)
        if decision:
            return
        self._record(
            "AUTHZ.DENY",
            principal,
            ctx,
            subject_id=target_id,
            payload={"operation": operation, "reason": decision.reason},
        )
        raise Forbidden(decision.reason)

    # ------------------------------------------------------------------
    # Mediated call
    # ------------------------------------------------------------------

    def mediate(
        self,
        ctx: RequestContext,
        operation: str,
        handler: Callable[[Principal], Any],
        *,
        target_id: Optional[str] = None,
        action: Optional[str] = None,
    ) -> Any:
        """Run handler(principal) if the caller may perform operation on target_id."""
        principal = self.authenticate(ctx)
        target = None
        if target_id is not None and self.policy.target_guards.get(operation):
            target = self.service.find_principal(target_id)
        self.authorize(principal, operation, ctx, target_id=target_id, target=target)
        ctx.deadline.check()

        outcome = handler(principal)
        if not isinstance(outcome, Mutation):
            return outcome
        payload = {"operation": operation, **outcome.params}
        if outcome.before is not None:
            payload["before"] = outcome.before
        if outcome.after is not None:
            payload["after"] = outcome.after
        self._record(
            action or operation.upper(),
            principal,
            ctx,
            subject_id=outcome.subject_id or target_id,
            payload=payload,
        )
        return outcome.result

    def check_self_change(
        self,
        principal: Principal,
        target_id: str,
        *,
        status: Optional[Status] = None,
        role: Optional[Role] = None,
    ) -> Optional[str]:
        """Deny reason for an admin changing their own status or role, else None."""
        if target_id != principal.id:
            return None
        if status is not None and status is not Status.active:
            return "self_lockout"
        if role is not None and role is not principal.role and not self.settings.allow_admin_self_demotion:
            return "self_demotion"
        return None

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    def bulk(self, ctx: RequestContext, request: BulkOperationRequest) -> list[BulkTargetResult]:
        return self._run_bulk(ctx, request, "admin.bulk")

    def send_notifications(
        self,
        ctx: RequestContext,
        user_ids: list[str],
        title: str,
        message: str,
        type: str = "info",
    ) -> list[BulkTargetResult]:
        request = BulkOperationRequest(
            operation=BulkOperation.send_notification,
            user_ids=user_ids,
            data={"title": title, "message": message, "type": type},
        )
        return self._run_bulk(ctx, request, "admin.notifications.send")

    def _preflight(self, request: BulkOperationRequest) -> tuple[BulkOperation, dict]:
        try:
            operation = BulkOperation(request.operation)
        except ValueError:
            raise UnknownOperation(detail=str(request.operation)) from None

        ids = request.user_ids
        if not ids:
            raise ValidationFailed("At least one user id is required.")
        if len(ids) > self.settings.bulk_max_targets:
            raise ValidationFailed(f"At most {self.settings.bulk_max_targets} users per bulk operation.")
        seen: set[str] = set()
        dupes: set[str] = set()
        for uid in ids:
            if uid in seen:
                dupes.add(uid)
            seen.add(uid)
        if dupes:
            raise DuplicateTarget(detail=", ".join(sorted(dupes)))

        data = dict(request.data or {})
        if operation is BulkOperation.assign_role:
            data["role"] = parse_role(data.get("role", ""))
        if operation is BulkOperation.send_notification:
            if not str(data.get("title", "")).strip() or not str(data.get("message", "")).strip():
                raise ValidationFailed("Notification title and message are required.")
        return operation, data

    def _run_bulk(
        self,
        ctx: RequestContext,
        request: BulkOperationRequest,
        gate: str,
    ) -> list[BulkTargetResult]:
        principal = self.authenticate(ctx)
        self.authorize(principal, gate, ctx)
        operation, data = self._preflight(request)
        ctx.deadline.check()

        tag = f"BULK.{operation.value.upper()}"
        intent = {"operation": operation.value, "userIds": list(request.user_ids)}
        if "role" in data:
            intent["role"] = data["role"].value
        if "reason" in data:
            intent["reason"] = data["reason"]
        self._record(tag, principal, ctx, payload=intent)

        results: list[BulkTargetResult] = []
        for index, user_id in enumerate(request.user_ids):
            if ctx.deadline.expired():
                results.extend(
                    BulkTargetResult(user_id=uid, outcome=BulkOutcome.cancelled, reason="deadline_exceeded")
                    for uid in request.user_ids[index:]
                )
                break
            results.append(self._apply_one(principal, operation, user_id, data, ctx, tag))

        counts: dict[str, int] = {}
        for r in results:
            counts[r.outcome.value] = counts.get(r.outcome.value, 0) + 1
        logger.info("%s by %s over %d targets: %s", tag, principal.id, len(results), counts)
        return results

    def _apply_one(
        self,
        principal: Principal,
        operation: BulkOperation,
        user_id: str,
        data: dict,
        ctx: RequestContext,
        tag: str,
    ) -> BulkTargetResult:
        target = self.service.find_principal(user_id)
        if target is None:
            return BulkTargetResult(user_id=user_id, outcome=BulkOutcome.not_found)

        per_target_op = (
            "admin.notifications.send" if operation is BulkOperation.send_notification else "admin.users.update"
        )
        decision = self.policy.check(principal, per_target_op, target=target)
        if not decision:
            return BulkTargetResult(user_id=user_id, outcome=BulkOutcome.denied, reason=decision.reason)
        reason = self.check_self_change(
            principal,
            user_id,
            status=_STATUS_FOR.get(operation),
            role=data.get("role") if operation is BulkOperation.assign_role else None,
        )
        if reason:
            return BulkTargetResult(user_id=user_id, outcome=BulkOutcome.denied, reason=reason)

        before = principal_snapshot(target)
        payload: dict = {}
        warning = None
        try:
            if operation in _STATUS_FOR:
                target, revoked = self.service.set_status(user_id, _STATUS_FOR[operation])
                payload["revokedSessions"] = revoked
            elif operation is BulkOperation.assign_role:
                target = self.service.assign_role(user_id, data["role"])
            else:
                warning = self.notifier.enqueue(
                    user_id, data["title"], data["message"], data.get("type", "info")
                )
                payload["title"] = data["title"]
        except NotFound:
            return BulkTargetResult(user_id=user_id, outcome=BulkOutcome.not_found)
        except PortalError as exc:
            logger.warning("%s failed for %s: %s", tag, user_id, exc.code)
            return BulkTargetResult(user_id=user_id, outcome=BulkOutcome.failed, reason=exc.code)
        except Exception:
            logger.exception("%s failed for %s", tag, user_id)
            return BulkTargetResult(user_id=user_id, outcome=BulkOutcome.failed, reason="internal_error")

        notice = data.get("notification")
        if operation is not BulkOperation.send_notification and isinstance(notice, dict):
            warning = self.notifier.enqueue(
                user_id,
                str(notice.get("title", "Account update")),
                str(notice.get("message", "")),
                str(notice.get("type", "info")),
            )

        if operation is not BulkOperation.send_notification:
            payload["before"] = before
            payload["after"] = principal_snapshot(target)
        self._record(f"{tag}.TARGET", principal, ctx, subject_id=user_id, payload=payload)
        return BulkTargetResult(user_id=user_id, outcome=BulkOutcome.ok, warning=warning)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _record(
        self,
        action: str,
        principal: Principal,
        ctx: RequestContext,
        *,
        subject_id: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> None:
        self.service.audit.append(
            AuditEntry(
                action=action,
                actor_id=principal.id,
                subject_id=subject_id,
                payload=payload or {},
                source=ctx.source,
            )
        )
