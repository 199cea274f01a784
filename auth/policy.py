"""
auth/policy.py -- Authorization Policy Engine: (principal, operation, target) -> Decision.

The matrix is a static, process-wide table of (role, operation) -> Scope,
frozen into a MappingProxyType at import time. Evaluation order:

  1. principal not active              -> deny  inactive_principal
  2. (role, operation) not in matrix   -> deny  unknown_operation / denied_by_role
  3. Scope.denied                      -> deny  denied_by_role
  4. Scope.self                        -> permit iff target absent or == principal.id
  5. Scope.any                         -> permit, then
       refined cells consult the consent hook (no hook -> deny no_consent)
       target guards run last (e.g. admins cannot modify other admins)

Role is read from the Principal passed in -- the caller resolves it fresh per
request, so a demoted user loses privileges on their next request.

The engine is pure and in-memory apart from the consent hook it is given.

Layer rule: no imports from api/ or clinic/. The clinic store is injected as
the consent hook by api/main.py.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from auth.models import Principal, Role


class Scope(str, Enum):
    denied = "denied"
    self = "self"
    any = "any"


@dataclass(frozen=True)
class Decision:
    permitted: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.permitted


PERMIT = Decision(True)

# Every operation the mediator may be asked about.
OPERATIONS: frozenset[str] = frozenset(
    {
        "profile.read",
        "profile.update",
        "records.read",
        "records.share",
        "appointment.book",
        "appointment.list",
        "test.read",
        "test.create",
        "test.update",
        "test.delete",
        "test.assign",
        "admin.users.list",
        "admin.users.read",
        "admin.users.create",
        "admin.users.update",
        "admin.users.delete",
        "admin.audit.read",
        "admin.metrics.read",
        "admin.bulk",
        "admin.notifications.send",
    }
)

# Role columns. nurse and provider share the clinician column; staff shares
# the technician column. admin is any on every operation.
_PATIENT = {
    "profile.read": Scope.self,
    "profile.update": Scope.self,
    "records.read": Scope.self,
    "records.share": Scope.self,
    "appointment.book": Scope.self,
    "appointment.list": Scope.self,
}
_CLINICIAN = {
    "profile.read": Scope.self,
    "profile.update": Scope.self,
    "records.read": Scope.any,  # refined: consent edge required
    "appointment.list": Scope.any,
}
_TECHNICIAN = {
    "profile.read": Scope.self,
    "profile.update": Scope.self,
    "records.read": Scope.self,
    "test.read": Scope.any,
    "test.create": Scope.any,
    "test.update": Scope.any,
}
_ADMIN = {op: Scope.any for op in OPERATIONS}

_COLUMNS = {
    Role.patient: _PATIENT,
    Role.doctor: _CLINICIAN,
    Role.nurse: _CLINICIAN,
    Role.provider: _CLINICIAN,
    Role.technician: _TECHNICIAN,
    Role.staff: _TECHNICIAN,
    Role.admin: _ADMIN,
}


def _build_matrix() -> Mapping[tuple[Role, str], Scope]:
    matrix = {}
    for role in Role:
        column = _COLUMNS[role]
        for op in OPERATIONS:
            matrix[(role, op)] = column.get(op, Scope.denied)
    return MappingProxyType(matrix)


MATRIX: Mapping[tuple[Role, str], Scope] = _build_matrix()

# Cells whose "any" additionally needs a record-level consent edge.
REFINED_CELLS: frozenset[tuple[Role, str]] = frozenset(
    (role, "records.read") for role in (Role.doctor, Role.nurse, Role.provider)
)

# consent_hook(subject_id, grantee_id) -> True if subject shared their records with grantee.
ConsentHook = Callable[[str, str], bool]
# target_guard(principal, target) -> deny reason or None.
TargetGuard = Callable[[Principal, Principal], Optional[str]]


def protect_other_admins(principal: Principal, target: Principal) -> Optional[str]:
    """Admins may not modify or delete other admin accounts."""
    if target.role is Role.admin and target.id != principal.id:
        return "protected_target"
    return None


DEFAULT_TARGET_GUARDS: Mapping[str, tuple[TargetGuard, ...]] = MappingProxyType(
    {
        "admin.users.update": (protect_other_admins,),
        "admin.users.delete": (protect_other_admins,),
    }
)


class PolicyEngine:
    """Evaluates the static matrix plus record-level predicates.

    Usage:
        engine = PolicyEngine(consent_hook=clinic_store.has_share)
        decision = engine.check(principal, "records.read", target_id=patient_id)
        if not decision:
            raise Forbidden(decision.reason)
    """

    def __init__(
        self,
        matrix: Mapping[tuple[Role, str], Scope] = MATRIX,
        consent_hook: Optional[ConsentHook] = None,
        target_guards: Mapping[str, tuple[TargetGuard, ...]] = DEFAULT_TARGET_GUARDS,
        refined_cells: frozenset[tuple[Role, str]] = REFINED_CELLS,
    ) -> None:
        self.matrix = matrix
        self.consent_hook = consent_hook
        self.target_guards = target_guards
        self.refined_cells = refined_cells

    def is_known(self, operation: str) -> bool:
        return operation in OPERATIONS

    def scope(self, role: Role, operation: str) -> Scope:
        return self.matrix.get((role, operation), Scope.denied)

    def check(
        self,
        principal: Principal,
        operation: str,
        target_id: Optional[str] = None,
        target: Optional[Principal] = None,
    ) -> Decision:
        """Decide whether principal may perform operation on target.

        target_id is the id of the principal whose data is touched. target,
        when the caller has already loaded it, lets target guards inspect it.
        """
        if not principal.is_active:
            return Decision(False, "inactive_principal")
        if not self.is_known(operation):
            return Decision(False, "unknown_operation")

        if target is not None and target_id is None:
            target_id = target.id
        is_self = target_id is None or target_id == principal.id

        scope = self.scope(principal.role, operation)
        if scope is Scope.denied:
            return Decision(False, "denied_by_role")
        if scope is Scope.self:
            return PERMIT if is_self else Decision(False, "self_only")

        if (principal.role, operation) in self.refined_cells and not is_self:
            if self.consent_hook is None or not self.consent_hook(target_id, principal.id):
                return Decision(False, "no_consent")

        if target is not None:
            for guard in self.target_guards.get(operation, ()):
                reason = guard(principal, target)
                if reason:
                    return Decision(False, reason)
        return PERMIT
