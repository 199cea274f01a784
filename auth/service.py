"""
auth/service.py -- Credential & Session Store: the identity half of the auth core.

CredentialService owns every rule about who a principal is:
  register          -- normalize email, enforce password policy, store Argon2id verifier
  authenticate      -- lockout machine, constant-time verify, session issuance
  resolve           -- token -> Principal, or the precise reason it is not valid
  revoke / revoke_all_for / rotate_credential -- session lifecycle
  set_status / assign_role / update_profile / reset_lockout -- admin mutations

Security:
  [C1] Unknown emails are verified against a dummy Argon2 hash so a miss costs
       the same time as a wrong password. UnknownEmail and BadPassword are
       distinct here (for the audit trail) but share one remote rendering.
  Lockout is checked before the password is looked at, so a locked account
  gives no password oracle.
  Raw session tokens are never stored or logged -- only their HMAC.

Concurrency:
  Writers that touch one principal's credential or sessions (authenticate,
  revoke, rotate, status and role changes) hold that principal's lock from a
  small registry. There is no global lock; the audit allocator has its own.

Session lifecycle (fixed TTL, no sliding):
  Issued --(now >= expires_at)--> Expired
  Issued --(revoke)-------------> Revoked
  Both terminal.

Lockout lifecycle:
  Open --(fail, counter < N)--> Open
  Open --(fail, counter = N)--> Locked (lockout_until = now + backoff)
  Locked --(now >= lockout_until, or reset_lockout)--> Open

Layer rule: no imports from api/ or clinic/.
"""

from __future__ import annotations

import logging
import math
import re
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import IntegrityError

from auth.audit import AuditLog
from auth.models import SYSTEM_ACTOR, AuditEntry, Principal, Role, Session, Source, Status
from auth.store import AuthStore
from auth.tokens import (
    generate_session_token,
    hash_password,
    hash_session_token,
    make_dummy_hash,
    make_password_hasher,
    password_policy_violations,
    verify_password,
)
from core.config import Settings
from core.errors import (
    AccountInactive,
    BadEmail,
    BadPassword,
    EmailInUse,
    LockedOut,
    NotFound,
    PrincipalInactive,
    RoleNotPermitted,
    SessionExpired,
    SessionInvalid,
    SessionRevoked,
    UnknownEmail,
    UnknownRole,
    ValidationFailed,
    WeakPassword,
)

logger = logging.getLogger("medportal.auth")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

SELF_REGISTRATION_ROLES = frozenset({Role.patient})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def parse_role(value) -> Role:
    """Map a role label onto the closed Role enum, or raise UnknownRole."""
    if isinstance(value, Role):
        return value
    try:
        return Role.parse(value)
    except ValueError:
        raise UnknownRole(detail=str(value)) from None


class CredentialService:
    """Registration, login, session resolution, and credential lifecycle.

    Usage:
        service = CredentialService(settings, store, AuditLog(store))
        principal = service.register("alice@x.io", "Alice", "Hunter!2a")
        session = service.authenticate("alice@x.io", "Hunter!2a")
        assert service.resolve(session.token).id == principal.id
    """

    def __init__(
        self,
        settings: Settings,
        store: AuthStore,
        audit: AuditLog,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.audit = audit
        self.clock = clock
        self._hasher = make_password_hasher(settings)
        self._dummy_hash = make_dummy_hash(self._hasher)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _principal_lock(self, principal_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(principal_id)
            if lock is None:
                lock = self._locks[principal_id] = threading.Lock()
            return lock

    def _record(
        self,
        action: str,
        *,
        actor_id: str = SYSTEM_ACTOR,
        subject_id: Optional[str] = None,
        payload: Optional[dict] = None,
        source: Optional[Source] = None,
    ) -> None:
        self.audit.append(
            AuditEntry(
                action=action,
                actor_id=actor_id,
                subject_id=subject_id,
                payload=payload or {},
                source=source or Source(),
            )
        )

    def _check_password(self, password: str) -> None:
        violations = password_policy_violations(password, self.settings)
        if violations:
            raise WeakPassword(detail="Password must contain " + ", ".join(violations) + ".")

    def _require(self, principal_id: str) -> Principal:
        principal = self.store.get_principal(principal_id)
        if principal is None or principal.status is Status.deleted:
            raise NotFound("User not found.")
        return principal

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        name: str,
        password: str,
        role: Role | str = Role.patient,
        *,
        allowed_roles: Iterable[Role] = SELF_REGISTRATION_ROLES,
        actor_id: Optional[str] = None,
        source: Optional[Source] = None,
    ) -> Principal:
        """Create a principal. actor_id defaults to the new principal (self-registration)."""
        email = normalize_email(email)
        if not _EMAIL_RE.match(email):
            raise BadEmail()
        name = name.strip()
        if not name:
            raise ValidationFailed("Name is required.")
        role = parse_role(role)
        if role not in set(allowed_roles):
            raise RoleNotPermitted(detail=role.value)
        self._check_password(password)

        if self.store.get_principal_by_email(email) is not None:
            raise EmailInUse()

        now = self.clock()
        principal = Principal(
            id=uuid.uuid4().hex,
            email=email,
            name=name,
            role=role,
            status=Status.active,
            created_at=now,
            password_hash=hash_password(self._hasher, password),
            password_rotated_at=now,
        )
        try:
            self.store.create_principal(principal)
        except IntegrityError:
            # A concurrent registration won the race past the pre-check.
            raise EmailInUse() from None

        self._record(
            "USER.CREATE",
            actor_id=actor_id or principal.id,
            subject_id=principal.id,
            payload={"email": email, "role": role.value},
            source=source,
        )
        logger.info("Registered principal %s with role %s", principal.id, role.value)
        return principal

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self, email: str, password: str, source: Optional[Source] = None) -> Session:
        """Verify email + password and issue a new Session (raw token on session.token)."""
        source = source or Source()
        email = normalize_email(email)
        principal = self.store.get_principal_by_email(email)
        if principal is None or principal.password_hash is None:
            verify_password(self._hasher, password, self._dummy_hash)  # [C1]
            self._record(
                "AUTH.LOGIN_FAILED",
                payload={"reason": "unknown_email", "email": email},
                source=source,
            )
            raise UnknownEmail()

        with self._principal_lock(principal.id):
            principal = self.store.get_principal(principal.id)
            now = self.clock()

            if principal.lockout_until is not None:
                if now < principal.lockout_until:
                    retry_after = math.ceil((principal.lockout_until - now).total_seconds())
                    self._record(
                        "AUTH.LOGIN_FAILED",
                        subject_id=principal.id,
                        payload={"reason": "locked"},
                        source=source,
                    )
                    raise LockedOut(retry_after=retry_after)
                # Backoff elapsed: Locked -> Open with a fresh counter.
                self.store.update_principal(principal.id, failed_attempts=0, lockout_until=None)
                principal.failed_attempts = 0
                principal.lockout_until = None

            if not verify_password(self._hasher, password, principal.password_hash):
                attempts = principal.failed_attempts + 1
                fields: dict = {"failed_attempts": attempts}
                locked = attempts >= self.settings.lockout_threshold
                if locked:
                    fields["lockout_until"] = now + timedelta(seconds=self.settings.lockout_backoff_seconds)
                self.store.update_principal(principal.id, **fields)
                self._record(
                    "AUTH.LOGIN_FAILED",
                    subject_id=principal.id,
                    payload={"reason": "bad_password", "failedAttempts": attempts},
                    source=source,
                )
                if locked:
                    self._record(
                        "AUTH.LOCKOUT",
                        subject_id=principal.id,
                        payload={"until": fields["lockout_until"].isoformat()},
                        source=source,
                    )
                    logger.warning("Principal %s locked out after %d failed logins", principal.id, attempts)
                raise BadPassword()

            if not principal.is_active:
                self._record(
                    "AUTH.LOGIN_FAILED",
                    subject_id=principal.id,
                    payload={"reason": "inactive", "status": principal.status.value},
                    source=source,
                )
                raise AccountInactive()

            self.store.update_principal(principal.id, failed_attempts=0, lockout_until=None, last_login=now)
            session = self._issue(principal, now, source)

        self._record("AUTH.LOGIN", actor_id=principal.id, subject_id=principal.id, source=source)
        return session

    def _issue(self, principal: Principal, now: datetime, source: Source) -> Session:
        raw = generate_session_token()
        session = Session(
            token_hash=hash_session_token(self.settings.secret_key, raw),
            principal_id=principal.id,
            issued_at=now,
            expires_at=now + timedelta(seconds=self.settings.session_ttl_seconds),
            source_ip=source.ip,
            user_agent=source.user_agent,
        )
        self.store.create_session(session)
        session.token = raw
        return session

    # ------------------------------------------------------------------
    # Session resolution and revocation
    # ------------------------------------------------------------------

    def resolve_session(self, token: Optional[str]) -> tuple[Principal, Session]:
        """Return (principal, session) for a valid token. Side-effect free."""
        if not token:
            raise SessionInvalid()
        session = self.store.get_session(hash_session_token(self.settings.secret_key, token))
        if session is None:
            raise SessionInvalid()
        if session.revoked_at is not None:
            raise SessionRevoked()
        if self.clock() >= session.expires_at:
            raise SessionExpired()
        principal = self.store.get_principal(session.principal_id)
        if principal is None or not principal.is_active:
            raise PrincipalInactive()
        return principal, session

    def resolve(self, token: Optional[str]) -> Principal:
        return self.resolve_session(token)[0]

    def revoke(self, token: str, source: Optional[Source] = None) -> None:
        """Revoke one session. Unknown or already-revoked tokens are a no-op."""
        token_hash = hash_session_token(self.settings.secret_key, token)
        session = self.store.get_session(token_hash)
        if session is None:
            return
        with self._principal_lock(session.principal_id):
            revoked = self.store.revoke_session(token_hash, self.clock())
        if revoked:
            self._record(
                "AUTH.LOGOUT",
                actor_id=session.principal_id,
                subject_id=session.principal_id,
                source=source,
            )

    def revoke_all_for(
        self,
        principal_id: str,
        *,
        actor_id: str = SYSTEM_ACTOR,
        source: Optional[Source] = None,
    ) -> int:
        """Revoke every live session of a principal. Returns how many were revoked."""
        with self._principal_lock(principal_id):
            count = self.store.revoke_sessions_for(principal_id, self.clock())
        if count:
            self._record(
                "SESSION.REVOKE_ALL",
                actor_id=actor_id,
                subject_id=principal_id,
                payload={"revoked": count},
                source=source,
            )
        return count

    def count_active_sessions(self) -> int:
        return self.store.count_active_sessions(self.clock())

    # ------------------------------------------------------------------
    # Credential rotation
    # ------------------------------------------------------------------

    def rotate_credential(
        self,
        principal_id: str,
        old_password: str,
        new_password: str,
        keep_token: Optional[str] = None,
        source: Optional[Source] = None,
    ) -> int:
        """Replace the password; every session except keep_token is revoked in the same transaction.

        Returns the number of sessions revoked.
        """
        with self._principal_lock(principal_id):
            principal = self._require(principal_id)
            if not verify_password(self._hasher, old_password, principal.password_hash):
                raise BadPassword("Current password is incorrect.")
            self._check_password(new_password)
            keep_hash = hash_session_token(self.settings.secret_key, keep_token) if keep_token else None
            revoked = self.store.rotate_password(
                principal_id,
                hash_password(self._hasher, new_password),
                self.clock(),
                keep_hash,
            )
        self._record(
            "CREDENTIAL.ROTATE",
            actor_id=principal_id,
            subject_id=principal_id,
            payload={"revokedSessions": revoked},
            source=source,
        )
        return revoked

    # ------------------------------------------------------------------
    # Admin mutations (audited by the mediator, which holds before/after)
    # ------------------------------------------------------------------

    def reset_lockout(self, principal_id: str) -> Principal:
        with self._principal_lock(principal_id):
            self._require(principal_id)
            self.store.update_principal(principal_id, failed_attempts=0, lockout_until=None)
            return self._require(principal_id)

    def set_status(self, principal_id: str, status: Status | str) -> tuple[Principal, int]:
        """Change status. Returns (updated principal, sessions revoked).

        Any non-active status revokes all sessions; deleted is terminal and
        drops the credential.
        """
        try:
            status = Status(status)
        except ValueError:
            raise ValidationFailed("Unknown status.", detail=str(status)) from None
        with self._principal_lock(principal_id):
            principal = self._require(principal_id)
            if principal.status is status:
                return principal, 0
            revoked = self.store.set_status(principal_id, status, self.clock())
        principal.status = status
        if status is Status.deleted:
            principal.password_hash = None
        return principal, revoked

    def assign_role(self, principal_id: str, role: Role | str) -> Principal:
        role = parse_role(role)
        with self._principal_lock(principal_id):
            principal = self._require(principal_id)
            if principal.role is not role:
                self.store.update_principal(principal_id, role=role)
                principal.role = role
        return principal

    def update_profile(
        self,
        principal_id: str,
        *,
        name: Optional[str] = None,
        profile_ref: Optional[str] = None,
    ) -> Principal:
        fields: dict = {}
        if name is not None:
            if not name.strip():
                raise ValidationFailed("Name is required.")
            fields["name"] = name.strip()
        if profile_ref is not None:
            fields["profile_ref"] = profile_ref
        principal = self._require(principal_id)
        if fields:
            self.store.update_principal(principal_id, **fields)
            principal = self._require(principal_id)
        return principal

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_principal(self, principal_id: str) -> Principal:
        """Return a non-deleted principal or raise NotFound."""
        return self._require(principal_id)

    def find_principal(self, principal_id: str) -> Optional[Principal]:
        """Like get_principal but returns None instead of raising."""
        principal = self.store.get_principal(principal_id)
        if principal is None or principal.status is Status.deleted:
            return None
        return principal

    def list_principals(self, *, page: int = 1, limit: int = 20, **filters) -> tuple[list[Principal], int]:
        page = max(page, 1)
        return self.store.list_principals(offset=(page - 1) * limit, limit=limit, **filters)

    def user_stats(self) -> dict:
        """Counts for the admin dashboard and user analytics."""
        return {
            "byRole": self.store.count_principals_by("role"),
            "byStatus": self.store.count_principals_by("status"),
            "activeSessions": self.count_active_sessions(),
        }
