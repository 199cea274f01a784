"""
clinic/store.py -- SQLAlchemy-backed persistence for lab tests, record shares,
and appointments.

Pattern: Repository + Data Mapper, same as auth/store.py. ClinicStore is the
repository; the _row_to_* functions are the mappers. Route handlers never
touch SQL directly.

has_share() is the consent predicate the policy engine consults for the
clinician records.read cell. api/main.py hands it to PolicyEngine as the
consent hook, so auth/ never imports this module.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = ClinicStore()                               # SQLite default
    test_id = store.create_test(LabTest(patient_id=p, test_type="CBC", created_by=t))
    store.add_share(patient_id, doctor_id)
    store.has_share(patient_id, doctor_id)              # True
    store.close()
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from clinic.models import Appointment, LabTest, RecordShare
from core.db import make_engine
from core.retry import RetryPolicy, retried

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'medportal_clinic.db'}"

# Tries at claiming a lab code while concurrent creates keep taking the same one.
_LAB_CODE_ATTEMPTS = 5

# Allowed lab test status moves. completed and cancelled are terminal.
_TEST_TRANSITIONS: dict[str, frozenset[str]] = {
    "requested": frozenset({"in_progress", "cancelled"}),
    "in_progress": frozenset({"completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_lab_tests = Table(
    "lab_tests",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("lab_code", String(20), nullable=False, unique=True),
    Column("patient_id", String(32), nullable=False, index=True),
    Column("test_type", String(100), nullable=False),
    Column("priority", String(20), nullable=False, server_default="normal"),
    Column("status", String(20), nullable=False, server_default="requested"),
    Column("assigned_technician_id", String(32), index=True),
    Column("notes", Text),
    Column("created_by", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_record_shares = Table(
    "record_shares",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("patient_id", String(32), nullable=False),
    Column("grantee_id", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("patient_id", "grantee_id", name="uq_record_share"),
)

_appointments = Table(
    "appointments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("patient_id", String(32), nullable=False, index=True),
    Column("doctor_id", String(32), nullable=False, index=True),
    Column("scheduled_at", String(32), nullable=False),
    Column("reason", Text),
    Column("status", String(20), nullable=False, server_default="scheduled"),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(from_status: str, to_status: str) -> bool:
    """Return True if a lab test may move from from_status to to_status.

    Setting the current status again is always allowed (no-op update).
    """
    if from_status == to_status:
        return True
    return to_status in _TEST_TRANSITIONS.get(from_status, frozenset())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class ClinicStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL, retry_policy: RetryPolicy | None = None) -> None:
        self.engine: Engine = make_engine(db_url or _DEFAULT_DB_URL)
        self.retry_policy = retry_policy or RetryPolicy()
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Lab tests
    # ------------------------------------------------------------------

    @retried
    def create_test(self, test: LabTest) -> int:
        """Insert a lab test and return its ID. Assigns lab_code LAB-YYMMDD-NNN.

        NNN follows the highest code already issued today, read in the same
        transaction as the insert, so deleted tests never free a number. A
        concurrent create that took the same code first fails the UNIQUE
        constraint and this one retries with the next number.
        """
        for _ in range(_LAB_CODE_ATTEMPTS - 1):
            try:
                return self._insert_test(test)
            except IntegrityError:
                continue
        return self._insert_test(test)

    def _insert_test(self, test: LabTest) -> int:
        now = _now()
        prefix = f"LAB-{now:%y%m%d}-"
        with self.engine.begin() as conn:
            last = conn.execute(
                select(_lab_tests.c.lab_code)
                .where(_lab_tests.c.lab_code.like(f"{prefix}%"))
                .order_by(func.length(_lab_tests.c.lab_code).desc(), _lab_tests.c.lab_code.desc())
                .limit(1)
            ).scalar()
            seq = int(last[len(prefix) :]) + 1 if last else 1
            result = conn.execute(
                _lab_tests.insert().values(
                    lab_code=f"{prefix}{seq:03d}",
                    patient_id=test.patient_id,
                    test_type=test.test_type,
                    priority=test.priority,
                    status=test.status,
                    assigned_technician_id=test.assigned_technician_id,
                    notes=test.notes,
                    created_by=test.created_by,
                    created_at=now.isoformat(),
                    updated_at=now.isoformat(),
                )
            )
            return result.inserted_primary_key[0]

    @retried
    def get_test(self, test_id: int) -> Optional[LabTest]:
        with self.engine.connect() as conn:
            row = conn.execute(_lab_tests.select().where(_lab_tests.c.id == test_id)).fetchone()
        return _row_to_test(row) if row is not None else None

    @retried
    def list_tests(
        self,
        *,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        technician_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[LabTest], int]:
        """Return (page of tests newest first, total matching count)."""
        conditions = []
        if status:
            conditions.append(_lab_tests.c.status == status)
        if priority:
            conditions.append(_lab_tests.c.priority == priority)
        if technician_id:
            conditions.append(_lab_tests.c.assigned_technician_id == technician_id)
        if patient_id:
            conditions.append(_lab_tests.c.patient_id == patient_id)
        if search:
            pattern = f"%{search.strip().lower()}%"
            conditions.append(
                or_(func.lower(_lab_tests.c.lab_code).like(pattern), func.lower(_lab_tests.c.test_type).like(pattern))
            )
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_lab_tests).where(*conditions)).scalar() or 0
            rows = conn.execute(
                _lab_tests.select()
                .where(*conditions)
                .order_by(_lab_tests.c.created_at.desc(), _lab_tests.c.id.desc())
                .offset(offset)
                .limit(limit)
            ).fetchall()
        return [_row_to_test(r) for r in rows], total

    @retried
    def update_test(self, test_id: int, **fields) -> bool:
        """Update any subset of: test_type, priority, status, notes, assigned_technician_id.

        Returns True if a row was updated, False if test_id was not found.
        """
        fields["updated_at"] = _now().isoformat()
        with self.engine.connect() as conn:
            result = conn.execute(_lab_tests.update().where(_lab_tests.c.id == test_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    @retried
    def delete_test(self, test_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_lab_tests.delete().where(_lab_tests.c.id == test_id))
            conn.commit()
        return result.rowcount > 0

    @retried
    def test_stats(self) -> dict:
        """Return {"total": n, "byStatus": {...}, "byPriority": {...}}."""
        with self.engine.connect() as conn:
            by_status = conn.execute(
                select(_lab_tests.c.status, func.count()).group_by(_lab_tests.c.status)
            ).fetchall()
            by_priority = conn.execute(
                select(_lab_tests.c.priority, func.count()).group_by(_lab_tests.c.priority)
            ).fetchall()
        status_counts = {r[0]: r[1] for r in by_status}
        return {
            "total": sum(status_counts.values()),
            "byStatus": status_counts,
            "byPriority": {r[0]: r[1] for r in by_priority},
        }

    # ------------------------------------------------------------------
    # Record shares (consent edges)
    # ------------------------------------------------------------------

    @retried
    def add_share(self, patient_id: str, grantee_id: str) -> bool:
        """Create the consent edge. Returns False if it already existed."""
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _record_shares.insert().values(
                        patient_id=patient_id,
                        grantee_id=grantee_id,
                        created_at=_now().isoformat(),
                    )
                )
                conn.commit()
        except IntegrityError:
            return False
        return True

    @retried
    def remove_share(self, patient_id: str, grantee_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _record_shares.delete().where(
                    (_record_shares.c.patient_id == patient_id) & (_record_shares.c.grantee_id == grantee_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    @retried
    def has_share(self, patient_id: str, grantee_id: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_record_shares.c.id).where(
                    (_record_shares.c.patient_id == patient_id) & (_record_shares.c.grantee_id == grantee_id)
                )
            ).fetchone()
        return row is not None

    @retried
    def list_shares(self, patient_id: str) -> list[RecordShare]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _record_shares.select()
                .where(_record_shares.c.patient_id == patient_id)
                .order_by(_record_shares.c.created_at)
            ).fetchall()
        return [RecordShare(patient_id=r.patient_id, grantee_id=r.grantee_id, created_at=r.created_at) for r in rows]

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------

    @retried
    def create_appointment(self, appointment: Appointment) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _appointments.insert().values(
                    patient_id=appointment.patient_id,
                    doctor_id=appointment.doctor_id,
                    scheduled_at=appointment.scheduled_at,
                    reason=appointment.reason,
                    status=appointment.status,
                    created_at=_now().isoformat(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    @retried
    def get_appointment(self, appointment_id: int) -> Optional[Appointment]:
        with self.engine.connect() as conn:
            row = conn.execute(_appointments.select().where(_appointments.c.id == appointment_id)).fetchone()
        return _row_to_appointment(row) if row is not None else None

    @retried
    def list_appointments(
        self,
        *,
        patient_id: Optional[str] = None,
        doctor_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[Appointment]:
        """Return appointments ordered by scheduled time, soonest first."""
        conditions = []
        if patient_id:
            conditions.append(_appointments.c.patient_id == patient_id)
        if doctor_id:
            conditions.append(_appointments.c.doctor_id == doctor_id)
        if status:
            conditions.append(_appointments.c.status == status)
        with self.engine.connect() as conn:
            rows = conn.execute(
                _appointments.select().where(*conditions).order_by(_appointments.c.scheduled_at).limit(limit)
            ).fetchall()
        return [_row_to_appointment(r) for r in rows]

    @retried
    def appointment_counts(self) -> dict[str, int]:
        """Return {status: count} across all appointments."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_appointments.c.status, func.count()).group_by(_appointments.c.status)
            ).fetchall()
        return {r[0]: r[1] for r in rows}

    @retried
    def doctor_appointment_counts(self, limit: int = 10) -> list[tuple[str, int]]:
        """Return [(doctor_id, appointment count)] busiest first. Backs provider analytics."""
        count = func.count().label("n")
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_appointments.c.doctor_id, count)
                .group_by(_appointments.c.doctor_id)
                .order_by(count.desc())
                .limit(limit)
            ).fetchall()
        return [(r[0], r[1]) for r in rows]

    # ------------------------------------------------------------------
    # Patient record view
    # ------------------------------------------------------------------

    def patient_record(self, patient_id: str) -> dict:
        """Aggregate what the portal holds for a patient: tests, appointments, shares."""
        tests, _ = self.list_tests(patient_id=patient_id, limit=100)
        return {
            "patientId": patient_id,
            "tests": tests,
            "appointments": self.list_appointments(patient_id=patient_id),
            "shares": self.list_shares(patient_id),
        }

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_test(row) -> LabTest:
    return LabTest(
        id=row.id,
        lab_code=row.lab_code,
        patient_id=row.patient_id,
        test_type=row.test_type,
        priority=row.priority,
        status=row.status,
        assigned_technician_id=row.assigned_technician_id,
        notes=row.notes,
        created_by=row.created_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_appointment(row) -> Appointment:
    return Appointment(
        id=row.id,
        patient_id=row.patient_id,
        doctor_id=row.doctor_id,
        scheduled_at=row.scheduled_at,
        reason=row.reason,
        status=row.status,
        created_at=row.created_at,
    )
