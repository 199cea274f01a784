"""
clinic/models.py -- Domain dataclasses for the clinical collections.

These are pure data containers with zero logic. Validation of enumerated
fields and status transitions lives in clinic/store.py.

The clinic layer knows principals only by id. It never imports auth/ --
api/ passes ids across the boundary.
"""

from dataclasses import dataclass
from typing import Optional

TEST_PRIORITIES = ("low", "normal", "high", "emergency")
TEST_STATUSES = ("requested", "in_progress", "completed", "cancelled")
APPOINTMENT_STATUSES = ("scheduled", "cancelled", "completed")


@dataclass
class LabTest:
    """A lab test order.

    lab_code is a human-facing identifier (LAB-YYMMDD-NNN) assigned by the
    store on insert; id is None before the record is written to the database.
    """

    patient_id: str
    test_type: str
    created_by: str
    priority: str = "normal"  # "low" | "normal" | "high" | "emergency"
    status: str = "requested"  # "requested" | "in_progress" | "completed" | "cancelled"
    assigned_technician_id: Optional[str] = None
    notes: Optional[str] = None
    lab_code: str = ""
    id: Optional[int] = None
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_at: str = ""


@dataclass
class RecordShare:
    """Consent edge: patient_id has shared their records with grantee_id."""

    patient_id: str
    grantee_id: str
    created_at: str = ""


@dataclass
class Appointment:
    patient_id: str
    doctor_id: str
    scheduled_at: str  # ISO 8601
    reason: Optional[str] = None
    status: str = "scheduled"
    id: Optional[int] = None
    created_at: str = ""
