"""
tests/test_clinic_store.py -- Unit tests for clinic/store.py (ClinicStore).

Covers:
  - Lab tests: lab_code assignment, filters, search, pagination, stats
  - Status transitions: allowed moves and terminal states
  - Record shares: idempotent add, remove, consent lookup
  - Appointments and the aggregated patient record view
"""

import re

import pytest

from clinic.models import Appointment, LabTest
from clinic.store import ClinicStore, can_transition


@pytest.fixture
def store():
    """Fresh in-memory ClinicStore for each test -- no disk I/O, no shared state."""
    s = ClinicStore("sqlite:///:memory:")
    yield s
    s.close()


def _test(patient="p1", **kwargs) -> LabTest:
    return LabTest(patient_id=patient, test_type=kwargs.pop("test_type", "CBC"), created_by="tech-1", **kwargs)


# ---------------------------------------------------------------------------
# Lab tests
# ---------------------------------------------------------------------------


class TestLabTests:
    def test_create_assigns_id_and_lab_code(self, store):
        test_id = store.create_test(_test())
        test = store.get_test(test_id)
        assert re.fullmatch(r"LAB-\d{6}-001", test.lab_code)
        assert test.status == "requested"
        assert test.priority == "normal"
        assert test.created_at

    def test_lab_codes_increment_within_a_day(self, store):
        codes = [store.get_test(store.create_test(_test())).lab_code for _ in range(3)]
        assert [c[-3:] for c in codes] == ["001", "002", "003"]

    def test_deleted_code_is_not_reissued(self, store):
        first = store.create_test(_test())
        second = store.create_test(_test())
        store.delete_test(first)
        third = store.create_test(_test())
        assert store.get_test(second).lab_code[-3:] == "002"
        assert store.get_test(third).lab_code[-3:] == "003"

    def test_sequence_continues_past_999(self, store):
        for _ in range(1000):
            store.create_test(_test())
        assert store.get_test(store.create_test(_test())).lab_code.endswith("-1001")

    def test_get_missing_returns_none(self, store):
        assert store.get_test(999) is None

    def test_filters(self, store):
        store.create_test(_test("p1", priority="high"))
        store.create_test(_test("p2", priority="high", assigned_technician_id="tech-9"))
        store.create_test(_test("p2", priority="low"))

        high, total = store.list_tests(priority="high")
        assert total == 2
        assert {t.patient_id for t in high} == {"p1", "p2"}

        assert store.list_tests(technician_id="tech-9")[1] == 1
        assert store.list_tests(patient_id="p2")[1] == 2

    def test_search_matches_type_case_insensitively(self, store):
        store.create_test(_test(test_type="Lipid Panel"))
        store.create_test(_test(test_type="CBC"))
        found, total = store.list_tests(search="lipid")
        assert total == 1
        assert found[0].test_type == "Lipid Panel"

    def test_pagination_reports_full_total(self, store):
        for _ in range(5):
            store.create_test(_test())
        page, total = store.list_tests(offset=2, limit=2)
        assert len(page) == 2
        assert total == 5

    def test_update_and_delete(self, store):
        test_id = store.create_test(_test())
        assert store.update_test(test_id, status="in_progress", notes="drawn")
        updated = store.get_test(test_id)
        assert (updated.status, updated.notes) == ("in_progress", "drawn")
        assert store.delete_test(test_id)
        assert store.get_test(test_id) is None
        assert not store.delete_test(test_id)

    def test_update_missing_returns_false(self, store):
        assert not store.update_test(999, status="completed")

    def test_stats(self, store):
        a = store.create_test(_test(priority="emergency"))
        store.create_test(_test())
        store.update_test(a, status="in_progress")
        stats = store.test_stats()
        assert stats["total"] == 2
        assert stats["byStatus"] == {"in_progress": 1, "requested": 1}
        assert stats["byPriority"] == {"emergency": 1, "normal": 1}


@pytest.mark.parametrize(
    "from_status,to_status,allowed",
    [
        ("requested", "in_progress", True),
        ("requested", "cancelled", True),
        ("requested", "completed", False),
        ("in_progress", "completed", True),
        ("in_progress", "requested", False),
        ("completed", "in_progress", False),
        ("cancelled", "requested", False),
        ("completed", "completed", True),
    ],
)
def test_can_transition(from_status, to_status, allowed):
    assert can_transition(from_status, to_status) is allowed


# ---------------------------------------------------------------------------
# Record shares
# ---------------------------------------------------------------------------


class TestShares:
    def test_add_is_idempotent(self, store):
        assert store.add_share("p1", "doc-1") is True
        assert store.add_share("p1", "doc-1") is False
        assert len(store.list_shares("p1")) == 1

    def test_share_is_directional(self, store):
        store.add_share("p1", "doc-1")
        assert store.has_share("p1", "doc-1")
        assert not store.has_share("doc-1", "p1")
        assert not store.has_share("p2", "doc-1")

    def test_remove(self, store):
        store.add_share("p1", "doc-1")
        assert store.remove_share("p1", "doc-1")
        assert not store.has_share("p1", "doc-1")
        assert not store.remove_share("p1", "doc-1")


# ---------------------------------------------------------------------------
# Appointments and record view
# ---------------------------------------------------------------------------


class TestAppointments:
    def test_list_is_ordered_by_time(self, store):
        store.create_appointment(Appointment("p1", "doc-1", "2025-03-02T09:00:00+00:00"))
        store.create_appointment(Appointment("p1", "doc-2", "2025-03-01T09:00:00+00:00"))
        appts = store.list_appointments(patient_id="p1")
        assert [a.doctor_id for a in appts] == ["doc-2", "doc-1"]

    def test_counts(self, store):
        store.create_appointment(Appointment("p1", "doc-1", "2025-03-01T09:00:00+00:00"))
        store.create_appointment(Appointment("p2", "doc-1", "2025-03-01T10:00:00+00:00"))
        store.create_appointment(Appointment("p3", "doc-2", "2025-03-01T11:00:00+00:00", status="cancelled"))
        assert store.appointment_counts() == {"scheduled": 2, "cancelled": 1}
        assert store.doctor_appointment_counts()[0] == ("doc-1", 2)

    def test_patient_record(self, store):
        store.create_test(_test("p1"))
        store.create_test(_test("p2"))
        store.create_appointment(Appointment("p1", "doc-1", "2025-03-01T09:00:00+00:00", reason="checkup"))
        store.add_share("p1", "doc-1")

        record = store.patient_record("p1")
        assert record["patientId"] == "p1"
        assert len(record["tests"]) == 1
        assert record["appointments"][0].reason == "checkup"
        assert [s.grantee_id for s in record["shares"]] == ["doc-1"]


def test_ping(store):
    assert store.ping() is True
