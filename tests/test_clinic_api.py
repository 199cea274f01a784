"""
tests/test_clinic_api.py -- Integration tests for the clinical routes:
api/routes/v1/lab_tests.py, records.py, appointments.py.

Covers:
  - Lab tests: technician create/update, status transition conflicts,
    admin-only assign and delete, assignment notifications
  - Records: patients read their own, clinicians need a share, shares are
    only granted to clinicians and can be withdrawn
  - Appointments: patients book for themselves, doctors see their own list
"""

import pytest


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="module")
def cast(make_user):
    """One user per role the clinical routes care about."""
    return {
        "patient": make_user(),
        "other_patient": make_user(),
        "doctor": make_user("doctor"),
        "nurse": make_user("nurse"),
        "technician": make_user("technician"),
    }


# ---------------------------------------------------------------------------
# Lab tests
# ---------------------------------------------------------------------------


class TestLabTests:
    def _create(self, client, cast, **extra):
        body = {"patientId": cast["patient"].id, "testType": "CBC", **extra}
        return client.post("/api/v1/tests", json=body, headers=cast["technician"].headers)

    def test_technician_creates_test(self, api_client, cast):
        client, _, _ = api_client
        resp = self._create(client, cast, priority="high")
        assert resp.status_code == 201
        test = resp.json()["data"]["test"]
        assert test["labCode"].startswith("LAB-")
        assert test["status"] == "requested"
        assert test["createdBy"] == cast["technician"].id

    def test_patient_cannot_create_or_list(self, api_client, cast):
        client, _, _ = api_client
        body = {"patientId": cast["patient"].id, "testType": "CBC"}
        assert client.post("/api/v1/tests", json=body, headers=cast["patient"].headers).status_code == 403
        assert client.get("/api/v1/tests", headers=cast["patient"].headers).status_code == 403

    def test_unknown_patient(self, api_client, cast):
        client, _, _ = api_client
        resp = client.post(
            "/api/v1/tests", json={"patientId": "nobody", "testType": "CBC"}, headers=cast["technician"].headers
        )
        assert resp.status_code == 404

    def test_status_transitions(self, api_client, cast):
        client, _, _ = api_client
        test_id = self._create(client, cast).json()["data"]["test"]["id"]
        headers = cast["technician"].headers

        skip = client.patch(f"/api/v1/tests/{test_id}", json={"status": "completed"}, headers=headers)
        assert skip.status_code == 409

        for status in ("in_progress", "completed"):
            resp = client.patch(f"/api/v1/tests/{test_id}", json={"status": status}, headers=headers)
            assert resp.status_code == 200
            assert resp.json()["data"]["test"]["status"] == status

        reopen = client.patch(f"/api/v1/tests/{test_id}", json={"status": "in_progress"}, headers=headers)
        assert reopen.status_code == 409

    def test_list_filters_and_stats(self, api_client, cast):
        client, _, _ = api_client
        self._create(client, cast, priority="emergency")
        headers = cast["technician"].headers
        resp = client.get("/api/v1/tests", params={"priority": "emergency"}, headers=headers)
        data = resp.json()["data"]
        assert data["total"] >= 1
        assert {t["priority"] for t in data["tests"]} == {"emergency"}

        stats = client.get("/api/v1/tests/stats", headers=headers).json()["data"]
        assert stats["byPriority"]["emergency"] >= 1

    def test_assign_is_admin_only_and_notifies(self, api_client, cast):
        client, admin_token, _ = api_client
        test_id = self._create(client, cast).json()["data"]["test"]["id"]
        body = {"technicianId": cast["technician"].id}

        denied = client.post(f"/api/v1/tests/{test_id}/assign", json=body, headers=cast["technician"].headers)
        assert denied.status_code == 403

        resp = client.post(f"/api/v1/tests/{test_id}/assign", json=body, headers=_auth(admin_token))
        assert resp.status_code == 200
        assert resp.json()["data"]["test"]["assignedTechnicianId"] == cast["technician"].id

        inbox = client.get("/api/v1/users/me/notifications", headers=cast["technician"].headers)
        assert "New Test Assigned" in [n["title"] for n in inbox.json()["data"]["notifications"]]

    def test_assign_to_non_technician(self, api_client, cast):
        client, admin_token, _ = api_client
        test_id = self._create(client, cast).json()["data"]["test"]["id"]
        resp = client.post(
            f"/api/v1/tests/{test_id}/assign", json={"technicianId": cast["doctor"].id}, headers=_auth(admin_token)
        )
        assert resp.status_code == 422

    def test_delete_is_admin_only(self, api_client, cast):
        client, admin_token, _ = api_client
        test_id = self._create(client, cast).json()["data"]["test"]["id"]
        assert client.delete(f"/api/v1/tests/{test_id}", headers=cast["technician"].headers).status_code == 403
        assert client.delete(f"/api/v1/tests/{test_id}", headers=_auth(admin_token)).status_code == 200
        assert client.get(f"/api/v1/tests/{test_id}", headers=cast["technician"].headers).status_code == 404


# ---------------------------------------------------------------------------
# Records and consent
# ---------------------------------------------------------------------------


class TestRecords:
    def test_patient_reads_own_record(self, api_client, cast):
        client, _, _ = api_client
        patient = cast["patient"]
        resp = client.get(f"/api/v1/records/{patient.id}", headers=patient.headers)
        assert resp.status_code == 200
        assert resp.json()["data"]["patientId"] == patient.id

    def test_patient_cannot_read_other_record(self, api_client, cast):
        client, _, _ = api_client
        resp = client.get(f"/api/v1/records/{cast['other_patient'].id}", headers=cast["patient"].headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["detail"] == "self_only"

    def test_technician_cannot_read_patient_record(self, api_client, cast):
        client, _, _ = api_client
        resp = client.get(f"/api/v1/records/{cast['patient'].id}", headers=cast["technician"].headers)
        assert resp.status_code == 403

    def test_share_grants_and_unshare_revokes(self, api_client, cast):
        client, _, _ = api_client
        patient, nurse = cast["other_patient"], cast["nurse"]
        path = f"/api/v1/records/{patient.id}"

        before = client.get(path, headers=nurse.headers)
        assert before.status_code == 403
        assert before.json()["error"]["detail"] == "no_consent"

        share = client.post(f"{path}/shares", json={"granteeId": nurse.id}, headers=patient.headers)
        assert share.status_code == 201
        assert client.get(path, headers=nurse.headers).status_code == 200

        unshare = client.delete(f"{path}/shares/{nurse.id}", headers=patient.headers)
        assert unshare.status_code == 200
        assert client.get(path, headers=nurse.headers).status_code == 403

    def test_share_only_with_clinicians(self, api_client, cast):
        client, _, _ = api_client
        patient = cast["patient"]
        resp = client.post(
            f"/api/v1/records/{patient.id}/shares",
            json={"granteeId": cast["technician"].id},
            headers=patient.headers,
        )
        assert resp.status_code == 422

    def test_cannot_share_someone_elses_record(self, api_client, cast):
        client, _, _ = api_client
        resp = client.post(
            f"/api/v1/records/{cast['other_patient'].id}/shares",
            json={"granteeId": cast["doctor"].id},
            headers=cast["patient"].headers,
        )
        assert resp.status_code == 403

    def test_unshare_missing(self, api_client, cast):
        client, _, _ = api_client
        patient = cast["patient"]
        resp = client.delete(f"/api/v1/records/{patient.id}/shares/{cast['nurse'].id}", headers=patient.headers)
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------


class TestAppointments:
    def test_patient_books_and_doctor_sees_it(self, api_client, cast):
        client, _, _ = api_client
        patient, doctor = cast["patient"], cast["doctor"]
        resp = client.post(
            "/api/v1/appointments",
            json={"doctorId": doctor.id, "scheduledAt": "2030-05-01T09:30:00Z", "reason": "checkup"},
            headers=patient.headers,
        )
        assert resp.status_code == 201
        appointment = resp.json()["data"]["appointment"]
        assert appointment["patientId"] == patient.id

        mine = client.get("/api/v1/appointments", headers=patient.headers).json()["data"]["appointments"]
        assert appointment["id"] in [a["id"] for a in mine]

        doctors = client.get("/api/v1/appointments", headers=doctor.headers).json()["data"]["appointments"]
        assert appointment["id"] in [a["id"] for a in doctors]

        inbox = client.get("/api/v1/users/me/notifications", headers=doctor.headers).json()["data"]
        assert "New Appointment" in [n["title"] for n in inbox["notifications"]]

    def test_patient_cannot_book_for_someone_else(self, api_client, cast):
        client, _, _ = api_client
        resp = client.post(
            "/api/v1/appointments",
            json={
                "doctorId": cast["doctor"].id,
                "scheduledAt": "2030-05-01T10:00:00Z",
                "patientId": cast["other_patient"].id,
            },
            headers=cast["patient"].headers,
        )
        assert resp.status_code == 403

    def test_doctor_must_be_a_doctor(self, api_client, cast):
        client, _, _ = api_client
        resp = client.post(
            "/api/v1/appointments",
            json={"doctorId": cast["nurse"].id, "scheduledAt": "2030-05-01T11:00:00Z"},
            headers=cast["patient"].headers,
        )
        assert resp.status_code == 422

    def test_technician_cannot_list_appointments(self, api_client, cast):
        client, _, _ = api_client
        assert client.get("/api/v1/appointments", headers=cast["technician"].headers).status_code == 403
