"""
Tests for nursing record endpoints.
"""

from datetime import date

from fastapi.testclient import TestClient

from app.db.models import BonusCalculationHistory, InsuranceType, NursingRecord, Patient


def visit_body(patient, start: str, end: str, **fields) -> dict:
    body = {
        "patient_id": str(patient.patient_id),
        "status": "completed",
        "visit_date": "2024-06-01",
        "actual_start_time": f"2024-06-01T{start}:00",
        "actual_end_time": f"2024-06-01T{end}:00",
    }
    body.update(fields)
    return body


def create_visit(client, headers, patient, start, end, **fields) -> dict:
    response = client.post("/nursing-records/", json=visit_body(patient, start, end, **fields), headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


class TestCreateNursingRecord:
    """Test recording visits over HTTP."""

    def test_first_visit(self, client: TestClient, nurse_headers, nurse_user, patient, service_codes, bonus_catalog):
        data = create_visit(client, nurse_headers, patient, "08:00", "08:30")

        assert data["nurse_id"] == str(nurse_user.user_id)
        assert data["daily_visit_count"] == 1
        assert data["base_points"] == 816
        assert data["is_default_service_code"] is True
        assert data["calculated_points"] == 816
        assert data["bonus_history"] == []

    def test_second_visit_same_day(self, client: TestClient, nurse_headers, patient, service_codes, bonus_catalog):
        create_visit(client, nurse_headers, patient, "08:00", "08:30")
        data = create_visit(
            client, nurse_headers, patient, "14:00", "14:40", emergency_visit_reason="Sudden fever"
        )

        assert data["daily_visit_count"] == 2
        assert data["base_points"] == 0
        assert data["calculated_points"] == 265 + 450
        assert [b["bonus_code"] for b in data["bonus_history"]] == ["emergency_visit", "multiple_visit"]

    def test_timezone_aware_times_are_clinic_local(self, client: TestClient, nurse_headers, patient, service_codes):
        body = visit_body(patient, "08:00", "08:30")
        body["actual_start_time"] = "2024-05-31T23:00:00Z"
        body["actual_end_time"] = "2024-05-31T23:30:00Z"
        response = client.post("/nursing-records/", json=body, headers=nurse_headers)
        assert response.status_code == 201
        assert response.json()["actual_start_time"] == "2024-06-01T08:00:00"

    def test_end_before_start_rejected(self, client: TestClient, nurse_headers, patient):
        response = client.post(
            "/nursing-records/", json=visit_body(patient, "10:00", "09:00"), headers=nurse_headers
        )
        assert response.status_code == 422

    def test_invalid_status_rejected(self, client: TestClient, nurse_headers, patient):
        response = client.post(
            "/nursing-records/", json=visit_body(patient, "08:00", "08:30", status="billed"), headers=nurse_headers
        )
        assert response.status_code == 422

    def test_unknown_service_code_rejected(self, client: TestClient, nurse_headers, patient):
        response = client.post(
            "/nursing-records/",
            json=visit_body(patient, "08:00", "08:30", service_code_id="00000000-0000-0000-0000-000000000000"),
            headers=nurse_headers,
        )
        assert response.status_code == 400

    def test_clerk_cannot_record_visits(self, client: TestClient, clerk_headers, patient):
        response = client.post(
            "/nursing-records/", json=visit_body(patient, "08:00", "08:30"), headers=clerk_headers
        )
        assert response.status_code == 403

    def test_other_facility_patient_not_found(self, client: TestClient, db, nurse_headers, other_facility):
        stranger = Patient(
            facility_id=other_facility.facility_id,
            patient_number="X001",
            last_name="Suzuki",
            first_name="Taro",
            date_of_birth=date(1950, 1, 1),
            insurance_type=InsuranceType.MEDICAL,
        )
        db.add(stranger)
        db.commit()
        response = client.post(
            "/nursing-records/", json=visit_body(stranger, "08:00", "08:30"), headers=nurse_headers
        )
        assert response.status_code == 404


class TestPreview:
    """Test the dry-run calculation endpoint."""

    def test_preview_writes_nothing(self, client: TestClient, db, nurse_headers, patient, service_codes,
                                    bonus_catalog):
        create_visit(client, nurse_headers, patient, "08:00", "08:30")
        history_before = db.query(BonusCalculationHistory).count()

        response = client.post(
            "/nursing-records/preview",
            json=visit_body(patient, "14:00", "15:40"),
            headers=nurse_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["daily_visit_count"] == 2
        assert data["base_points"] == 0
        assert data["insurance_type"] == "care"
        assert sorted(b["bonus_code"] for b in data["applied_bonuses"]) == ["long_visit", "multiple_visit"]
        assert db.query(NursingRecord).count() == 1
        assert db.query(BonusCalculationHistory).count() == history_before

    def test_preview_of_edit_does_not_count_itself(self, client: TestClient, db, nurse_headers, patient,
                                                   service_codes, bonus_catalog):
        record = create_visit(client, nurse_headers, patient, "08:00", "08:30")

        response = client.post(
            f"/nursing-records/preview?record_id={record['record_id']}",
            json=visit_body(patient, "08:00", "09:40"),
            headers=nurse_headers,
        )

        data = response.json()
        assert data["daily_visit_count"] == 1
        assert [b["bonus_code"] for b in data["applied_bonuses"]] == ["long_visit"]

        stored = client.get(f"/nursing-records/{record['record_id']}", headers=nurse_headers).json()
        assert stored["calculated_points"] == 816
        assert stored["bonus_history"] == []


class TestUpdateAndDelete:
    """Test that edits recalculate the whole day."""

    def test_moving_a_visit_reorders_the_day(self, client: TestClient, nurse_headers, patient, service_codes,
                                             bonus_catalog):
        first = create_visit(client, nurse_headers, patient, "08:00", "08:30")
        second = create_visit(client, nurse_headers, patient, "14:00", "14:40")

        response = client.put(
            f"/nursing-records/{first['record_id']}",
            json={"actual_start_time": "2024-06-01T16:00:00", "actual_end_time": "2024-06-01T16:30:00"},
            headers=nurse_headers,
        )
        assert response.status_code == 200
        moved = response.json()
        assert moved["daily_visit_count"] == 2
        assert moved["base_points"] == 0

        other = client.get(f"/nursing-records/{second['record_id']}", headers=nurse_headers).json()
        assert other["daily_visit_count"] == 1
        assert other["base_points"] == 816
        assert other["bonus_history"] == []

    def test_update_rejects_null_visit_date(self, client: TestClient, nurse_headers, patient, service_codes):
        record = create_visit(client, nurse_headers, patient, "08:00", "08:30")
        response = client.put(
            f"/nursing-records/{record['record_id']}", json={"visit_date": None}, headers=nurse_headers
        )
        assert response.status_code == 400

    def test_update_rejects_end_before_start(self, client: TestClient, nurse_headers, patient, service_codes):
        record = create_visit(client, nurse_headers, patient, "08:00", "08:30")
        response = client.put(
            f"/nursing-records/{record['record_id']}",
            json={"actual_end_time": "2024-06-01T07:00:00"},
            headers=nurse_headers,
        )
        assert response.status_code == 400

    def test_delete_recalculates_siblings(self, client: TestClient, nurse_headers, patient, service_codes,
                                          bonus_catalog):
        first = create_visit(client, nurse_headers, patient, "08:00", "08:30")
        second = create_visit(client, nurse_headers, patient, "14:00", "14:40")

        response = client.delete(f"/nursing-records/{first['record_id']}", headers=nurse_headers)
        assert response.status_code == 204

        assert client.get(f"/nursing-records/{first['record_id']}", headers=nurse_headers).status_code == 404
        remaining = client.get(f"/nursing-records/{second['record_id']}", headers=nurse_headers).json()
        assert remaining["daily_visit_count"] == 1
        assert remaining["base_points"] == 816


class TestBonusServiceCode:
    """Test choosing a bonus's receipt service code by hand."""

    def test_clerk_sets_service_code(self, client: TestClient, nurse_headers, clerk_headers, patient,
                                     service_codes, bonus_catalog):
        create_visit(client, nurse_headers, patient, "08:00", "08:30")
        record = create_visit(client, nurse_headers, patient, "14:00", "14:40")
        code_id = str(service_codes["131211"].service_code_id)

        response = client.patch(
            f"/nursing-records/{record['record_id']}/bonuses/multiple_visit/service-code",
            json={"service_code_id": code_id},
            headers=clerk_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["service_code_id"] == code_id
        assert data["is_manually_adjusted"] is True

    def test_bonus_not_applied(self, client: TestClient, nurse_headers, clerk_headers, patient, service_codes,
                               bonus_catalog):
        record = create_visit(client, nurse_headers, patient, "08:00", "08:30")
        response = client.patch(
            f"/nursing-records/{record['record_id']}/bonuses/long_visit/service-code",
            json={"service_code_id": None},
            headers=clerk_headers,
        )
        assert response.status_code == 404

    def test_nurse_cannot_set_service_code(self, client: TestClient, nurse_headers, patient, service_codes,
                                           bonus_catalog):
        record = create_visit(client, nurse_headers, patient, "08:00", "08:30")
        response = client.patch(
            f"/nursing-records/{record['record_id']}/bonuses/long_visit/service-code",
            json={"service_code_id": None},
            headers=nurse_headers,
        )
        assert response.status_code == 403
