"""
Tests for bonus catalog endpoints.
"""

from fastapi.testclient import TestClient


def definition_body(**fields) -> dict:
    body = {
        "bonus_code": "night_visit",
        "bonus_name": "夜間・早朝訪問看護加算",
        "insurance_type": "care",
        "points_type": "fixed",
        "fixed_points": 210,
        "predefined_conditions": [{"pattern": "care_night_time"}],
        "valid_from": "2024-01-01",
        "valid_to": "2024-12-31",
    }
    body.update(fields)
    return body


class TestCreateBonusDefinition:
    """Test adding catalog entries."""

    def test_manager_creates_facility_definition(self, client: TestClient, manager_headers, facility):
        response = client.post("/bonus-definitions/", json=definition_body(), headers=manager_headers)

        assert response.status_code == 201
        data = response.json()
        assert data["facility_id"] == str(facility.facility_id)
        assert data["is_global"] is False
        assert data["fixed_points"] == 210

    def test_admin_creates_global_definition(self, client: TestClient, admin_headers):
        response = client.post(
            "/bonus-definitions/", json=definition_body(is_global=True), headers=admin_headers
        )
        assert response.status_code == 201
        assert response.json()["facility_id"] is None
        assert response.json()["is_global"] is True

    def test_manager_cannot_create_global_definition(self, client: TestClient, manager_headers):
        response = client.post(
            "/bonus-definitions/", json=definition_body(is_global=True), headers=manager_headers
        )
        assert response.status_code == 403

    def test_nurse_cannot_edit_catalog(self, client: TestClient, nurse_headers):
        response = client.post("/bonus-definitions/", json=definition_body(), headers=nurse_headers)
        assert response.status_code == 403

    def test_overlapping_window_conflicts(self, client: TestClient, manager_headers):
        first = client.post("/bonus-definitions/", json=definition_body(), headers=manager_headers)
        assert first.status_code == 201

        response = client.post(
            "/bonus-definitions/",
            json=definition_body(valid_from="2024-06-01", valid_to=None, fixed_points=220),
            headers=manager_headers,
        )

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["code"] == "definition_overlap"
        assert detail["conflicting_id"] == first.json()["definition_id"]

    def test_adjacent_window_accepted(self, client: TestClient, manager_headers):
        client.post("/bonus-definitions/", json=definition_body(), headers=manager_headers)
        response = client.post(
            "/bonus-definitions/",
            json=definition_body(valid_from="2025-01-01", valid_to=None, fixed_points=220),
            headers=manager_headers,
        )
        assert response.status_code == 201

    def test_fixed_points_required(self, client: TestClient, manager_headers):
        response = client.post(
            "/bonus-definitions/", json=definition_body(fixed_points=None), headers=manager_headers
        )
        assert response.status_code == 422

    def test_unknown_conditional_pattern_rejected(self, client: TestClient, manager_headers):
        response = client.post(
            "/bonus-definitions/",
            json=definition_body(points_type="conditional", conditional_pattern="lunar_phase",
                                 points_config={"a": 1}),
            headers=manager_headers,
        )
        assert response.status_code == 422

    def test_window_must_not_end_before_start(self, client: TestClient, manager_headers):
        response = client.post(
            "/bonus-definitions/",
            json=definition_body(valid_from="2024-06-01", valid_to="2024-05-01"),
            headers=manager_headers,
        )
        assert response.status_code == 422


class TestManageBonusDefinitions:
    """Test listing, editing and deactivating catalog entries."""

    def test_list_includes_global_and_facility(self, client: TestClient, manager_headers, bonus_catalog):
        client.post("/bonus-definitions/", json=definition_body(), headers=manager_headers)

        response = client.get("/bonus-definitions/", headers=manager_headers)

        assert response.status_code == 200
        codes = [d["bonus_code"] for d in response.json()]
        assert set(codes) == {"emergency_visit", "multiple_visit", "long_visit", "night_visit"}
        assert codes[:3] == ["emergency_visit", "multiple_visit", "long_visit"]

    def test_update_rechecks_overlap(self, client: TestClient, manager_headers):
        client.post("/bonus-definitions/", json=definition_body(), headers=manager_headers)
        later = client.post(
            "/bonus-definitions/",
            json=definition_body(valid_from="2025-01-01", valid_to=None),
            headers=manager_headers,
        ).json()

        response = client.put(
            f"/bonus-definitions/{later['definition_id']}",
            json={"valid_from": "2024-10-01"},
            headers=manager_headers,
        )
        assert response.status_code == 409

        response = client.put(
            f"/bonus-definitions/{later['definition_id']}",
            json={"fixed_points": 230},
            headers=manager_headers,
        )
        assert response.status_code == 200
        assert response.json()["fixed_points"] == 230

    def test_manager_cannot_edit_global_definition(self, client: TestClient, manager_headers, bonus_catalog):
        definition_id = bonus_catalog["long_visit"].definition_id
        response = client.put(
            f"/bonus-definitions/{definition_id}", json={"fixed_points": 1}, headers=manager_headers
        )
        assert response.status_code == 403

    def test_deactivate(self, client: TestClient, manager_headers):
        created = client.post("/bonus-definitions/", json=definition_body(), headers=manager_headers).json()

        response = client.delete(f"/bonus-definitions/{created['definition_id']}", headers=manager_headers)

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        listed = client.get("/bonus-definitions/", headers=manager_headers).json()
        assert created["definition_id"] not in [d["definition_id"] for d in listed]
        listed = client.get("/bonus-definitions/?include_inactive=true", headers=manager_headers).json()
        assert created["definition_id"] in [d["definition_id"] for d in listed]
