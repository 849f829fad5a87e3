"""
Tests for authentication endpoints.
"""

from datetime import timedelta

from fastapi.testclient import TestClient

from app.core.security import create_access_token, decode_access_token


class TestAuthEndpoints:
    """Test authentication-related API endpoints."""

    def test_login_success(self, client: TestClient, nurse_user):
        """Test successful login returns a facility-bound token."""
        response = client.post(
            "/auth/login",
            json={
                "email": "nurse@example.com",
                "password": "testpass123",
            }
        )
        assert response.status_code == 200
        data = response.json()
        assert data["user_id"] == str(nurse_user.user_id)
        assert data["role"] == "nurse"
        assert data["facility_id"] == str(nurse_user.facility_id)

        payload = decode_access_token(data["access_token"])
        assert payload["sub"] == str(nurse_user.user_id)
        assert payload["facility_id"] == str(nurse_user.facility_id)

    def test_login_wrong_password(self, client: TestClient, nurse_user):
        """Test login with wrong password fails."""
        response = client.post(
            "/auth/login",
            json={
                "email": "nurse@example.com",
                "password": "wrongpassword",
            }
        )
        assert response.status_code == 401

    def test_login_nonexistent_user(self, client: TestClient):
        """Test login with non-existent user fails."""
        response = client.post(
            "/auth/login",
            json={
                "email": "nobody@example.com",
                "password": "anypassword",
            }
        )
        assert response.status_code == 401

    def test_login_inactive_user(self, client: TestClient, db, nurse_user):
        """Test deactivated staff cannot log in."""
        nurse_user.is_active = False
        db.commit()
        response = client.post(
            "/auth/login",
            json={"email": "nurse@example.com", "password": "testpass123"},
        )
        assert response.status_code == 401

    def test_me_endpoint(self, client: TestClient, nurse_headers, nurse_user):
        """Test getting current user info."""
        response = client.get("/auth/me", headers=nurse_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["email"] == nurse_user.email
        assert data["user_id"] == str(nurse_user.user_id)
        assert data["specialist_certifications"] == ["緩和ケア"]

    def test_me_endpoint_unauthorized(self, client: TestClient):
        """Test /me endpoint without auth fails."""
        response = client.get("/auth/me")
        assert response.status_code in (401, 403)

    def test_logout(self, client: TestClient):
        response = client.post("/auth/logout")
        assert response.status_code == 200


class TestAuthSecurity:
    """Test authentication security measures."""

    def test_password_not_in_response(self, client: TestClient, nurse_user):
        """Ensure password is never returned in responses."""
        response = client.post(
            "/auth/login",
            json={"email": "nurse@example.com", "password": "testpass123"},
        )
        data = response.json()
        assert "password" not in data
        assert "password_hash" not in data

    def test_invalid_token_rejected(self, client: TestClient):
        """Test that invalid tokens are rejected."""
        response = client.get(
            "/auth/me",
            headers={"Authorization": "Bearer invalid_token_here"}
        )
        assert response.status_code == 401

    def test_expired_token_rejected(self, client: TestClient, nurse_user):
        token = create_access_token(
            {"sub": str(nurse_user.user_id), "role": "nurse", "facility_id": str(nurse_user.facility_id)},
            expires_delta=timedelta(minutes=-5),
        )
        response = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_malformed_scheme_rejected(self, client: TestClient):
        """Test that malformed tokens are rejected."""
        response = client.get(
            "/auth/me",
            headers={"Authorization": "NotBearer token"}
        )
        assert response.status_code in (401, 403)

    def test_token_without_facility_rejected(self, client: TestClient, nurse_user, patient):
        token = create_access_token({"sub": str(nurse_user.user_id), "role": "nurse"})
        response = client.get(
            f"/nursing-records/{patient.patient_id}",
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 401
