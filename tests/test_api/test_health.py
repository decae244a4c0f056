"""
Tests for Health Endpoints
"""

import pytest
from fastapi import status
from fastapi.testclient import TestClient


class TestHealth:
    """Tests for root and health endpoints"""

    @pytest.mark.api
    def test_root(self, client: TestClient):
        response = client.get("/")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "healthy"

    @pytest.mark.api
    def test_health_reports_backend_and_counts(self, client: TestClient):
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["checks"]["database"]["status"] == "up"
        assert data["checks"]["notifications"]["backend"] == "memory"
        assert data["config"]["horizon_days"] == 30
        assert data["reminders"]["occurrences_pending"] >= 0
        assert set(data["reminders"]) >= {"medications", "active_medications", "live_handles"}

    @pytest.mark.api
    def test_unknown_route_is_json_error(self, client: TestClient):
        response = client.get("/api/v1/nothing-here")

        assert response.status_code == status.HTTP_404_NOT_FOUND
