"""
Integration tests for API endpoints.

This module contains integration tests that verify the API endpoints
work correctly with the full application stack: middleware, services and
a real SQLite database.
"""
import base64
import json
from unittest.mock import patch

import pytest

from encryption.decoder import PayloadDecoder
from errors.exceptions import StoreError


# Mark all tests in this module as integration tests
pytestmark = pytest.mark.integration

EXAMPLE_REPORT = {"_type": "location", "lat": 52.5, "lon": 13.4, "tst": 1700000000}


def _basic(username: str, password: str) -> dict:
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


class TestIngestEndpoint:
    """Integration tests for POST /owntracks and /pub."""

    def test_location_is_stored_and_readable(self, client):
        response = client.post("/owntracks", json=EXAMPLE_REPORT)

        assert response.status_code == 200
        assert response.json() == {"success": True, "id": 1}

        stored = client.get("/locations/1").json()["data"]
        assert stored["_type"] == "location"
        assert stored["lat"] == 52.5
        assert stored["lon"] == 13.4
        assert stored["tst"] == 1700000000
        assert json.loads(stored["raw_json"]) == EXAMPLE_REPORT

    def test_pub_alias(self, client):
        response = client.post("/pub", json=EXAMPLE_REPORT)

        assert response.json() == {"success": True, "id": 1}

    def test_empty_body_returns_empty_list(self, client, context):
        response = client.post("/owntracks", content=b"")

        assert response.status_code == 200
        assert response.json() == []
        assert context.store.count() == 0

    def test_device_header_backfills_device(self, client):
        client.post("/owntracks", json=EXAMPLE_REPORT, headers={"X-Limit-D": "phone"})

        assert client.get("/locations/1").json()["data"]["device"] == "phone"

    def test_missing_coordinates_rejected(self, client, context):
        response = client.post(
            "/owntracks",
            json={"_type": "location", "tst": 1},
            headers={"X-Request-ID": "bad-report"},
        )

        body = response.json()
        assert response.status_code == 400
        assert body["error"] == "Invalid location data: lat and lon are required"
        assert body["error_code"] == "VALIDATION_ERROR"
        assert body["request_id"] == "bad-report"
        assert context.store.count() == 0

    @pytest.mark.parametrize("field, value", [("lat", 10 ** 400), ("tst", 10 ** 20)])
    def test_out_of_range_required_field_rejected(self, client, context, field, value):
        response = client.post("/owntracks", json={**EXAMPLE_REPORT, field: value})

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"
        assert context.store.count() == 0

    def test_oversized_optional_field_stored_as_null(self, client):
        response = client.post("/owntracks", json={**EXAMPLE_REPORT, "batt": 10 ** 20, "acc": 10 ** 400})

        assert response.status_code == 200
        stored = client.get("/locations/1").json()["data"]
        assert stored["batt"] is None
        assert stored["acc"] is None

    @pytest.mark.parametrize("content", [b"[1,2]", b"plain text"])
    def test_non_object_body_rejected(self, client, content):
        response = client.post("/owntracks", content=content)

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    @pytest.mark.parametrize("message_type", ["transition", "waypoint", "waypoints"])
    def test_non_location_reports_acknowledged(self, client, context, message_type):
        response = client.post("/owntracks", json={"_type": message_type, "event": "enter"})

        assert response.json() == {"success": True}
        assert context.store.count() == 0

    def test_store_failure_returns_500(self, client, context):
        with patch.object(context.store, "insert", side_effect=StoreError()):
            response = client.post("/owntracks", json=EXAMPLE_REPORT)

        assert response.status_code == 500
        assert response.json()["error_code"] == "STORE_UNAVAILABLE"

    def test_unexpected_failure_returns_generic_500(self, client, context):
        with patch.object(context.store, "insert", side_effect=RuntimeError("disk on fire")):
            response = client.post("/owntracks", json=EXAMPLE_REPORT)

        assert response.status_code == 500
        assert response.json()["error"] == "Internal server error"
        assert "disk on fire" not in response.text


class TestLocationsEndpoints:
    """Integration tests for GET /locations and /locations/{id}."""

    def _seed(self, client):
        for tst, device in ((100, "phone"), (300, "tablet"), (200, "phone")):
            client.post("/owntracks", json={**EXAMPLE_REPORT, "tst": tst, "device": device})

    def test_newest_first(self, client):
        self._seed(client)

        body = client.get("/locations").json()

        assert body["success"] is True
        assert body["count"] == 3
        assert [r["tst"] for r in body["data"]] == [300, 200, 100]

    def test_limit_and_device_filter(self, client):
        self._seed(client)

        body = client.get("/locations", params={"device": "phone", "limit": 1}).json()

        assert body["count"] == 1
        assert body["data"][0]["tst"] == 200

    def test_empty_store(self, client):
        assert client.get("/locations").json() == {"success": True, "count": 0, "data": []}

    def test_non_integer_limit_rejected(self, client):
        response = client.get("/locations", params={"limit": "many"})

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_limit_above_cap_rejected(self, client):
        response = client.get("/locations", params={"limit": str(10 ** 20)})

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_limit_at_cap_accepted(self, client):
        self._seed(client)

        assert client.get("/locations", params={"limit": 10000}).json()["count"] == 3

    def test_unknown_id_is_404(self, client):
        response = client.get("/locations/999")

        assert response.status_code == 404
        assert response.json()["error"] == "Location not found"

    def test_non_integer_id_rejected(self, client):
        assert client.get("/locations/abc").status_code == 400

    def test_huge_id_is_404(self, client):
        assert client.get(f"/locations/{10 ** 20}").status_code == 404


class TestCleanupEndpoint:
    """Integration tests for POST /cleanup."""

    def test_cleanup_deletes_expired_records(self, make_client, age_records):
        client = make_client(db_ttl=3600)
        client.post("/owntracks", json=EXAMPLE_REPORT)
        age_records(7200)
        client.post("/owntracks", json=EXAMPLE_REPORT)

        first = client.post("/cleanup").json()
        second = client.post("/cleanup").json()

        assert first == {"success": True, "deletedRecords": 1}
        assert second == {"success": True, "deletedRecords": 0}
        assert client.get("/locations").json()["count"] == 1

    def test_cleanup_failure_returns_500(self, client, context):
        with patch.object(context.store, "evict_expired", side_effect=StoreError()):
            response = client.post("/cleanup")

        assert response.status_code == 500
        assert response.json()["error_code"] == "STORE_UNAVAILABLE"


class TestHealthEndpoints:
    """Integration tests for health check endpoints."""

    def test_health_reports_statistics(self, client):
        client.post("/owntracks", json=EXAMPLE_REPORT)

        response = client.get("/health")

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "ok"
        assert body["database"] == {
            "totalRecords": 1,
            "oldestRecord": 1700000000,
            "newestRecord": 1700000000,
        }

    def test_health_is_503_when_store_fails(self, client, context):
        with patch.object(context.store, "stats", side_effect=StoreError()):
            response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "error"

    def test_live_and_ready(self, client):
        assert client.get("/health/live").json()["status"] == "alive"

        ready = client.get("/health/ready")
        assert ready.status_code == 200
        assert ready.json()["status"] == "healthy"

    def test_ready_is_503_when_database_fails(self, client, context):
        with patch.object(context.store, "ping", side_effect=StoreError()):
            response = client.get("/health/ready")

        assert response.status_code == 503


class TestAuthentication:
    """Integration tests with basic authentication enabled."""

    @pytest.fixture
    def auth_client(self, make_client, credentials):
        return make_client(
            auth_username=credentials["username"],
            auth_password=credentials["password_hash"],
        )

    def test_requests_without_credentials_rejected(self, auth_client):
        response = auth_client.post("/owntracks", json=EXAMPLE_REPORT)

        assert response.status_code == 401
        assert "WWW-Authenticate" in response.headers
        assert "X-Request-ID" in response.headers

    def test_wrong_password_rejected(self, auth_client, credentials):
        response = auth_client.get("/locations", headers=_basic(credentials["username"], "nope"))

        assert response.status_code == 401

    def test_valid_credentials_accepted(self, auth_client, credentials):
        response = auth_client.post(
            "/owntracks",
            json=EXAMPLE_REPORT,
            headers=_basic(credentials["username"], credentials["password"]),
        )

        assert response.json() == {"success": True, "id": 1}

    @pytest.mark.parametrize("path", ["/health", "/health/live", "/health/ready"])
    def test_health_paths_need_no_credentials(self, auth_client, path):
        assert auth_client.get(path).status_code == 200

    def test_cors_preflight_needs_no_credentials(self, auth_client):
        response = auth_client.options(
            "/owntracks",
            headers={
                "Origin": "https://map.example.org",
                "Access-Control-Request-Method": "POST",
            },
        )

        assert response.status_code == 200
        assert "access-control-allow-origin" in response.headers


class TestEncryptedIngest:
    """Integration tests with payload encryption enabled."""

    KEY = "correct horse battery staple"

    @pytest.fixture
    def encrypted_client(self, make_client):
        return make_client(encryption_key=self.KEY)

    def test_encrypted_wrapper_is_stored(self, encrypted_client):
        body = PayloadDecoder(self.KEY).wrap(EXAMPLE_REPORT)

        response = encrypted_client.post("/owntracks", json=body)

        assert response.json() == {"success": True, "id": 1}
        stored = encrypted_client.get("/locations/1").json()["data"]
        assert json.loads(stored["raw_json"]) == EXAMPLE_REPORT

    def test_bare_ciphertext_is_stored(self, encrypted_client):
        ciphertext = PayloadDecoder(self.KEY).encrypt(EXAMPLE_REPORT)

        response = encrypted_client.post("/pub", content=ciphertext.encode())

        assert response.json()["success"] is True

    def test_wrong_key_is_400_and_writes_nothing(self, encrypted_client):
        body = PayloadDecoder("some other key").wrap(EXAMPLE_REPORT)

        response = encrypted_client.post("/owntracks", json=body)

        assert response.status_code == 400
        assert response.json()["error_code"] == "DECODE_ERROR"
        assert encrypted_client.get("/locations").json()["count"] == 0


class TestRateLimiting:
    """Integration tests for per-client rate limiting."""

    def test_requests_over_limit_get_429(self, make_client):
        client = make_client(rate_limit_requests_per_minute=2)

        statuses = [client.get("/locations").status_code for _ in range(3)]

        assert statuses == [200, 200, 429]


class TestRequestId:
    """Integration tests for request correlation."""

    def test_request_id_echoed(self, client):
        response = client.get("/locations", headers={"X-Request-ID": "trace-me"})

        assert response.headers["X-Request-ID"] == "trace-me"
