"""Tests for the shared error envelope."""

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from tokenward.api.schemas import Envelope, ErrorBody
from tokenward.app import create_app
from tokenward.service.errors import AccountLockedError, RateLimitedError
from tokenward.storage.errors import ConstraintViolation


@pytest.fixture
def app():
    app = create_app()

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom with secret details")

    @app.get("/locked")
    async def locked():
        raise AccountLockedError(7)

    @app.get("/limited")
    async def limited():
        raise RateLimitedError("slow down", detail={"retry_after_seconds": 12})

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    return app


class TestErrorEnvelope:
    def test_unhandled_exception_is_generic_500(self, app):
        """Test that internal errors never leak their message."""
        client = TestClient(app, raise_server_exceptions=False)

        response = client.get("/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "server_error"
        assert "kaboom" not in response.text

    def test_service_error_carries_code_and_details(self, app):
        response = TestClient(app).get("/locked")

        assert response.status_code == 423
        assert response.json()["error"] == {
            "code": "account_locked",
            "message": "account locked, try again in 7 minute(s)",
            "details": {"minutes_remaining": 7},
        }

    def test_rate_limited_sets_retry_after(self, app):
        response = TestClient(app).get("/limited")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "12"

    def test_constraint_violation_is_conflict(self, app):
        response = TestClient(app).get("/conflict")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_unknown_route_uses_envelope(self, app):
        response = TestClient(app).get("/api/nope")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_every_envelope_has_request_id(self, app):
        response = TestClient(app).get("/locked")

        assert response.json()["request_id"]


class TestErrorBody:
    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="made_up", message="nope")

    def test_status_must_be_ok_or_error(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
