"""
Error Envelope Tests
====================

Verifies that every failure leaves the API as
{"success": false, "error", "error_code", "message"?, "details"?} with the
documented status codes.

Run with:
    pytest tests/test_error_responses.py -v
"""
import sys
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from sqlalchemy.exc import OperationalError

sys.path.insert(0, str(Path(__file__).parent.parent))

from api.errors import (
    DependencyCycleError,
    FeatureDisableBlockedError,
    GenerationError,
    PersistenceError,
    SelfDependencyError,
    UnknownFeatureError,
)
from server.exceptions import (
    BadRequestError,
    ErrorCode,
    ErrorResponse,
    NotFoundError,
    create_error_response,
    register_exception_handlers,
)


class Payload(BaseModel):
    name: str
    count: int


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/unknown-feature")
    def unknown_feature():
        raise UnknownFeatureError("ghost")

    @app.get("/blocked")
    def blocked():
        raise FeatureDisableBlockedError("base", ["priority", "tags"])

    @app.get("/self")
    def self_dependency():
        raise SelfDependencyError("base")

    @app.get("/cycle")
    def cycle():
        raise DependencyCycleError("a", "b", ["a", "b", "a"])

    @app.get("/store")
    def store():
        raise PersistenceError("transaction", OperationalError("BEGIN", {}, Exception("disk I/O error")))

    @app.get("/generation")
    def generation():
        raise GenerationError("provider exploded")

    @app.get("/not-found")
    def not_found():
        raise NotFoundError("dependency", "a -> b")

    @app.get("/bad-request")
    def bad_request():
        raise BadRequestError("Bad input", details={"field": "x"})

    @app.get("/crash")
    def crash():
        raise RuntimeError("secret internals")

    @app.post("/validate")
    def validate(payload: Payload):
        return payload

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client


class TestDomainErrors:
    """api.errors kinds map to status codes."""

    def test_not_found(self, client):
        response = client.get("/unknown-feature")

        assert response.status_code == 404
        assert response.json()["error_code"] == ErrorCode.NOT_FOUND
        assert response.json()["details"] == {"resource": "feature", "id": "ghost"}

    def test_disable_blocked_has_hint(self, client):
        response = client.get("/blocked")

        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == ErrorCode.CONFLICT
        assert body["message"] == "Disable or remove these features first: priority, tags"
        assert body["details"]["dependent_features"] == ["priority", "tags"]

    def test_self_dependency_is_validation(self, client):
        response = client.get("/self")

        assert response.status_code == 400
        assert response.json()["error_code"] == ErrorCode.VALIDATION_ERROR

    def test_cycle_is_conflict(self, client):
        response = client.get("/cycle")

        assert response.status_code == 400
        assert response.json()["details"]["cycle"] == ["a", "b", "a"]

    def test_persistence_hides_internals(self, client):
        response = client.get("/store")

        assert response.status_code == 500
        body = response.json()
        assert body["error_code"] == ErrorCode.DATABASE_ERROR
        assert body["error"] == "Feature store operation failed"
        assert "disk I/O" not in response.text

    def test_unmapped_kind_is_internal(self, client):
        response = client.get("/generation")

        assert response.status_code == 500
        assert response.json()["error_code"] == ErrorCode.INTERNAL_ERROR


class TestApiErrors:
    def test_not_found(self, client):
        response = client.get("/not-found")

        assert response.status_code == 404
        assert response.json()["error"] == "Dependency 'a -> b' not found"

    def test_bad_request(self, client):
        response = client.get("/bad-request")

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "error": "Bad input",
            "error_code": ErrorCode.BAD_REQUEST,
            "details": {"field": "x"},
        }


class TestFrameworkErrors:
    def test_request_validation_is_400(self, client):
        response = client.post("/validate", json={"name": "x", "count": "many"})

        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == ErrorCode.VALIDATION_ERROR
        assert body["error"].startswith("Validation error on field 'count'")

    def test_multiple_validation_errors(self, client):
        response = client.post("/validate", json={})

        assert response.json()["error"] == "Validation failed with 2 errors"
        assert {e["field"] for e in response.json()["details"]["errors"]} == {"name", "count"}

    def test_unknown_route(self, client):
        response = client.get("/does-not-exist")

        assert response.status_code == 404
        assert response.json()["success"] is False
        assert response.json()["error_code"] == ErrorCode.NOT_FOUND

    def test_method_not_allowed(self, client):
        response = client.delete("/blocked")

        assert response.status_code == 405
        assert response.json()["error_code"] == ErrorCode.BAD_REQUEST

    def test_unhandled_exception(self, client):
        response = client.get("/crash")

        assert response.status_code == 500
        assert response.json()["error_code"] == ErrorCode.INTERNAL_ERROR
        assert "secret internals" not in response.text


class TestEnvelopeHelpers:
    def test_optional_keys_are_omitted(self):
        assert create_error_response("CONFLICT", "Nope") == {
            "success": False,
            "error": "Nope",
            "error_code": "CONFLICT",
        }

    def test_schema_defaults(self):
        envelope = ErrorResponse(error="x", error_code="NOT_FOUND")

        assert envelope.success is False
        assert envelope.message is None
