"""
Feature API Tests
=================

Exercises the /api/features routes through FastAPI's TestClient against an
in-memory feature store. The generation provider and the test runner are
replaced with fakes so /generate runs without a model or a JS toolchain.

Run with:
    pytest tests/test_features_api.py -v
"""
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent))

from api.builder_settings import BuilderSettings
from api.errors import GenerationError
from api.generation_provider import GenerationProvider
from api.test_runner import TestExecutionResult, TestRunner
from server.main import create_app
from server.services import build_services


class FakeProvider(GenerationProvider):
    name = "fake"

    async def generate(self, prompt, session_id=None):
        if "BrokenWidget" in prompt:
            raise GenerationError("model refused")
        return (
            "```tsx\n// src/components/PriorityBadge.tsx\n"
            "export const PriorityBadge = () => null;\n```\n"
            "```tsx\n// src/components/PriorityBadge.test.tsx\n"
            "it('renders', () => {});\n```\n"
        )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def runner():
    mock = MagicMock(spec=TestRunner)
    mock.run.return_value = TestExecutionResult(passed=True, exit_code=0, passed_tests=1, total_tests=1)
    return mock


@pytest.fixture
def services(tmp_path, runner):
    settings = BuilderSettings(
        project_root=tmp_path,
        database_url="sqlite://",
        generation_timeout=5,
        coverage_command="",
        lint_command="",
        typecheck_command="",
    )
    services = build_services(settings, provider=FakeProvider(), runner=runner)
    yield services
    services.close()


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as client:
        yield client


def _register(client, feature_id, **extra):
    payload = {"id": feature_id, "name": feature_id.title(), **extra}
    response = client.post("/api/features", json=payload)
    assert response.status_code == 201, response.json()
    return response.json()["data"]


@pytest.fixture
def base_and_priority(client):
    _register(client, "base")
    _register(client, "priority", dependencies=[{"depends_on": "base"}])
    return client


# =============================================================================
# Registry routes
# =============================================================================

class TestHealth:
    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"success": True, "data": {"status": "healthy"}}


class TestFeatureCrud:
    """Register, list, get, delete."""

    def test_register(self, client):
        data = _register(client, "tags", version="2.0.0", api_endpoints=["/api/tags"])

        assert data["id"] == "tags"
        assert data["version"] == "2.0.0"
        assert data["enabled"] is True
        assert data["api_endpoints"] == ["/api/tags"]

    def test_register_duplicate(self, client):
        _register(client, "tags")

        response = client.post("/api/features", json={"id": "tags", "name": "Again"})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == "CONFLICT"

    def test_register_invalid_id(self, client):
        response = client.post("/api/features", json={"id": "../bad", "name": "Bad"})

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"
        assert response.json()["details"]["errors"][0]["field"] == "id"

    def test_list_and_active_filter(self, client):
        _register(client, "on")
        _register(client, "off", enabled=False)

        all_ids = [f["id"] for f in client.get("/api/features").json()["data"]]
        active_ids = [f["id"] for f in client.get("/api/features?active=true").json()["data"]]

        assert sorted(all_ids) == ["off", "on"]
        assert active_ids == ["on"]

    def test_get(self, client):
        _register(client, "tags")

        response = client.get("/api/features/tags")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["data"]["name"] == "Tags"

    def test_get_unknown(self, client):
        response = client.get("/api/features/ghost")

        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "error": "Feature 'ghost' not found",
            "error_code": "NOT_FOUND",
            "details": {"resource": "feature", "id": "ghost"},
        }

    def test_delete(self, client):
        _register(client, "tags")

        response = client.delete("/api/features/tags")

        assert response.status_code == 200
        assert response.json()["data"] == {"id": "tags"}
        assert client.get("/api/features/tags").status_code == 404

    def test_delete_blocked_by_dependent(self, base_and_priority):
        response = base_and_priority.delete("/api/features/base")

        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == "CONFLICT"
        assert body["details"]["dependent_features"] == ["priority"]
        assert "priority" in body["message"]


class TestEnableDisable:
    """PATCH /api/features/{id}."""

    def test_disable_blocked(self, base_and_priority):
        response = base_and_priority.patch("/api/features/base", json={"enabled": False})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == "CONFLICT"
        assert body["details"]["dependent_features"] == ["priority"]
        assert base_and_priority.get("/api/features/base").json()["data"]["enabled"] is True

    def test_disable_in_dependency_order(self, base_and_priority):
        first = base_and_priority.patch("/api/features/priority", json={"enabled": False})
        second = base_and_priority.patch("/api/features/base", json={"enabled": False})

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["data"]["enabled"] is False

    def test_enable_reports_disabled_requirements(self, base_and_priority):
        base_and_priority.patch("/api/features/priority", json={"enabled": False})
        base_and_priority.patch("/api/features/base", json={"enabled": False})

        response = base_and_priority.patch("/api/features/priority", json={"enabled": True})

        assert response.status_code == 200
        assert response.json()["data"]["enabled"] is True
        assert "required dependencies are disabled: base" in response.json()["message"]

    def test_patch_unknown(self, client):
        response = client.patch("/api/features/ghost", json={"enabled": True})

        assert response.status_code == 404

    def test_patch_requires_enabled(self, client):
        _register(client, "tags")

        response = client.patch("/api/features/tags", json={})

        assert response.status_code == 400

    def test_can_disable(self, base_and_priority):
        response = base_and_priority.get("/api/features/base/can-disable")

        assert response.json()["data"] == {
            "feature_id": "base",
            "can_disable": False,
            "dependent_features": ["priority"],
        }


class TestDependencyRoutes:
    def test_list_dependencies(self, base_and_priority):
        data = base_and_priority.get("/api/features/base/dependencies").json()["data"]

        assert data["dependencies"] == []
        assert [d["feature_id"] for d in data["dependents"]] == ["priority"]

    def test_add_dependency(self, client):
        _register(client, "base")
        _register(client, "tags")

        response = client.post(
            "/api/features/tags/dependencies",
            json={"depends_on": "base", "dependency_type": "optional"},
        )

        assert response.status_code == 201
        assert response.json()["data"]["dependency_type"] == "optional"

    def test_self_dependency(self, client):
        _register(client, "tags")

        response = client.post("/api/features/tags/dependencies", json={"depends_on": "tags"})

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_cycle(self, base_and_priority):
        response = base_and_priority.post(
            "/api/features/base/dependencies", json={"depends_on": "priority"}
        )

        assert response.status_code == 400
        assert response.json()["details"]["cycle"] == ["base", "priority", "base"]

    def test_unknown_target(self, client):
        _register(client, "tags")

        response = client.post("/api/features/tags/dependencies", json={"depends_on": "ghost"})

        assert response.status_code == 404

    def test_invalid_type(self, client):
        _register(client, "tags")

        response = client.post(
            "/api/features/tags/dependencies",
            json={"depends_on": "base", "dependency_type": "mandatory"},
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_remove_dependency(self, base_and_priority):
        response = base_and_priority.delete("/api/features/priority/dependencies/base")
        missing = base_and_priority.delete("/api/features/priority/dependencies/base")

        assert response.status_code == 200
        assert missing.status_code == 404

    def test_graph(self, base_and_priority):
        data = base_and_priority.get("/api/features/graph").json()["data"]

        assert data["edges"] == [{"source": "priority", "target": "base", "type": "required"}]


# =============================================================================
# Generation routes
# =============================================================================

class TestGenerateRoutes:
    def _payload(self, **extra):
        payload = {
            "feature_id": "priority",
            "feature_name": "Todo Priority",
            "description": "Colour todos by priority",
            "components": [{"name": "PriorityBadge"}],
        }
        payload.update(extra)
        return payload

    def test_capabilities(self, client):
        response = client.get("/api/features/generate")

        assert response.status_code == 200
        assert response.json()["data"]["provider"] == {"provider": "fake"}

    def test_generate_and_integrate(self, client, tmp_path, runner):
        response = client.post("/api/features/generate", json=self._payload())

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True, body
        assert body["data"]["integration"]["files_created"] == ["src/components/PriorityBadge.tsx"]
        assert (tmp_path / "src/components/PriorityBadge.tsx").exists()
        assert client.get("/api/features/priority").status_code == 200
        runner.run.assert_called_once()

    def test_partial_failure_is_reported(self, client):
        response = client.post("/api/features/generate", json=self._payload(
            components=[{"name": "PriorityBadge"}, {"name": "BrokenWidget"}],
        ))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        items = body["data"]["items"]
        assert [(i["name"], i["ok"]) for i in items] == [("PriorityBadge", True), ("BrokenWidget", False)]
        assert items[1]["error"] == "model refused"

    def test_dry_run(self, client, tmp_path):
        response = client.post("/api/features/generate", json=self._payload(dry_run=True))

        assert response.json()["success"] is True
        assert "dry run" in response.json()["message"]
        assert not (tmp_path / "src").exists()
        assert client.get("/api/features/priority").status_code == 404

    def test_existing_feature_is_a_conflict(self, client):
        _register(client, "priority")

        response = client.post("/api/features/generate", json=self._payload())

        assert response.status_code == 400
        assert response.json()["error_code"] == "CONFLICT"

    def test_request_without_work(self, client):
        response = client.post("/api/features/generate", json=self._payload(components=[]))

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_generate_is_not_a_feature_id(self, client):
        # GET /generate must hit the capabilities route, not get_feature
        assert client.get("/api/features/generate").json()["success"] is True
