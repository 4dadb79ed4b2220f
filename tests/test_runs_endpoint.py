"""
Runs Endpoint Tests
===================
Tests for POST /api/runs and GET /health.
The controller is mocked: no Docker, registry or cluster involved.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from fastapi.testclient import TestClient

from deployer.models.pipeline_run import PipelineRun
from deployer.models.run_config import RunConfig


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _finished_run(result="success", branch="main"):
    run = PipelineRun(run_id="r-42", branch=branch, revision="a1b2c3d", image_tag="acme/web:main-a1b2c3d")
    run.record("prepare", "ok", 0.1)
    run.record("build", "ok", 3.2)
    run.record("publish", "ok", 1.0)
    run.record("deploy", "skipped", 0.0, "gate closed")
    run.record("cleanup", "ok", 0.0)
    run.finish(result)
    run.summary = f"Pipeline r-42 {result.upper()}"
    return run


@pytest.fixture
def client():
    from main import app
    return TestClient(app)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert "X-Request-ID" in response.headers


def test_run_success(client):
    controller = MagicMock()
    controller.run = AsyncMock(return_value=_finished_run())

    with patch("deployer.api.runs.RunConfig.from_env", return_value=RunConfig(image_repository="acme/web")), \
         patch("deployer.api.runs.build_controller", return_value=controller):
        response = client.post("/api/runs", json={"run_id": "r-42", "branch": " main "})

    assert response.status_code == 200
    body = response.json()
    assert body["final_result"] == "success"
    assert body["image_tag"] == "acme/web:main-a1b2c3d"
    assert [s["stage"] for s in body["stages"]] == ["prepare", "build", "publish", "deploy", "cleanup"]
    controller.run.assert_awaited_once_with(run_id="r-42", branch="main")


def test_run_passes_gate_overrides(client):
    controller = MagicMock()
    controller.run = AsyncMock(return_value=_finished_run())

    with patch("deployer.api.runs.RunConfig.from_env", return_value=RunConfig(image_repository="acme/web")) as mock_cfg, \
         patch("deployer.api.runs.build_controller", return_value=controller):
        client.post("/api/runs", json={"push_enabled": False, "deploy_enabled": True})

    mock_cfg.assert_called_once_with(push_enabled=False, deploy_enabled=True)


def test_failed_run_still_returns_summary(client):
    controller = MagicMock()
    controller.run = AsyncMock(return_value=_finished_run("failure"))

    with patch("deployer.api.runs.RunConfig.from_env", return_value=RunConfig(image_repository="acme/web")), \
         patch("deployer.api.runs.build_controller", return_value=controller):
        response = client.post("/api/runs", json={})

    assert response.status_code == 200
    assert response.json()["final_result"] == "failure"


def test_missing_repository_is_400(client):
    with patch("deployer.api.runs.RunConfig.from_env", return_value=RunConfig(image_repository="")), \
         patch("deployer.api.runs.build_controller") as mock_build:
        response = client.post("/api/runs", json={})

    assert response.status_code == 400
    assert "IMAGE_REPOSITORY" in response.json()["detail"]
    mock_build.assert_not_called()
