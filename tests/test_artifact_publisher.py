"""
Artifact Publisher Tests
========================
Ordering of login → push → logout and the build-time env file lifecycle.
Container engine and build tool are mocked.
"""
import asyncio
import os
import pytest
from unittest.mock import MagicMock, patch

from deployer.agents.artifact_publisher import ArtifactPublisher
from deployer.core.errors import ConfigurationError, CredentialMissing, RemoteOperationFailure
from deployer.executor.build_tool import BuildToolResult
from deployer.executor.container_engine import RegistrySession
from deployer.services.secret_scope import ScopedCredential, SecretScope
from deployer.services.secret_store import EnvSecretStore


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.build.side_effect = lambda context, tag: tag
    engine.login.return_value = RegistrySession(registry=None, username="ci", auth_config={"username": "ci"})
    engine.push.return_value = "published"
    return engine


@pytest.fixture
def publisher(engine):
    scope = SecretScope(EnvSecretStore(environ={"BUILD_API_KEY": "sk-live-123"}))
    return ArtifactPublisher(engine, scope)


def test_publish_without_credential_is_skipped(publisher, engine):
    assert publisher.publish("repo/app:main-1", None) == "skipped"
    engine.login.assert_not_called()
    engine.push.assert_not_called()


def test_publish_orders_login_push_logout(publisher, engine):
    outcome = publisher.publish("repo/app:main-1", ScopedCredential("REGISTRY_AUTH", "ci:pw"))

    assert outcome == "published"
    assert [c[0] for c in engine.method_calls] == ["login", "push", "logout"]
    engine.push.assert_called_once_with("repo/app:main-1", engine.login.return_value)


def test_logout_runs_when_push_fails(publisher, engine):
    engine.push.side_effect = RemoteOperationFailure("image push", "denied")

    with pytest.raises(RemoteOperationFailure):
        publisher.publish("repo/app:main-1", ScopedCredential("REGISTRY_AUTH", "ci:pw"))
    engine.logout.assert_called_once()


def test_logout_failure_does_not_mask_push_error(publisher, engine):
    engine.push.side_effect = RemoteOperationFailure("image push", "denied")
    engine.logout.side_effect = RuntimeError("socket closed")

    with pytest.raises(RemoteOperationFailure, match="denied"):
        publisher.publish("repo/app:main-1", ScopedCredential("REGISTRY_AUTH", "ci:pw"))


def test_failed_login_never_pushes(publisher, engine):
    engine.login.side_effect = RemoteOperationFailure("registry login", "unauthorized")

    with pytest.raises(RemoteOperationFailure):
        publisher.publish("repo/app:main-1", ScopedCredential("REGISTRY_AUTH", "ci:pw"))
    engine.push.assert_not_called()


def test_build_returns_requested_tag(publisher, engine):
    assert publisher.build("/ctx", "repo/app:main-1") == "repo/app:main-1"
    engine.build.assert_called_once_with("/ctx", "repo/app:main-1")


def test_build_rejects_empty_tag(publisher, engine):
    with pytest.raises(ConfigurationError):
        publisher.build("/ctx", "")
    engine.build.assert_not_called()


# ---------------------------------------------------------------------------
# Application build (prepare)
# ---------------------------------------------------------------------------
def test_prepare_without_command_does_nothing(publisher, tmp_path):
    with patch("deployer.agents.artifact_publisher.run_build_command") as mock_run:
        assert asyncio.run(publisher.prepare(str(tmp_path), "")) is None
    mock_run.assert_not_called()


def test_prepare_env_file_exists_only_during_build(publisher, tmp_path):
    env_path = tmp_path / ".env.production"
    seen = {}

    async def fake_build(source_dir, command, timeout_seconds):
        seen["content"] = env_path.read_text()
        seen["mode"] = oct(os.stat(env_path).st_mode & 0o777)
        return BuildToolResult(exit_code=0)

    with patch("deployer.agents.artifact_publisher.run_build_command", side_effect=fake_build):
        result = asyncio.run(publisher.prepare(
            str(tmp_path), "npm run build", "", "BUILD_API_KEY", "VITE_API_KEY"
        ))

    assert result.exit_code == 0
    assert seen == {"content": "VITE_API_KEY=sk-live-123\n", "mode": "0o600"}
    assert not env_path.exists()


def test_prepare_keeps_existing_env_file(publisher, tmp_path):
    env_path = tmp_path / ".env.production"
    original = "VITE_API_URL=https://api.example.com\nVITE_API_KEY=placeholder\n"
    env_path.write_text(original)
    seen = {}

    async def fake_build(source_dir, command, timeout_seconds):
        seen["content"] = env_path.read_text()
        return BuildToolResult(exit_code=0)

    with patch("deployer.agents.artifact_publisher.run_build_command", side_effect=fake_build):
        asyncio.run(publisher.prepare(
            str(tmp_path), "npm run build", ".env.production", "BUILD_API_KEY", "VITE_API_KEY"
        ))

    assert seen["content"] == "VITE_API_URL=https://api.example.com\nVITE_API_KEY=sk-live-123\n"
    assert env_path.read_text() == original


def test_prepare_variable_defaults_to_credential_name(publisher, tmp_path):
    seen = {}

    async def fake_build(source_dir, command, timeout_seconds):
        seen["content"] = (tmp_path / ".env.production").read_text()
        return BuildToolResult(exit_code=0)

    with patch("deployer.agents.artifact_publisher.run_build_command", side_effect=fake_build):
        asyncio.run(publisher.prepare(str(tmp_path), "npm run build", "", "BUILD_API_KEY"))

    assert seen["content"] == "BUILD_API_KEY=sk-live-123\n"


def test_prepare_env_file_restored_when_build_fails(publisher, tmp_path):
    env_path = tmp_path / ".env.production"
    env_path.write_text("VITE_API_URL=https://api.example.com\n")
    failure = RemoteOperationFailure("application build", "exit code 1")

    with patch("deployer.agents.artifact_publisher.run_build_command", side_effect=failure):
        with pytest.raises(RemoteOperationFailure):
            asyncio.run(publisher.prepare(
                str(tmp_path), "npm run build", ".env.production", "BUILD_API_KEY", "VITE_API_KEY"
            ))

    assert env_path.read_text() == "VITE_API_URL=https://api.example.com\n"
    assert not publisher.secret_scope.is_bound("BUILD_API_KEY")


def test_prepare_missing_api_key_never_builds(publisher, tmp_path):
    with patch("deployer.agents.artifact_publisher.run_build_command") as mock_run:
        with pytest.raises(CredentialMissing):
            asyncio.run(publisher.prepare(str(tmp_path), "npm run build", ".env.production", "UNKNOWN_KEY"))
    mock_run.assert_not_called()


def test_prepare_logs_the_file_it_wrote(publisher, tmp_path, caplog):
    async def fake_build(source_dir, command, timeout_seconds):
        return BuildToolResult(exit_code=0)

    with patch("deployer.agents.artifact_publisher.run_build_command", side_effect=fake_build):
        with caplog.at_level("INFO", logger="deployer.agents.artifact_publisher"):
            asyncio.run(publisher.prepare(
                str(tmp_path), "npm run build", ".env.local", "BUILD_API_KEY", "VITE_API_KEY"
            ))

    written = os.path.join(str(tmp_path), ".env.local")
    assert any(written in r.getMessage() for r in caplog.records)
    assert not any("sk-live-123" in r.getMessage() for r in caplog.records)
