"""
Secret Scope Tests
==================
Binding lifetime, missing vs empty credentials, exclusivity, materialized
files and log redaction.
"""
import logging
import os
import stat
import pytest

from deployer.core.errors import ConfigurationError, CredentialInUse, CredentialMissing, NotBound
from deployer.services.secret_scope import ScopedCredential, SecretScope
from deployer.services.secret_store import ChainedSecretStore, EnvSecretStore, FileSecretStore
from deployer.utils.logging_config import RedactingFilter


@pytest.fixture
def scope():
    return SecretScope(EnvSecretStore(environ={"API_KEY": "k-123", "EMPTY": ""}))


def test_binding_visible_only_inside_scope(scope):
    seen = {}

    def body(credential):
        seen["value"] = credential.reveal()
        seen["lookup"] = scope.lookup("API_KEY").reveal()
        return "done"

    assert scope.with_secret("API_KEY", body) == "done"
    assert seen == {"value": "k-123", "lookup": "k-123"}
    with pytest.raises(NotBound):
        scope.lookup("API_KEY")


def test_binding_released_on_error(scope):
    captured = []

    def body(credential):
        captured.append(credential)
        raise ValueError("body failed")

    with pytest.raises(ValueError):
        scope.with_secret("API_KEY", body)

    assert not scope.is_bound("API_KEY")
    with pytest.raises(NotBound):
        captured[0].reveal()


def test_missing_credential_never_runs_body(scope):
    calls = []
    with pytest.raises(CredentialMissing):
        scope.with_secret("NOPE", lambda c: calls.append(c))
    assert calls == []
    assert not scope.is_bound("NOPE")


def test_empty_value_is_not_missing(scope):
    assert scope.availability("EMPTY") == "available"
    assert scope.availability("NOPE") == "unavailable"
    assert scope.with_secret("EMPTY", lambda c: c.reveal()) == ""


def test_binding_is_not_reentrant(scope):
    with scope.scoped("API_KEY"):
        with pytest.raises(CredentialInUse):
            with scope.scoped("API_KEY"):
                pass
        # Outer binding survives the rejected inner scope
        assert scope.lookup("API_KEY").reveal() == "k-123"
    assert not scope.is_bound("API_KEY")


def test_materialized_file_removed_on_exit(scope, tmp_path):
    target = tmp_path / ".env.production"
    with scope.scoped("API_KEY") as credential:
        path = scope.materialize(credential, str(target))
        assert open(path).read() == "k-123"
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        temp_path = scope.materialize(credential)
        assert os.path.exists(temp_path)
    assert not target.exists()
    assert not os.path.exists(temp_path)


def test_materialize_env_writes_assignment_and_restores(scope, tmp_path):
    env_file = tmp_path / ".env.production"
    original = "# build config\nVITE_API_URL=https://api.example.com\nexport API_KEY=old\n"
    env_file.write_text(original)
    os.chmod(env_file, 0o644)

    with scope.scoped("API_KEY") as credential:
        scope.materialize_env(credential, str(env_file), "API_KEY")
        assert env_file.read_text() == "# build config\nVITE_API_URL=https://api.example.com\nAPI_KEY=k-123\n"
        assert stat.S_IMODE(os.stat(env_file).st_mode) == 0o600

    assert env_file.read_text() == original
    assert stat.S_IMODE(os.stat(env_file).st_mode) == 0o644


def test_materialize_env_new_file_removed(scope, tmp_path):
    env_file = tmp_path / ".env.production"
    with scope.scoped("API_KEY") as credential:
        scope.materialize_env(credential, str(env_file), "VITE_API_KEY")
        assert env_file.read_text() == "VITE_API_KEY=k-123\n"
    assert not env_file.exists()


def test_materialize_env_requires_variable(scope, tmp_path):
    with scope.scoped("API_KEY") as credential:
        with pytest.raises(ConfigurationError):
            scope.materialize_env(credential, str(tmp_path / ".env"), "")


def test_materialize_outside_scope_rejected(scope):
    with scope.scoped("API_KEY") as credential:
        pass
    with pytest.raises(NotBound):
        scope.materialize(credential)


def test_repr_never_shows_value():
    credential = ScopedCredential("API_KEY", "k-123")
    assert "k-123" not in repr(credential)
    assert "k-123" not in str(credential)


def test_bound_values_redacted_in_logs(scope):
    redactor = RedactingFilter()
    with scope.scoped("API_KEY"):
        record = logging.LogRecord("t", logging.INFO, __file__, 1, "token is %s", ("k-123",), None)
        redactor.filter(record)
        assert "k-123" not in record.getMessage()
    record = logging.LogRecord("t", logging.INFO, __file__, 1, "token is %s", ("k-123",), None)
    redactor.filter(record)
    assert record.getMessage() == "token is k-123"


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------
def test_file_store_reads_secret_files(tmp_path):
    (tmp_path / "REGISTRY_AUTH").write_text("user:pw\n")
    store = FileSecretStore(str(tmp_path))
    assert store.get("REGISTRY_AUTH") == "user:pw"
    assert store.get("MISSING") is None
    assert store.get("../REGISTRY_AUTH") is None


def test_chained_store_first_hit_wins(tmp_path):
    (tmp_path / "TOKEN").write_text("from-file")
    store = ChainedSecretStore([
        FileSecretStore(str(tmp_path)),
        EnvSecretStore(environ={"TOKEN": "from-env", "OTHER": "env-only"}),
    ])
    assert store.get("TOKEN") == "from-file"
    assert store.get("OTHER") == "env-only"
    assert store.get("NONE") is None


def test_env_store_reads_dotenv_without_exporting(tmp_path):
    dotenv = tmp_path / ".env"
    dotenv.write_text("DEPLOYER_TEST_ONLY_SECRET=from-dotenv\n")
    store = EnvSecretStore(environ={}, dotenv_path=str(dotenv))
    assert store.get("DEPLOYER_TEST_ONLY_SECRET") == "from-dotenv"
    assert "DEPLOYER_TEST_ONLY_SECRET" not in os.environ
