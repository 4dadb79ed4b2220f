import pytest
import subprocess
from unittest.mock import MagicMock, patch

from deployer.agents.revision_resolver import RevisionResolver, compose_image_tag, sanitize_branch
from deployer.core.errors import ConfigurationError


def _git_ok(stdout):
    return MagicMock(returncode=0, stdout=stdout + "\n", stderr="")


def test_sanitize_branch():
    assert sanitize_branch("feature/login") == "feature-login"
    assert sanitize_branch("release/2024/q1") == "release-2024-q1"
    assert sanitize_branch(None) == "local"
    assert sanitize_branch("   ") == "local"


def test_compose_image_tag_is_pure():
    first = compose_image_tag("acme/web", "feature/x", "a1b2c3d")
    second = compose_image_tag("acme/web", "feature/x", "a1b2c3d")
    assert first == second == "acme/web:feature-x-a1b2c3d"
    assert compose_image_tag("acme/web", None, "local") == "acme/web:local-local"


@patch("subprocess.run")
def test_resolve_from_git(mock_run):
    mock_run.return_value = _git_ok("a1b2c3d")
    resolver = RevisionResolver(source_dir="/src", build_counter="42")

    assert resolver.resolve() == "a1b2c3d"
    assert resolver.source == "git"
    assert mock_run.call_args.args[0] == ["git", "rev-parse", "--short", "HEAD"]
    assert mock_run.call_args.kwargs["cwd"] == "/src"


@patch("subprocess.run", side_effect=FileNotFoundError("git"))
def test_git_missing_falls_back_to_counter(mock_run):
    resolver = RevisionResolver(build_counter="42")
    assert resolver.resolve() == "42"
    assert resolver.source == "build_counter"


@patch("subprocess.run", side_effect=subprocess.CalledProcessError(128, "git", stderr="not a git repository"))
def test_not_a_repo_without_counter_is_local(mock_run):
    resolver = RevisionResolver()
    assert resolver.resolve() == "local"
    assert resolver.source == "fallback"


@patch("subprocess.run", side_effect=subprocess.TimeoutExpired(cmd="git", timeout=10))
def test_git_timeout_never_raises(mock_run):
    assert RevisionResolver(build_counter=" ").resolve() == "local"


@patch("subprocess.run")
def test_detached_head_has_no_branch(mock_run):
    mock_run.return_value = _git_ok("HEAD")
    assert RevisionResolver().current_branch() is None

    mock_run.return_value = _git_ok("feature/login")
    assert RevisionResolver().current_branch() == "feature/login"


@patch("subprocess.run")
def test_resolve_image_tag(mock_run):
    mock_run.return_value = _git_ok("a1b2c3d")
    revision, tag = RevisionResolver().resolve_image_tag("acme/web", "main")
    assert revision == "a1b2c3d"
    assert tag == "acme/web:main-a1b2c3d"


@patch("subprocess.run")
def test_empty_repository_is_configuration_error(mock_run):
    with pytest.raises(ConfigurationError):
        RevisionResolver().resolve_image_tag("  ", "main")
    mock_run.assert_not_called()
