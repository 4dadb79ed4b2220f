import pytest

from deployer.agents.gates import branch_matches, resolve_gates
from deployer.core.errors import ConfigurationError
from deployer.models.run_config import RunConfig


def _config(**overrides):
    return RunConfig(image_repository="acme/web", **overrides)


def test_default_filter_matches_main_and_master():
    assert branch_matches("main", r"^(main|master)$")
    assert branch_matches("master", r"^(main|master)$")
    assert not branch_matches("feature/main", r"^(main|master)$")
    assert not branch_matches(None, r"^(main|master)$")


def test_invalid_filter_is_configuration_error():
    with pytest.raises(ConfigurationError):
        branch_matches("main", "([unclosed")


def test_main_branch_with_manifests_opens_both_gates():
    gates = resolve_gates(_config(), "main", manifests_present=True)
    assert gates.publish is True
    assert gates.deploy is True


def test_main_branch_without_manifests_does_not_deploy():
    gates = resolve_gates(_config(), "main", manifests_present=False)
    assert gates.publish is True
    assert gates.deploy is False
    assert any("no manifests" in r for r in gates.reasons)


def test_feature_branch_closes_both_gates():
    gates = resolve_gates(_config(), "feature/x", manifests_present=True)
    assert gates.publish is False
    assert gates.deploy is False


def test_explicit_flags_win_over_branch():
    gates = resolve_gates(_config(push_enabled=True, deploy_enabled=True), "feature/x", manifests_present=False)
    assert gates.publish is True
    assert gates.deploy is True

    gates = resolve_gates(_config(push_enabled=False, deploy_enabled=False), "main", manifests_present=True)
    assert gates.publish is False
    assert gates.deploy is False
    assert all("explicit flag" in r for r in gates.reasons)
