"""
Stage Gates
===========
Resolves the publish and deploy gates once, at run start.

    publish = push_enabled            if set explicitly
              branch matches filter   otherwise
    deploy  = deploy_enabled          if set explicitly
              branch matches filter AND deployment manifests exist, otherwise

The controller consumes the resulting booleans; no stage re-derives them.
"""
import logging
import re
from typing import Optional

from deployer.core.errors import ConfigurationError
from deployer.models.run_config import Gates, RunConfig

logger = logging.getLogger(__name__)


def branch_matches(branch: Optional[str], pattern: str) -> bool:
    if not branch or not pattern:
        return False
    try:
        return re.search(pattern, branch) is not None
    except re.error as e:
        raise ConfigurationError(f"Invalid BRANCH_FILTER {pattern!r}: {e}")


def resolve_gates(config: RunConfig, branch: Optional[str], manifests_present: bool) -> Gates:
    gates = Gates()
    on_branch = branch_matches(branch, config.branch_filter)

    if config.push_enabled is not None:
        gates.publish = config.push_enabled
        gates.reasons.append(f"publish={'on' if gates.publish else 'off'} (explicit flag)")
    else:
        gates.publish = on_branch
        gates.reasons.append(
            f"publish={'on' if on_branch else 'off'} (branch {branch or '-'} vs {config.branch_filter})"
        )

    if config.deploy_enabled is not None:
        gates.deploy = config.deploy_enabled
        gates.reasons.append(f"deploy={'on' if gates.deploy else 'off'} (explicit flag)")
    else:
        gates.deploy = on_branch and manifests_present
        why = "no manifests" if not manifests_present else f"branch {branch or '-'}"
        gates.reasons.append(f"deploy={'on' if gates.deploy else 'off'} ({why})")

    logger.info("Gates resolved: %s", "; ".join(gates.reasons))
    return gates
