"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    IMAGE_REPOSITORY         - Artifact repository name used in the image tag (required)
    SOURCE_DIR               - Source tree to build and to query git in (default: ".")
    BUILD_CONTEXT            - Container build context directory (default: SOURCE_DIR)
    BUILD_COMMAND            - Application build command (default: "npm ci && npm run build")
    BUILD_ENV_FILE           - Build-time config file the API key is written to (default: ".env.production")
    BUILD_NUMBER             - CI build counter, revision fallback when git is unavailable
    BRANCH_NAME              - Branch or ref being built (falls back to GIT_BRANCH, then git)
    PUSH_ENABLED             - "true"/"false" to force the publish gate; unset = branch filter
    DEPLOY_ENABLED           - "true"/"false" to force the deploy gate; unset = branch + manifests
    BRANCH_FILTER            - Regex of branches that publish and deploy (default: main|master)
    STAGE_TIMEOUTS           - Per-stage overrides, e.g. "build=600,deploy=300" (seconds)
    RUN_TIMEOUT              - Whole-run ceiling in seconds (default: 1800)
    CLEANUP_TIMEOUT          - Ceiling for the cleanup phase in seconds (default: 30)
    CONVERGENCE_TIMEOUT      - Max seconds to wait for a rollout to converge (default: 120)
    ROLLOUT_POLL_INTERVAL    - Seconds between rollout status polls (default: 5)
    REQUIRE_CONVERGENCE      - Treat a rollout timeout as a failure (default: false)
    PUBLISH_BEST_EFFORT      - Treat a failed push as degraded instead of fatal (default: false)
    REGISTRY_URL             - Registry to log in to (default: Docker Hub)
    REGISTRY_CREDENTIAL      - Secret holding "username:password" for the registry
    KUBECONFIG_CREDENTIAL    - Secret holding the kubeconfig document
    BUILD_API_KEY_CREDENTIAL - Secret set in BUILD_ENV_FILE during the build
    BUILD_API_KEY_VARIABLE   - Variable name it is written under (default: the credential name)
    K8S_NAMESPACE            - Namespace for kubectl calls (default: "default")
    MANIFEST_DIR             - Directory holding deployment/service manifests (default: "k8s")
    NOTIFY_WEBHOOK_URL       - Incoming webhook receiving {"text": ...}
    SECRETS_DIR              - Directory of file-backed secrets (one file per secret)
    REMOVE_LOCAL_IMAGE       - Remove the built image from the local engine on cleanup
    DOCKER_TIMEOUT           - Socket timeout for Docker engine API calls in seconds (default: 300)

Timeout Philosophy:
    Every stage that touches an external collaborator is bounded. A stage
    timeout fails the run; the run timeout aborts it. Cleanup and the
    terminal notification still run in both cases, under CLEANUP_TIMEOUT.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_optional_flag(name: str) -> bool | None:
    """Tri-state flag: None when unset so the gate falls back to branch rules."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_stage_timeouts(raw: str | None) -> dict[str, float]:
    """Parse "build=600,deploy=300" into {"build": 600.0, "deploy": 300.0}."""
    timeouts: dict[str, float] = {}
    if not raw:
        return timeouts
    for part in raw.split(","):
        if "=" not in part:
            continue
        stage, _, seconds = part.partition("=")
        stage = stage.strip().lower()
        if not stage:
            continue
        try:
            timeouts[stage] = float(seconds)
        except ValueError:
            continue
    return timeouts


# Artifact identity
IMAGE_REPOSITORY = os.getenv("IMAGE_REPOSITORY", "")
SOURCE_DIR = os.getenv("SOURCE_DIR", ".")
BUILD_CONTEXT = os.getenv("BUILD_CONTEXT", SOURCE_DIR)
BUILD_COMMAND = os.getenv("BUILD_COMMAND", "npm ci && npm run build")
BUILD_ENV_FILE = os.getenv("BUILD_ENV_FILE", ".env.production")
BUILD_NUMBER = os.getenv("BUILD_NUMBER")
BRANCH_NAME = os.getenv("BRANCH_NAME") or os.getenv("GIT_BRANCH")

# Gates
PUSH_ENABLED = _env_optional_flag("PUSH_ENABLED")
DEPLOY_ENABLED = _env_optional_flag("DEPLOY_ENABLED")
BRANCH_FILTER = os.getenv("BRANCH_FILTER", r"^(main|master)$")

# Timeouts (seconds)
DEFAULT_STAGE_TIMEOUTS: dict[str, float] = {
    "prepare": 900.0,
    "build": 900.0,
    "publish": 600.0,
    "deploy": 600.0,
}
STAGE_TIMEOUTS = {**DEFAULT_STAGE_TIMEOUTS, **parse_stage_timeouts(os.getenv("STAGE_TIMEOUTS"))}
RUN_TIMEOUT = float(os.getenv("RUN_TIMEOUT", 1800))
CLEANUP_TIMEOUT = float(os.getenv("CLEANUP_TIMEOUT", 30))
CONVERGENCE_TIMEOUT = float(os.getenv("CONVERGENCE_TIMEOUT", 120))
ROLLOUT_POLL_INTERVAL = float(os.getenv("ROLLOUT_POLL_INTERVAL", 5))
NOTIFY_TIMEOUT = float(os.getenv("NOTIFY_TIMEOUT", 10))
GIT_TIMEOUT = float(os.getenv("GIT_TIMEOUT", 10))
DOCKER_TIMEOUT = int(os.getenv("DOCKER_TIMEOUT", 300))

# Failure policy
REQUIRE_CONVERGENCE = _env_flag("REQUIRE_CONVERGENCE")
PUBLISH_BEST_EFFORT = _env_flag("PUBLISH_BEST_EFFORT")

# Collaborators
REGISTRY_URL = os.getenv("REGISTRY_URL") or None
REGISTRY_CREDENTIAL = os.getenv("REGISTRY_CREDENTIAL", "REGISTRY_AUTH")
KUBECONFIG_CREDENTIAL = os.getenv("KUBECONFIG_CREDENTIAL", "KUBECONFIG_DATA")
BUILD_API_KEY_CREDENTIAL = os.getenv("BUILD_API_KEY_CREDENTIAL", "")
BUILD_API_KEY_VARIABLE = os.getenv("BUILD_API_KEY_VARIABLE", "")
K8S_NAMESPACE = os.getenv("K8S_NAMESPACE", "default")
MANIFEST_DIR = os.getenv("MANIFEST_DIR", "k8s")
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "")
SECRETS_DIR = os.getenv("SECRETS_DIR", "")
REMOVE_LOCAL_IMAGE = _env_flag("REMOVE_LOCAL_IMAGE")
