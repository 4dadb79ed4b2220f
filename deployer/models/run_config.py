"""
Run Configuration
=================
Run-level switches for one pipeline execution, plus the resolved gates.

RunConfig.from_env() snapshots deployer.core.config so a run never re-reads
the environment halfway through. push_enabled / deploy_enabled are
tri-state: None defers the decision to the branch filter (and, for deploy,
to the presence of deployment manifests).
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from deployer.core import config


class Gates(BaseModel):
    publish: bool = False
    deploy: bool = False
    reasons: List[str] = Field(default_factory=list)


class RunConfig(BaseModel):
    image_repository: str = ""
    source_dir: str = "."
    build_context: str = "."
    build_command: str = ""
    build_env_file: str = ".env.production"
    build_number: Optional[str] = None

    push_enabled: Optional[bool] = None
    deploy_enabled: Optional[bool] = None
    branch_filter: str = r"^(main|master)$"

    stage_timeouts: Dict[str, float] = Field(default_factory=lambda: dict(config.DEFAULT_STAGE_TIMEOUTS))
    run_timeout: float = 1800.0
    cleanup_timeout: float = 30.0
    convergence_timeout: float = 120.0
    poll_interval: float = 5.0
    notify_timeout: float = 10.0

    require_convergence: bool = False
    publish_best_effort: bool = False

    registry_url: Optional[str] = None
    registry_credential: str = "REGISTRY_AUTH"
    kubeconfig_credential: str = "KUBECONFIG_DATA"
    build_api_key_credential: str = ""
    build_api_key_variable: str = ""
    namespace: str = "default"
    manifest_dir: str = "k8s"
    remove_local_image: bool = False

    def timeout_for(self, stage: str) -> Optional[float]:
        return self.stage_timeouts.get(stage)

    @classmethod
    def from_env(cls, **overrides) -> "RunConfig":
        values = {
            "image_repository": config.IMAGE_REPOSITORY,
            "source_dir": config.SOURCE_DIR,
            "build_context": config.BUILD_CONTEXT,
            "build_command": config.BUILD_COMMAND,
            "build_env_file": config.BUILD_ENV_FILE,
            "build_number": config.BUILD_NUMBER,
            "push_enabled": config.PUSH_ENABLED,
            "deploy_enabled": config.DEPLOY_ENABLED,
            "branch_filter": config.BRANCH_FILTER,
            "stage_timeouts": dict(config.STAGE_TIMEOUTS),
            "run_timeout": config.RUN_TIMEOUT,
            "cleanup_timeout": config.CLEANUP_TIMEOUT,
            "convergence_timeout": config.CONVERGENCE_TIMEOUT,
            "poll_interval": config.ROLLOUT_POLL_INTERVAL,
            "notify_timeout": config.NOTIFY_TIMEOUT,
            "require_convergence": config.REQUIRE_CONVERGENCE,
            "publish_best_effort": config.PUBLISH_BEST_EFFORT,
            "registry_url": config.REGISTRY_URL,
            "registry_credential": config.REGISTRY_CREDENTIAL,
            "kubeconfig_credential": config.KUBECONFIG_CREDENTIAL,
            "build_api_key_credential": config.BUILD_API_KEY_CREDENTIAL,
            "build_api_key_variable": config.BUILD_API_KEY_VARIABLE,
            "namespace": config.K8S_NAMESPACE,
            "manifest_dir": config.MANIFEST_DIR,
            "remove_local_image": config.REMOVE_LOCAL_IMAGE,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
