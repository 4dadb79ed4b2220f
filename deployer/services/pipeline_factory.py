"""
Pipeline Factory
================
Wires a PipelineController from a RunConfig with the production adapters:
Docker engine, kubectl cluster client, chained secret store, webhook notifier.
Shared by the HTTP API and the CLI.
"""
from typing import Optional

from deployer.agents.artifact_publisher import ArtifactPublisher
from deployer.agents.notifier import Notifier
from deployer.agents.pipeline_controller import PipelineController
from deployer.agents.revision_resolver import RevisionResolver
from deployer.core.config import NOTIFY_WEBHOOK_URL, SECRETS_DIR
from deployer.executor.container_engine import ContainerEngine
from deployer.models.run_config import RunConfig
from deployer.services.secret_scope import SecretScope
from deployer.services.secret_store import SecretStore, default_secret_store


def build_controller(
    config: RunConfig,
    store: Optional[SecretStore] = None,
    webhook_url: str = NOTIFY_WEBHOOK_URL,
) -> PipelineController:
    scope = SecretScope(store or default_secret_store(SECRETS_DIR))
    engine = ContainerEngine(registry_url=config.registry_url)
    return PipelineController(
        config=config,
        secret_scope=scope,
        publisher=ArtifactPublisher(engine, scope),
        notifier=Notifier(webhook_url, timeout_seconds=config.notify_timeout),
        resolver=RevisionResolver(source_dir=config.source_dir, build_counter=config.build_number),
    )
