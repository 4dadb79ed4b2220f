"""
Artifact Publisher
==================
Produces the deployable artifact and optionally publishes it.

    prepare(source_dir, command)   - application build (async), with an optional API
                                     key set in the build-time env file
    build(context, tag)            - container image build, returns the image ref
    publish(ref, credential)       - login → push → logout (logout always runs)

The publisher never compiles anything itself: the build tool and the
container engine do the work, the publisher owns ordering and release.
"""
import logging
import os
from typing import Literal, Optional

from deployer.core.errors import ConfigurationError
from deployer.executor.build_tool import BuildToolResult, run_build_command
from deployer.executor.container_engine import ContainerEngine
from deployer.services.secret_scope import ScopedCredential, SecretScope

logger = logging.getLogger(__name__)

PublishOutcome = Literal["published", "skipped"]


class ArtifactPublisher:
    def __init__(self, engine: ContainerEngine, secret_scope: SecretScope) -> None:
        self.engine = engine
        self.secret_scope = secret_scope

    async def prepare(
        self,
        source_dir: str,
        command: str,
        env_file: str = "",
        api_key_credential: str = "",
        api_key_variable: str = "",
        timeout_seconds: Optional[float] = None,
    ) -> Optional[BuildToolResult]:
        """
        Run the application build. When `api_key_credential` is set, the
        env file gets a `VARIABLE=value` line only for the duration of the
        command; its previous content is restored afterwards.
        """
        if not command:
            logger.info("No build command configured, skipping application build")
            return None

        if not api_key_credential:
            return await run_build_command(source_dir, command, timeout_seconds)

        env_path = os.path.join(source_dir, env_file or ".env.production")
        variable = api_key_variable or api_key_credential
        with self.secret_scope.scoped(api_key_credential) as credential:
            self.secret_scope.materialize_env(credential, env_path, variable)
            logger.info("Set %s in %s for the build", variable, env_path)
            return await run_build_command(source_dir, command, timeout_seconds)

    def build(self, context: str, tag: str) -> str:
        if not tag:
            raise ConfigurationError("Image tag is empty; refusing to build")
        ref = self.engine.build(context, tag)
        if ref != tag:
            logger.warning("Engine returned %s for requested tag %s", ref, tag)
        return tag

    def publish(self, ref: str, credential: Optional[ScopedCredential]) -> PublishOutcome:
        """
        Authenticate, push, and release the session.

        Logout runs on every exit path. A logout failure is logged and never
        replaces the push error.
        """
        if credential is None:
            logger.info("No registry credential supplied, publish skipped for %s", ref)
            return "skipped"

        session = self.engine.login(credential)
        try:
            return self.engine.push(ref, session)
        finally:
            try:
                self.engine.logout(session)
            except Exception as e:
                logger.warning("Registry logout failed (ignored): %s", e)
