"""
Container Engine
================
Docker SDK adapter: build, login, push, logout and local image removal.

Engines are tag-preserving: a successful build of `tag` yields an image
reference equal to `tag`. Engine errors are translated into the pipeline
error taxonomy; nothing here decides whether an error is fatal.
"""
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import docker
from docker.errors import APIError, BuildError, DockerException, ImageNotFound

from deployer.core.config import DOCKER_TIMEOUT
from deployer.core.errors import (
    CollaboratorUnavailable,
    ConfigurationError,
    RemoteOperationFailure,
)
from deployer.services.secret_scope import ScopedCredential

logger = logging.getLogger(__name__)


@dataclass
class RegistrySession:
    """Authenticated registry session returned by login()."""
    registry: Optional[str]
    username: str
    auth_config: Dict[str, str] = field(default_factory=dict)
    active: bool = True

    def __repr__(self) -> str:
        return f"RegistrySession(registry={self.registry!r}, username={self.username!r}, active={self.active})"


def split_image_ref(ref: str) -> tuple[str, str]:
    """Split "registry:5000/app:tag" into ("registry:5000/app", "tag")."""
    name, sep, tag = ref.rpartition(":")
    if not sep or "/" in tag:
        return ref, "latest"
    return name, tag


class ContainerEngine:
    def __init__(
        self,
        client: Any = None,
        registry_url: Optional[str] = None,
        timeout: int = DOCKER_TIMEOUT,
    ) -> None:
        self._client = client
        self.registry_url = registry_url
        self.timeout = timeout
        self._interrupted = threading.Event()

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env(timeout=self.timeout)
            except DockerException as e:
                raise CollaboratorUnavailable(f"Docker engine is not reachable: {e}")
        return self._client

    def build(self, context_dir: str, tag: str) -> str:
        self._check_interrupted("image build")
        if not os.path.isdir(context_dir):
            raise CollaboratorUnavailable(f"Build context not found: {context_dir}")

        logger.info("Building image %s from %s", tag, context_dir)
        try:
            image, logs = self.client.images.build(path=context_dir, tag=tag, rm=True, forcerm=True)
        except BuildError as e:
            tail = [chunk.get("stream", "").strip() for chunk in (e.build_log or []) if isinstance(chunk, dict)]
            detail = "\n".join(line for line in tail[-10:] if line)
            logger.error("Image build failed: %s\n%s", e.msg, detail)
            raise RemoteOperationFailure("image build", e.msg)
        except APIError as e:
            raise RemoteOperationFailure("image build", str(e))

        logger.info("Built image %s (%s)", tag, getattr(image, "short_id", "?"))
        return tag

    def login(self, credential: ScopedCredential) -> RegistrySession:
        self._check_interrupted("registry login")
        username, sep, password = credential.reveal().partition(":")
        if not sep or not username or not password:
            raise ConfigurationError(
                f"Registry credential '{credential.name}' must be formatted as 'username:password'"
            )
        try:
            self.client.login(username=username, password=password, registry=self.registry_url, reauth=True)
        except APIError as e:
            raise RemoteOperationFailure("registry login", str(e))

        logger.info("Logged in to registry %s as %s", self.registry_url or "docker.io", username)
        return RegistrySession(
            registry=self.registry_url,
            username=username,
            auth_config={"username": username, "password": password},
        )

    def push(self, ref: str, session: RegistrySession) -> str:
        if not session.active:
            raise RemoteOperationFailure("image push", "registry session already closed")

        repository, tag = split_image_ref(ref)
        logger.info("Pushing %s", ref)
        try:
            for line in self.client.images.push(
                repository, tag=tag, auth_config=session.auth_config, stream=True, decode=True
            ):
                self._check_interrupted("image push")
                if isinstance(line, dict) and line.get("error"):
                    raise RemoteOperationFailure("image push", str(line["error"]))
        except APIError as e:
            raise RemoteOperationFailure("image push", str(e))

        logger.info("Pushed %s", ref)
        return "published"

    def logout(self, session: RegistrySession) -> None:
        """Drop the in-memory auth and the client holding it. Best-effort."""
        session.auth_config.clear()
        session.active = False
        if self._client is not None:
            try:
                self._client.close()
            finally:
                self._client = None
        logger.info("Logged out of registry %s", session.registry or "docker.io")

    def remove_image(self, ref: str) -> None:
        try:
            self.client.images.remove(ref, force=True)
            logger.info("Removed local image %s", ref)
        except ImageNotFound:
            logger.info("Local image %s already absent", ref)

    def interrupt(self) -> None:
        """
        Abort in-flight work from another thread: later calls and the next
        push progress line fail, and the client connection is dropped.
        """
        self._interrupted.set()
        logger.warning("Container engine interrupted")
        try:
            self.close()
        except Exception as e:
            logger.warning("Closing the Docker client after interrupt failed: %s", e)

    def reset_interrupt(self) -> None:
        self._interrupted.clear()

    def _check_interrupted(self, operation: str) -> None:
        if self._interrupted.is_set():
            raise RemoteOperationFailure(operation, "interrupted")

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            finally:
                self._client = None
