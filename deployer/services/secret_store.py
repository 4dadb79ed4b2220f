"""
Secret Store
============
Backends the SecretScope resolves named credentials from.

Every backend answers get(name) with the value, or None when the secret does
not exist. An empty string is a real (empty) value, not a missing secret.

    EnvSecretStore     - process environment (.env already loaded by python-dotenv)
    FileSecretStore    - one file per secret under a directory (mounted secrets)
    ChainedSecretStore - first backend that knows the name wins
"""
import logging
import os
from typing import Dict, Iterable, List, Mapping, Optional

from dotenv import dotenv_values

logger = logging.getLogger(__name__)


class SecretStore:
    """Interface: resolve a named secret, None when it does not exist."""

    def get(self, name: str) -> Optional[str]:  # pragma: no cover - interface
        raise NotImplementedError

    def describe(self) -> Dict[str, object]:
        return {"type": self.__class__.__name__}


class EnvSecretStore(SecretStore):
    """
    Resolve secrets from the process environment.

    An optional dotenv file is read without exporting it into os.environ,
    so credentials from it never become ambient process state.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None, dotenv_path: str = "") -> None:
        self._environ = environ if environ is not None else os.environ
        self._dotenv: Dict[str, Optional[str]] = {}
        if dotenv_path and os.path.isfile(dotenv_path):
            self._dotenv = dict(dotenv_values(dotenv_path))
        self.dotenv_path = dotenv_path

    def get(self, name: str) -> Optional[str]:
        if name in self._environ:
            return self._environ[name]
        return self._dotenv.get(name)

    def describe(self) -> Dict[str, object]:
        return {"type": "env", "dotenv": self.dotenv_path or None}


class FileSecretStore(SecretStore):
    """Resolve secrets from files named after the secret inside `directory`."""

    def __init__(self, directory: str) -> None:
        self.directory = directory

    def get(self, name: str) -> Optional[str]:
        if not self.directory or not name:
            return None
        path = os.path.normpath(os.path.join(self.directory, name))
        # Names must not escape the secrets directory
        if os.path.dirname(path) != os.path.normpath(self.directory):
            logger.error("Refusing secret name outside secrets dir: %s", name)
            return None
        if not os.path.isfile(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return f.read().rstrip("\n")

    def describe(self) -> Dict[str, object]:
        return {"type": "file", "directory": self.directory}


class ChainedSecretStore(SecretStore):
    def __init__(self, stores: Iterable[SecretStore]) -> None:
        self.stores: List[SecretStore] = list(stores)

    def get(self, name: str) -> Optional[str]:
        for store in self.stores:
            value = store.get(name)
            if value is not None:
                return value
        return None

    def describe(self) -> Dict[str, object]:
        return {"type": "chain", "stores": [s.describe() for s in self.stores]}


def default_secret_store(secrets_dir: str = "", dotenv_path: str = ".env") -> SecretStore:
    """Mounted secret files first, then the environment."""
    stores: List[SecretStore] = []
    if secrets_dir:
        stores.append(FileSecretStore(secrets_dir))
    stores.append(EnvSecretStore(dotenv_path=dotenv_path))
    return ChainedSecretStore(stores)
