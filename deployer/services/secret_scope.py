"""
Secret Scope
============
Scoped acquisition of named credentials.

A credential is resolved from the SecretStore, bound for exactly the dynamic
extent of one operation, and unbound again on every exit path. Outside that
extent it cannot be looked up (NotBound) and the ScopedCredential object
itself refuses to reveal its value.

Rules:
    - A missing credential raises CredentialMissing before the body runs.
    - One binding per name at a time; a second concurrent scope raises
      CredentialInUse.
    - Files materialized from a credential are deleted, or restored to their
      previous content, when the scope exits.
    - Bound values are masked in every log record while the scope is active.
"""
import logging
import os
import stat
import tempfile
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Literal, NamedTuple, Optional, TypeVar

from deployer.core.errors import ConfigurationError, CredentialInUse, CredentialMissing, NotBound
from deployer.services.secret_store import SecretStore
from deployer.utils.logging_config import forget_secret, register_secret

logger = logging.getLogger(__name__)

T = TypeVar("T")
Availability = Literal["available", "unavailable"]


class ScopedCredential:
    """A secret value bound to a name, valid only inside its scope."""

    __slots__ = ("name", "_value", "_active")

    def __init__(self, name: str, value: str) -> None:
        self.name = name
        self._value = value
        self._active = True

    def reveal(self) -> str:
        if not self._active:
            raise NotBound(self.name)
        return self._value

    @property
    def active(self) -> bool:
        return self._active

    def _revoke(self) -> None:
        self._active = False
        self._value = ""

    def __repr__(self) -> str:
        state = "active" if self._active else "revoked"
        return f"ScopedCredential(name={self.name!r}, value='***', {state})"

    __str__ = __repr__


class _Materialized(NamedTuple):
    path: str
    original: Optional[bytes]    # None: file did not exist before the scope
    mode: Optional[int]


def _assigns(line: str, variable: str) -> bool:
    stripped = line.strip()
    if stripped.startswith("export "):
        stripped = stripped[len("export "):].lstrip()
    return stripped.startswith(f"{variable}=")


class SecretScope:
    def __init__(self, store: SecretStore) -> None:
        self.store = store
        self._bindings: Dict[str, ScopedCredential] = {}
        self._materialized: Dict[str, List[_Materialized]] = {}
        self._lock = threading.Lock()

    def availability(self, name: str) -> Availability:
        """Probe the store without binding anything."""
        if not name:
            return "unavailable"
        return "available" if self.store.get(name) is not None else "unavailable"

    def lookup(self, name: str) -> ScopedCredential:
        with self._lock:
            credential = self._bindings.get(name)
        if credential is None:
            raise NotBound(name)
        return credential

    def is_bound(self, name: str) -> bool:
        with self._lock:
            return name in self._bindings

    @contextmanager
    def scoped(self, name: str) -> Iterator[ScopedCredential]:
        value = self.store.get(name) if name else None
        if value is None:
            raise CredentialMissing(name)

        with self._lock:
            if name in self._bindings:
                raise CredentialInUse(name)
            credential = ScopedCredential(name, value)
            self._bindings[name] = credential
        register_secret(value)
        logger.debug("Bound credential %s", name)

        try:
            yield credential
        finally:
            with self._lock:
                self._bindings.pop(name, None)
                records = self._materialized.pop(name, [])
            # Newest first, so a path written twice ends at its first original
            for record in reversed(records):
                self._restore(record)
            credential._revoke()
            forget_secret(value)
            logger.debug("Released credential %s", name)

    def with_secret(self, name: str, body: Callable[[ScopedCredential], T]) -> T:
        """Run body(credential) with the named credential bound."""
        with self.scoped(name) as credential:
            return body(credential)

    def materialize(self, credential: ScopedCredential, path: Optional[str] = None) -> str:
        """
        Write a bound credential to a file (mode 0600) that lives only as
        long as the credential's scope. Returns the file path.
        """
        self._require_bound(credential)
        if path is None:
            fd, path = tempfile.mkstemp(prefix=f"{credential.name.lower()}-")
            os.close(fd)
            self._track(credential.name, _Materialized(path, None, None))
        else:
            self._track(credential.name, self._snapshot(path))
        self._write_private(path, credential.reveal())
        return path

    def materialize_env(self, credential: ScopedCredential, path: str, variable: str) -> str:
        """
        Set `variable=<value>` in the dotenv file at `path` for the lifetime
        of the scope.

        Other lines of an existing file are kept, and the file is restored
        byte for byte when the scope exits. A file created here is removed.
        """
        self._require_bound(credential)
        if not variable:
            raise ConfigurationError(f"No variable name given for credential '{credential.name}'")

        record = self._snapshot(path)
        lines = [] if record.original is None else record.original.decode("utf-8").splitlines()
        lines = [line for line in lines if not _assigns(line, variable)]
        lines.append(f"{variable}={credential.reveal()}")

        self._track(credential.name, record)
        self._write_private(path, "\n".join(lines) + "\n")
        return path

    # ------------------------------------------------------------------
    def _require_bound(self, credential: ScopedCredential) -> None:
        if not self.is_bound(credential.name) or not credential.active:
            raise NotBound(credential.name)

    def _track(self, name: str, record: _Materialized) -> None:
        with self._lock:
            self._materialized.setdefault(name, []).append(record)

    @staticmethod
    def _snapshot(path: str) -> _Materialized:
        if not os.path.isfile(path):
            return _Materialized(path, None, None)
        with open(path, "rb") as f:
            original = f.read()
        return _Materialized(path, original, stat.S_IMODE(os.stat(path).st_mode))

    @staticmethod
    def _write_private(path: str, content: str) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(path, 0o600)

    @staticmethod
    def _restore(record: _Materialized) -> None:
        try:
            if record.original is None:
                os.remove(record.path)
                return
            with open(record.path, "wb") as f:
                f.write(record.original)
            os.chmod(record.path, record.mode)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not restore secret file %s: %s", record.path, e)
