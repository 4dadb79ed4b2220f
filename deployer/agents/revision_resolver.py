"""
Revision Resolver
=================
Derives the release identifier for a run and composes the image tag.

Fallback chain (first success wins):
    1. `git rev-parse --short HEAD` in the source tree
    2. the externally supplied build counter (BUILD_NUMBER)
    3. the literal "local"

Tag composition is pure: the same (repo, branch, revision) triple always
yields the same "{repo}:{branch}-{revision}" string.
"""
import logging
import subprocess
from typing import Optional

from deployer.core.config import GIT_TIMEOUT
from deployer.core.constants import LOCAL_MARKER
from deployer.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


def sanitize_branch(branch: Optional[str]) -> str:
    """Replace slashes with hyphens; absent or blank branch becomes "local"."""
    if branch is None:
        return LOCAL_MARKER
    cleaned = branch.strip().replace("/", "-")
    return cleaned or LOCAL_MARKER


def compose_image_tag(repo: str, branch: Optional[str], revision: str) -> str:
    """Compose "{repo}:{branch}-{revision}". Pure and deterministic."""
    return f"{repo}:{sanitize_branch(branch)}-{revision}"


class RevisionResolver:
    """
    Resolves the current source revision without ever failing the run.
    """

    def __init__(
        self,
        source_dir: str = ".",
        build_counter: Optional[str] = None,
        timeout_seconds: float = GIT_TIMEOUT,
    ) -> None:
        self.source_dir = source_dir
        self.build_counter = build_counter
        self.timeout_seconds = timeout_seconds
        self.source = ""

    def _git(self, *args: str) -> Optional[str]:
        """Run a read-only git query; None when git cannot answer."""
        try:
            res = subprocess.run(
                ["git", *args],
                cwd=self.source_dir,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError:
            logger.warning("git is not installed or source dir %s is missing", self.source_dir)
            return None
        except subprocess.CalledProcessError as e:
            logger.warning("git %s failed: %s", " ".join(args), (e.stderr or "").strip())
            return None
        except subprocess.TimeoutExpired:
            logger.warning("git %s timed out after %ss", " ".join(args), self.timeout_seconds)
            return None
        value = (res.stdout or "").strip()
        return value or None

    def short_revision(self) -> Optional[str]:
        return self._git("rev-parse", "--short", "HEAD")

    def current_branch(self) -> Optional[str]:
        """Branch checked out in the source tree, None when detached."""
        branch = self._git("rev-parse", "--abbrev-ref", "HEAD")
        if branch == "HEAD":
            return None
        return branch

    def resolve(self) -> str:
        revision = self.short_revision()
        if revision:
            self.source = "git"
            return revision

        counter = (self.build_counter or "").strip()
        if counter:
            logger.info("Revision unavailable from git, using build counter %s", counter)
            self.source = "build_counter"
            return counter

        logger.info("No revision information available, falling back to '%s'", LOCAL_MARKER)
        self.source = "fallback"
        return LOCAL_MARKER

    def resolve_image_tag(self, repo: str, branch: Optional[str]) -> tuple[str, str]:
        """
        Resolve the revision and compose the image tag.

        Returns
        -------
        tuple[str, str]
            (revision, image_tag)

        Raises
        ------
        ConfigurationError
            When the repository name is empty, since no usable tag can exist.
        """
        repo = (repo or "").strip()
        if not repo:
            raise ConfigurationError("IMAGE_REPOSITORY is empty; cannot derive an image tag")
        revision = self.resolve()
        tag = compose_image_tag(repo, branch, revision)
        logger.info("Resolved revision %s (%s) -> image tag %s", revision, self.source, tag)
        return revision, tag
