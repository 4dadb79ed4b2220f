"""
Cluster Client
==============
kubectl adapter for the cluster control plane.

    get_by_name(kind, name, c)     → ProbeResult(exists, current_image_ref)
    patch_image(kind, name, ref)   → image update of the named containers
    apply(manifest)                → create/update from a rendered manifest
    rollout_status(kind, name, s)  → "converged" | "timed_out"

Every call is a fresh subprocess; nothing observed here is cached.
"""
import logging
import subprocess
from dataclasses import dataclass
from typing import List, Literal, Optional

from deployer.core.errors import CollaboratorUnavailable, RemoteOperationFailure

logger = logging.getLogger(__name__)

RolloutStatus = Literal["converged", "timed_out"]

_NOT_FOUND_MARKERS = ("NotFound", "not found")
_TIMEOUT_MARKERS = ("timed out waiting",)
_FIRST_IMAGE_JSONPATH = "jsonpath={.spec.template.spec.containers[0].image}"


def _image_jsonpath(container: Optional[str]) -> str:
    if not container:
        return _FIRST_IMAGE_JSONPATH
    return f'jsonpath={{.spec.template.spec.containers[?(@.name=="{container}")].image}}'


@dataclass
class ProbeResult:
    exists: bool
    current_image_ref: Optional[str] = None


class ClusterClient:
    def __init__(
        self,
        namespace: str = "default",
        kubeconfig: Optional[str] = None,
        kubectl: str = "kubectl",
        command_timeout: float = 120.0,
    ) -> None:
        self.namespace = namespace
        self.kubeconfig = kubeconfig
        self.kubectl = kubectl
        self.command_timeout = command_timeout

    def _base_command(self) -> List[str]:
        cmd = [self.kubectl]
        if self.kubeconfig:
            cmd += ["--kubeconfig", self.kubeconfig]
        cmd += ["--namespace", self.namespace]
        return cmd

    def _run(self, *args: str, input_text: Optional[str] = None,
             timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        cmd = self._base_command() + list(args)
        try:
            return subprocess.run(
                cmd,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout or self.command_timeout,
            )
        except FileNotFoundError:
            raise CollaboratorUnavailable(f"{self.kubectl} is not installed")
        except subprocess.TimeoutExpired:
            raise RemoteOperationFailure(f"kubectl {args[0]}", "command timed out")

    def get_by_name(self, kind: str, name: str, container: Optional[str] = None) -> ProbeResult:
        """Probe the workload; the image is read from `container` when named."""
        res = self._run("get", kind, name, "-o", _image_jsonpath(container))
        if res.returncode == 0:
            image = (res.stdout or "").strip() or None
            return ProbeResult(exists=True, current_image_ref=image)

        stderr = (res.stderr or "").strip()
        if any(marker in stderr for marker in _NOT_FOUND_MARKERS):
            return ProbeResult(exists=False)
        raise RemoteOperationFailure("kubectl get", stderr)

    def patch_image(self, kind: str, name: str, ref: str,
                    containers: Optional[List[str]] = None) -> None:
        """Point the named containers at `ref`; every container when none are named."""
        assignments = [f"{c}={ref}" for c in containers] if containers else [f"*={ref}"]
        res = self._run("set", "image", f"{kind}/{name}", *assignments)
        if res.returncode != 0:
            raise RemoteOperationFailure("kubectl set image", (res.stderr or "").strip())
        logger.info("Patched %s/%s image to %s", kind, name, ref)

    def apply(self, manifest: str) -> None:
        res = self._run("apply", "-f", "-", input_text=manifest)
        if res.returncode != 0:
            raise RemoteOperationFailure("kubectl apply", (res.stderr or "").strip())
        logger.info("Applied manifest: %s", (res.stdout or "").strip())

    def rollout_status(self, kind: str, name: str, timeout_seconds: float) -> RolloutStatus:
        wait = max(1, int(timeout_seconds))
        res = self._run(
            "rollout", "status", f"{kind}/{name}", f"--timeout={wait}s",
            timeout=wait + 30,
        )
        if res.returncode == 0:
            return "converged"

        stderr = (res.stderr or "").strip()
        if any(marker in stderr for marker in _TIMEOUT_MARKERS):
            return "timed_out"
        raise RemoteOperationFailure("kubectl rollout status", stderr)
