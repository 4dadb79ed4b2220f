"""
Deployment Reconciler
=====================
Converges each DeploymentTarget onto its desired image reference.

State machine per target:

    Probe ──exists──▶ PatchImage ──┐
      │                            ├──▶ AwaitConvergence ──▶ converged | timed_out
      └──absent──▶ Materialize ────┘

- Probe always asks the control plane; earlier observations are never reused.
- PatchImage touches only the containers whose template image is the
  placeholder and records the previous image reference for audit.
- Materialize replaces every placeholder occurrence with the desired ref
  verbatim, applies the result, then applies the optional service manifest
  as an independent creation (its failure never rolls back the workload).
- A timed-out rollout is not rolled back: the mutation is already submitted
  and may still complete after the run ends.

Idempotence: reconciling twice with the same ref finds the target present
with that ref and issues only a redundant patch.
"""
import asyncio
import glob
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional

import yaml

from deployer.core.constants import IMAGE_PLACEHOLDER
from deployer.core.errors import ConfigurationError, RemoteOperationFailure
from deployer.executor.cluster_client import ClusterClient
from deployer.models.deployment_target import DeploymentTarget

logger = logging.getLogger(__name__)

ReconcileOutcome = Literal["converged", "timed_out"]

_MANIFEST_PATTERNS = ("*.yaml", "*.yml")
_WORKLOAD_KINDS = ("Deployment", "StatefulSet", "DaemonSet")


@dataclass
class ReconcileReport:
    """Audit record for one reconcile call."""
    target: str
    action: str                              # "patched" | "materialized"
    previous_image_ref: Optional[str] = None
    desired_image_ref: str = ""
    outcome: str = ""
    service_applied: Optional[bool] = None
    polls: int = 0
    notes: List[str] = field(default_factory=list)


def render_manifest(template: str, image_ref: str, placeholder: str = IMAGE_PLACEHOLDER) -> str:
    """
    Substitute every placeholder occurrence with `image_ref`.

    Raises
    ------
    ConfigurationError
        The template has no placeholder, the ref is empty, or placeholder
        text would survive rendering.
    """
    if not image_ref:
        raise ConfigurationError("Desired image reference is empty")
    if placeholder not in template:
        raise ConfigurationError(f"Manifest template does not contain {placeholder}")

    rendered = template.replace(placeholder, image_ref)
    if placeholder in rendered and placeholder not in image_ref:
        raise ConfigurationError("Placeholder text remained after rendering")
    return rendered


class DeploymentReconciler:
    def __init__(
        self,
        cluster: ClusterClient,
        convergence_timeout: float = 120.0,
        poll_interval: float = 5.0,
        placeholder: str = IMAGE_PLACEHOLDER,
    ) -> None:
        self.cluster = cluster
        self.convergence_timeout = convergence_timeout
        self.poll_interval = poll_interval
        self.placeholder = placeholder
        self.reports: List[ReconcileReport] = []

    async def reconcile(self, target: DeploymentTarget) -> ReconcileOutcome:
        # --- Probe ---
        container = target.containers[0] if target.containers else None
        probe = await asyncio.to_thread(self.cluster.get_by_name, target.kind, target.name, container)
        target.current_image_ref = probe.current_image_ref

        if probe.exists:
            # --- PatchImage ---
            report = ReconcileReport(
                target=target.name,
                action="patched",
                previous_image_ref=probe.current_image_ref,
                desired_image_ref=target.desired_image_ref,
            )
            if probe.current_image_ref == target.desired_image_ref:
                report.notes.append("already at desired image, redundant patch")
            logger.info(
                "[RECONCILE] %s/%s exists (image=%s), patching to %s",
                target.kind, target.name, probe.current_image_ref, target.desired_image_ref,
            )
            await asyncio.to_thread(
                self.cluster.patch_image, target.kind, target.name, target.desired_image_ref,
                target.containers or None,
            )
        else:
            # --- Materialize ---
            report = ReconcileReport(
                target=target.name,
                action="materialized",
                desired_image_ref=target.desired_image_ref,
            )
            manifest = render_manifest(target.manifest_template, target.desired_image_ref, self.placeholder)
            logger.info("[RECONCILE] %s/%s absent, creating from template", target.kind, target.name)
            await asyncio.to_thread(self.cluster.apply, manifest)

            if target.service_manifest:
                try:
                    await asyncio.to_thread(self.cluster.apply, target.service_manifest)
                    report.service_applied = True
                except RemoteOperationFailure as e:
                    report.service_applied = False
                    report.notes.append(f"service apply failed: {e}")
                    logger.warning("[RECONCILE] Service for %s not applied: %s", target.name, e)

        self.reports.append(report)

        # --- AwaitConvergence ---
        outcome = await self._await_convergence(target, report)
        report.outcome = outcome
        if outcome == "converged":
            target.current_image_ref = target.desired_image_ref
        return outcome

    async def _await_convergence(self, target: DeploymentTarget, report: ReconcileReport) -> ReconcileOutcome:
        start = time.monotonic()
        while True:
            poll_start = time.monotonic()
            remaining = self.convergence_timeout - (poll_start - start)
            report.polls += 1
            status = await asyncio.to_thread(
                self.cluster.rollout_status,
                target.kind,
                target.name,
                max(1.0, min(self.poll_interval, remaining)),
            )
            if status == "converged":
                logger.info("[RECONCILE] %s converged after %d poll(s)", target.name, report.polls)
                return "converged"

            if time.monotonic() - start >= self.convergence_timeout:
                logger.warning(
                    "[RECONCILE] %s did not converge within %ss; leaving rollout in place",
                    target.name, self.convergence_timeout,
                )
                return "timed_out"

            # rollout status already blocked for part of the interval
            await asyncio.sleep(max(0.0, self.poll_interval - (time.monotonic() - poll_start)))

    async def reconcile_all(self, targets: List[DeploymentTarget]) -> Dict[str, ReconcileOutcome]:
        """Reconcile targets one after another, in the given order."""
        outcomes: Dict[str, ReconcileOutcome] = {}
        for target in targets:
            outcomes[target.name] = await self.reconcile(target)
        return outcomes


# ---------------------------------------------------------------------------
# Manifest discovery
# ---------------------------------------------------------------------------
def _manifest_files(manifest_dir: str) -> List[str]:
    if not manifest_dir or not os.path.isdir(manifest_dir):
        return []
    files: List[str] = []
    for pattern in _MANIFEST_PATTERNS:
        files.extend(glob.glob(os.path.join(manifest_dir, pattern)))
    return sorted(files)


def _labels_match(selector: dict, labels: dict) -> bool:
    return bool(selector) and all(labels.get(k) == v for k, v in selector.items())


def manifests_present(manifest_dir: str, placeholder: str = IMAGE_PLACEHOLDER) -> bool:
    """True when at least one manifest template carries the image placeholder."""
    for path in _manifest_files(manifest_dir):
        with open(path, "r", encoding="utf-8") as f:
            if placeholder in f.read():
                return True
    return False


def _placeholder_containers(doc: dict, placeholder: str) -> List[str]:
    pod_spec = (((doc.get("spec") or {}).get("template") or {}).get("spec") or {})
    return [
        c.get("name", "")
        for c in pod_spec.get("containers") or []
        if isinstance(c, dict) and c.get("image") == placeholder
    ]


def load_targets(manifest_dir: str, desired_image_ref: str,
                 placeholder: str = IMAGE_PLACEHOLDER) -> List[DeploymentTarget]:
    """
    Build DeploymentTargets from the manifests in `manifest_dir`.

    Every workload document (Deployment, StatefulSet, DaemonSet) becomes its
    own target whose template is that document alone. Services, from any
    file, are paired by name or by matching their selector against the
    workload's pod labels and applied separately.
    """
    workloads: List[dict] = []
    services: List[dict] = []

    for path in _manifest_files(manifest_dir):
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
        try:
            docs = [d for d in yaml.safe_load_all(text) if isinstance(d, dict)]
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Malformed manifest {path}: {e}")

        for doc in docs:
            kind = doc.get("kind")
            name = (doc.get("metadata") or {}).get("name", "")
            if kind in _WORKLOAD_KINDS:
                labels = (((doc.get("spec") or {}).get("template") or {}).get("metadata") or {}).get("labels") or {}
                workloads.append({
                    "name": name,
                    "kind": kind.lower(),
                    "labels": labels,
                    "containers": _placeholder_containers(doc, placeholder),
                    "text": yaml.safe_dump(doc, sort_keys=False),
                    "path": path,
                })
            elif kind == "Service":
                services.append({
                    "name": name,
                    "selector": (doc.get("spec") or {}).get("selector") or {},
                    "text": yaml.safe_dump(doc, sort_keys=False),
                })

    targets: List[DeploymentTarget] = []
    for workload in workloads:
        if not workload["name"]:
            raise ConfigurationError(f"Workload in {workload['path']} has no metadata.name")
        if not workload["containers"]:
            raise ConfigurationError(
                f"Workload {workload['name']} has no container with image {placeholder}"
            )
        if not all(workload["containers"]):
            raise ConfigurationError(f"Container without a name in workload {workload['name']}")
        service = next(
            (s for s in services
             if s["name"] == workload["name"] or _labels_match(s["selector"], workload["labels"])),
            None,
        )
        targets.append(DeploymentTarget(
            name=workload["name"],
            kind=workload["kind"],
            manifest_template=workload["text"],
            containers=workload["containers"],
            service_manifest=service["text"] if service else None,
            desired_image_ref=desired_image_ref,
        ))

    logger.info("Loaded %d deployment target(s) from %s", len(targets), manifest_dir)
    return targets
