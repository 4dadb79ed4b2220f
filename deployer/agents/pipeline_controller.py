"""
Pipeline Controller
===================
Drives one build-and-deploy run through its stages:

    Prepare → Build → Publish? → Deploy? → Cleanup → Notify → Terminal

Core guarantees:
    - Stages run strictly in order on one asyncio task.
    - Every stage is bounded by its configured timeout; exceeding it fails
      the run and jumps straight to Cleanup.
    - A run timeout or abort() cancels the active stage; the run ends Aborted.
    - Cancelling a stage stops its collaborator work: the build command's
      process group is killed and the container engine is interrupted.
      Credentials bound by the stage are released before run() returns.
    - Publish and Deploy gates are resolved once in Prepare. A closed gate,
      or an unavailable optional credential, skips the stage.
    - Cleanup and Notify execute exactly once on every path.
    - final_result is set once, after Cleanup, and before Notify.

Failure policy:
    - ConfigurationError / CollaboratorUnavailable in a mandatory stage → failure
    - RemoteOperationFailure → failure (Publish: degraded if publish_best_effort)
    - Rollout not converged → degraded (failure if require_convergence)
    - Notifier errors never reach the controller
"""
import asyncio
import logging
import time
import uuid
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

from deployer.agents.artifact_publisher import ArtifactPublisher
from deployer.agents.deployment_reconciler import (
    DeploymentReconciler,
    load_targets,
    manifests_present,
    render_manifest,
)
from deployer.agents.gates import resolve_gates
from deployer.agents.notifier import Notifier, format_status
from deployer.agents.revision_resolver import RevisionResolver
from deployer.core.constants import (
    FAILING_OUTCOMES,
    OUTCOME_ABORTED,
    OUTCOME_DEGRADED,
    OUTCOME_FAILED,
    OUTCOME_OK,
    OUTCOME_SKIPPED,
    OUTCOME_TIMED_OUT,
    STAGE_BUILD,
    STAGE_CLEANUP,
    STAGE_DEPLOY,
    STAGE_PREPARE,
    STAGE_PUBLISH,
)
from deployer.core.errors import (
    ConfigurationError,
    ConvergenceTimeout,
    CredentialMissing,
    PipelineError,
    RemoteOperationFailure,
    StageTimeout,
)
from deployer.executor.cluster_client import ClusterClient
from deployer.models.deployment_target import DeploymentTarget
from deployer.models.pipeline_run import FinalResult, PipelineRun
from deployer.models.run_config import RunConfig
from deployer.services.secret_scope import SecretScope

logger = logging.getLogger(__name__)

StageOutcome = Tuple[str, str]   # (outcome, detail)
T = TypeVar("T")


class PipelineController:
    """
    Sequences the pipeline stages for a single run.

    Collaborators are injected so each stage can be exercised in isolation;
    `cluster_factory` receives the materialized kubeconfig path.
    """

    def __init__(
        self,
        config: RunConfig,
        secret_scope: SecretScope,
        publisher: ArtifactPublisher,
        notifier: Notifier,
        resolver: Optional[RevisionResolver] = None,
        cluster_factory: Optional[Callable[[Optional[str]], ClusterClient]] = None,
    ) -> None:
        self.config = config
        self.secret_scope = secret_scope
        self.publisher = publisher
        self.notifier = notifier
        self.resolver = resolver or RevisionResolver(
            source_dir=config.source_dir, build_counter=config.build_number
        )
        self.cluster_factory = cluster_factory or (
            lambda kubeconfig: ClusterClient(namespace=config.namespace, kubeconfig=kubeconfig)
        )

        self.reconciler: Optional[DeploymentReconciler] = None
        self.cleanup_runs = 0
        self._targets: List[DeploymentTarget] = []
        self._cleanup_actions: List[Tuple[str, Callable[[], None]]] = []
        self._task: Optional[asyncio.Task] = None
        self._aborted = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def run(self, run_id: Optional[str] = None, branch: Optional[str] = None) -> PipelineRun:
        """Execute one run. Always returns a finished PipelineRun."""
        run = PipelineRun(run_id=run_id or uuid.uuid4().hex[:12], branch=branch)
        self._targets = []
        self._cleanup_actions = [("close container engine", self.publisher.engine.close)]
        self.publisher.engine.reset_interrupt()
        self._aborted = False

        logger.info("=== Pipeline run %s started ===", run.run_id)
        result: FinalResult = "failure"
        external_cancel = False

        try:
            self._task = asyncio.ensure_future(self._execute(run))
            await asyncio.wait_for(self._task, timeout=self.config.run_timeout)
            result = self._evaluate(run)
        except asyncio.TimeoutError:
            logger.error("Run %s exceeded the %ss run timeout, aborting", run.run_id, self.config.run_timeout)
            result = "aborted"
        except asyncio.CancelledError:
            if not self._aborted:
                external_cancel = True
            logger.warning("Run %s aborted", run.run_id)
            result = "aborted"
        except PipelineError as e:
            logger.error("Run %s failed: %s", run.run_id, e)
            result = "failure"
        except Exception as e:
            logger.error("Run %s failed with an unexpected error: %s", run.run_id, e, exc_info=True)
            result = "failure"
        finally:
            await self._cleanup(run)
            run.finish(result)
            run.summary = format_status(run)
            await self._notify(run)
            self._task = None

        self._log_audit(run)
        if external_cancel:
            raise asyncio.CancelledError()
        return run

    def abort(self) -> None:
        """External abort signal: cancel the active stage."""
        self._aborted = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    # ------------------------------------------------------------------
    # Stage sequencing
    # ------------------------------------------------------------------
    async def _execute(self, run: PipelineRun) -> None:
        await self._stage(run, STAGE_PREPARE, self._prepare)
        await self._stage(run, STAGE_BUILD, self._build)

        if run.gates.publish:
            await self._stage(run, STAGE_PUBLISH, self._publish)
        else:
            run.record(STAGE_PUBLISH, OUTCOME_SKIPPED, detail="gate closed")

        if run.gates.deploy:
            await self._stage(run, STAGE_DEPLOY, self._deploy)
        else:
            run.record(STAGE_DEPLOY, OUTCOME_SKIPPED, detail="gate closed")

    async def _stage(self, run: PipelineRun, name: str,
                     fn: Callable[[PipelineRun], Awaitable[StageOutcome]]) -> None:
        timeout = self.config.timeout_for(name)
        start = time.monotonic()
        logger.info("[%s] started (timeout=%ss)", name.upper(), timeout)

        try:
            outcome, detail = await asyncio.wait_for(fn(run), timeout=timeout)
        except asyncio.TimeoutError:
            run.record(name, OUTCOME_TIMED_OUT, time.monotonic() - start, f"exceeded {timeout}s")
            logger.error("[%s] timed out after %ss", name.upper(), timeout)
            raise StageTimeout(name, timeout)
        except asyncio.CancelledError:
            run.record(name, OUTCOME_ABORTED, time.monotonic() - start, "cancelled")
            raise
        except PipelineError as e:
            run.record(name, OUTCOME_FAILED, time.monotonic() - start, str(e))
            logger.error("[%s] failed: %s", name.upper(), e)
            raise
        except Exception as e:
            run.record(name, OUTCOME_FAILED, time.monotonic() - start, f"{type(e).__name__}: {e}")
            logger.error("[%s] failed unexpectedly: %s", name.upper(), e, exc_info=True)
            raise

        run.record(name, outcome, time.monotonic() - start, detail)
        logger.info("[%s] %s %s", name.upper(), outcome, detail)

    async def _engine_call(self, fn: Callable[..., T], *args) -> T:
        """
        Run a blocking container engine call in a worker thread. When the
        stage is cancelled the engine is interrupted, so the thread stops at
        its next check instead of finishing the operation.
        """
        try:
            return await asyncio.to_thread(fn, *args)
        except asyncio.CancelledError:
            self.publisher.engine.interrupt()
            raise

    @staticmethod
    def _evaluate(run: PipelineRun) -> FinalResult:
        if any(r.outcome in FAILING_OUTCOMES for r in run.stage_results):
            return "failure"
        return "success"

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    async def _prepare(self, run: PipelineRun) -> StageOutcome:
        if not run.branch:
            run.branch = await asyncio.to_thread(self.resolver.current_branch)

        has_manifests = manifests_present(self.config.manifest_dir)
        run.gates = resolve_gates(self.config, run.branch, has_manifests)

        run.revision, run.image_tag = await asyncio.to_thread(
            self.resolver.resolve_image_tag, self.config.image_repository, run.branch
        )
        if not run.image_tag:
            raise ConfigurationError("Derived image tag is empty")

        # Manifest problems surface here, before anything remote is touched
        if run.gates.deploy:
            self._targets = load_targets(self.config.manifest_dir, run.image_tag)
            for target in self._targets:
                render_manifest(target.manifest_template, target.desired_image_ref)

        build = await self.publisher.prepare(
            self.config.source_dir,
            self.config.build_command,
            self.config.build_env_file,
            self.config.build_api_key_credential,
            self.config.build_api_key_variable,
        )
        detail = f"tag {run.image_tag}"
        if build is not None:
            detail += f", assets built in {build.execution_time_seconds:.1f}s"
        return OUTCOME_OK, detail

    async def _build(self, run: PipelineRun) -> StageOutcome:
        if not run.image_tag:
            raise ConfigurationError("Build reached without an image tag")
        ref = await self._engine_call(self.publisher.build, self.config.build_context, run.image_tag)
        if self.config.remove_local_image:
            self._cleanup_actions.append(
                ("remove local image", lambda: self.publisher.engine.remove_image(ref))
            )
        return OUTCOME_OK, ref

    async def _publish(self, run: PipelineRun) -> StageOutcome:
        name = self.config.registry_credential
        if self.secret_scope.availability(name) == "unavailable":
            logger.warning("[PUBLISH] Registry credential %s unavailable, skipping", name)
            return OUTCOME_SKIPPED, "registry credential unavailable"

        try:
            with self.secret_scope.scoped(name) as credential:
                outcome = await self._engine_call(self.publisher.publish, run.image_tag, credential)
        except CredentialMissing:
            return OUTCOME_SKIPPED, "registry credential unavailable"
        except RemoteOperationFailure as e:
            if self.config.publish_best_effort:
                logger.warning("[PUBLISH] Push failed, continuing (best-effort): %s", e)
                return OUTCOME_DEGRADED, str(e)
            raise

        if outcome == "published":
            return OUTCOME_OK, f"pushed {run.image_tag}"
        return OUTCOME_SKIPPED, "publisher skipped"

    async def _deploy(self, run: PipelineRun) -> StageOutcome:
        name = self.config.kubeconfig_credential
        if self.secret_scope.availability(name) == "unavailable":
            logger.warning("[DEPLOY] Deploy credential %s unavailable, skipping", name)
            return OUTCOME_SKIPPED, "deploy credential unavailable"
        if not self._targets:
            return OUTCOME_SKIPPED, "no deployment targets"

        try:
            with self.secret_scope.scoped(name) as credential:
                kubeconfig = self.secret_scope.materialize(credential)
                self.reconciler = DeploymentReconciler(
                    self.cluster_factory(kubeconfig),
                    convergence_timeout=self.config.convergence_timeout,
                    poll_interval=self.config.poll_interval,
                )
                outcomes = await self.reconciler.reconcile_all(self._targets)
        except CredentialMissing:
            return OUTCOME_SKIPPED, "deploy credential unavailable"

        pending = [target for target, outcome in outcomes.items() if outcome == "timed_out"]
        if pending:
            run.convergence_timed_out = True
            if self.config.require_convergence:
                raise ConvergenceTimeout(pending)
            return OUTCOME_DEGRADED, f"not converged: {', '.join(pending)}"
        return OUTCOME_OK, f"converged: {', '.join(outcomes)}"

    # ------------------------------------------------------------------
    # Terminal phase
    # ------------------------------------------------------------------
    async def _cleanup(self, run: PipelineRun) -> None:
        self.cleanup_runs += 1
        start = time.monotonic()
        actions = list(self._cleanup_actions)
        failures: List[str] = []

        def run_actions() -> None:
            for label, action in actions:
                try:
                    action()
                except Exception as e:
                    failures.append(label)
                    logger.warning("[CLEANUP] %s failed: %s", label, e)

        try:
            await asyncio.wait_for(asyncio.to_thread(run_actions), timeout=self.config.cleanup_timeout)
            outcome = OUTCOME_DEGRADED if failures else OUTCOME_OK
            detail = f"failed: {', '.join(failures)}" if failures else f"{len(actions)} action(s)"
        except asyncio.TimeoutError:
            outcome, detail = OUTCOME_TIMED_OUT, f"exceeded {self.config.cleanup_timeout}s"
            logger.warning("[CLEANUP] did not finish within %ss", self.config.cleanup_timeout)

        run.record(STAGE_CLEANUP, outcome, time.monotonic() - start, detail)

    async def _notify(self, run: PipelineRun) -> None:
        try:
            await asyncio.wait_for(self.notifier.notify(run.summary), timeout=self.config.notify_timeout)
        except asyncio.TimeoutError:
            logger.error("[NOTIFY] Timed out after %ss", self.config.notify_timeout)
        except Exception as e:
            logger.error("[NOTIFY] Failed: %s", e)

    @staticmethod
    def _log_audit(run: PipelineRun) -> None:
        for index, stage in enumerate(run.stage_results, 1):
            logger.info(
                "  %d. %-8s %-9s %6.2fs %s",
                index, stage.stage, stage.outcome, stage.duration_seconds, stage.detail,
            )
        logger.info("=== Pipeline run %s finished: %s ===", run.run_id, run.final_result)
