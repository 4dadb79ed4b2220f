"""
Pipeline Run Model
==================
Pydantic model for one execution of the build-and-deploy pipeline.

Fields:
    run_id            - opaque identifier assigned by the caller
    branch            - branch or ref being built (may be absent)
    revision          - resolved revision identifier (short sha, build counter or "local")
    image_tag         - "{repo}:{branch}-{revision}", non-empty once Build is reached
    gates             - publish/deploy decisions resolved at run start
    stage_results     - ordered StageResult records, one per stage, in execution order
    final_result      - "success" | "failure" | "aborted", set exactly once via finish()
    convergence_timed_out - at least one target did not converge within the bound
    summary           - human-readable status line sent to the notifier

The run is never persisted: it lives for one controller invocation and is
discarded once the terminal notification has been sent.
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from deployer.models.run_config import Gates

FinalResult = Literal["success", "failure", "aborted"]


class StageResult(BaseModel):
    stage: str
    outcome: str
    duration_seconds: float = 0.0
    detail: str = ""


class PipelineRun(BaseModel):
    run_id: str
    branch: Optional[str] = None
    revision: str = ""
    image_tag: str = ""
    gates: Optional[Gates] = None
    stage_results: List[StageResult] = Field(default_factory=list)
    final_result: Optional[FinalResult] = None
    convergence_timed_out: bool = False
    summary: str = ""

    def record(self, stage: str, outcome: str, duration_seconds: float = 0.0, detail: str = "") -> StageResult:
        result = StageResult(
            stage=stage,
            outcome=outcome,
            duration_seconds=round(duration_seconds, 3),
            detail=detail,
        )
        self.stage_results.append(result)
        return result

    def outcome_of(self, stage: str) -> Optional[str]:
        for result in self.stage_results:
            if result.stage == stage:
                return result.outcome
        return None

    def finish(self, result: FinalResult) -> None:
        """Set the terminal result. A run terminates exactly once."""
        if self.final_result is not None:
            raise RuntimeError(
                f"Run {self.run_id} already finished with '{self.final_result}'"
            )
        self.final_result = result

    @property
    def is_finished(self) -> bool:
        return self.final_result is not None
