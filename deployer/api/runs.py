"""
POST /api/runs
==============
Executes one build-and-deploy run and returns its terminal summary.

The request may override the gate flags and the branch; everything else
comes from the environment (RunConfig.from_env). The call blocks until the
run is terminal: the controller enforces its own run timeout, so the
endpoint always answers with a finished run.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, field_validator

from deployer.core.config import BRANCH_NAME
from deployer.models.pipeline_run import StageResult
from deployer.models.run_config import RunConfig
from deployer.services.pipeline_factory import build_controller

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Pipeline"])


class RunRequest(BaseModel):
    run_id: Optional[str] = None
    branch: Optional[str] = None
    push_enabled: Optional[bool] = None
    deploy_enabled: Optional[bool] = None

    @field_validator("branch")
    @classmethod
    def strip_branch(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


class RunResponse(BaseModel):
    run_id: str
    branch: Optional[str]
    revision: str
    image_tag: str
    final_result: str
    convergence_timed_out: bool
    summary: str
    stages: List[StageResult]


@router.post("/runs", response_model=RunResponse)
async def trigger_run(request: RunRequest):
    config = RunConfig.from_env(
        push_enabled=request.push_enabled,
        deploy_enabled=request.deploy_enabled,
    )
    if not config.image_repository:
        raise HTTPException(
            status_code=400,
            detail="IMAGE_REPOSITORY not set; cannot derive an image tag.",
        )

    logger.info("[API] Pipeline run requested (branch=%s)", request.branch or BRANCH_NAME or "auto")
    controller = build_controller(config)
    run = await controller.run(run_id=request.run_id, branch=request.branch or BRANCH_NAME)

    return RunResponse(
        run_id=run.run_id,
        branch=run.branch,
        revision=run.revision,
        image_tag=run.image_tag,
        final_result=run.final_result,
        convergence_timed_out=run.convergence_timed_out,
        summary=run.summary,
        stages=run.stage_results,
    )
