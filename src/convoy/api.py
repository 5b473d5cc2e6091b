"""HTTP signal surface — start runs, approve/reject manual jobs, cancel, download artifacts.

Endpoints:
    Runs:
    - POST /pipelines - Start a run of the loaded pipeline file
    - GET /runs - Runs known to this process
    - GET /runs/{run_id} - Verdict, per-job status and artifact metadata
    - POST /runs/{run_id}/cancel - Abort a run

    Manual gates:
    - POST /runs/{run_id}/jobs/{job}/approve
    - POST /runs/{run_id}/jobs/{job}/reject

    Artifacts:
    - GET /runs/{run_id}/artifacts/{job} - Bundle download (404 missing, 410 expired)

    Status:
    - GET /status - Server and security status

Security:
    All endpoints respect CONVOY_API_KEY when configured.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field

from convoy.pipeline.context import TriggerSource
from convoy.pipeline.errors import ArtifactExpired, ArtifactNotFound, PipelineConfigError
from convoy.security import api_key_configured, require_api_key

if TYPE_CHECKING:
    from convoy.config import PipelineFile
    from convoy.pipeline.engine import PipelineController

logger = logging.getLogger(__name__)

router = APIRouter(tags=["pipelines"])

_GZIP_MAGIC = b"\x1f\x8b"

# Module-level references (configured at startup)
_controller: "PipelineController | None" = None
_pipeline: "PipelineFile | None" = None


def configure(controller: "PipelineController", pipeline: "PipelineFile") -> None:
    """Wire the router to a controller and the pipeline file it runs."""
    global _controller, _pipeline
    _controller = controller
    _pipeline = pipeline


def _require_controller() -> "PipelineController":
    if _controller is None:
        raise HTTPException(status_code=503, detail="Pipeline controller not configured")
    return _controller


# ── Request Models ───────────────────────────────────────────────────────────


class TriggerRequest(BaseModel):
    ref: str
    tag: bool = False
    sha: str = ""
    source: TriggerSource = TriggerSource.API
    variables: dict[str, str] = Field(default_factory=dict)


class ApprovalRequest(BaseModel):
    actor: str = ""


class RejectionRequest(BaseModel):
    actor: str = ""
    reason: str = ""


# ── Runs ─────────────────────────────────────────────────────────────────────


@router.post("/pipelines", status_code=status.HTTP_201_CREATED)
async def start_pipeline(request: TriggerRequest, authorized: bool = Depends(require_api_key)):
    controller = _require_controller()
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="No pipeline file loaded")

    context = _pipeline.build_context(
        request.ref,
        tag=request.tag,
        sha=request.sha,
        source=request.source,
        variables=request.variables,
    )
    try:
        run_id = await controller.start_pipeline(
            _pipeline.job_definitions(),
            context,
            stages=_pipeline.stages,
            name=_pipeline.name,
        )
    except PipelineConfigError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    plan = controller.plan_of(run_id)
    return {
        "run_id": run_id,
        "pipeline_name": _pipeline.name,
        "plan": [stage.model_dump() for stage in plan.stages],
    }


@router.get("/runs")
async def list_runs(authorized: bool = Depends(require_api_key)):
    controller = _require_controller()
    return {
        "runs": [
            {
                "run_id": run.run_id,
                "pipeline_name": run.pipeline_name,
                "status": run.status.value,
                "ref": run.context.ref,
                "created_at": run.created_at.isoformat() if run.created_at else None,
            }
            for run in controller.list_runs()
        ]
    }


@router.get("/runs/{run_id}")
async def get_run(run_id: str, authorized: bool = Depends(require_api_key)):
    controller = _require_controller()
    try:
        return controller.result(run_id).summary()
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found") from exc


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str, authorized: bool = Depends(require_api_key)):
    controller = _require_controller()
    try:
        cancelled = await controller.cancel(run_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found") from exc
    if not cancelled:
        raise HTTPException(status_code=409, detail=f"Run {run_id} has nothing left to cancel")
    return {"run_id": run_id, "cancelled": True}


# ── Manual gates ─────────────────────────────────────────────────────────────


@router.post("/runs/{run_id}/jobs/{job_name:path}/approve")
async def approve_job(
    run_id: str,
    job_name: str,
    request: ApprovalRequest | None = None,
    authorized: bool = Depends(require_api_key),
):
    controller = _require_controller()
    actor = request.actor if request else ""
    try:
        approved = await controller.approve(run_id, job_name, actor=actor)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc.args[0])) from exc
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if not approved:
        raise HTTPException(status_code=409, detail=f"Job '{job_name}' can no longer be approved")
    return {"run_id": run_id, "job": job_name, "approved": True}


@router.post("/runs/{run_id}/jobs/{job_name:path}/reject")
async def reject_job(
    run_id: str,
    job_name: str,
    request: RejectionRequest | None = None,
    authorized: bool = Depends(require_api_key),
):
    controller = _require_controller()
    actor = request.actor if request else ""
    reason = request.reason if request else ""
    try:
        rejected = await controller.reject(run_id, job_name, actor=actor, reason=reason)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc.args[0])) from exc
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if not rejected:
        raise HTTPException(status_code=409, detail=f"Job '{job_name}' can no longer be rejected")
    return {"run_id": run_id, "job": job_name, "rejected": True}


# ── Artifacts ────────────────────────────────────────────────────────────────


@router.get("/runs/{run_id}/artifacts/{job_name:path}")
async def download_artifact(run_id: str, job_name: str, authorized: bool = Depends(require_api_key)):
    controller = _require_controller()
    try:
        artifact = controller.store.describe(job_name, run_id)
    except ArtifactExpired as exc:
        raise HTTPException(status_code=410, detail=str(exc)) from exc
    except ArtifactNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    if artifact.blob.startswith(_GZIP_MAGIC):
        media_type, filename = "application/gzip", f"{artifact.name}.tar.gz"
    else:
        media_type, filename = "application/octet-stream", artifact.name
    return Response(
        content=artifact.blob,
        media_type=media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Convoy-Expires-At": artifact.expires_at.isoformat(),
        },
    )


# ── Status ───────────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status(authorized: bool = Depends(require_api_key)):
    return {
        "pipeline": _pipeline.name if _pipeline else None,
        "controller": _controller is not None,
        "manual_policy": _controller.manual_policy.value if _controller else None,
        "authentication_required": api_key_configured(),
    }
