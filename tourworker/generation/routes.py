"""
FastAPI routes for walkthrough generation.

  POST   /generation/start                       — Start a job for a confirmed plan
  GET    /generation/jobs/{job_id}               — Job state + progress snapshot
  POST   /generation/progress                    — Batch poll several jobs
  POST   /generation/retry                       — Retry failed rooms of a job
  POST   /generation/cancel                      — Cancel a running job
  GET    /generation/projects/{project_id}/video — Latest final video
  DELETE /generation/projects/{project_id}       — Cascade on project deletion

The caller is identified by the X-User-Id header (see auth_middleware).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ..auth_middleware import get_current_user
from .errors import ConflictError
from .models import (
    BatchProgressRequest,
    BatchProgressResponse,
    CancelRequest,
    CancelResponse,
    DeleteProjectResponse,
    FinalVideoResponse,
    JobStatusResponse,
    RetryRequest,
    RetryResponse,
    StartGenerationRequest,
    StartGenerationResponse,
)
from .orchestrator import GenerationOrchestrator
from .progress import build_progress, estimate_remaining_seconds

logger = logging.getLogger(__name__)

generation_router = APIRouter(prefix="/generation", tags=["generation"])

# Set by main.py at startup; tests override get_orchestrator instead
_orchestrator: Optional[GenerationOrchestrator] = None


def set_orchestrator(orchestrator: Optional[GenerationOrchestrator]) -> None:
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> GenerationOrchestrator:
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Generation service is not ready")
    return _orchestrator


def _http_error(e: Exception, action: str) -> HTTPException:
    """Translate service exceptions into HTTP errors."""
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, LookupError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PermissionError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, ConflictError):
        return HTTPException(status_code=409, detail=str(e))
    logger.error(f"{action} failed: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


# ── Start ────────────────────────────────────────────────────────────────────

@generation_router.post("/start", response_model=StartGenerationResponse)
async def start_generation(
    request: StartGenerationRequest,
    user_id: str = Depends(get_current_user),
    service: GenerationOrchestrator = Depends(get_orchestrator),
):
    """
    Create a job for the confirmed plan and return immediately; rooms are
    generated in the background.

    Errors:
      - 400: Invalid plan
      - 403: Not your project
      - 404: Unknown project
    """
    try:
        job = await service.start_generation(user_id, request.project_id, request.plan)
    except Exception as e:
        raise _http_error(e, "Generation start")

    return StartGenerationResponse(
        job_id=job.id,
        status=job.status,
        estimated_completion_time_seconds=estimate_remaining_seconds(job),
    )


# ── Poll ─────────────────────────────────────────────────────────────────────

@generation_router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
    service: GenerationOrchestrator = Depends(get_orchestrator),
):
    try:
        job = await service.get_job(user_id, job_id)
    except Exception as e:
        raise _http_error(e, "Job lookup")
    return JobStatusResponse(job=job, progress=build_progress(job))


@generation_router.post("/progress", response_model=BatchProgressResponse)
async def get_progress_batch(
    request: BatchProgressRequest,
    user_id: str = Depends(get_current_user),
    service: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Poll several jobs at once. Unknown ids are skipped."""
    try:
        jobs = await service.get_jobs(user_id, request.job_ids)
    except Exception as e:
        raise _http_error(e, "Batch progress")
    return BatchProgressResponse(
        jobs=[JobStatusResponse(job=job, progress=build_progress(job)) for job in jobs]
    )


# ── Retry / Cancel ───────────────────────────────────────────────────────────

@generation_router.post("/retry", response_model=RetryResponse)
async def retry_units(
    request: RetryRequest,
    user_id: str = Depends(get_current_user),
    service: GenerationOrchestrator = Depends(get_orchestrator),
):
    """
    Reset failed rooms and run them again. Non-failed ids are ignored.

    Errors:
      - 409: Job was cancelled, or the final video is being composed
    """
    try:
        job, retried = await service.retry_failed_units(user_id, request.job_id, request.unit_ids)
    except Exception as e:
        raise _http_error(e, "Retry")
    return RetryResponse(job_id=job.id, status=job.status, retried_unit_ids=retried)


@generation_router.post("/cancel", response_model=CancelResponse)
async def cancel_job(
    request: CancelRequest,
    user_id: str = Depends(get_current_user),
    service: GenerationOrchestrator = Depends(get_orchestrator),
):
    try:
        job = await service.cancel_job(user_id, request.job_id)
    except Exception as e:
        raise _http_error(e, "Cancel")
    return CancelResponse(job_id=job.id, status=job.status, error=job.error)


# ── Project-level ────────────────────────────────────────────────────────────

@generation_router.get("/projects/{project_id}/video", response_model=FinalVideoResponse)
async def get_final_video(
    project_id: str,
    user_id: str = Depends(get_current_user),
    service: GenerationOrchestrator = Depends(get_orchestrator),
):
    try:
        job, video = await service.get_final_video(user_id, project_id)
    except Exception as e:
        raise _http_error(e, "Final video lookup")
    return FinalVideoResponse(
        project_id=project_id,
        job_id=job.id,
        video_url=video.video_url,
        thumbnail_url=video.thumbnail_url,
        duration=video.duration,
        file_size=video.file_size,
        failed_room_ids=job.failed_room_ids,
    )


@generation_router.delete("/projects/{project_id}", response_model=DeleteProjectResponse)
async def delete_project_generation(
    project_id: str,
    user_id: str = Depends(get_current_user),
    service: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Called when a project is deleted: removes its jobs, units and videos."""
    try:
        deleted = await service.delete_project_generation(user_id, project_id)
    except Exception as e:
        raise _http_error(e, "Project cleanup")
    return DeleteProjectResponse(project_id=project_id, deleted_jobs=len(deleted))
