"""
Virtual staging job API.

- POST /jobs: admit a staging job (reserves one credit per image)
- GET /jobs: the caller's recent jobs
- GET /jobs/{job_id}: job with per-image results
- GET /jobs/{job_id}/progress: counts, percent and ETA
- POST /jobs/{job_id}/cancel: cancel with full refund
- POST /jobs/{job_id}/retry: new job for the images that failed
- GET /projects/{project_id}/active-jobs: queued/processing jobs of a project
- GET /style-presets: available styles
- POST /recovery: run the stuck/stalled job sweeps now (admin key)

Errors raised by services are StagingError subclasses and are turned into
HTTP responses by the handler in api.main.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.auth_middleware import AuthContext, get_current_auth, require_admin_key
from models.status import JobStatus
from services import job_admission, job_recovery, staging_jobs
from services.job_admission import Enqueue, StagingRequest
from services.staging_store import SqlStagingStore, StagingStore, utcnow
from services.style_presets import get_style_presets

logger = logging.getLogger(__name__)

router = APIRouter()


def get_store() -> StagingStore:
    return SqlStagingStore()


def get_enqueue() -> Enqueue:
    from workers.tasks.staging import enqueue_staging_job

    return enqueue_staging_job


# --- Response/request models ---


class CreateJobResponse(BaseModel):
    job_id: str
    credits_used: int


class RetryJobRequest(BaseModel):
    image_ids: Optional[list[str]] = None


class JobListResponse(BaseModel):
    jobs: list[dict[str, Any]]


class ProgressResponse(BaseModel):
    job_id: str
    status: str
    total: int
    processed: int
    successful: int
    failed: int
    percent: float
    eta_seconds: Optional[float] = None
    eta_label: str


class RecoveryResponse(BaseModel):
    stuck_jobs_found: int
    stuck_jobs_rescheduled: int
    stalled_jobs_found: int = Field(default=0)
    stalled_jobs_failed: int = Field(default=0)


# --- Routes ---


@router.post("/jobs", response_model=CreateJobResponse, status_code=201)
async def create_job(
    request: StagingRequest,
    auth: AuthContext = Depends(get_current_auth),
    store: StagingStore = Depends(get_store),
    enqueue: Enqueue = Depends(get_enqueue),
) -> CreateJobResponse:
    job_id = await job_admission.create_staging_job(store, enqueue, auth.user_id_str, request)
    return CreateJobResponse(job_id=job_id, credits_used=len(request.image_ids))


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    status: Optional[JobStatus] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    auth: AuthContext = Depends(get_current_auth),
    store: StagingStore = Depends(get_store),
) -> JobListResponse:
    jobs = await staging_jobs.list_user_jobs(store, auth.user_id_str, status=status, limit=limit)
    return JobListResponse(jobs=[job.to_dict() for job in jobs])


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    auth: AuthContext = Depends(get_current_auth),
    store: StagingStore = Depends(get_store),
) -> dict[str, Any]:
    job = await staging_jobs.get_job_for_user(store, auth.user_id_str, job_id)
    return job.to_dict()


@router.get("/jobs/{job_id}/progress", response_model=ProgressResponse)
async def get_job_progress(
    job_id: str,
    auth: AuthContext = Depends(get_current_auth),
    store: StagingStore = Depends(get_store),
) -> ProgressResponse:
    progress = await staging_jobs.get_job_progress(store, auth.user_id_str, job_id, utcnow())
    return ProgressResponse(**progress)


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    auth: AuthContext = Depends(get_current_auth),
    store: StagingStore = Depends(get_store),
) -> dict[str, Any]:
    job = await staging_jobs.cancel_job(store, auth.user_id_str, job_id, utcnow())
    return job.to_dict()


@router.post("/jobs/{job_id}/retry", response_model=CreateJobResponse, status_code=201)
async def retry_job(
    job_id: str,
    request: Optional[RetryJobRequest] = None,
    auth: AuthContext = Depends(get_current_auth),
    store: StagingStore = Depends(get_store),
    enqueue: Enqueue = Depends(get_enqueue),
) -> CreateJobResponse:
    image_ids = request.image_ids if request else None
    new_job_id = await job_admission.retry_staging_job(
        store, enqueue, auth.user_id_str, job_id, image_ids,
    )
    new_job = await store.get_job(new_job_id)
    return CreateJobResponse(job_id=new_job_id, credits_used=new_job.credits_used if new_job else 0)


@router.get("/projects/{project_id}/active-jobs", response_model=JobListResponse)
async def list_active_project_jobs(
    project_id: str,
    auth: AuthContext = Depends(get_current_auth),
    store: StagingStore = Depends(get_store),
) -> JobListResponse:
    jobs = await staging_jobs.list_active_project_jobs(store, auth.user_id_str, project_id)
    return JobListResponse(jobs=[job.to_dict() for job in jobs])


@router.get("/style-presets")
async def list_style_presets() -> list[dict[str, Any]]:
    return get_style_presets()


@router.post(
    "/recovery",
    response_model=RecoveryResponse,
    dependencies=[Depends(require_admin_key)],
)
async def run_recovery(
    store: StagingStore = Depends(get_store),
    enqueue: Enqueue = Depends(get_enqueue),
) -> RecoveryResponse:
    now = utcnow()
    stuck = await job_recovery.recover_stuck_jobs(store, enqueue, now)
    stalled = await job_recovery.fail_stalled_processing_jobs(store, now)
    logger.info("[Recovery] Manual sweep: %s %s", stuck, stalled)
    return RecoveryResponse(**stuck, **stalled)
