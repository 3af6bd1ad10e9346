"""
Staging job queries, cancellation and the shared fail-and-refund step.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from models.staging_job import StagingJob
from models.status import ImageStatus, JobStatus
from services import credits
from services.errors import AccessDenied, InvalidInput, NotFound
from services.job_admission import resolve_caller
from services.job_progress import compute_progress
from services.staging_store import StagingStore

logger = logging.getLogger(__name__)


async def fail_job(
    store: StagingStore,
    job: StagingJob,
    expected: Iterable[JobStatus],
    reason: str,
    now: datetime,
) -> bool:
    """
    Move ``job`` to failed, release its images and refund its credits.

    Only the caller whose status change wins does the rollback, so a job is
    refunded at most once however many paths race to fail it. The status
    change, image release and refund commit together: if the refund fails
    the job keeps its previous status and can be failed again. Returns
    whether this call won.
    """
    job_id = str(job.id)
    async with store.atomic() as tx:
        if not await tx.transition_job(job_id, expected, JobStatus.FAILED, completed_at=now):
            logger.info("[Staging] Job %s already left %s, not failing it", job_id, job.status)
            return False

        released = await tx.transition_images(
            list(job.image_ids or []), [ImageStatus.PROCESSING], ImageStatus.UPLOADED,
        )
        if job.credits_used > 0:
            await credits.refund(tx, str(job.user_id), job.credits_used, job_id, reason)
    logger.warning(
        "[Staging] Job %s failed (%s): released %d images, refunded %d credits",
        job_id, reason, released, job.credits_used,
    )
    return True


async def get_job_for_user(store: StagingStore, caller: Optional[str], job_id: str) -> StagingJob:
    user = await resolve_caller(store, caller)
    job = await store.get_job(job_id)
    if job is None or str(job.user_id) != str(user.id):
        raise NotFound("Job not found or access denied")
    return job


async def get_job_progress(
    store: StagingStore, caller: Optional[str], job_id: str, now: datetime
) -> dict[str, Any]:
    job = await get_job_for_user(store, caller, job_id)
    progress = compute_progress(job, now)
    return {"job_id": str(job.id), "status": job.status, **progress.to_dict()}


async def cancel_job(
    store: StagingStore, caller: Optional[str], job_id: str, now: datetime
) -> StagingJob:
    """Cancel a queued or processing job with a full refund."""
    job = await get_job_for_user(store, caller, job_id)
    if JobStatus(job.status).is_terminal:
        raise InvalidInput(f"Job cannot be cancelled (status: {job.status})")
    won = await fail_job(
        store, job, [JobStatus.QUEUED, JobStatus.PROCESSING], "Job cancelled by user", now,
    )
    if not won:
        raise InvalidInput("Job finished before it could be cancelled")
    logger.info("[Staging] Job %s cancelled by user %s", job_id, caller)
    refreshed = await store.get_job(job_id)
    return refreshed if refreshed is not None else job


async def list_user_jobs(
    store: StagingStore,
    caller: Optional[str],
    status: Optional[JobStatus] = None,
    limit: int = 20,
) -> list[StagingJob]:
    user = await resolve_caller(store, caller)
    return await store.list_user_jobs(str(user.id), status=status, limit=limit)


async def list_active_project_jobs(
    store: StagingStore, caller: Optional[str], project_id: str
) -> list[StagingJob]:
    user = await resolve_caller(store, caller)
    project = await store.get_project(project_id)
    if project is None:
        raise NotFound("Project not found")
    if str(project.user_id) != str(user.id):
        raise AccessDenied("Project not found or access denied")
    return await store.list_active_project_jobs(project_id, str(user.id))
