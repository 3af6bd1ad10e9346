"""
Recovery sweeps for staging jobs, run periodically by Celery Beat.

- recover_stuck_jobs: re-enqueue jobs still queued past the threshold
- fail_stalled_processing_jobs: fail and refund jobs whose worker went silent
- cleanup_old_jobs: delete finished jobs past the retention window
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from config import settings
from models.status import JobStatus
from services.job_admission import Enqueue
from services.staging_jobs import fail_job
from services.staging_store import StagingStore

logger = logging.getLogger(__name__)


async def recover_stuck_jobs(
    store: StagingStore,
    enqueue: Enqueue,
    now: datetime,
    threshold: Optional[timedelta] = None,
) -> dict[str, int]:
    """
    Re-enqueue every job queued for longer than ``threshold``.

    Re-enqueueing is safe: the processor's status claim turns a duplicate
    delivery into a no-op.
    """
    threshold = threshold or timedelta(minutes=settings.STAGING_STUCK_JOB_MINUTES)
    stuck = await store.list_jobs_by_status(JobStatus.QUEUED, created_before=now - threshold)
    rescheduled = 0
    for job in stuck:
        try:
            enqueue(str(job.id))
            rescheduled += 1
            logger.info("[Recovery] Rescheduled stuck job %s", job.id)
        except Exception as exc:
            logger.error("[Recovery] Failed to reschedule job %s: %s", job.id, exc)

    if stuck:
        logger.info("[Recovery] Found %d stuck jobs, rescheduled %d", len(stuck), rescheduled)
    return {"stuck_jobs_found": len(stuck), "stuck_jobs_rescheduled": rescheduled}


async def fail_stalled_processing_jobs(
    store: StagingStore,
    now: datetime,
    threshold: Optional[timedelta] = None,
) -> dict[str, int]:
    """Fail processing jobs with no progress for ``threshold`` and refund them."""
    threshold = threshold or timedelta(minutes=settings.STAGING_STALLED_PROCESSING_MINUTES)
    stalled = await store.list_jobs_by_status(JobStatus.PROCESSING, updated_before=now - threshold)
    failed = 0
    for job in stalled:
        try:
            if await fail_job(
                store, job, [JobStatus.PROCESSING], "Job timed out during processing", now,
            ):
                failed += 1
        except Exception as exc:
            logger.error("[Recovery] Failed to fail stalled job %s: %s", job.id, exc)

    if stalled:
        logger.warning("[Recovery] Found %d stalled jobs, failed %d", len(stalled), failed)
    return {"stalled_jobs_found": len(stalled), "stalled_jobs_failed": failed}


async def cleanup_old_jobs(
    store: StagingStore,
    now: datetime,
    retention: Optional[timedelta] = None,
) -> dict[str, int]:
    """Delete completed and failed jobs older than ``retention``."""
    retention = retention or timedelta(days=settings.STAGING_JOB_RETENTION_DAYS)
    deleted = await store.delete_terminal_jobs(now - retention)
    logger.info("[Recovery] Deleted %d finished jobs older than %s", deleted, retention)
    return {"deleted_jobs": deleted}
