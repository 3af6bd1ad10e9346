"""
Staging tasks for Celery workers.

process_staging_job is delivered at-least-once (acks_late plus
reject_on_worker_lost): a worker crash re-delivers the job and the
processor's status claim turns any duplicate into a no-op.
"""
from __future__ import annotations

import sys
from pathlib import Path

# Ensure backend directory is in Python path for Celery forked workers
_backend_dir = Path(__file__).resolve().parent.parent.parent
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

import asyncio
import logging
import threading
from typing import Any, Optional

from workers.celery_app import celery_app

logger = logging.getLogger(__name__)

_breaker_lock = threading.Lock()
_ai_breaker: Optional[Any] = None
_storage: Optional[Any] = None


def run_async(coro: Any) -> Any:
    """Run an async function in a sync context (for Celery tasks).

    Creates a fresh event loop and disposes any existing database connections
    to avoid 'Future attached to different loop' errors with asyncpg.
    """
    from models.database import dispose_engine

    dispose_engine()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _is_endpoint_failure(error: BaseException) -> bool:
    """Bad input says nothing about the AI endpoint's health."""
    from services.errors import AccessDenied, InvalidInput

    return not isinstance(error, (InvalidInput, AccessDenied))


def get_ai_breaker() -> Any:
    """Circuit breaker shared by every job run in this worker process."""
    global _ai_breaker
    with _breaker_lock:
        if _ai_breaker is None:
            from config import settings
            from services.circuit_breaker import CircuitBreaker

            _ai_breaker = CircuitBreaker(
                "gemini-staging",
                failure_threshold=settings.AI_BREAKER_FAILURE_THRESHOLD,
                recovery_timeout=settings.AI_BREAKER_RECOVERY_SECONDS,
                counts_as_failure=_is_endpoint_failure,
            )
        return _ai_breaker


def get_storage() -> Any:
    global _storage
    if _storage is None:
        from services.object_storage import R2Storage

        _storage = R2Storage()
    return _storage


def enqueue_staging_job(job_id: str, countdown: int = 0) -> None:
    """Durably schedule a job for processing."""
    process_staging_job.apply_async(args=[job_id], countdown=countdown)


def schedule_compliance_check(image_id: str) -> None:
    validate_image_compliance.delay(image_id)


async def _process_staging_job(job_id: str) -> dict[str, Any]:
    from services.gemini import GeminiStagingClient
    from services.job_processor import JobProcessor
    from services.staging_store import SqlStagingStore

    processor = JobProcessor(
        store=SqlStagingStore(),
        # google-genai's async transport is bound to the loop it was created on
        gemini=GeminiStagingClient(),
        storage=get_storage(),
        breaker=get_ai_breaker(),
        trigger_compliance=schedule_compliance_check,
    )
    outcome = await processor.process(job_id)
    return {"job_id": job_id, "outcome": outcome.value, "breaker": get_ai_breaker().snapshot()}


@celery_app.task(
    bind=True,
    name="workers.tasks.staging.process_staging_job",
    acks_late=True,          # Re-deliver on worker crash
    reject_on_worker_lost=True,
)
def process_staging_job(self: Any, job_id: str) -> dict[str, Any]:
    """
    Celery task to process one staging job.

    Job-level failures are already recorded (failed + refunded) by the
    processor before the exception reaches here, so there is no autoretry.
    """
    logger.info("[Staging] Task %s processing job %s", self.request.id, job_id)
    return run_async(_process_staging_job(job_id))


async def _validate_image_compliance(image_id: str) -> dict[str, Any]:
    from services.compliance import validate_image_compliance as run_check
    from services.gemini import GeminiStagingClient
    from services.staging_store import SqlStagingStore

    return await run_check(SqlStagingStore(), GeminiStagingClient(), get_storage(), image_id)


@celery_app.task(bind=True, name="workers.tasks.staging.validate_image_compliance")
def validate_image_compliance(self: Any, image_id: str) -> dict[str, Any]:
    """Best-effort MLS compliance check for a freshly staged image."""
    return run_async(_validate_image_compliance(image_id))


async def _recover_stuck_staging_jobs() -> dict[str, int]:
    from services.job_recovery import recover_stuck_jobs
    from services.staging_store import SqlStagingStore, utcnow

    return await recover_stuck_jobs(SqlStagingStore(), enqueue_staging_job, utcnow())


@celery_app.task(bind=True, name="workers.tasks.staging.recover_stuck_staging_jobs")
def recover_stuck_staging_jobs(self: Any) -> dict[str, int]:
    """Runs every 5 minutes via Beat."""
    return run_async(_recover_stuck_staging_jobs())


async def _fail_stalled_staging_jobs() -> dict[str, int]:
    from services.job_recovery import fail_stalled_processing_jobs
    from services.staging_store import SqlStagingStore, utcnow

    return await fail_stalled_processing_jobs(SqlStagingStore(), utcnow())


@celery_app.task(bind=True, name="workers.tasks.staging.fail_stalled_staging_jobs")
def fail_stalled_staging_jobs(self: Any) -> dict[str, int]:
    """Runs every 10 minutes via Beat."""
    return run_async(_fail_stalled_staging_jobs())


async def _cleanup_old_staging_jobs() -> dict[str, int]:
    from services.job_recovery import cleanup_old_jobs
    from services.staging_store import SqlStagingStore, utcnow

    return await cleanup_old_jobs(SqlStagingStore(), utcnow())


@celery_app.task(bind=True, name="workers.tasks.staging.cleanup_old_staging_jobs")
def cleanup_old_staging_jobs(self: Any) -> dict[str, int]:
    """Runs daily via Beat."""
    return run_async(_cleanup_old_staging_jobs())
