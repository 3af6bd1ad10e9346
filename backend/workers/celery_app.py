"""
Celery application configuration.

This configures Celery with Redis as the broker and result backend.
Beat schedule is defined here for the staging recovery sweeps.
"""
from __future__ import annotations

import logging
import os
import sys
from datetime import timedelta
from pathlib import Path

# Ensure backend directory is in Python path for Celery workers
backend_dir = Path(__file__).resolve().parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Load .env BEFORE importing config/settings so workers see the same
# DATABASE_URL and R2/Gemini credentials as the API server
from dotenv import load_dotenv
env_file = backend_dir / ".env"
if not env_file.exists():
    env_file = backend_dir.parent / ".env"
if env_file.exists():
    load_dotenv(env_file)

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_shutdown
from kombu import Exchange, Queue

logger = logging.getLogger(__name__)

REDIS_URL: str = os.environ.get("REDIS_URL", "redis://localhost:6379")

celery_app = Celery(
    "roomstaging",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=[
        "workers.tasks.staging",
    ],
)

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task settings
    task_track_started=True,
    task_time_limit=30 * 60,  # A 50-image job fits well inside this
    task_soft_time_limit=25 * 60,

    # Result settings
    result_expires=60 * 60 * 24,

    # Worker settings
    # One task at a time per process; each process owns a DB pool and an AI breaker
    worker_prefetch_multiplier=1,
    worker_concurrency=2,

    # Queue configuration
    task_queues=(
        Queue("default", Exchange("default"), routing_key="default"),
        Queue("staging", Exchange("staging"), routing_key="staging.#"),
        Queue("maintenance", Exchange("maintenance"), routing_key="maintenance.#"),
    ),
    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",

    task_routes={
        "workers.tasks.staging.process_staging_job": {"queue": "staging"},
        "workers.tasks.staging.validate_image_compliance": {"queue": "staging"},
        "workers.tasks.staging.recover_stuck_staging_jobs": {"queue": "maintenance"},
        "workers.tasks.staging.fail_stalled_staging_jobs": {"queue": "maintenance"},
        "workers.tasks.staging.cleanup_old_staging_jobs": {"queue": "maintenance"},
    },
)

celery_app.conf.beat_schedule = {
    # Re-enqueue jobs whose original dispatch was lost
    "recover-stuck-staging-jobs": {
        "task": "workers.tasks.staging.recover_stuck_staging_jobs",
        "schedule": timedelta(minutes=5),
        "options": {"queue": "maintenance"},
    },

    # Fail and refund jobs whose worker died mid-run
    "fail-stalled-staging-jobs": {
        "task": "workers.tasks.staging.fail_stalled_staging_jobs",
        "schedule": timedelta(minutes=10),
        "options": {"queue": "maintenance"},
    },

    # Daily at 03:00 UTC
    "cleanup-old-staging-jobs": {
        "task": "workers.tasks.staging.cleanup_old_staging_jobs",
        "schedule": crontab(hour=3, minute=0),
        "options": {"queue": "maintenance"},
    },
}


@worker_process_shutdown.connect
def cleanup_db_connections(**kwargs) -> None:
    """Release pooled database connections when a worker process exits."""
    try:
        from models.database import dispose_engine
        dispose_engine()
        logger.info("[Celery] Database connections cleaned up on worker shutdown")
    except Exception as e:
        logger.error("[Celery] Error cleaning up database connections: %s", e)
