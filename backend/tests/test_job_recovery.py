import asyncio
from datetime import timedelta

from models.credit_transaction import CreditTransactionType
from models.status import ImageStatus, JobStatus
from services.job_recovery import cleanup_old_jobs, fail_stalled_processing_jobs, recover_stuck_jobs
from tests.fakes import FixedClock, InMemoryStagingStore, RecordingEnqueue


def _store_with_user(credits: int = 20):
    clock = FixedClock()
    store = InMemoryStagingStore(clock)
    user = store.add_user(credits=credits)
    project = store.add_project(user)
    return clock, store, user, project


def test_stuck_queued_jobs_are_reenqueued() -> None:
    clock, store, user, project = _store_with_user()
    old = store.add_job(user, [store.add_image(project)])
    clock.advance(minutes=10)
    fresh = store.add_job(user, [store.add_image(project)])
    enqueue = RecordingEnqueue()

    summary = asyncio.run(recover_stuck_jobs(store, enqueue, clock(), timedelta(minutes=5)))

    assert summary == {"stuck_jobs_found": 1, "stuck_jobs_rescheduled": 1}
    assert enqueue.calls == [str(old.id)]
    assert fresh.status == JobStatus.QUEUED.value


def test_enqueue_errors_do_not_stop_the_sweep() -> None:
    clock, store, user, project = _store_with_user()
    store.add_job(user, [store.add_image(project)])
    store.add_job(user, [store.add_image(project)])
    clock.advance(minutes=10)

    summary = asyncio.run(recover_stuck_jobs(
        store, RecordingEnqueue(error=ConnectionError("broker down")), clock(), timedelta(minutes=5),
    ))

    assert summary == {"stuck_jobs_found": 2, "stuck_jobs_rescheduled": 0}


def test_stalled_processing_jobs_are_failed_and_refunded_once() -> None:
    clock, store, user, project = _store_with_user(credits=20)
    images = [store.add_image(project) for _ in range(3)]
    job = store.add_job(user, images, status=JobStatus.PROCESSING)
    clock.advance(minutes=20)

    first = asyncio.run(fail_stalled_processing_jobs(store, clock(), timedelta(minutes=15)))
    second = asyncio.run(fail_stalled_processing_jobs(store, clock(), timedelta(minutes=15)))

    assert first == {"stalled_jobs_found": 1, "stalled_jobs_failed": 1}
    assert second == {"stalled_jobs_found": 0, "stalled_jobs_failed": 0}
    assert job.status == JobStatus.FAILED.value
    assert job.completed_at == clock.now
    assert all(image.status == ImageStatus.UPLOADED.value for image in images)
    refunds = store.transactions_for(user, CreditTransactionType.REFUND)
    assert len(refunds) == 1
    assert refunds[0].description == "Refund: Job timed out during processing"
    assert user.credits == 20


def test_processing_job_with_recent_progress_is_left_alone() -> None:
    clock, store, user, project = _store_with_user()
    job = store.add_job(user, [store.add_image(project)], status=JobStatus.PROCESSING)
    clock.advance(minutes=20)
    job.updated_at = clock.now - timedelta(minutes=1)

    summary = asyncio.run(fail_stalled_processing_jobs(store, clock(), timedelta(minutes=15)))

    assert summary["stalled_jobs_found"] == 0
    assert job.status == JobStatus.PROCESSING.value


def test_cleanup_deletes_only_old_finished_jobs() -> None:
    clock, store, user, project = _store_with_user()
    old_completed = store.add_job(user, [store.add_image(project)], status=JobStatus.COMPLETED)
    old_failed = store.add_job(user, [store.add_image(project)], status=JobStatus.FAILED)
    old_queued = store.add_job(user, [store.add_image(project)])
    clock.advance(days=8)
    recent = store.add_job(user, [store.add_image(project)], status=JobStatus.COMPLETED)

    summary = asyncio.run(cleanup_old_jobs(store, clock(), timedelta(days=7)))

    assert summary == {"deleted_jobs": 2}
    assert str(old_completed.id) not in store.jobs
    assert str(old_failed.id) not in store.jobs
    assert str(old_queued.id) in store.jobs
    assert str(recent.id) in store.jobs
