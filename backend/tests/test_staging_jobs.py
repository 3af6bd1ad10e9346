import asyncio
from datetime import timedelta

import pytest

from models.credit_transaction import CreditTransactionType
from models.status import ImageStatus, JobStatus
from services import staging_jobs
from services.errors import AccessDenied, InvalidInput, NotFound
from tests.fakes import InMemoryStagingStore


def _owner_with_job(status: JobStatus = JobStatus.QUEUED, images: int = 2):
    store = InMemoryStagingStore()
    user = store.add_user(credits=10)
    project = store.add_project(user)
    batch = [store.add_image(project) for _ in range(images)]
    job = store.add_job(user, batch, status=status)
    return store, user, project, batch, job


def test_cancel_queued_job_refunds_and_releases_images() -> None:
    store, user, project, images, job = _owner_with_job()

    cancelled = asyncio.run(staging_jobs.cancel_job(store, str(user.id), str(job.id), store.clock()))

    assert cancelled.status == JobStatus.FAILED.value
    assert all(image.status == ImageStatus.UPLOADED.value for image in images)
    refund = store.transactions_for(user, CreditTransactionType.REFUND)[0]
    assert refund.description == "Refund: Job cancelled by user"
    assert str(refund.related_job_id) == str(job.id)
    assert user.credits == 10


def test_cancel_keeps_already_staged_images() -> None:
    store, user, project, images, job = _owner_with_job(status=JobStatus.PROCESSING)
    images[0].status = ImageStatus.STAGED.value

    asyncio.run(staging_jobs.cancel_job(store, str(user.id), str(job.id), store.clock()))

    assert images[0].status == ImageStatus.STAGED.value
    assert images[1].status == ImageStatus.UPLOADED.value


def test_cancel_finished_job_is_invalid_and_refunds_nothing() -> None:
    store, user, project, images, job = _owner_with_job(status=JobStatus.COMPLETED)

    with pytest.raises(InvalidInput):
        asyncio.run(staging_jobs.cancel_job(store, str(user.id), str(job.id), store.clock()))

    assert store.transactions_for(user, CreditTransactionType.REFUND) == []


def test_second_cancel_is_rejected() -> None:
    store, user, project, images, job = _owner_with_job()
    asyncio.run(staging_jobs.cancel_job(store, str(user.id), str(job.id), store.clock()))

    with pytest.raises(InvalidInput):
        asyncio.run(staging_jobs.cancel_job(store, str(user.id), str(job.id), store.clock()))

    assert len(store.transactions_for(user, CreditTransactionType.REFUND)) == 1


def test_failed_refund_leaves_job_cancellable() -> None:
    store, user, project, images, job = _owner_with_job(images=3)
    store.fail_next["apply_credit_change"] = ConnectionError("ledger write timed out")

    with pytest.raises(ConnectionError):
        asyncio.run(staging_jobs.cancel_job(store, str(user.id), str(job.id), store.clock()))

    assert job.status == JobStatus.QUEUED.value
    assert job.completed_at is None
    assert all(image.status == ImageStatus.PROCESSING.value for image in images)
    assert user.credits == 7

    asyncio.run(staging_jobs.cancel_job(store, str(user.id), str(job.id), store.clock()))

    assert job.status == JobStatus.FAILED.value
    assert all(image.status == ImageStatus.UPLOADED.value for image in images)
    assert len(store.transactions_for(user, CreditTransactionType.REFUND)) == 1
    assert user.credits == 10


def test_fail_job_loser_does_nothing() -> None:
    store, user, project, images, job = _owner_with_job()
    now = store.clock()

    won = asyncio.run(staging_jobs.fail_job(store, job, [JobStatus.QUEUED], "first", now))
    lost = asyncio.run(staging_jobs.fail_job(store, job, [JobStatus.QUEUED], "second", now))

    assert (won, lost) == (True, False)
    assert len(store.transactions_for(user, CreditTransactionType.REFUND)) == 1


def test_jobs_of_other_users_look_missing() -> None:
    store, user, project, images, job = _owner_with_job()
    other = store.add_user()

    with pytest.raises(NotFound):
        asyncio.run(staging_jobs.get_job_for_user(store, str(other.id), str(job.id)))
    with pytest.raises(NotFound):
        asyncio.run(staging_jobs.cancel_job(store, str(other.id), str(job.id), store.clock()))
    with pytest.raises(NotFound):
        asyncio.run(staging_jobs.get_job_for_user(store, str(user.id), "not-a-uuid"))


def test_progress_payload_includes_status() -> None:
    store, user, project, images, job = _owner_with_job(status=JobStatus.PROCESSING)
    job.results = [{"image_id": str(images[0].id), "success": True, "staged_url": "https://r2.test/a.png"}]

    payload = asyncio.run(staging_jobs.get_job_progress(
        store, str(user.id), str(job.id), store.clock() + timedelta(seconds=40),
    ))

    assert payload["job_id"] == str(job.id)
    assert payload["status"] == "processing"
    assert payload["percent"] == 50.0
    assert payload["eta_seconds"] == 40.0


def test_listings_filter_by_owner_status_and_project() -> None:
    store, user, project, images, job = _owner_with_job()
    done = store.add_job(user, [store.add_image(project)], status=JobStatus.COMPLETED)
    stranger = store.add_user()

    everything = asyncio.run(staging_jobs.list_user_jobs(store, str(user.id)))
    completed = asyncio.run(staging_jobs.list_user_jobs(store, str(user.id), status=JobStatus.COMPLETED))
    active = asyncio.run(staging_jobs.list_active_project_jobs(store, str(user.id), str(project.id)))

    assert {str(j.id) for j in everything} == {str(job.id), str(done.id)}
    assert [str(j.id) for j in completed] == [str(done.id)]
    assert [str(j.id) for j in active] == [str(job.id)]
    assert asyncio.run(staging_jobs.list_user_jobs(store, str(stranger.id))) == []
    with pytest.raises(AccessDenied):
        asyncio.run(staging_jobs.list_active_project_jobs(store, str(stranger.id), str(project.id)))
