import asyncio

import pytest

from models.credit_transaction import CreditTransactionType
from models.status import ImageStatus, JobStatus
from services.errors import AccessDenied, InsufficientCredits, InvalidInput, NotFound, Unauthenticated
from services.job_admission import StagingRequest, create_staging_job, retry_staging_job
from tests.fakes import InMemoryStagingStore, RecordingEnqueue


def _setup(credits: int = 10, images: int = 3):
    store = InMemoryStagingStore()
    user = store.add_user(credits=credits)
    project = store.add_project(user)
    uploaded = [store.add_image(project) for _ in range(images)]
    return store, user, project, uploaded


def _request(project, images, style: str = "modern", **kwargs) -> StagingRequest:
    return StagingRequest(
        project_id=str(project.id),
        image_ids=[str(image.id) for image in images],
        style_preset=style,
        **kwargs,
    )


def test_admission_reserves_credits_moves_images_and_enqueues() -> None:
    store, user, project, images = _setup(credits=10, images=3)
    enqueue = RecordingEnqueue()

    job_id = asyncio.run(create_staging_job(store, enqueue, str(user.id), _request(project, images)))

    job = store.jobs[job_id]
    assert job.status == JobStatus.QUEUED.value
    assert job.credits_used == 3
    assert job.results == []
    assert user.credits == 7
    assert all(image.status == ImageStatus.PROCESSING.value for image in images)
    assert enqueue.calls == [job_id]

    usage = store.transactions_for(user, CreditTransactionType.USAGE)[0]
    assert str(usage.related_job_id) == job_id
    assert usage.description == "Virtual staging: 3 images with modern style"


def test_insufficient_credits_leaves_no_trace() -> None:
    store, user, project, images = _setup(credits=2, images=3)
    enqueue = RecordingEnqueue()
    transactions_before = len(store.transactions)

    with pytest.raises(InsufficientCredits):
        asyncio.run(create_staging_job(store, enqueue, str(user.id), _request(project, images)))

    assert store.jobs == {}
    assert user.credits == 2
    assert len(store.transactions) == transactions_before
    assert all(image.status == ImageStatus.UPLOADED.value for image in images)
    assert enqueue.calls == []


def test_failure_after_reservation_rolls_everything_back() -> None:
    store, user, project, images = _setup(credits=10, images=2)
    store.fail_next["transition_images"] = RuntimeError("connection lost")

    with pytest.raises(RuntimeError):
        asyncio.run(create_staging_job(store, RecordingEnqueue(), str(user.id), _request(project, images)))

    assert store.jobs == {}
    assert user.credits == 10
    assert store.transactions_for(user, CreditTransactionType.USAGE) == []


def test_image_claimed_concurrently_rolls_back() -> None:
    store, user, project, images = _setup(credits=10, images=2)
    original = store.transition_images

    async def _racing_transition(image_ids, expected, target, **values):
        # another admission grabs the first image just before ours moves
        images[0].status = ImageStatus.PROCESSING.value
        return await original(image_ids, expected, target, **values)

    store.transition_images = _racing_transition

    with pytest.raises(InvalidInput):
        asyncio.run(create_staging_job(store, RecordingEnqueue(), str(user.id), _request(project, images)))

    assert store.jobs == {}
    assert user.credits == 10
    assert images[1].status == ImageStatus.UPLOADED.value


def test_enqueue_failure_still_admits_job() -> None:
    store, user, project, images = _setup()
    enqueue = RecordingEnqueue(error=ConnectionError("broker unreachable"))

    job_id = asyncio.run(create_staging_job(store, enqueue, str(user.id), _request(project, images)))

    assert store.jobs[job_id].status == JobStatus.QUEUED.value
    assert user.credits == 7


def test_unauthenticated_caller_is_rejected() -> None:
    store, user, project, images = _setup()

    with pytest.raises(Unauthenticated):
        asyncio.run(create_staging_job(store, RecordingEnqueue(), None, _request(project, images)))
    with pytest.raises(Unauthenticated):
        asyncio.run(create_staging_job(
            store, RecordingEnqueue(), "0b0b0b0b-0000-0000-0000-000000000000", _request(project, images),
        ))


def test_project_of_another_user_is_denied() -> None:
    store, owner, project, images = _setup()
    intruder = store.add_user(credits=10)

    with pytest.raises(AccessDenied):
        asyncio.run(create_staging_job(store, RecordingEnqueue(), str(intruder.id), _request(project, images)))

    assert intruder.credits == 10


def test_unknown_project_and_image_are_not_found() -> None:
    store, user, project, images = _setup()
    missing_project = StagingRequest(
        project_id="11111111-2222-3333-4444-555555555555",
        image_ids=[str(images[0].id)],
        style_preset="modern",
    )
    missing_image = StagingRequest(
        project_id=str(project.id),
        image_ids=["99999999-0000-0000-0000-000000000000"],
        style_preset="modern",
    )

    with pytest.raises(NotFound):
        asyncio.run(create_staging_job(store, RecordingEnqueue(), str(user.id), missing_project))
    with pytest.raises(NotFound):
        asyncio.run(create_staging_job(store, RecordingEnqueue(), str(user.id), missing_image))


def test_image_from_another_project_is_denied() -> None:
    store, user, project, images = _setup()
    other_project = store.add_project(user)
    stray = store.add_image(other_project)

    with pytest.raises(AccessDenied):
        asyncio.run(create_staging_job(
            store, RecordingEnqueue(), str(user.id), _request(project, images + [stray]),
        ))


def test_image_not_uploaded_is_invalid() -> None:
    store, user, project, images = _setup()
    images[1].status = ImageStatus.STAGED.value

    with pytest.raises(InvalidInput) as excinfo:
        asyncio.run(create_staging_job(store, RecordingEnqueue(), str(user.id), _request(project, images)))

    assert "not ready for staging" in str(excinfo.value)
    assert user.credits == 10


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"style": "baroque"}, "Invalid style preset"),
        ({"custom_prompt": "x" * 501}, "at most 500 characters"),
    ],
)
def test_request_shape_is_validated(overrides: dict, message: str) -> None:
    store, user, project, images = _setup()

    with pytest.raises(InvalidInput) as excinfo:
        asyncio.run(create_staging_job(
            store, RecordingEnqueue(), str(user.id), _request(project, images, **overrides),
        ))

    assert message in str(excinfo.value)
    assert store.jobs == {}


def test_empty_duplicate_and_oversized_batches_are_invalid() -> None:
    store, user, project, images = _setup(credits=100, images=51)
    caller = str(user.id)

    with pytest.raises(InvalidInput):
        asyncio.run(create_staging_job(store, RecordingEnqueue(), caller, _request(project, [])))
    with pytest.raises(InvalidInput):
        asyncio.run(create_staging_job(store, RecordingEnqueue(), caller, _request(project, images[:1] * 2)))
    with pytest.raises(InvalidInput):
        asyncio.run(create_staging_job(store, RecordingEnqueue(), caller, _request(project, images)))

    assert user.credits == 100


def test_retry_admits_only_images_without_success() -> None:
    store, user, project, images = _setup(credits=10, images=3)
    ok, failed, missing = images
    original = store.add_job(
        user,
        images,
        status=JobStatus.COMPLETED,
        results=[
            {"image_id": str(ok.id), "success": True, "staged_url": "https://r2.test/staged/a.png"},
            {"image_id": str(failed.id), "success": False, "error": "Image validation failed: blurry"},
        ],
    )
    ok.status = ImageStatus.STAGED.value
    failed.status = ImageStatus.UPLOADED.value
    missing.status = ImageStatus.UPLOADED.value
    enqueue = RecordingEnqueue()

    new_job_id = asyncio.run(retry_staging_job(store, enqueue, str(user.id), str(original.id)))

    new_job = store.jobs[new_job_id]
    assert new_job.image_ids == [str(failed.id), str(missing.id)]
    assert new_job.style_preset == original.style_preset
    assert new_job.credits_used == 2
    assert user.credits == 10 - 3 - 2
    assert enqueue.calls == [new_job_id]


def test_retry_with_nothing_left_to_retry_is_invalid() -> None:
    store, user, project, images = _setup(credits=10, images=1)
    job = store.add_job(
        user,
        images,
        status=JobStatus.COMPLETED,
        results=[{"image_id": str(images[0].id), "success": True, "staged_url": "https://r2.test/s.png"}],
    )

    with pytest.raises(InvalidInput) as excinfo:
        asyncio.run(retry_staging_job(store, RecordingEnqueue(), str(user.id), str(job.id)))

    assert str(excinfo.value) == "No failed images to retry"


def test_retry_rejects_foreign_jobs_and_images() -> None:
    store, user, project, images = _setup(credits=10, images=2)
    job = store.add_job(user, images[:1], status=JobStatus.FAILED)
    images[0].status = ImageStatus.UPLOADED.value
    other = store.add_user(credits=10)

    with pytest.raises(NotFound):
        asyncio.run(retry_staging_job(store, RecordingEnqueue(), str(other.id), str(job.id)))
    with pytest.raises(InvalidInput):
        asyncio.run(retry_staging_job(
            store, RecordingEnqueue(), str(user.id), str(job.id), [str(images[1].id)],
        ))
