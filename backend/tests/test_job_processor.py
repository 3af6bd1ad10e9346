import asyncio
from datetime import timedelta

import pytest

from models.credit_transaction import CreditTransactionType
from models.status import ImageStatus, JobStatus
from services import credits
from services.circuit_breaker import CircuitBreaker
from services.errors import InvalidInput, RateLimited, ServiceUnavailable, TransientNetworkError
from services.job_admission import StagingRequest, create_staging_job
from services.job_processor import JobProcessor, ProcessOutcome, extension_for
from services.job_recovery import fail_stalled_processing_jobs
from services.staging_jobs import cancel_job
from services.staging_store import utcnow
from tests.fakes import (
    FakeGemini,
    FakeStorage,
    FixedClock,
    InMemoryStagingStore,
    RecordingEnqueue,
    no_sleep,
)


def _processor(store, gemini=None, storage=None, breaker=None, trigger=None):
    return JobProcessor(
        store,
        gemini or FakeGemini(),
        storage or FakeStorage(),
        breaker or CircuitBreaker("gemini-test", failure_threshold=5, recovery_timeout=60),
        trigger,
        store.clock,
        stale_after=timedelta(minutes=30),
        generation_timeout=5.0,
        originals_bucket="originals",
        staged_bucket="staged",
        sleep=no_sleep,
    )


def _queued_job(credits: int = 10, images: int = 3):
    store = InMemoryStagingStore()
    user = store.add_user(credits=credits)
    project = store.add_project(user)
    batch = [store.add_image(project) for _ in range(images)]
    job = store.add_job(user, batch)
    return store, user, batch, job


def test_processes_every_image_and_completes() -> None:
    store, user, images, job = _queued_job(images=2)
    storage = FakeStorage()
    compliance_checks: list[str] = []
    processor = _processor(store, storage=storage, trigger=compliance_checks.append)

    outcome = asyncio.run(processor.process(str(job.id)))

    assert outcome is ProcessOutcome.COMPLETED
    assert job.status == JobStatus.COMPLETED.value
    assert job.completed_at == store.clock.now
    assert [r["success"] for r in job.results] == [True, True]
    for image in images:
        assert image.status == ImageStatus.STAGED.value
        assert image.staged_key.startswith(f"staged/{image.id}_")
        assert image.staged_key.endswith(".png")
        assert image.staged_url == f"https://r2.test/staged/{image.staged_key}"
        assert image.image_metadata["ai_model"] == "gemini-test"
        assert image.image_metadata["style_preset"] == "modern"
    assert len(storage.objects) == 2
    assert compliance_checks == [str(image.id) for image in images]
    assert user.credits == 8


def test_generation_metadata_is_merged_into_upload_metadata() -> None:
    store, user, images, job = _queued_job(images=1)
    images[0].image_metadata = {"detected_features": ["fireplace"], "width": 4032, "height": 3024}

    asyncio.run(_processor(store).process(str(job.id)))

    assert images[0].image_metadata == {
        "detected_features": ["fireplace"],
        "width": 4032,
        "height": 3024,
        "processing_time": 12.5,
        "confidence": 0.9,
        "style_preset": "modern",
        "ai_model": "gemini-test",
    }


def test_partial_failure_is_isolated_and_not_refunded() -> None:
    store, user, images, job = _queued_job(images=3)
    gemini = FakeGemini()
    gemini.reject(images[1], "Image is too blurry", "Room not visible")
    processor = _processor(store, gemini=gemini)

    outcome = asyncio.run(processor.process(str(job.id)))

    assert outcome is ProcessOutcome.COMPLETED
    assert job.status == JobStatus.COMPLETED.value
    assert len(job.results) == 3
    failure = job.results[1]
    assert failure == {
        "image_id": str(images[1].id),
        "success": False,
        "error": "Image validation failed: Image is too blurry, Room not visible",
    }
    assert images[0].status == ImageStatus.STAGED.value
    assert images[1].status == ImageStatus.UPLOADED.value
    assert images[2].status == ImageStatus.STAGED.value
    assert store.transactions_for(user, CreditTransactionType.REFUND) == []
    assert user.credits == 7


def test_generation_error_on_one_image_does_not_affect_the_others() -> None:
    store, user, images, job = _queued_job(images=3)
    gemini = FakeGemini()
    gemini.fail_generation(images[1], InvalidInput("Prompt rejected by the model"))

    outcome = asyncio.run(_processor(store, gemini=gemini).process(str(job.id)))

    assert outcome is ProcessOutcome.COMPLETED
    assert job.status == JobStatus.COMPLETED.value
    assert [image.status for image in images] == [
        ImageStatus.STAGED.value, ImageStatus.UPLOADED.value, ImageStatus.STAGED.value,
    ]
    failures = [r for r in job.results if r["success"] is False]
    assert failures == [
        {"image_id": str(images[1].id), "success": False, "error": "Prompt rejected by the model"},
    ]
    assert len(gemini.generate_calls) == 3
    assert store.transactions_for(user, CreditTransactionType.REFUND) == []


def test_duplicate_delivery_is_a_no_op() -> None:
    store, user, images, job = _queued_job(images=2)
    gemini = FakeGemini()
    processor = _processor(store, gemini=gemini)

    first = asyncio.run(processor.process(str(job.id)))
    results_after_first = list(job.results)
    second = asyncio.run(processor.process(str(job.id)))

    assert first is ProcessOutcome.COMPLETED
    assert second is ProcessOutcome.SKIPPED
    assert job.results == results_after_first
    assert len(gemini.generate_calls) == 2


def test_concurrent_deliveries_process_the_job_once() -> None:
    store, user, images, job = _queued_job(images=2)
    gemini = FakeGemini()

    async def _both() -> list[ProcessOutcome]:
        return await asyncio.gather(
            _processor(store, gemini=gemini).process(str(job.id)),
            _processor(store, gemini=gemini).process(str(job.id)),
        )

    outcomes = asyncio.run(_both())

    assert sorted(o.value for o in outcomes) == ["completed", "skipped"]
    assert len(job.results) == 2
    assert len(gemini.generate_calls) == 2


def test_unknown_job_is_not_found() -> None:
    store = InMemoryStagingStore()

    outcome = asyncio.run(_processor(store).process("4b1d4b1d-0000-0000-0000-000000000000"))

    assert outcome is ProcessOutcome.NOT_FOUND


def test_job_level_failure_refunds_once_and_releases_images() -> None:
    store, user, images, job = _queued_job(credits=10, images=3)
    store.fail_next["get_image"] = RuntimeError("database connection lost")
    processor = _processor(store)

    with pytest.raises(RuntimeError):
        asyncio.run(processor.process(str(job.id)))

    assert job.status == JobStatus.FAILED.value
    assert all(image.status == ImageStatus.UPLOADED.value for image in images)
    refunds = store.transactions_for(user, CreditTransactionType.REFUND)
    assert len(refunds) == 1
    assert refunds[0].amount == 3
    assert "database connection lost" in refunds[0].description
    assert user.credits == 10

    # A redelivery after the failure does nothing
    assert asyncio.run(processor.process(str(job.id))) is ProcessOutcome.SKIPPED
    assert len(store.transactions_for(user, CreditTransactionType.REFUND)) == 1


def test_failed_refund_keeps_job_processing_for_the_stalled_sweep() -> None:
    store, user, images, job = _queued_job(credits=10, images=3)
    store.fail_next["get_image"] = RuntimeError("database connection lost")
    store.fail_next["apply_credit_change"] = ConnectionError("ledger write timed out")

    with pytest.raises(RuntimeError):
        asyncio.run(_processor(store).process(str(job.id)))

    assert job.status == JobStatus.PROCESSING.value
    assert all(image.status == ImageStatus.PROCESSING.value for image in images)
    assert store.transactions_for(user, CreditTransactionType.REFUND) == []
    assert user.credits == 7

    store.clock.advance(minutes=20)
    summary = asyncio.run(fail_stalled_processing_jobs(store, store.clock()))

    assert summary == {"stalled_jobs_found": 1, "stalled_jobs_failed": 1}
    assert job.status == JobStatus.FAILED.value
    assert len(store.transactions_for(user, CreditTransactionType.REFUND)) == 1
    assert user.credits == 10


def test_stale_queued_job_is_failed_and_refunded() -> None:
    clock = FixedClock()
    store = InMemoryStagingStore(clock)
    user = store.add_user(credits=5)
    project = store.add_project(user)
    images = [store.add_image(project) for _ in range(2)]
    job = store.add_job(user, images)
    gemini = FakeGemini()
    clock.advance(minutes=31)

    outcome = asyncio.run(_processor(store, gemini=gemini).process(str(job.id)))

    assert outcome is ProcessOutcome.FAILED
    assert job.status == JobStatus.FAILED.value
    assert gemini.validate_calls == []
    assert user.credits == 5
    assert all(image.status == ImageStatus.UPLOADED.value for image in images)


def test_rate_limited_generation_is_retried() -> None:
    store, user, images, job = _queued_job(images=1)
    gemini = FakeGemini()
    gemini.fail_generation(images[0], RateLimited("429 Too Many Requests"))

    outcome = asyncio.run(_processor(store, gemini=gemini).process(str(job.id)))

    assert outcome is ProcessOutcome.COMPLETED
    assert job.results[0]["success"] is True
    assert len(gemini.generate_calls) == 2


def test_open_breaker_fails_the_image_without_calling_the_model() -> None:
    store, user, images, job = _queued_job(images=1)
    breaker = CircuitBreaker("gemini-test", failure_threshold=1, recovery_timeout=300)

    async def _boom() -> None:
        raise ServiceUnavailable("model overloaded")

    with pytest.raises(ServiceUnavailable):
        asyncio.run(breaker.call(_boom))
    gemini = FakeGemini()

    outcome = asyncio.run(_processor(store, gemini=gemini, breaker=breaker).process(str(job.id)))

    assert outcome is ProcessOutcome.COMPLETED
    assert gemini.generate_calls == []
    assert job.results[0]["success"] is False
    assert "is open" in job.results[0]["error"]
    assert images[0].status == ImageStatus.UPLOADED.value


def test_upload_failure_falls_back_to_original_url() -> None:
    store, user, images, job = _queued_job(images=1)
    storage = FakeStorage(put_errors=[TransientNetworkError("reset")] * 3)

    outcome = asyncio.run(_processor(store, storage=storage).process(str(job.id)))

    assert outcome is ProcessOutcome.COMPLETED
    image = images[0]
    assert image.status == ImageStatus.STAGED.value
    assert image.staged_url == image.original_url
    assert image.staged_key is None
    assert job.results[0] == {"image_id": str(image.id), "success": True, "staged_url": image.original_url}


def test_compliance_scheduling_failure_is_ignored() -> None:
    store, user, images, job = _queued_job(images=1)

    def _broken_trigger(image_id: str) -> None:
        raise ConnectionError("broker unreachable")

    outcome = asyncio.run(_processor(store, trigger=_broken_trigger).process(str(job.id)))

    assert outcome is ProcessOutcome.COMPLETED
    assert job.results[0]["success"] is True


def test_missing_image_is_skipped() -> None:
    store, user, images, job = _queued_job(images=2)
    del store.images[str(images[0].id)]

    outcome = asyncio.run(_processor(store).process(str(job.id)))

    assert outcome is ProcessOutcome.COMPLETED
    assert [r["image_id"] for r in job.results] == [str(images[1].id)]


def test_cancel_while_processing_refunds_once_and_skips_completion() -> None:
    store, user, images, job = _queued_job(credits=10, images=1)

    class CancellingGemini(FakeGemini):
        async def generate(self, image_url, options):
            await cancel_job(store, str(user.id), str(job.id), store.clock())
            return await super().generate(image_url, options)

    outcome = asyncio.run(_processor(store, gemini=CancellingGemini()).process(str(job.id)))

    assert outcome is ProcessOutcome.SKIPPED
    assert job.status == JobStatus.FAILED.value
    assert images[0].status == ImageStatus.UPLOADED.value
    assert len(store.transactions_for(user, CreditTransactionType.REFUND)) == 1
    assert user.credits == 10


def test_admit_then_process_end_to_end() -> None:
    # Admission stamps wall-clock time, so the processor runs on it too
    store = InMemoryStagingStore(FixedClock(utcnow()))
    user = store.add_user(credits=5)
    project = store.add_project(user)
    images = [store.add_image(project, room_type="bedroom") for _ in range(3)]
    gemini = FakeGemini()
    gemini.reject(images[2], "Not an interior photo")
    enqueue = RecordingEnqueue()
    request = StagingRequest(
        project_id=str(project.id),
        image_ids=[str(image.id) for image in images],
        style_preset="scandinavian",
        custom_prompt="Keep the fireplace visible",
    )
    job_id = asyncio.run(create_staging_job(store, enqueue, str(user.id), request))
    outcome = asyncio.run(_processor(store, gemini=gemini).process(enqueue.calls[0]))

    job = store.jobs[job_id]
    assert outcome is ProcessOutcome.COMPLETED
    assert [r["success"] for r in job.results] == [True, True, False]
    assert gemini.generate_calls[0][1].style_preset == "scandinavian"
    assert gemini.generate_calls[0][1].room_type == "bedroom"
    assert gemini.generate_calls[0][1].custom_prompt == "Keep the fireplace visible"
    assert user.credits == 2
    assert asyncio.run(credits.verify_balance(store, str(user.id))) is True


def test_two_image_job_spends_exactly_the_balance() -> None:
    store = InMemoryStagingStore(FixedClock(utcnow()))
    user = store.add_user(credits=2)
    project = store.add_project(user)
    images = [store.add_image(project) for _ in range(2)]
    enqueue = RecordingEnqueue()
    request = StagingRequest(
        project_id=str(project.id),
        image_ids=[str(image.id) for image in images],
        style_preset="modern",
    )

    job_id = asyncio.run(create_staging_job(store, enqueue, str(user.id), request))
    outcome = asyncio.run(_processor(store).process(job_id))

    job = store.jobs[job_id]
    assert outcome is ProcessOutcome.COMPLETED
    assert job.status == JobStatus.COMPLETED.value
    assert [r["success"] for r in job.results] == [True, True]
    assert all(image.status == ImageStatus.STAGED.value for image in images)
    assert user.credits == 0
    usage = store.transactions_for(user, CreditTransactionType.USAGE)
    assert [tx.amount for tx in usage] == [-2]
    assert str(usage[0].related_job_id) == job_id


@pytest.mark.parametrize(
    "mime_type, extension",
    [("image/png", "png"), ("image/jpeg", "jpg"), ("image/webp", "webp"), (None, "png")],
)
def test_extension_for(mime_type, extension) -> None:
    assert extension_for(mime_type) == extension
