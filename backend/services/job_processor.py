"""
Staging job processor.

Runs one job: claims it with a queued -> processing compare-and-set, stages
each image in order, then marks the job completed. Deliveries are
at-least-once, so a duplicate delivery loses the claim and does nothing.

Per-image failures are isolated: the image goes back to ``uploaded``, a
failure result is appended and the loop moves on. A failure outside that
boundary fails the whole job, releases its images and refunds its credits.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from config import settings
from models.image import Image
from models.staging_job import StagingJob
from models.status import ImageStatus, JobStatus
from services.circuit_breaker import CircuitBreaker
from services.errors import InvalidInput, OperationTimeout, StagingError
from services.gemini import GenerationOptions, GenerationResult, ValidationResult
from services.retry import AI_GENERATION_POLICY, STORAGE_UPLOAD_POLICY, retry
from services.staging_jobs import fail_job
from services.staging_store import StagingStore, utcnow

logger = logging.getLogger(__name__)

_EXTENSIONS: dict[str, str] = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
}


class ProcessOutcome(str, Enum):
    NOT_FOUND = "not_found"
    SKIPPED = "skipped"
    COMPLETED = "completed"
    FAILED = "failed"


class StagingModel(Protocol):
    async def validate(self, image_url: str) -> ValidationResult: ...

    async def generate(self, image_url: str, options: GenerationOptions) -> GenerationResult: ...


class ObjectStorage(Protocol):
    async def put(self, bucket: str, key: str, body: bytes, content_type: str) -> str: ...

    async def signed_url(self, bucket: str, key: str, expires_in: Optional[int] = None) -> str: ...


def extension_for(mime_type: Optional[str]) -> str:
    if not mime_type:
        return "png"
    return _EXTENSIONS.get(mime_type.lower(), mime_type.split("/")[-1] or "png")


class JobProcessor:
    def __init__(
        self,
        store: StagingStore,
        gemini: StagingModel,
        storage: ObjectStorage,
        breaker: CircuitBreaker,
        trigger_compliance: Optional[Callable[[str], Any]] = None,
        clock: Callable[[], datetime] = utcnow,
        *,
        stale_after: Optional[timedelta] = None,
        generation_timeout: Optional[float] = None,
        originals_bucket: Optional[str] = None,
        staged_bucket: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.gemini = gemini
        self.storage = storage
        self.breaker = breaker
        self.trigger_compliance = trigger_compliance
        self.clock = clock
        self.stale_after = stale_after or timedelta(minutes=settings.STAGING_STALE_QUEUED_MINUTES)
        self.generation_timeout = generation_timeout or settings.AI_GENERATION_TIMEOUT_SECONDS
        self.originals_bucket = originals_bucket or settings.R2_BUCKET_ORIGINALS
        self.staged_bucket = staged_bucket or settings.R2_BUCKET_STAGED
        self._sleep = sleep

    async def process(self, job_id: str) -> ProcessOutcome:
        job = await self.store.get_job(job_id)
        if job is None:
            logger.error("[Staging] Job %s not found", job_id)
            return ProcessOutcome.NOT_FOUND
        if job.status != JobStatus.QUEUED.value:
            logger.info("[Staging] Job %s is %s, skipping delivery", job_id, job.status)
            return ProcessOutcome.SKIPPED

        now = self.clock()
        if now - job.created_at > self.stale_after:
            won = await fail_job(
                self.store, job, [JobStatus.QUEUED], "Job expired before processing started", now,
            )
            return ProcessOutcome.FAILED if won else ProcessOutcome.SKIPPED

        if not await self.store.transition_job(job_id, [JobStatus.QUEUED], JobStatus.PROCESSING):
            logger.info("[Staging] Job %s claimed by another delivery", job_id)
            return ProcessOutcome.SKIPPED

        logger.info(
            "[Staging] Processing job %s: %d images, style=%s",
            job_id, len(job.image_ids or []), job.style_preset,
        )
        try:
            for image_id in job.image_ids or []:
                await self._process_image(job, image_id)

            completed = await self.store.transition_job(
                job_id, [JobStatus.PROCESSING], JobStatus.COMPLETED, completed_at=self.clock(),
            )
        except Exception as exc:
            logger.error("[Staging] Job %s failed: %s", job_id, exc, exc_info=True)
            try:
                await fail_job(self.store, job, [JobStatus.PROCESSING], f"Processing failed: {exc}", self.clock())
            except Exception as rollback_exc:
                # Left in processing; the stalled-job sweep fails and refunds it later
                logger.error("[Staging] Rollback of job %s failed: %s", job_id, rollback_exc)
            raise

        if not completed:
            logger.warning("[Staging] Job %s left processing while running (cancelled?)", job_id)
            return ProcessOutcome.SKIPPED
        logger.info("[Staging] Job %s completed", job_id)
        return ProcessOutcome.COMPLETED

    async def _process_image(self, job: StagingJob, image_id: str) -> None:
        job_id = str(job.id)
        image = await self.store.get_image(image_id)
        if image is None:
            logger.warning("[Staging] Image %s of job %s not found, skipping", image_id, job_id)
            return

        try:
            staged_url = await self._stage_image(job, image)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.warning("[Staging] Image %s of job %s failed: %s", image_id, job_id, error)
            await self.store.transition_images([image_id], [ImageStatus.PROCESSING], ImageStatus.UPLOADED)
            await self.store.append_job_result(
                job_id, {"image_id": image_id, "success": False, "error": error},
            )
            return

        await self.store.append_job_result(
            job_id, {"image_id": image_id, "success": True, "staged_url": staged_url},
        )

    async def _generate_once(self, source_url: str, options: GenerationOptions) -> GenerationResult:
        try:
            return await asyncio.wait_for(
                self.gemini.generate(source_url, options), timeout=self.generation_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise OperationTimeout(
                f"AI generation timed out after {self.generation_timeout:.0f}s"
            ) from exc

    async def _stage_image(self, job: StagingJob, image: Image) -> str:
        image_id = str(image.id)
        source_url = await self.storage.signed_url(
            self.originals_bucket, image.original_key, settings.SIGNED_URL_TTL_SECONDS,
        )

        validation = await self.gemini.validate(source_url)
        if not validation.is_valid:
            raise InvalidInput(f"Image validation failed: {', '.join(validation.issues)}")

        options = GenerationOptions(
            style_preset=job.style_preset,
            room_type=image.room_type,
            custom_prompt=job.custom_prompt,
        )
        generated = await retry(
            lambda: self.breaker.call(lambda: self._generate_once(source_url, options)),
            AI_GENERATION_POLICY,
            sleep=self._sleep,
        )

        staged_key: Optional[str] = None
        if generated.image_bytes is not None:
            mime_type = generated.mime_type or "image/png"
            key = f"staged/{image_id}_{int(self.clock().timestamp() * 1000)}.{extension_for(mime_type)}"
            body = generated.image_bytes
            try:
                staged_url = await retry(
                    lambda: self.storage.put(self.staged_bucket, key, body, mime_type),
                    STORAGE_UPLOAD_POLICY,
                    sleep=self._sleep,
                )
                staged_key = key
            except Exception as exc:
                logger.error(
                    "[Staging] Upload of staged image %s failed, using original URL: %s",
                    image_id, exc,
                )
                staged_url = image.original_url
        elif generated.url:
            staged_url = generated.url
        else:
            raise StagingError("No image was generated by the AI model")

        moved = await self.store.transition_images(
            [image_id],
            [ImageStatus.PROCESSING],
            ImageStatus.STAGED,
            staged_url=staged_url,
            staged_key=staged_key,
            image_metadata={
                **(image.image_metadata or {}),
                "processing_time": generated.processing_time,
                "confidence": generated.confidence,
                "style_preset": job.style_preset,
                "ai_model": generated.model,
            },
        )
        if moved == 0:
            raise StagingError(f"Image {image_id} is no longer processing")

        if self.trigger_compliance is not None:
            try:
                self.trigger_compliance(image_id)
            except Exception as exc:
                logger.warning("[Staging] Could not schedule compliance check for %s: %s", image_id, exc)

        logger.info(
            "[Staging] Image %s staged in %.1fs", image_id, generated.processing_time,
        )
        return staged_url
