"""
Admission of staging jobs.

create_staging_job validates the caller, project, images and style before
touching anything, then reserves credits, inserts the job and moves the
images to processing in one transaction, and finally hands the job id to
the scheduler.
"""
from __future__ import annotations

import logging
import uuid
from typing import Callable, Optional

from pydantic import BaseModel

from config import settings
from models.staging_job import StagingJob
from models.status import ImageStatus, JobStatus
from models.user import User
from services import credits
from services.errors import AccessDenied, InvalidInput, NotFound, Unauthenticated
from services.staging_store import StagingStore, utcnow
from services.style_presets import VALID_STYLE_PRESETS, is_valid_style_preset

logger = logging.getLogger(__name__)

MAX_IMAGES_PER_JOB = settings.STAGING_MAX_IMAGES_PER_JOB
MAX_CUSTOM_PROMPT_LENGTH = 500

Enqueue = Callable[..., object]


class StagingRequest(BaseModel):
    project_id: str
    image_ids: list[str]
    style_preset: str
    custom_prompt: Optional[str] = None


def validate_request(request: StagingRequest) -> None:
    """Shape checks that need no stored state."""
    if not request.image_ids:
        raise InvalidInput("At least one image is required")
    if len(request.image_ids) > MAX_IMAGES_PER_JOB:
        raise InvalidInput(f"A job may contain at most {MAX_IMAGES_PER_JOB} images")
    if len(set(request.image_ids)) != len(request.image_ids):
        raise InvalidInput("Duplicate image ids in request")
    if not is_valid_style_preset(request.style_preset):
        raise InvalidInput(
            f"Invalid style preset '{request.style_preset}'. "
            f"Expected one of: {', '.join(sorted(VALID_STYLE_PRESETS))}"
        )
    if request.custom_prompt is not None and len(request.custom_prompt) > MAX_CUSTOM_PROMPT_LENGTH:
        raise InvalidInput(f"Custom prompt must be at most {MAX_CUSTOM_PROMPT_LENGTH} characters")


async def resolve_caller(store: StagingStore, caller: Optional[str]) -> User:
    """Turn a verified caller id into a User, or raise Unauthenticated."""
    if not caller:
        raise Unauthenticated("Not authenticated")
    user = await store.get_user(caller)
    if user is None:
        raise Unauthenticated("User not found")
    return user


async def _check_images(
    store: StagingStore, user: User, project_id: str, image_ids: list[str]
) -> None:
    images = {str(image.id): image for image in await store.get_images(image_ids)}
    for image_id in image_ids:
        image = images.get(image_id)
        if image is None:
            raise NotFound(f"Image {image_id} not found")
        if str(image.user_id) != str(user.id) or str(image.project_id) != project_id:
            raise AccessDenied(f"Image {image_id} does not belong to this project")
        if image.status != ImageStatus.UPLOADED.value:
            raise InvalidInput(f"Image {image_id} is not ready for staging (status: {image.status})")


async def _admit(
    store: StagingStore,
    enqueue: Enqueue,
    user: User,
    request: StagingRequest,
    description: str,
) -> str:
    validate_request(request)

    project = await store.get_project(request.project_id)
    if project is None:
        raise NotFound("Project not found")
    if str(project.user_id) != str(user.id):
        raise AccessDenied("Project not found or access denied")

    await _check_images(store, user, request.project_id, request.image_ids)

    user_id = str(user.id)
    credits_required = len(request.image_ids)
    job_id = str(uuid.uuid4())
    now = utcnow()

    async with store.atomic() as tx:
        await tx.insert_job(
            StagingJob(
                id=uuid.UUID(job_id),
                user_id=user.id,
                project_id=project.id,
                image_ids=list(request.image_ids),
                style_preset=request.style_preset,
                custom_prompt=request.custom_prompt,
                status=JobStatus.QUEUED.value,
                results=[],
                credits_used=credits_required,
                created_at=now,
                updated_at=now,
            )
        )
        await credits.reserve(tx, user_id, credits_required, job_id, description)
        moved = await tx.transition_images(
            list(request.image_ids), [ImageStatus.UPLOADED], ImageStatus.PROCESSING,
        )
        if moved != credits_required:
            # Another job claimed one of the images between the check and the update
            raise InvalidInput("One or more images are already being staged")

    logger.info(
        "[Staging] Created job %s for user %s: %d images, style=%s",
        job_id, user_id, credits_required, request.style_preset,
    )

    try:
        enqueue(job_id)
    except Exception as exc:
        # Job stays queued; the recovery sweep re-enqueues it
        logger.error("[Staging] Failed to enqueue job %s: %s", job_id, exc)

    return job_id


async def create_staging_job(
    store: StagingStore,
    enqueue: Enqueue,
    caller: Optional[str],
    request: StagingRequest,
) -> str:
    """Admit a new staging job and return its id."""
    user = await resolve_caller(store, caller)
    return await _admit(
        store,
        enqueue,
        user,
        request,
        f"Virtual staging: {len(request.image_ids)} images with {request.style_preset} style",
    )


async def retry_staging_job(
    store: StagingStore,
    enqueue: Enqueue,
    caller: Optional[str],
    job_id: str,
    image_ids: Optional[list[str]] = None,
) -> str:
    """
    Admit a new job for the images of ``job_id`` that did not succeed.

    Images with a successful result are dropped; the rest are charged fresh
    credits and staged with the original style preset and custom prompt.
    """
    user = await resolve_caller(store, caller)
    original = await store.get_job(job_id)
    if original is None or str(original.user_id) != str(user.id):
        raise NotFound("Job not found or access denied")

    if original.project_id is None:
        raise InvalidInput("The project for this job no longer exists")

    job_images = list(original.image_ids or [])
    if image_ids is not None:
        unknown = [image_id for image_id in image_ids if image_id not in job_images]
        if unknown:
            raise InvalidInput(f"Images not part of job {job_id}: {', '.join(unknown)}")

    succeeded = {r.get("image_id") for r in (original.results or []) if r.get("success")}
    candidates = image_ids if image_ids is not None else job_images
    failed_images = [image_id for image_id in candidates if image_id not in succeeded]
    if not failed_images:
        raise InvalidInput("No failed images to retry")

    request = StagingRequest(
        project_id=str(original.project_id),
        image_ids=failed_images,
        style_preset=original.style_preset,
        custom_prompt=original.custom_prompt,
    )
    new_job_id = await _admit(
        store,
        enqueue,
        user,
        request,
        f"Retry staging: {len(failed_images)} images with {original.style_preset} style",
    )
    logger.info("[Staging] Job %s retried as %s", job_id, new_job_id)
    return new_job_id
