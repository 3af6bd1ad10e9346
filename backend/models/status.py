"""
Status enumerations and transition rules for staging jobs and images.

Every status change in the staging pipeline goes through ``ensure_transition``
so the allowed edges live in one place instead of at each call site.
"""
from __future__ import annotations

from enum import Enum


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class ImageStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    STAGED = "staged"
    APPROVED = "approved"
    EXPORTED = "exported"


JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

# processing -> uploaded is the failure rollback edge
IMAGE_TRANSITIONS: dict[ImageStatus, frozenset[ImageStatus]] = {
    ImageStatus.UPLOADED: frozenset({ImageStatus.PROCESSING}),
    ImageStatus.PROCESSING: frozenset({ImageStatus.STAGED, ImageStatus.UPLOADED}),
    ImageStatus.STAGED: frozenset({ImageStatus.APPROVED}),
    ImageStatus.APPROVED: frozenset({ImageStatus.EXPORTED}),
    ImageStatus.EXPORTED: frozenset(),
}


class InvalidTransitionError(ValueError):
    """Raised when a status change is not an allowed edge."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"Invalid {entity} status transition: {current} -> {target}")
        self.entity = entity
        self.current = current
        self.target = target


def can_transition_job(current: JobStatus | str, target: JobStatus | str) -> bool:
    return JobStatus(target) in JOB_TRANSITIONS[JobStatus(current)]


def can_transition_image(current: ImageStatus | str, target: ImageStatus | str) -> bool:
    return ImageStatus(target) in IMAGE_TRANSITIONS[ImageStatus(current)]


def ensure_transition(
    entity: str,
    current: JobStatus | ImageStatus | str,
    target: JobStatus | ImageStatus | str,
) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed for ``entity``."""
    if entity == "job":
        allowed = can_transition_job(current, target)
    elif entity == "image":
        allowed = can_transition_image(current, target)
    else:
        raise ValueError(f"Unknown entity: {entity}")
    if not allowed:
        raise InvalidTransitionError(entity, str(getattr(current, "value", current)), str(getattr(target, "value", target)))
