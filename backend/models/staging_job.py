"""
StagingJob model.

One job covers a batch of images submitted together for credit accounting.
``results`` is appended to after every processed image and is the single
source of truth for progress.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from config import to_iso8601
from models.database import Base
from models.status import JobStatus


class StagingJob(Base):
    """Batch staging request. Status moves through models.status.JOB_TRANSITIONS."""

    __tablename__ = "staging_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Referenced by id, never embedded
    image_ids: Mapped[list[str]] = mapped_column(JSONB, nullable=False)
    style_preset: Mapped[str] = mapped_column(String(32), nullable=False)
    custom_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.QUEUED.value, index=True,
    )
    # [{image_id, success, staged_url?, error?}]
    results: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB, nullable=False, default=list,
    )
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow, index=True,
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def to_dict(self) -> dict[str, Any]:
        """Serialise for API responses."""
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "project_id": str(self.project_id) if self.project_id else None,
            "image_ids": list(self.image_ids or []),
            "style_preset": self.style_preset,
            "custom_prompt": self.custom_prompt,
            "status": self.status,
            "results": list(self.results or []),
            "credits_used": self.credits_used,
            "created_at": to_iso8601(self.created_at),
            "updated_at": to_iso8601(self.updated_at),
            "completed_at": to_iso8601(self.completed_at),
        }
