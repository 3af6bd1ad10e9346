"""
Image model: one uploaded room photo and its staged output.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config import to_iso8601
from models.database import Base
from models.status import ImageStatus

if TYPE_CHECKING:
    from models.project import Project


class Image(Base):
    """Room photo. Status moves through models.status.IMAGE_TRANSITIONS."""

    __tablename__ = "images"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ImageStatus.UPLOADED.value, index=True
    )

    # Object storage references
    original_key: Mapped[str] = mapped_column(String(512), nullable=False)
    original_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    staged_key: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    staged_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    room_type: Mapped[str] = mapped_column(String(64), nullable=False, default="living_room")
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # "metadata" is reserved on declarative classes, so the attribute name differs
    image_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )  # {processing_time, confidence, style_preset, ai_model}
    compliance: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB, nullable=True
    )  # {is_compliant, score, violations[], warnings[], last_checked}

    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=True
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=True
    )

    project: Mapped["Project"] = relationship("Project", back_populates="images")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "project_id": str(self.project_id),
            "status": self.status,
            "original_url": self.original_url,
            "staged_url": self.staged_url,
            "room_type": self.room_type,
            "filename": self.filename,
            "metadata": self.image_metadata or {},
            "compliance": self.compliance,
            "updated_at": to_iso8601(self.updated_at),
        }
