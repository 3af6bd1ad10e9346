"""
Credit transaction model: the append-only audit log behind every balance change.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config import to_iso8601
from models.database import Base

if TYPE_CHECKING:
    from models.user import User


class CreditTransactionType(str, Enum):
    USAGE = "usage"
    REFUND = "refund"
    PURCHASE = "purchase"
    BONUS = "bonus"


class CreditTransaction(Base):
    """Audit record for credit deductions, refunds and grants. Rows are never updated."""

    __tablename__ = "credit_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    # Negative for usage, positive for refund/purchase/bonus
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    related_job_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("staging_jobs.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )

    user: Mapped["User"] = relationship("User", back_populates="credit_transactions")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "type": self.type,
            "amount": self.amount,
            "balance_after": self.balance_after,
            "description": self.description,
            "related_job_id": str(self.related_job_id) if self.related_job_id else None,
            "created_at": to_iso8601(self.created_at),
        }
