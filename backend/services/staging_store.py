"""
Persistence for staging jobs, images and credit balances.

Every method is a single SQL statement or one short transaction, and every
status change is a compare-and-set on the current status so concurrent or
duplicated callers cannot double-apply it.

If a store is bound to a session (see ``atomic``) methods use it and do not
commit; the caller commits. Otherwise each call opens and commits its own
session.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional, Protocol, TypeVar
from uuid import UUID

from sqlalchemy import Update, delete, literal, select, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession

from models.credit_transaction import CreditTransaction, CreditTransactionType
from models.database import get_session
from models.image import Image
from models.project import Project
from models.staging_job import StagingJob
from models.status import ImageStatus, JobStatus, ensure_transition
from models.user import User

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except ValueError:
        return None


# --- statements ---
# Built apart from execution so the guards in each WHERE clause can be checked
# against the compiled SQL.


def transition_job_stmt(job_id: str, sources: Iterable[JobStatus], values: dict[str, Any]) -> Update:
    return (
        update(StagingJob)
        .where(
            StagingJob.id == UUID(job_id),
            StagingJob.status.in_([s.value for s in sources]),
        )
        .values(**values)
        .returning(StagingJob.id)
        .execution_options(synchronize_session=False)
    )


def append_result_stmt(job_id: str, result: dict[str, Any]) -> Update:
    return (
        update(StagingJob)
        .where(StagingJob.id == UUID(job_id))
        .values(
            results=StagingJob.results.op("||")(literal([result], type_=JSONB)),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )


def transition_images_stmt(
    image_ids: list[str], sources: Iterable[ImageStatus], column_values: dict[Any, Any]
) -> Update:
    return (
        update(Image)
        .where(
            Image.id.in_([UUID(i) for i in image_ids]),
            Image.status.in_([s.value for s in sources]),
        )
        .values(column_values)
        .execution_options(synchronize_session=False)
    )


def credit_change_stmt(user_id: str, delta: int) -> Update:
    """Add ``delta`` to the balance; a debit only matches when the balance covers it."""
    stmt = update(User).where(User.id == UUID(user_id))
    if delta < 0:
        stmt = stmt.where(User.credits >= -delta)
    return (
        stmt.values(credits=User.credits + delta)
        .returning(User.credits)
        .execution_options(synchronize_session=False)
    )


class StagingStore(Protocol):
    """Document-store operations the staging services depend on."""

    def atomic(self) -> Any: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_project(self, project_id: str) -> Optional[Project]: ...

    async def get_image(self, image_id: str) -> Optional[Image]: ...

    async def get_images(self, image_ids: list[str]) -> list[Image]: ...

    async def get_job(self, job_id: str) -> Optional[StagingJob]: ...

    async def insert_job(self, job: StagingJob) -> None: ...

    async def transition_job(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        target: JobStatus,
        *,
        completed_at: Optional[datetime] = None,
    ) -> bool: ...

    async def append_job_result(self, job_id: str, result: dict[str, Any]) -> None: ...

    async def transition_images(
        self,
        image_ids: list[str],
        expected: Iterable[ImageStatus],
        target: ImageStatus,
        **values: Any,
    ) -> int: ...

    async def update_image_compliance(self, image_id: str, compliance: dict[str, Any]) -> None: ...

    async def apply_credit_change(
        self,
        user_id: str,
        delta: int,
        tx_type: CreditTransactionType,
        description: str,
        related_job_id: Optional[str] = None,
    ) -> Optional[int]: ...

    async def list_transactions(self, user_id: str, limit: int = 50) -> list[CreditTransaction]: ...

    async def list_jobs_by_status(
        self,
        status: JobStatus,
        *,
        created_before: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[StagingJob]: ...

    async def list_user_jobs(
        self, user_id: str, *, status: Optional[JobStatus] = None, limit: int = 20
    ) -> list[StagingJob]: ...

    async def list_active_project_jobs(self, project_id: str, user_id: str) -> list[StagingJob]: ...

    async def delete_terminal_jobs(self, created_before: datetime) -> int: ...


class SqlStagingStore:
    """StagingStore on PostgreSQL through async SQLAlchemy."""

    def __init__(self, session: Optional[AsyncSession] = None) -> None:
        self._session = session

    async def _run(self, fn: Callable[[AsyncSession], Awaitable[T]], *, commit: bool = False) -> T:
        if self._session is not None:
            return await fn(self._session)
        async with get_session() as session:
            result = await fn(session)
            if commit:
                await session.commit()
            return result

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator["SqlStagingStore"]:
        """Yield a store whose calls share one transaction, committed on clean exit."""
        if self._session is not None:
            yield self
            return
        async with get_session() as session:
            yield SqlStagingStore(session)
            await session.commit()

    # --- reads ---
    # Ids arrive from request paths; malformed ones simply match nothing

    async def get_user(self, user_id: str) -> Optional[User]:
        key = _parse_uuid(user_id)
        if key is None:
            return None

        async def _q(session: AsyncSession) -> Optional[User]:
            return await session.get(User, key)
        return await self._run(_q)

    async def get_project(self, project_id: str) -> Optional[Project]:
        key = _parse_uuid(project_id)
        if key is None:
            return None

        async def _q(session: AsyncSession) -> Optional[Project]:
            return await session.get(Project, key)
        return await self._run(_q)

    async def get_image(self, image_id: str) -> Optional[Image]:
        key = _parse_uuid(image_id)
        if key is None:
            return None

        async def _q(session: AsyncSession) -> Optional[Image]:
            return await session.get(Image, key)
        return await self._run(_q)

    async def get_images(self, image_ids: list[str]) -> list[Image]:
        keys = [key for key in (_parse_uuid(i) for i in image_ids) if key is not None]
        if not keys:
            return []

        async def _q(session: AsyncSession) -> list[Image]:
            result = await session.execute(select(Image).where(Image.id.in_(keys)))
            return list(result.scalars().all())
        return await self._run(_q)

    async def get_job(self, job_id: str) -> Optional[StagingJob]:
        key = _parse_uuid(job_id)
        if key is None:
            return None

        async def _q(session: AsyncSession) -> Optional[StagingJob]:
            # populate_existing: a re-read after a CAS must not return the identity-map copy
            return await session.get(StagingJob, key, populate_existing=True)
        return await self._run(_q)

    # --- job writes ---

    async def insert_job(self, job: StagingJob) -> None:
        async def _q(session: AsyncSession) -> None:
            session.add(job)
            await session.flush()
        await self._run(_q, commit=True)

    async def transition_job(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        target: JobStatus,
        *,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        """Move the job to ``target`` only if it is currently in ``expected``."""
        sources = list(expected)
        for source in sources:
            ensure_transition("job", source, target)
        values: dict[str, Any] = {"status": target.value, "updated_at": utcnow()}
        if completed_at is not None:
            values["completed_at"] = completed_at

        async def _q(session: AsyncSession) -> bool:
            result = await session.execute(transition_job_stmt(job_id, sources, values))
            return result.scalar_one_or_none() is not None
        return await self._run(_q, commit=True)

    async def append_job_result(self, job_id: str, result: dict[str, Any]) -> None:
        """Append one result entry in a single UPDATE (jsonb concatenation)."""
        async def _q(session: AsyncSession) -> None:
            await session.execute(append_result_stmt(job_id, result))
        await self._run(_q, commit=True)

    async def delete_terminal_jobs(self, created_before: datetime) -> int:
        async def _q(session: AsyncSession) -> int:
            result = await session.execute(
                delete(StagingJob)
                .where(
                    StagingJob.status.in_([JobStatus.COMPLETED.value, JobStatus.FAILED.value]),
                    StagingJob.created_at < created_before,
                )
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)
        return await self._run(_q, commit=True)

    # --- image writes ---

    async def transition_images(
        self,
        image_ids: list[str],
        expected: Iterable[ImageStatus],
        target: ImageStatus,
        **values: Any,
    ) -> int:
        """
        Move every listed image that is currently in ``expected`` to ``target``.

        Extra keyword values are written alongside (e.g. staged_url). Returns
        the number of rows changed.
        """
        if not image_ids:
            return 0
        sources = list(expected)
        for source in sources:
            ensure_transition("image", source, target)
        column_values: dict[Any, Any] = {getattr(Image, key): value for key, value in values.items()}
        column_values[Image.status] = target.value
        column_values[Image.updated_at] = utcnow()

        async def _q(session: AsyncSession) -> int:
            result = await session.execute(transition_images_stmt(image_ids, sources, column_values))
            return int(result.rowcount or 0)
        return await self._run(_q, commit=True)

    async def update_image_compliance(self, image_id: str, compliance: dict[str, Any]) -> None:
        async def _q(session: AsyncSession) -> None:
            await session.execute(
                update(Image)
                .where(Image.id == UUID(image_id))
                .values(compliance=compliance, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        await self._run(_q, commit=True)

    # --- credits ---

    async def apply_credit_change(
        self,
        user_id: str,
        delta: int,
        tx_type: CreditTransactionType,
        description: str,
        related_job_id: Optional[str] = None,
    ) -> Optional[int]:
        """
        Add ``delta`` to the user's balance and record the transaction.

        Debits are conditional on the balance covering them. Returns the new
        balance, or None when the debit was refused or the user does not exist.
        """
        async def _q(session: AsyncSession) -> Optional[int]:
            result = await session.execute(credit_change_stmt(user_id, delta))
            new_balance = result.scalar_one_or_none()
            if new_balance is None:
                return None
            session.add(
                CreditTransaction(
                    user_id=UUID(user_id),
                    type=tx_type.value,
                    amount=delta,
                    balance_after=int(new_balance),
                    description=description[:255],
                    related_job_id=UUID(related_job_id) if related_job_id else None,
                    created_at=utcnow(),
                )
            )
            await session.flush()
            return int(new_balance)
        return await self._run(_q, commit=True)

    async def list_transactions(self, user_id: str, limit: int = 50) -> list[CreditTransaction]:
        async def _q(session: AsyncSession) -> list[CreditTransaction]:
            result = await session.execute(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == UUID(user_id))
                .order_by(CreditTransaction.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
        return await self._run(_q)

    # --- job listings ---

    async def list_jobs_by_status(
        self,
        status: JobStatus,
        *,
        created_before: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[StagingJob]:
        stmt = select(StagingJob).where(StagingJob.status == status.value)
        if created_before is not None:
            stmt = stmt.where(StagingJob.created_at < created_before)
        if updated_before is not None:
            stmt = stmt.where(StagingJob.updated_at < updated_before)
        stmt = stmt.order_by(StagingJob.created_at.asc()).limit(limit)

        async def _q(session: AsyncSession) -> list[StagingJob]:
            result = await session.execute(stmt)
            return list(result.scalars().all())
        return await self._run(_q)

    async def list_user_jobs(
        self, user_id: str, *, status: Optional[JobStatus] = None, limit: int = 20
    ) -> list[StagingJob]:
        stmt = select(StagingJob).where(StagingJob.user_id == UUID(user_id))
        if status is not None:
            stmt = stmt.where(StagingJob.status == status.value)
        stmt = stmt.order_by(StagingJob.created_at.desc()).limit(limit)

        async def _q(session: AsyncSession) -> list[StagingJob]:
            result = await session.execute(stmt)
            return list(result.scalars().all())
        return await self._run(_q)

    async def list_active_project_jobs(self, project_id: str, user_id: str) -> list[StagingJob]:
        async def _q(session: AsyncSession) -> list[StagingJob]:
            result = await session.execute(
                select(StagingJob)
                .where(
                    StagingJob.project_id == UUID(project_id),
                    StagingJob.user_id == UUID(user_id),
                    StagingJob.status.in_([JobStatus.QUEUED.value, JobStatus.PROCESSING.value]),
                )
                .order_by(StagingJob.created_at.desc())
            )
            return list(result.scalars().all())
        return await self._run(_q)
