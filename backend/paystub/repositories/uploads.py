"""UploadAttempt repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from paystub.core.constants import UploadStatus
from paystub.db.models.upload_attempt import UploadAttempt


async def next_attempt_number(db: AsyncSession, work_record_id: int) -> int:
    """1 + the highest attempt recorded for the record (1 if none)."""
    stmt = select(func.max(UploadAttempt.attempt)).where(
        UploadAttempt.work_record_id == work_record_id
    )
    result = await db.execute(stmt)
    return (result.scalar() or 0) + 1


async def create_attempt(
    db: AsyncSession,
    *,
    work_record_id: int,
    document_id: int,
    attempt: int,
    session_id: str,
    started_at: datetime,
) -> UploadAttempt:
    upload = UploadAttempt(
        work_record_id=work_record_id,
        document_id=document_id,
        session_id=session_id,
        status=UploadStatus.IN_PROGRESS,
        attempt=attempt,
        started_at=started_at,
    )
    db.add(upload)
    await db.flush()
    return upload


async def update_attempt(db: AsyncSession, upload: UploadAttempt, **fields: Any) -> UploadAttempt:
    for key, value in fields.items():
        setattr(upload, key, value)
    await db.flush()
    return upload


async def list_attempts(db: AsyncSession, work_record_id: int) -> list[UploadAttempt]:
    """A record's attempts in attempt order."""
    stmt = (
        select(UploadAttempt)
        .where(UploadAttempt.work_record_id == work_record_id)
        .order_by(UploadAttempt.attempt)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_stuck_attempts(db: AsyncSession, *, started_before: datetime) -> list[UploadAttempt]:
    """In-progress attempts that started before the cutoff."""
    stmt = (
        select(UploadAttempt)
        .where(
            UploadAttempt.status == UploadStatus.IN_PROGRESS,
            UploadAttempt.started_at < started_before,
        )
        .order_by(UploadAttempt.started_at, UploadAttempt.id)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def lock_attempt(db: AsyncSession, attempt_id: int) -> UploadAttempt | None:
    """Re-read an attempt under a row lock, refreshing the identity-map copy."""
    stmt = (
        select(UploadAttempt)
        .where(UploadAttempt.id == attempt_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_open_attempt(db: AsyncSession, work_record_id: int) -> UploadAttempt | None:
    """The record's ``in_progress`` attempt, if one exists."""
    stmt = (
        select(UploadAttempt)
        .where(
            UploadAttempt.work_record_id == work_record_id,
            UploadAttempt.status == UploadStatus.IN_PROGRESS,
        )
        .order_by(UploadAttempt.attempt.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalars().first()
