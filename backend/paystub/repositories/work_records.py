"""
WorkRecord repository.

Only the pipeline, retry scheduler, stuck detector and cancellation
logic write records; all of them go through these functions.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from paystub.core.constants import CANCELLABLE_STATES, RecordState
from paystub.db.models.work_record import WorkRecord


async def create_records(
    db: AsyncSession,
    *,
    job_id: int,
    loan_ids: Sequence[int],
    now: datetime,
) -> list[WorkRecord]:
    """One `triggered` record per loan."""
    records = [
        WorkRecord(
            job_id=job_id,
            loan_application_id=loan_id,
            state=RecordState.TRIGGERED,
            retry_count=0,
            next_attempt_at=now,
        )
        for loan_id in loan_ids
    ]
    db.add_all(records)
    await db.flush()
    return records


async def get_record(db: AsyncSession, record_id: int) -> WorkRecord | None:
    return await db.get(WorkRecord, record_id)


async def lock_record(db: AsyncSession, record_id: int) -> WorkRecord | None:
    """
    Re-read a record under an exclusive row lock (SELECT … FOR UPDATE).

    populate_existing refreshes an instance already in the identity map.
    """
    stmt = (
        select(WorkRecord)
        .where(WorkRecord.id == record_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def update_record(db: AsyncSession, record: WorkRecord, **fields: Any) -> WorkRecord:
    """Set fields on a record and flush."""
    for key, value in fields.items():
        setattr(record, key, value)
    await db.flush()
    return record


async def page_records(
    db: AsyncSession,
    job_id: int,
    *,
    after_id: int = 0,
    limit: int = 100,
) -> list[WorkRecord]:
    """Keyset page of a job's records ordered by id."""
    stmt = (
        select(WorkRecord)
        .where(WorkRecord.job_id == job_id, WorkRecord.id > after_id)
        .order_by(WorkRecord.id)
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_records_for_job(
    db: AsyncSession,
    job_id: int,
    *,
    states: Iterable[str] | None = None,
) -> list[WorkRecord]:
    stmt = select(WorkRecord).where(WorkRecord.job_id == job_id).order_by(WorkRecord.id)
    if states is not None:
        stmt = stmt.where(WorkRecord.state.in_([str(s) for s in states]))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def cancel_pending(
    db: AsyncSession,
    job_id: int,
    *,
    now: datetime,
    reason: str,
) -> int:
    """Bulk-cancel a job's records that have not started; returns the count."""
    stmt = (
        update(WorkRecord)
        .where(
            WorkRecord.job_id == job_id,
            WorkRecord.state.in_([str(s) for s in CANCELLABLE_STATES]),
        )
        .values(
            state=RecordState.CANCELLED,
            last_error_code="user_cancelled",
            last_error_message=reason,
            updated_at=now,
        )
        .execution_options(synchronize_session="fetch")
    )
    result = await db.execute(stmt)
    await db.flush()
    return result.rowcount or 0


async def count_by_state(db: AsyncSession, job_id: int) -> dict[str, int]:
    stmt = (
        select(WorkRecord.state, func.count(WorkRecord.id))
        .where(WorkRecord.job_id == job_id)
        .group_by(WorkRecord.state)
    )
    result = await db.execute(stmt)
    return {state: count for state, count in result.all()}


async def list_failed_retryable(
    db: AsyncSession,
    job_id: int,
    *,
    max_attempts: int,
) -> list[WorkRecord]:
    """Failed records of a job that still have attempts left."""
    stmt = (
        select(WorkRecord)
        .where(
            WorkRecord.job_id == job_id,
            WorkRecord.state == RecordState.FAILED,
            WorkRecord.retry_count < max_attempts,
        )
        .order_by(WorkRecord.id)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_due_for_retry(
    db: AsyncSession,
    *,
    now: datetime,
    max_attempts: int,
    limit: int = 500,
) -> list[WorkRecord]:
    """Records left in uploading/failed whose retry time has passed."""
    stmt = (
        select(WorkRecord)
        .where(
            WorkRecord.state.in_([RecordState.UPLOADING, RecordState.FAILED]),
            WorkRecord.next_attempt_at.is_not(None),
            WorkRecord.next_attempt_at <= now,
            WorkRecord.retry_count < max_attempts,
        )
        .order_by(WorkRecord.next_attempt_at, WorkRecord.id)
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())
