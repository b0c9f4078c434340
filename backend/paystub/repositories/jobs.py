"""Job repository — aggregate trigger instances."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from paystub.core.constants import JobStatus
from paystub.db.models.job import Job


async def create_job(
    db: AsyncSession,
    *,
    organization_id: int,
    user_id: int,
    trigger_source: str,
    total_records: int,
    started_at: datetime,
) -> Job:
    """Create a running job; total_records is fixed from here on."""
    job = Job(
        organization_id=organization_id,
        user_id=user_id,
        trigger_source=trigger_source,
        status=JobStatus.RUNNING,
        total_records=total_records,
        started_at=started_at,
    )
    db.add(job)
    await db.flush()
    return job


async def get_job(db: AsyncSession, job_id: int) -> Job | None:
    """Fetch a job by primary key."""
    return await db.get(Job, job_id)


async def set_status(
    db: AsyncSession,
    job: Job,
    status: str,
    *,
    completed_at: datetime | None = None,
) -> Job:
    job.status = status
    if completed_at is not None:
        job.completed_at = completed_at
    await db.flush()
    return job
