"""
Event log repository — append-only audit trail.

Events are immutable; there is no update or delete here.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paystub.core.constants import Severity
from paystub.core.logging import current_trace_id
from paystub.db.models.event import Event
from paystub.db.models.job import Job
from paystub.db.models.work_record import WorkRecord


async def record_event(
    db: AsyncSession,
    *,
    organization_id: int,
    event_type: str,
    message: str,
    ts: datetime,
    user_id: int | None = None,
    job_id: int | None = None,
    work_record_id: int | None = None,
    phase: str | None = None,
    severity: str = Severity.INFO,
    trace_id: str | None = None,
) -> Event:
    """Append one audit event, stamped with the bound trace id."""
    event = Event(
        organization_id=organization_id,
        user_id=user_id,
        job_id=job_id,
        work_record_id=work_record_id,
        event_type=event_type,
        phase=phase,
        severity=str(severity),
        message=message,
        ts=ts,
        trace_id=trace_id or current_trace_id(),
    )
    db.add(event)
    await db.flush()
    return event


async def record_job_event(
    db: AsyncSession,
    job: Job,
    *,
    event_type: str,
    message: str,
    ts: datetime,
    record: WorkRecord | None = None,
    phase: str | None = None,
    severity: str = Severity.INFO,
) -> Event:
    """Append an event scoped to a job (and optionally one of its records)."""
    return await record_event(
        db,
        organization_id=job.organization_id,
        user_id=job.user_id,
        job_id=job.id,
        work_record_id=record.id if record is not None else None,
        event_type=event_type,
        phase=phase,
        severity=severity,
        message=message,
        ts=ts,
    )


async def list_events(
    db: AsyncSession,
    *,
    work_record_id: int | None = None,
    job_id: int | None = None,
    event_type: str | None = None,
    limit: int | None = None,
) -> list[Event]:
    """List events oldest-first with optional filters."""
    stmt = select(Event).order_by(Event.ts, Event.id)
    if work_record_id is not None:
        stmt = stmt.where(Event.work_record_id == work_record_id)
    if job_id is not None:
        stmt = stmt.where(Event.job_id == job_id)
    if event_type is not None:
        stmt = stmt.where(Event.event_type == event_type)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
