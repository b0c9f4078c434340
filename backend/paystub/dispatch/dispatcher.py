"""
BatchDispatcher — trigger handling and batch fan-out.

Batch triggers are split into chunks; each chunk becomes one Job with
one WorkRecord per loan and a single ``process_batch`` task.  That task
pages through the Job's records and enqueues one pipeline run per
record.  State is always committed before the task that depends on it
is enqueued.
"""

from __future__ import annotations

from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from paystub.core.clock import Clock
from paystub.core.config import settings
from paystub.core.constants import (
    JobStatus,
    LoanStatus,
    RecordState,
    Severity,
    TaskName,
    TriggerSource,
)
from paystub.core.logging import get_logger
from paystub.db.models.job import Job
from paystub.db.models.routing_rule import RoutingRule
from paystub.dispatch.schemas import (
    BatchStats,
    BatchTriggerRequest,
    CreatedJob,
    JobProgress,
    TriggerResult,
)
from paystub.pipeline.errors import ConfigurationError, ValidationError
from paystub.pipeline.retry import RetryPolicyConfig
from paystub.repositories import events, jobs, loans, routing_rules, users, work_records
from paystub.tasks.queue import TaskQueue

logger = get_logger(__name__)

PAY_STUB_NOTE = "pay stub required"

_IN_PROGRESS_STATES = (
    RecordState.PROCESSING,
    RecordState.COLLECTING,
    RecordState.COLLECTED,
    RecordState.UPLOADING,
    RecordState.RETRY_SCHEDULED,
    RecordState.UPLOADED,
)


def chunked(items: Sequence[int], size: int) -> list[list[int]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class BatchDispatcher:
    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock,
        policy: RetryPolicyConfig,
        queue: TaskQueue,
    ) -> None:
        self.db = db
        self.clock = clock
        self.policy = policy
        self.queue = queue

    # ─── Triggers ──────────────────────────────────────

    async def create_batch_jobs(self, request: BatchTriggerRequest) -> TriggerResult:
        """Chunk the eligible loans into Jobs and enqueue one batch task per Job."""
        if not 0 < request.batch_size <= settings.BATCH_MAX_SIZE:
            raise ValidationError(
                f"batch_size must be between 1 and {settings.BATCH_MAX_SIZE}, got {request.batch_size}"
            )
        await self._require_member(request.user_id, request.organization_id)
        rule = await self._require_rule(request.organization_id)

        candidates = await loans.list_loans_for_organization(
            self.db, request.organization_id, request.loan_ids
        )
        busy = await loans.loans_in_flight(self.db, [loan.id for loan in candidates])
        eligible = [
            loan.id
            for loan in candidates
            if loan.status == LoanStatus.APPROVED
            and loan.income_doc_required
            and loan.id not in busy
        ]
        result = TriggerResult(
            ineligible_loan_ids=sorted(set(request.loan_ids) - set(eligible)),
        )
        log = logger.bind(organization_id=request.organization_id, user_id=request.user_id)
        if not eligible:
            log.info("No eligible loan applications for batch", requested=len(request.loan_ids))
            return result

        queue = rule.queue_for("batch_collect") or rule.queue_for("collect") or settings.BATCH_QUEUE
        now = self.clock.now()
        chunks = chunked(eligible, request.batch_size)
        for number, chunk in enumerate(chunks, start=1):
            job = await jobs.create_job(
                self.db,
                organization_id=request.organization_id,
                user_id=request.user_id,
                trigger_source=request.trigger_source,
                total_records=len(chunk),
                started_at=now,
            )
            records = await work_records.create_records(self.db, job_id=job.id, loan_ids=chunk, now=now)
            await events.record_job_event(
                self.db,
                job,
                event_type="batch_job_created",
                phase="trigger",
                message=f"Batch {number}/{len(chunks)} created with {len(chunk)} loan applications",
                ts=now,
            )
            result.jobs.append(CreatedJob(job_id=job.id, record_ids=[r.id for r in records], queue=queue))
        await self.db.commit()

        for created in result.jobs:
            self.queue.enqueue(TaskName.PROCESS_BATCH, created.job_id, queue=queue)
            log.info("Batch job queued", job_id=created.job_id, records=len(created.record_ids), queue=queue)

        log.info(
            "Batch trigger processed",
            jobs=result.total_jobs_created,
            records=result.total_records,
            ineligible=len(result.ineligible_loan_ids),
        )
        return result

    async def trigger_single(
        self,
        loan_id: int,
        user_id: int,
        notes: str | None = None,
    ) -> TriggerResult | None:
        """Single loan approval; None when the loan does not need a pay stub."""
        loan = await loans.get_loan(self.db, loan_id)
        if loan is None:
            raise ValidationError(f"Loan application {loan_id} not found")
        await self._require_member(user_id, loan.organization_id)

        noted = PAY_STUB_NOTE in (notes or "").lower()
        if not (
            loan.status == LoanStatus.APPROVED
            and loan.approved_at is not None
            and (loan.income_doc_required or noted)
        ):
            logger.info("Loan does not require pay stub collection", loan_id=loan_id, status=loan.status)
            return None
        if loan.id in await loans.loans_in_flight(self.db, [loan.id]):
            logger.info("Loan already has pay stub collection in flight", loan_id=loan_id)
            return None

        rule = await self._require_rule(loan.organization_id)
        now = self.clock.now()
        job = await jobs.create_job(
            self.db,
            organization_id=loan.organization_id,
            user_id=user_id,
            trigger_source=TriggerSource.LOAN_APPROVAL,
            total_records=1,
            started_at=now,
        )
        [record] = await work_records.create_records(self.db, job_id=job.id, loan_ids=[loan.id], now=now)
        await events.record_job_event(
            self.db,
            job,
            record=record,
            event_type="loan_approved_trigger",
            phase="trigger",
            message=f"Pay stub collection triggered for loan {loan.los_external_id}",
            ts=now,
        )
        await self.db.commit()

        queue = rule.queue_for("collect") or settings.COLLECT_QUEUE
        self.queue.enqueue(TaskName.RUN_PIPELINE, record.id, queue=queue)
        logger.info("Pay stub collection triggered", loan_id=loan_id, job_id=job.id, work_record_id=record.id)
        return TriggerResult(jobs=[CreatedJob(job_id=job.id, record_ids=[record.id], queue=queue)])

    # ─── Batch processing ──────────────────────────────

    async def process_batch(self, job_id: int) -> BatchStats:
        """
        Page through a Job's records and enqueue a pipeline run for each
        ``triggered`` one.  A failing record is marked failed and counted;
        anything else going wrong fails the Job and is re-raised.
        """
        job = await jobs.get_job(self.db, job_id)
        if job is None:
            raise ValidationError(f"Job {job_id} not found")

        log = logger.bind(job_id=job_id, organization_id=job.organization_id)
        stats = BatchStats()
        if job.status != JobStatus.RUNNING:
            log.warning("Job is not running, batch not processed", status=job.status)
            return stats

        rule = await routing_rules.find_active_rule(self.db, job.organization_id)
        queue = (rule.queue_for("collect") if rule else None) or settings.COLLECT_QUEUE
        log.info("Batch processing started", total_records=job.total_records, queue=queue)

        try:
            after_id = 0
            while True:
                # A cancel from another session ends the batch early
                await self.db.refresh(job)
                if job.status != JobStatus.RUNNING:
                    log.warning("Job left running state mid-batch, stopping", status=job.status)
                    return stats
                page = await work_records.page_records(
                    self.db, job_id, after_id=after_id, limit=settings.BATCH_PAGE_SIZE
                )
                if not page:
                    break
                page_ids = [record.id for record in page]
                after_id = page_ids[-1]

                for record_id in page_ids:
                    stats.processed += 1
                    await self._dispatch_record(job, record_id, queue, stats, log)

                    if stats.processed % settings.BATCH_PROGRESS_INTERVAL == 0:
                        log.info("Batch progress", **stats.as_dict(), total=job.total_records)
                    if stats.processed % settings.BATCH_MILESTONE_INTERVAL == 0:
                        await events.record_job_event(
                            self.db,
                            job,
                            event_type="batch_progress_update",
                            phase="batch",
                            message=f"Processed {stats.processed}/{job.total_records} records",
                            ts=self.clock.now(),
                        )
                        await self.db.commit()

            now = self.clock.now()
            await jobs.set_status(self.db, job, JobStatus.COMPLETED, completed_at=now)
            await events.record_job_event(
                self.db,
                job,
                event_type="batch_job_completed",
                phase="batch",
                message=(
                    f"Batch processed: {stats.succeeded} queued, {stats.failed} failed, "
                    f"{stats.skipped} skipped of {stats.processed}"
                ),
                ts=now,
            )
            await self.db.commit()
        except Exception as exc:
            log.exception("Batch processing failed", error=str(exc))
            await self.db.rollback()
            await self.db.refresh(job)
            now = self.clock.now()
            await jobs.set_status(self.db, job, JobStatus.FAILED, completed_at=now)
            await events.record_job_event(
                self.db,
                job,
                event_type="batch_job_failed",
                phase="batch",
                severity=Severity.ERROR,
                message=f"Batch processing failed after {stats.processed} records: {exc}",
                ts=now,
            )
            await self.db.commit()
            raise
        finally:
            log.info("Batch processing finished", **stats.as_dict())
        return stats

    async def _dispatch_record(self, job: Job, record_id: int, queue: str, stats: BatchStats, log) -> None:
        # Claim under the row lock; the paged copy may predate a cancel
        record = await work_records.lock_record(self.db, record_id)
        if record is None or record.state != RecordState.TRIGGERED:
            await self.db.commit()
            stats.skipped += 1
            return
        try:
            await work_records.update_record(self.db, record, state=RecordState.PROCESSING)
            await self.db.commit()
            self.queue.enqueue(TaskName.RUN_PIPELINE, record.id, queue=queue)
            # The pipeline run may already have picked the record up
            record = await work_records.lock_record(self.db, record_id)
            if record.state == RecordState.PROCESSING:
                await work_records.update_record(self.db, record, state=RecordState.QUEUED)
            await events.record_job_event(
                self.db,
                job,
                record=record,
                event_type="batch_record_queued",
                phase="batch",
                message=f"Record queued for pipeline on {queue}",
                ts=self.clock.now(),
            )
            await self.db.commit()
            stats.succeeded += 1
        except Exception as exc:
            stats.failed += 1
            log.warning("Failed to queue record", work_record_id=record_id, error=str(exc))
            await self.db.rollback()
            await self.db.refresh(job)
            record = await work_records.get_record(self.db, record_id)
            await work_records.update_record(
                self.db,
                record,
                state=RecordState.FAILED,
                last_error_code="batch_processing_error",
                last_error_message=str(exc),
            )
            await events.record_job_event(
                self.db,
                job,
                record=record,
                event_type="batch_record_failed",
                phase="batch",
                severity=Severity.ERROR,
                message=f"Record could not be queued: {exc}",
                ts=self.clock.now(),
            )
            await self.db.commit()

    # ─── Job management ────────────────────────────────

    async def cancel_job(self, job_id: int) -> int:
        """Cancel a running Job; only records not yet started are touched."""
        job = await jobs.get_job(self.db, job_id)
        if job is None:
            raise ValidationError(f"Job {job_id} not found")
        if job.status != JobStatus.RUNNING:
            raise ValidationError(f"Job {job_id} is {job.status}, only running jobs can be cancelled")

        now = self.clock.now()
        cancelled = await work_records.cancel_pending(self.db, job_id, now=now, reason="Cancelled by user")
        await jobs.set_status(self.db, job, JobStatus.CANCELLED, completed_at=now)
        await events.record_job_event(
            self.db,
            job,
            event_type="batch_job_cancelled",
            phase="batch",
            severity=Severity.WARN,
            message=f"Job cancelled, {cancelled} pending record(s) cancelled",
            ts=now,
        )
        await self.db.commit()
        logger.info("Job cancelled", job_id=job_id, records_cancelled=cancelled)
        return cancelled

    async def requeue_failed_records(self, job_id: int) -> int:
        """Put failed records with attempts left back through the pipeline."""
        job = await jobs.get_job(self.db, job_id)
        if job is None:
            raise ValidationError(f"Job {job_id} not found")

        records = await work_records.list_failed_retryable(
            self.db, job_id, max_attempts=self.policy.max_attempts
        )
        if not records:
            return 0

        now = self.clock.now()
        for record in records:
            await work_records.update_record(
                self.db,
                record,
                state=RecordState.TRIGGERED,
                last_error_code=None,
                last_error_message=None,
                next_attempt_at=now,
            )
            await events.record_job_event(
                self.db,
                job,
                record=record,
                event_type="batch_record_retried",
                phase="batch",
                message=f"Failed record re-triggered (retry_count={record.retry_count})",
                ts=now,
            )
        await self.db.commit()

        rule = await routing_rules.find_active_rule(self.db, job.organization_id)
        queue = (rule.queue_for("collect") if rule else None) or settings.COLLECT_QUEUE
        for record in records:
            self.queue.enqueue(TaskName.RUN_PIPELINE, record.id, queue=queue)
        logger.info("Failed records re-queued", job_id=job_id, count=len(records))
        return len(records)

    async def job_progress(self, job_id: int) -> JobProgress:
        job = await jobs.get_job(self.db, job_id)
        if job is None:
            raise ValidationError(f"Job {job_id} not found")
        breakdown = await work_records.count_by_state(self.db, job_id)
        return JobProgress(
            job_id=job.id,
            job_status=job.status,
            total_records=job.total_records,
            state_breakdown=breakdown,
            completed=breakdown.get(RecordState.COMPLETED, 0),
            failed=breakdown.get(RecordState.FAILED, 0),
            escalated=breakdown.get(RecordState.ESCALATED, 0),
            cancelled=breakdown.get(RecordState.CANCELLED, 0),
            in_progress=sum(breakdown.get(state, 0) for state in _IN_PROGRESS_STATES),
            not_started=breakdown.get(RecordState.TRIGGERED, 0) + breakdown.get(RecordState.QUEUED, 0),
        )

    # ─── Helpers ───────────────────────────────────────

    async def _require_member(self, user_id: int, organization_id: int) -> None:
        user = await users.get_user_by_id(self.db, user_id)
        if user is None or user.organization_id != organization_id:
            raise ValidationError(f"User {user_id} does not belong to organization {organization_id}")

    async def _require_rule(self, organization_id: int) -> RoutingRule:
        rule = await routing_rules.find_active_rule(self.db, organization_id)
        if rule is None:
            raise ConfigurationError(
                f"No active routing rule found for organization {organization_id}",
                code="missing_routing_rule",
            )
        return rule
