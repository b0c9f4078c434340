"""
PipelineEngine — the orchestrator that runs phases sequentially.

Responsibilities:
    - Load the work record and its job
    - Skip phases that do not apply to the record's persisted state
    - Execute each phase with timing, logging and audit events
    - Commit after every phase so a re-run resumes where this one stopped
    - Escalate non-retryable failures immediately
    - Let unexpected errors propagate to the task runtime's retry
    - Return a complete PipelineResult
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from paystub.core.clock import Clock
from paystub.core.constants import (
    EscalationReason,
    PipelineStatus,
    RecordState,
    Severity,
    StepStatus,
)
from paystub.pipeline.context import PipelineContext, StepResult
from paystub.pipeline.errors import NonRetryableError, ValidationError, classify
from paystub.pipeline.retry import RetryPolicyConfig
from paystub.pipeline.step import PipelineStep
from paystub.repositories import events, jobs, work_records

if TYPE_CHECKING:
    from paystub.escalation.engine import EscalationEngine


@dataclass
class PipelineResult:
    """Final outcome of a pipeline execution."""

    execution_id: str
    work_record_id: int
    status: str                     # PipelineStatus value
    final_state: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    total_duration_ms: int = 0
    steps_completed: int = 0
    total_steps: int = 0
    step_results: list[dict[str, Any]] = field(default_factory=list)
    context_summary: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


class PipelineEngine:
    """
    Runs the ordered phases against one WorkRecord.

    Usage::

        engine = PipelineEngine(db, clock=clock, policy=policy,
                                phases=build_phases(services),
                                escalation=escalation)
        result = await engine.run(work_record_id=42)
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock,
        policy: RetryPolicyConfig,
        phases: Sequence[PipelineStep],
        escalation: EscalationEngine,
    ) -> None:
        self.db = db
        self.clock = clock
        self.policy = policy
        self.phases = list(phases)
        self.escalation = escalation
        self.logger = structlog.get_logger("pipeline.engine")

    async def run(
        self,
        work_record_id: int,
        *,
        phases: Sequence[PipelineStep] | None = None,
    ) -> PipelineResult:
        """Full pipeline execution for one record."""
        ctx = PipelineContext(
            db=self.db,
            work_record_id=work_record_id,
            clock=self.clock,
            policy=self.policy,
        )
        ctx.record = await work_records.get_record(self.db, work_record_id)
        if ctx.record is None:
            raise ValidationError(f"Work record {work_record_id} not found", work_record_id=work_record_id)
        ctx.job = await jobs.get_job(self.db, ctx.record.job_id)

        log = self.logger.bind(
            execution_id=ctx.execution_id,
            work_record_id=work_record_id,
            job_id=ctx.record.job_id,
        )
        log.info("Pipeline started", state=ctx.state, retry_count=ctx.record.retry_count)

        result = await self.run_steps(ctx, list(phases) if phases is not None else self.phases)

        log.info(
            "Pipeline finished",
            status=result.status,
            final_state=result.final_state,
            steps_completed=result.steps_completed,
            duration_ms=result.total_duration_ms,
        )
        return result

    async def run_steps(
        self,
        ctx: PipelineContext,
        steps: list[PipelineStep],
    ) -> PipelineResult:
        """
        Execute an ordered list of phases against a loaded context.

        Can be called directly with a partial phase list (the upload
        retry task starts at ``execute``).
        """
        started_at = self.clock.now()
        log = self.logger.bind(
            execution_id=ctx.execution_id,
            work_record_id=ctx.work_record_id,
            total_steps=len(steps),
        )
        steps_completed = 0
        error: str | None = None

        for index, step in enumerate(steps):
            if ctx.halted:
                break
            step_number = index + 1
            step_log = log.bind(step_name=step.name, step_index=step_number)

            # ── Check skip condition ──────────────────
            if await step.should_skip(ctx):
                step_log.debug("Step skipped", state=ctx.state)
                now = self.clock.now()
                ctx.step_results.append(StepResult(
                    step_name=step.name,
                    status=StepStatus.SKIPPED,
                    from_state=ctx.state,
                    to_state=ctx.state,
                    started_at=now,
                    completed_at=now,
                ))
                continue

            step_log.info(f"Step {step_number}/{len(steps)}: {step.description}")
            from_state = ctx.state

            # ── Execute ───────────────────────────────
            try:
                result = await step.execute(ctx)
            except NonRetryableError as exc:
                error = await self._escalate_non_retryable(ctx, step, from_state, exc, step_log)
                break
            except Exception as exc:
                step_log.exception("Unexpected error in step", error=str(exc))
                await self._record_unexpected(ctx, step, from_state, exc, step_log)
                raise

            ctx.step_results.append(result)

            if result.status == StepStatus.COMPLETED:
                steps_completed += 1
                await self._phase_event(
                    ctx, step, "phase_completed", Severity.INFO,
                    f"{step.name}: {from_state} -> {ctx.state}",
                )
                await self.db.commit()
                step_log.info(
                    "Step completed",
                    from_state=from_state,
                    to_state=ctx.state,
                    duration_ms=result.duration_ms,
                    metadata=result.metadata,
                )
            else:
                error = result.error
                step_log.error(
                    "Step failed — pipeline stopping",
                    error=result.error,
                    to_state=ctx.state,
                )
                await self._phase_event(
                    ctx, step, "phase_failed", Severity.ERROR,
                    f"{step.name}: {from_state} -> {ctx.state}: {result.error}",
                )
                await self.db.commit()
                await self._run_rollback(step, ctx, step_log)
                break

        # ── Finalise ──────────────────────────────────
        completed_at = self.clock.now()
        return PipelineResult(
            execution_id=ctx.execution_id,
            work_record_id=ctx.work_record_id,
            status=self._status(ctx, steps_completed),
            final_state=ctx.state,
            started_at=started_at,
            completed_at=completed_at,
            total_duration_ms=int((completed_at - started_at).total_seconds() * 1000),
            steps_completed=steps_completed,
            total_steps=len(steps),
            step_results=[sr.to_dict() for sr in ctx.step_results],
            context_summary=ctx.to_summary_dict(),
            error=error,
        )

    # ─── Failure handling ──────────────────────────────

    async def _escalate_non_retryable(
        self,
        ctx: PipelineContext,
        step: PipelineStep,
        from_state: str | None,
        exc: NonRetryableError,
        log: structlog.BoundLogger,
    ) -> str:
        """Discard the phase's partial writes, fail the record, escalate."""
        failure = classify(exc)
        log.warning("Non-retryable error, escalating", error_code=failure.code, error=failure.message)

        await self._reload(ctx)
        await self._run_rollback(step, ctx, log)

        record = ctx.record
        if record.state != RecordState.ESCALATED:
            await work_records.update_record(
                self.db,
                record,
                state=RecordState.FAILED,
                last_error_code=failure.code,
                last_error_message=failure.message,
            )
        await self._phase_event(
            ctx, step, "phase_failed", Severity.ERROR,
            f"{step.name}: {from_state} -> {record.state}: {failure.code}: {failure.message}",
        )
        await self.escalation.escalate(record, EscalationReason.NON_RETRYABLE, final_error=failure)
        await self.db.commit()

        now = self.clock.now()
        ctx.step_results.append(StepResult(
            step_name=step.name,
            status=StepStatus.FAILED,
            from_state=from_state,
            to_state=ctx.state,
            started_at=now,
            completed_at=now,
            error=f"{failure.code}: {failure.message}",
        ))
        ctx.halt("escalated")
        return f"{failure.code}: {failure.message}"

    async def _record_unexpected(
        self,
        ctx: PipelineContext,
        step: PipelineStep,
        from_state: str | None,
        exc: Exception,
        log: structlog.BoundLogger,
    ) -> None:
        """Best-effort audit of an error that is about to propagate."""
        try:
            await self._reload(ctx)
            await self._run_rollback(step, ctx, log)
            await self._phase_event(
                ctx, step, "phase_failed", Severity.ERROR,
                f"{step.name}: {from_state}: unexpected {type(exc).__name__}: {exc}",
            )
            await self.db.commit()
        except Exception as audit_exc:
            log.warning("Could not record phase failure", error=str(audit_exc))

    async def _reload(self, ctx: PipelineContext) -> None:
        await self.db.rollback()
        await self.db.refresh(ctx.record)
        await self.db.refresh(ctx.job)

    async def _run_rollback(
        self,
        step: PipelineStep,
        ctx: PipelineContext,
        log: structlog.BoundLogger,
    ) -> None:
        try:
            await step.rollback(ctx)
        except Exception as rollback_exc:
            log.warning("Rollback failed", error=str(rollback_exc))

    async def _phase_event(
        self,
        ctx: PipelineContext,
        step: PipelineStep,
        event_type: str,
        severity: str,
        message: str,
    ) -> None:
        await events.record_job_event(
            self.db,
            ctx.job,
            record=ctx.record,
            event_type=event_type,
            phase=step.name,
            severity=severity,
            message=message,
            ts=self.clock.now(),
        )

    @staticmethod
    def _status(ctx: PipelineContext, steps_completed: int) -> str:
        if ctx.halt_reason == "already_running" or (steps_completed == 0 and not ctx.halted):
            return PipelineStatus.NOOP
        match ctx.state:
            case RecordState.COMPLETED:
                return PipelineStatus.COMPLETED
            case RecordState.ESCALATED:
                return PipelineStatus.ESCALATED
            case RecordState.RETRY_SCHEDULED:
                return PipelineStatus.SUSPENDED
            case _:
                return PipelineStatus.STOPPED
