"""
The eight pipeline phases, in their fixed order.

    define → locate → prepare → confirm → execute → monitor → modify → conclude

Each phase declares the record states it acts on; the engine skips it
for any other state, which is what makes re-running a record safe.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

from paystub.core.constants import (
    TRANSFERABLE_DOCUMENT_STATUSES,
    EscalationReason,
    NotificationChannel,
    NotificationStatus,
    NotificationType,
    RecordState,
)
from paystub.core.logging import get_logger
from paystub.notifications import ChannelSender, NotificationMessage
from paystub.pipeline.context import PipelineContext, StepResult
from paystub.pipeline.errors import DocumentFormatError, DocumentNotReceivedError
from paystub.pipeline.step import PipelineStep
from paystub.repositories import documents, loans, notifications, uploads, users, work_records

if TYPE_CHECKING:
    from paystub.collection import DocumentCollector
    from paystub.escalation.engine import EscalationEngine
    from paystub.pipeline.executor import UploadExecutor
    from paystub.pipeline.retry import RetryScheduler

logger = get_logger(__name__)


async def _pay_stub(ctx: PipelineContext):
    return await documents.get_pay_stub(ctx.db, ctx.record.loan_application_id)


# ═══════════════════════════════════════════════════════════
#  Phase 1: define → locate → prepare
# ═══════════════════════════════════════════════════════════

class DefinePhase(PipelineStep):
    """Take the row lock and move the record into collection."""

    name = "define"
    description = "Lock record and start collection"
    applies_to = frozenset({RecordState.TRIGGERED, RecordState.QUEUED, RecordState.PROCESSING})

    async def execute(self, ctx: PipelineContext) -> StepResult:
        started_at = ctx.now()
        from_state = ctx.state

        # Read-decide-write under SELECT ... FOR UPDATE
        record = await work_records.lock_record(ctx.db, ctx.work_record_id)
        ctx.record = record
        if record.state not in self.applies_to:
            # Another run got here first and owns the record from now on
            ctx.halt("already_running")
            return self._success(ctx, started_at, from_state, {"noop": True})

        await work_records.update_record(
            ctx.db, record, state=RecordState.COLLECTING, next_attempt_at=ctx.now()
        )
        return self._success(ctx, started_at, from_state)


class LocatePhase(PipelineStep):
    name = "locate"
    description = "Request the pay stub from the applicant"
    applies_to = frozenset({RecordState.COLLECTING})

    def __init__(self, collector: DocumentCollector) -> None:
        self.collector = collector

    async def execute(self, ctx: PipelineContext) -> StepResult:
        started_at = ctx.now()
        from_state = ctx.state
        request = await self.collector.request_collection(ctx.record)
        return self._success(ctx, started_at, from_state, {
            "document_id": request.document_id,
            "already_requested": request.already_requested,
        })


class PreparePhase(PipelineStep):
    name = "prepare"
    description = "Pre-validate the collected document"
    applies_to = frozenset({RecordState.COLLECTING})

    async def execute(self, ctx: PipelineContext) -> StepResult:
        started_at = ctx.now()
        from_state = ctx.state

        document = await _pay_stub(ctx)
        if document is None:
            raise DocumentFormatError(
                "No pay stub document exists for the loan",
                work_record_id=ctx.work_record_id,
                phase=self.name,
            )
        if document.status in TRANSFERABLE_DOCUMENT_STATUSES:
            missing = [
                label
                for label, ok in (
                    ("checksum", bool(document.sha256)),
                    ("storage locator", bool(document.storage_url)),
                    ("size", (document.size_bytes or 0) > 0),
                )
                if not ok
            ]
            if missing:
                raise DocumentFormatError(
                    f"Document {document.id} is missing {', '.join(missing)}",
                    work_record_id=ctx.work_record_id,
                    phase=self.name,
                )

        await work_records.update_record(ctx.db, ctx.record, state=RecordState.COLLECTED)
        return self._success(ctx, started_at, from_state, {"document_status": document.status})


# ═══════════════════════════════════════════════════════════
#  Phase 2: confirm → execute → monitor
# ═══════════════════════════════════════════════════════════

class ConfirmPhase(PipelineStep):
    name = "confirm"
    description = "Confirm the document has been received"
    applies_to = frozenset({RecordState.COLLECTED})

    async def execute(self, ctx: PipelineContext) -> StepResult:
        started_at = ctx.now()
        from_state = ctx.state

        document = await _pay_stub(ctx)
        if document is None or document.status not in TRANSFERABLE_DOCUMENT_STATUSES:
            raise DocumentNotReceivedError(
                f"Pay stub not received (status={document.status if document else 'missing'})",
                work_record_id=ctx.work_record_id,
                phase=self.name,
            )
        await work_records.update_record(ctx.db, ctx.record, state=RecordState.UPLOADING)
        return self._success(ctx, started_at, from_state, {"document_id": document.id})


class ExecutePhase(PipelineStep):
    """Run one upload attempt; failures go to the retry scheduler."""

    name = "execute"
    description = "Upload the pay stub to the LOS"
    applies_to = frozenset({RecordState.UPLOADING, RecordState.RETRY_SCHEDULED})

    def __init__(self, executor: UploadExecutor, scheduler: RetryScheduler) -> None:
        self.executor = executor
        self.scheduler = scheduler

    async def execute(self, ctx: PipelineContext) -> StepResult:
        started_at = ctx.now()
        from_state = ctx.state

        record = await work_records.lock_record(ctx.db, ctx.work_record_id)
        ctx.record = record
        if record.state not in self.applies_to:
            ctx.halt("already_running")
            return self._success(ctx, started_at, from_state, {"noop": True})
        open_attempt = await uploads.get_open_attempt(ctx.db, record.id)
        if open_attempt is not None:
            # One transfer per record at a time
            ctx.halt("already_running")
            return self._success(ctx, started_at, from_state, {
                "noop": True,
                "open_attempt": open_attempt.attempt,
            })

        document = await _pay_stub(ctx)
        if document is None:
            raise DocumentNotReceivedError(
                "No pay stub document exists for the loan",
                work_record_id=ctx.work_record_id,
                phase=self.name,
            )

        # Cleared so the retry sweep leaves an in-flight upload alone
        await work_records.update_record(
            ctx.db, ctx.record, state=RecordState.UPLOADING, next_attempt_at=None
        )
        outcome = await self.executor.upload(ctx.record, document)
        if outcome.superseded:
            ctx.halt("superseded")
            return self._success(ctx, started_at, from_state, {
                "attempt": outcome.attempt,
                "superseded": True,
            })
        if outcome.succeeded:
            return self._success(ctx, started_at, from_state, {
                "attempt": outcome.attempt,
                "session_id": outcome.session_id,
            })

        decision = await self.scheduler.handle_failure(ctx.record, outcome.failure)
        ctx.halt("retry_scheduled" if decision.rescheduled else "escalated")
        return self._failure(
            ctx,
            started_at,
            from_state,
            error=f"{outcome.failure.code}: {outcome.failure.message}",
            metadata={
                "attempt": outcome.attempt,
                "retry_count": decision.retry_count,
                "rescheduled": decision.rescheduled,
                "next_attempt_at": decision.next_attempt_at.isoformat() if decision.next_attempt_at else None,
            },
        )


class MonitorPhase(PipelineStep):
    name = "monitor"
    description = "Escalate failed or exhausted records"
    applies_to = frozenset({RecordState.UPLOADED, RecordState.FAILED})

    def __init__(self, escalation: EscalationEngine) -> None:
        self.escalation = escalation

    async def execute(self, ctx: PipelineContext) -> StepResult:
        started_at = ctx.now()
        from_state = ctx.state
        record = ctx.record

        if record.state == RecordState.FAILED or record.retry_count >= ctx.policy.max_attempts:
            result = await self.escalation.escalate(record, EscalationReason.MONITOR_EXHAUSTED)
            ctx.halt("escalated")
            return self._success(ctx, started_at, from_state, {
                "escalated": result.escalated,
                "recipients": result.recipients_notified,
            })
        return self._success(ctx, started_at, from_state)


# ═══════════════════════════════════════════════════════════
#  Phase 3: modify → conclude
# ═══════════════════════════════════════════════════════════

class ModifyPhase(PipelineStep):
    """Corrective touch point; currently only bumps updated_at."""

    name = "modify"
    description = "Apply post-upload corrections"
    applies_to = frozenset({RecordState.UPLOADED})

    async def execute(self, ctx: PipelineContext) -> StepResult:
        started_at = ctx.now()
        await work_records.update_record(ctx.db, ctx.record, updated_at=ctx.now())
        return self._success(ctx, started_at, ctx.state)


class ConcludePhase(PipelineStep):
    name = "conclude"
    description = "Complete the record and notify the requester"
    applies_to = frozenset({RecordState.UPLOADED})

    def __init__(self, email_sender: ChannelSender) -> None:
        self.email_sender = email_sender

    async def execute(self, ctx: PipelineContext) -> StepResult:
        started_at = ctx.now()
        from_state = ctx.state
        record, job = ctx.record, ctx.job

        await work_records.update_record(ctx.db, record, state=RecordState.COMPLETED)
        notification = await notifications.create_notification(
            ctx.db,
            organization_id=job.organization_id,
            work_record_id=record.id,
            user_id=job.user_id,
            channel=NotificationChannel.EMAIL,
            notification_type=NotificationType.SUCCESS,
        )

        user = await users.get_user_by_id(ctx.db, job.user_id)
        loan = await loans.get_loan(ctx.db, record.loan_application_id)
        message = NotificationMessage(
            subject=f"Pay stub uploaded for loan {loan.los_external_id}",
            body=(
                f"The applicant's pay stub for loan {loan.los_external_id} was collected "
                "and uploaded to the LOS. No action is needed."
            ),
        )
        delivered = False
        error = None
        if user is not None and user.email:
            try:
                result = await self.email_sender.send(user.email, message)
                delivered, error = result.ok, result.error
            except Exception as exc:
                error = str(exc)
        else:
            error = f"user {job.user_id} has no email address"

        if delivered:
            await notifications.update_notification(
                ctx.db, notification, status=NotificationStatus.SENT, sent_at=ctx.now()
            )
        else:
            logger.warning("Success notification failed", work_record_id=record.id, error=error)
            await notifications.update_notification(
                ctx.db, notification, status=NotificationStatus.FAILED, error_message=error
            )
        return self._success(ctx, started_at, from_state, {"notification_id": notification.id})


# ─── Assembly ──────────────────────────────────────────────

@dataclass
class PhaseServices:
    collector: DocumentCollector
    executor: UploadExecutor
    scheduler: RetryScheduler
    escalation: EscalationEngine
    email_sender: ChannelSender


def build_phases(services: PhaseServices) -> list[PipelineStep]:
    """All phases in execution order."""
    return [
        DefinePhase(),
        LocatePhase(services.collector),
        PreparePhase(),
        ConfirmPhase(),
        ExecutePhase(services.executor, services.scheduler),
        MonitorPhase(services.escalation),
        ModifyPhase(),
        ConcludePhase(services.email_sender),
    ]


def phases_from(phases: Sequence[PipelineStep], name: str) -> list[PipelineStep]:
    """The tail of the phase list starting at ``name``."""
    names = [p.name for p in phases]
    return list(phases[names.index(name):])
