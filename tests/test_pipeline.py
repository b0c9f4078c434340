"""
Phase pipeline end to end.

Runs the real engine and phases against SQLite with a scripted LOS
client, checking persisted state after every run the way a re-delivered
Celery task would see it.
"""

from datetime import timedelta

import pytest

from paystub.core.clock import FixedClock
from paystub.core.constants import (
    DocumentStatus,
    EscalationReason,
    NotificationStatus,
    NotificationType,
    PipelineStatus,
    RecordState,
    StepStatus,
    TaskName,
    UploadStatus,
)
from paystub.pipeline.context import PipelineContext, StepResult
from paystub.pipeline.errors import RemoteTimeoutError, ValidationError
from paystub.pipeline.phases import DefinePhase, phases_from
from paystub.pipeline.step import PipelineStep
from paystub.repositories import documents, events, notifications, uploads, work_records

from conftest import NOW


async def phase_events(db, record_id, event_type):
    return [e.phase for e in await events.list_events(db, work_record_id=record_id, event_type=event_type)]


@pytest.fixture
async def ready_record(factory, world):
    """Triggered record whose applicant has already uploaded the pay stub."""
    loan = await factory.loan(world.org)
    await factory.received_document(loan)
    return await factory.record(world, loan)


# =============================================================================
# Happy path
# =============================================================================

class TestFullRun:
    async def test_received_document_runs_to_completed(self, db, services, senders, transfer, ready_record, world):
        result = await services.engine.run(ready_record.id)

        assert result.status == PipelineStatus.COMPLETED
        assert result.final_state == RecordState.COMPLETED
        assert result.steps_completed == result.total_steps == 8
        assert [s["step_name"] for s in result.step_results] == [
            "define", "locate", "prepare", "confirm", "execute", "monitor", "modify", "conclude",
        ]
        assert await phase_events(db, ready_record.id, "phase_completed") == [
            "define", "locate", "prepare", "confirm", "execute", "monitor", "modify", "conclude",
        ]

        [attempt] = await uploads.list_attempts(db, ready_record.id)
        assert attempt.status == UploadStatus.SUCCEEDED
        assert len(transfer.pushed) == 1

        [notification] = await notifications.list_notifications(db, ready_record.id)
        assert notification.notification_type == NotificationType.SUCCESS
        assert notification.status == NotificationStatus.SENT
        assert notification.user_id == world.officer.id
        [(address, message)] = senders.email.sent
        assert address == world.officer.email
        assert "uploaded" in message.subject

    async def test_success_email_failure_does_not_block_completion(self, db, services, senders, ready_record):
        senders.email.ok = False
        result = await services.engine.run(ready_record.id)

        assert result.status == PipelineStatus.COMPLETED
        [notification] = await notifications.list_notifications(db, ready_record.id)
        assert notification.status == NotificationStatus.FAILED
        assert "rejected" in notification.error_message


# =============================================================================
# Collection
# =============================================================================

class TestDocumentNotYetReceived:
    async def test_first_run_requests_document_then_escalates(self, db, services, senders, factory, world):
        loan = await factory.loan(world.org)
        applicant_id = loan.applicant_id
        record = await factory.record(world, loan)
        record_id = record.id

        result = await services.engine.run(record_id)

        assert result.status == PipelineStatus.ESCALATED
        assert "document_not_received" in result.error
        [(address, message)] = senders.applicant.sent
        assert address == applicant_id
        assert "upload" in message.body

        await db.refresh(record)
        assert record.state == RecordState.ESCALATED
        document = await documents.get_pay_stub(db, record.loan_application_id)
        assert document.status == DocumentStatus.COLLECTION_SENT
        assert await phase_events(db, record_id, "phase_failed") == ["confirm"]
        escalation = await notifications.get_escalation(db, record_id)
        assert escalation.reason == EscalationReason.NON_RETRYABLE
        assert escalation.context["final_error"]["code"] == "document_not_received"


# =============================================================================
# Upload retries
# =============================================================================

class TestUploadRetries:
    async def test_retryable_failure_suspends_then_resumes_at_execute(
        self, db, services, queue, transfer, ready_record
    ):
        transfer.push_errors.append(RemoteTimeoutError("LOS slow"))

        first = await services.engine.run(ready_record.id)
        assert first.status == PipelineStatus.SUSPENDED
        assert first.final_state == RecordState.RETRY_SCHEDULED
        [retry] = queue.named(TaskName.EXECUTE_UPLOAD)
        assert retry.target_id == ready_record.id

        second = await services.engine.run(ready_record.id, phases=phases_from(services.phases, "execute"))
        assert second.status == PipelineStatus.COMPLETED
        assert [a.status for a in await uploads.list_attempts(db, ready_record.id)] == [
            UploadStatus.FAILED, UploadStatus.SUCCEEDED,
        ]
        assert ready_record.retry_count == 1

    async def test_retries_are_bounded_and_attempts_contiguous(
        self, db, services, queue, transfer, policy, ready_record
    ):
        transfer.push_errors.extend([RemoteTimeoutError("slow")] * 5)

        results = [await services.engine.run(ready_record.id)]
        while results[-1].status == PipelineStatus.SUSPENDED:
            assert ready_record.retry_count < policy.max_attempts
            results.append(
                await services.engine.run(ready_record.id, phases=phases_from(services.phases, "execute"))
            )

        assert [r.status for r in results] == [
            PipelineStatus.SUSPENDED, PipelineStatus.SUSPENDED, PipelineStatus.ESCALATED,
        ]
        assert ready_record.retry_count == policy.max_attempts
        assert ready_record.state == RecordState.ESCALATED
        assert [a.attempt for a in await uploads.list_attempts(db, ready_record.id)] == [1, 2, 3]
        assert len(queue.named(TaskName.EXECUTE_UPLOAD)) == 2

        # A late duplicate delivery of the retry task is a no-op
        late = await services.engine.run(ready_record.id, phases=phases_from(services.phases, "execute"))
        assert late.status == PipelineStatus.NOOP
        assert late.steps_completed == 0
        assert len(await uploads.list_attempts(db, ready_record.id)) == 3
        assert len(await events.list_events(db, work_record_id=ready_record.id, event_type="record_escalated")) == 1

    async def test_non_retryable_upload_failure_escalates_immediately(self, db, services, queue, source, factory, world):
        loan = await factory.loan(world.org)
        document = await factory.received_document(loan)
        source.blobs[document.storage_url] = b"%PDF-different-bytes" + b"2" * 2048
        record = await factory.record(world, loan)

        result = await services.engine.run(record.id)

        assert result.status == PipelineStatus.ESCALATED
        assert record.retry_count == 0
        assert queue.named(TaskName.EXECUTE_UPLOAD) == []
        escalation = await notifications.get_escalation(db, record.id)
        assert escalation.reason == EscalationReason.NON_RETRYABLE


# =============================================================================
# Re-entry
# =============================================================================

class TestReentry:
    async def test_uploaded_record_gets_no_second_upload(self, db, services, transfer, factory, world):
        loan = await factory.loan(world.org)
        await factory.received_document(loan)
        record = await factory.record(world, loan, state=RecordState.UPLOADED)

        result = await services.engine.run(record.id)

        assert result.status == PipelineStatus.COMPLETED
        assert transfer.calls == []
        assert await uploads.list_attempts(db, record.id) == []
        executed = [s for s in result.step_results if s["step_name"] == "execute"]
        assert executed[0]["status"] == StepStatus.SKIPPED

    async def test_completed_record_is_a_noop(self, services, ready_record):
        await services.engine.run(ready_record.id)
        again = await services.engine.run(ready_record.id)
        assert again.status == PipelineStatus.NOOP
        assert again.steps_completed == 0

    async def test_define_runs_once(self, services, ready_record):
        first = await services.engine.run(ready_record.id, phases=[DefinePhase()])
        second = await services.engine.run(ready_record.id, phases=[DefinePhase()])

        assert first.final_state == RecordState.COLLECTING
        assert first.steps_completed == 1
        assert second.status == PipelineStatus.NOOP

    async def test_monitor_escalates_failed_record(self, db, services, factory, world):
        loan = await factory.loan(world.org)
        record = await factory.record(world, loan, state=RecordState.FAILED, retry_count=1)

        result = await services.engine.run(record.id, phases=phases_from(services.phases, "monitor"))

        assert result.status == PipelineStatus.ESCALATED
        escalation = await notifications.get_escalation(db, record.id)
        assert escalation.reason == EscalationReason.MONITOR_EXHAUSTED


# =============================================================================
# Runs racing another worker
# =============================================================================

class TestConcurrentWorkers:
    """A second session commits while this run is between reads and writes."""

    async def test_upload_finishing_after_stuck_escalation_is_discarded(
        self, db, services, transfer, other_worker, ready_record
    ):
        late = other_worker(FixedClock(NOW + timedelta(minutes=45)))
        handled = []

        async def stuck_sweep():
            handled.append(await late.stuck.escalate_stuck())

        transfer.during_push = stuck_sweep
        result = await services.engine.run(ready_record.id)

        assert handled == [1]
        assert result.status == PipelineStatus.ESCALATED
        assert ready_record.state == RecordState.ESCALATED
        assert [s["step_name"] for s in result.step_results][-1] == "execute"
        [attempt] = await uploads.list_attempts(db, ready_record.id)
        assert (attempt.status, attempt.error_code) == (UploadStatus.FAILED, "timeout")
        document = await documents.get_pay_stub(db, ready_record.loan_application_id)
        assert document.status == DocumentStatus.RECEIVED
        assert await events.list_events(db, work_record_id=ready_record.id, event_type="upload_succeeded") == []
        assert len(await events.list_events(
            db, work_record_id=ready_record.id, event_type="upload_result_discarded"
        )) == 1
        escalation = await notifications.get_escalation(db, ready_record.id)
        assert escalation.reason == EscalationReason.STUCK_UPLOAD

    async def test_duplicate_run_does_not_start_second_upload(
        self, db, services, clock, transfer, other_worker, ready_record
    ):
        duplicate = other_worker(clock)
        second = []

        async def redelivered_run():
            second.append(await duplicate.engine.run(ready_record.id))

        transfer.during_push = redelivered_run
        first = await services.engine.run(ready_record.id)

        [dup] = second
        assert dup.status == PipelineStatus.NOOP
        executed = [s for s in dup.step_results if s["step_name"] == "execute"]
        assert executed[0]["metadata"] == {"noop": True, "open_attempt": 1}
        assert first.status == PipelineStatus.COMPLETED
        assert [a.attempt for a in await uploads.list_attempts(db, ready_record.id)] == [1]
        assert len(transfer.pushed) == 1

    async def test_define_stops_when_another_run_owns_the_record(
        self, db, services, senders, other_db, ready_record
    ):
        # This session still holds the record as triggered
        assert ready_record.state == RecordState.TRIGGERED
        fresh = await work_records.get_record(other_db, ready_record.id)
        await work_records.update_record(other_db, fresh, state=RecordState.COLLECTING)
        await other_db.commit()

        result = await services.engine.run(ready_record.id)

        assert result.status == PipelineStatus.NOOP
        assert [s["step_name"] for s in result.step_results] == ["define"]
        assert ready_record.state == RecordState.COLLECTING
        assert senders.applicant.sent == []


# =============================================================================
# Engine error handling
# =============================================================================

class Exploding(PipelineStep):
    name = "explode"
    description = "Always raises"
    applies_to = frozenset({RecordState.TRIGGERED})

    async def execute(self, ctx: PipelineContext) -> StepResult:
        raise RuntimeError("boom")


class TestEngineErrors:
    async def test_unexpected_error_is_audited_and_reraised(self, db, services, ready_record):
        record_id = ready_record.id
        with pytest.raises(RuntimeError, match="boom"):
            await services.engine.run(record_id, phases=[Exploding()])

        assert await phase_events(db, record_id, "phase_failed") == ["explode"]
        await db.refresh(ready_record)
        assert ready_record.state == RecordState.TRIGGERED

    async def test_unknown_record_is_rejected(self, services):
        with pytest.raises(ValidationError):
            await services.engine.run(999_999)
