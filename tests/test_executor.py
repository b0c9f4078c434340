"""UploadExecutor: one attempt per call, ordered sub-steps, classified failures."""

import pytest

from paystub.core.constants import DocumentStatus, RecordState, UploadStatus
from paystub.pipeline.errors import DocumentFormatError, RemoteTimeoutError
from paystub.pipeline.executor import UploadExecutor, check_prerequisites
from paystub.repositories import documents, events, uploads, work_records

from conftest import ScriptedTransferClient


@pytest.fixture
async def uploading(factory, world):
    loan = await factory.loan(world.org)
    document = await factory.received_document(loan)
    record = await factory.record(world, loan, state=RecordState.UPLOADING)
    return record, document


def make_executor(db, clock, client, source):
    return UploadExecutor(db, clock=clock, client=client, source=source)


class TestUploadSuccess:
    async def test_success_marks_attempt_document_and_record(self, db, clock, transfer, source, uploading):
        record, document = uploading
        outcome = await make_executor(db, clock, transfer, source).upload(record, document)

        assert outcome.succeeded
        assert outcome.attempt == 1
        assert outcome.session_id.startswith("rpa_")
        assert outcome.remote_ref == "los-doc-1"
        assert transfer.steps() == [
            "open_session", "authenticate", "navigate", "push", "verify", "close_session",
        ]

        [attempt] = await uploads.list_attempts(db, record.id)
        assert attempt.status == UploadStatus.SUCCEEDED
        assert attempt.session_id == outcome.session_id
        assert attempt.ended_at is not None
        assert document.status == DocumentStatus.UPLOADED
        assert record.state == RecordState.UPLOADED
        assert record.last_error_code is None
        assert len(await events.list_events(db, work_record_id=record.id, event_type="upload_succeeded")) == 1

    async def test_cleanup_failure_does_not_fail_the_upload(self, db, clock, source, uploading):
        class BrokenCleanup(ScriptedTransferClient):
            async def close_session(self, session_id):
                raise ConnectionError("socket closed")

        record, document = uploading
        outcome = await make_executor(db, clock, BrokenCleanup(), source).upload(record, document)
        assert outcome.succeeded


class TestUploadFailure:
    async def test_retryable_failure_is_returned_not_raised(self, db, clock, source, uploading):
        record, document = uploading
        client = ScriptedTransferClient([RemoteTimeoutError("LOS took too long")])

        outcome = await make_executor(db, clock, client, source).upload(record, document)

        assert not outcome.succeeded
        assert outcome.failure.code == "timeout"
        assert outcome.failure.retryable
        assert client.steps()[-1] == "close_session"

        [attempt] = await uploads.list_attempts(db, record.id)
        assert attempt.status == UploadStatus.FAILED
        assert attempt.error_code == "timeout"
        assert record.last_error_code == "timeout"
        # The scheduler decides the next state
        assert record.state == RecordState.UPLOADING
        [event] = await events.list_events(db, work_record_id=record.id, event_type="upload_failed")
        assert event.severity == "warn"

    async def test_checksum_mismatch_is_non_retryable(self, db, clock, transfer, source, uploading):
        record, document = uploading
        source.blobs[document.storage_url] = b"%PDF-tampered" + b"1" * 2048

        outcome = await make_executor(db, clock, transfer, source).upload(record, document)

        assert outcome.failure.code == "document_format_error"
        assert not outcome.failure.retryable
        assert "push" not in transfer.steps()
        [event] = await events.list_events(db, work_record_id=record.id, event_type="upload_failed")
        assert event.severity == "error"

    async def test_unverified_push_is_a_system_error(self, db, clock, source, uploading):
        record, document = uploading
        outcome = await make_executor(db, clock, ScriptedTransferClient(verify_result=False), source).upload(
            record, document
        )
        assert outcome.failure.code == "system_error"

    async def test_unexpected_exception_is_classified(self, db, clock, source, uploading):
        record, document = uploading
        client = ScriptedTransferClient([KeyError("document_id")])
        outcome = await make_executor(db, clock, client, source).upload(record, document)
        assert outcome.failure.code == "unexpected_error"
        assert outcome.failure.retryable


class TestLateResult:
    """The outcome is only written while this attempt still owns the record."""

    async def test_record_finished_elsewhere_keeps_its_state(self, db, other_db, clock, transfer, source, uploading):
        record, document = uploading

        async def escalated_by_hand():
            fresh = await work_records.get_record(other_db, record.id)
            await work_records.update_record(other_db, fresh, state=RecordState.ESCALATED)
            await other_db.commit()

        transfer.during_push = escalated_by_hand
        outcome = await make_executor(db, clock, transfer, source).upload(record, document)

        assert outcome.succeeded
        assert outcome.superseded
        assert record.state == RecordState.ESCALATED
        assert document.status == DocumentStatus.RECEIVED
        # Nobody else closed the attempt, so it records what really happened
        [attempt] = await uploads.list_attempts(db, record.id)
        assert attempt.status == UploadStatus.SUCCEEDED
        [event] = await events.list_events(db, work_record_id=record.id, event_type="upload_result_discarded")
        assert event.severity == "warn"

    async def test_attempt_closed_elsewhere_is_left_alone(self, db, other_db, clock, source, uploading):
        record, document = uploading
        client = ScriptedTransferClient([RemoteTimeoutError("LOS took too long")])

        async def closed_by_sweep():
            [attempt] = await uploads.list_attempts(other_db, record.id)
            await uploads.update_attempt(other_db, attempt, status=UploadStatus.FAILED, error_code="timeout")
            await other_db.commit()

        client.during_push = closed_by_sweep
        outcome = await make_executor(db, clock, client, source).upload(record, document)

        assert not outcome.succeeded
        assert outcome.superseded
        [attempt] = await uploads.list_attempts(db, record.id)
        assert attempt.ended_at is None
        assert record.last_error_code is None
        assert await events.list_events(db, work_record_id=record.id, event_type="upload_failed") == []


class TestAttemptNumbering:
    async def test_attempt_numbers_are_contiguous(self, db, clock, source, uploading):
        record, document = uploading
        client = ScriptedTransferClient([RemoteTimeoutError("a"), RemoteTimeoutError("b")])
        executor = make_executor(db, clock, client, source)

        outcomes = [await executor.upload(record, document) for _ in range(2)]
        outcomes.append(await executor.upload(record, document))

        assert [o.attempt for o in outcomes] == [1, 2, 3]
        assert [a.attempt for a in await uploads.list_attempts(db, record.id)] == [1, 2, 3]
        assert outcomes[-1].succeeded


class TestPrerequisites:
    async def test_document_not_received_is_rejected_before_any_attempt(self, db, clock, transfer, source, uploading):
        record, document = uploading
        await documents.update_document(db, document, status=DocumentStatus.COLLECTION_SENT)

        with pytest.raises(DocumentFormatError):
            await make_executor(db, clock, transfer, source).upload(record, document)
        assert await uploads.list_attempts(db, record.id) == []
        assert transfer.calls == []

    @pytest.mark.parametrize("field", ["storage_url", "sha256"])
    async def test_missing_locator_or_checksum(self, db, uploading, field):
        _, document = uploading
        setattr(document, field, None)
        with pytest.raises(DocumentFormatError):
            check_prerequisites(document)
