"""
UploadExecutor — one transfer attempt of a pay stub into the LOS.

Each call creates exactly one UploadAttempt.  The attempt row is
committed before any remote call so that a worker crash mid-transfer
leaves an ``in_progress`` attempt for the stuck detector to find.

The outcome is written only while the attempt is still ``in_progress``
and the record is not terminal.  If the stuck detector closed the
attempt (or the record finished some other way) while the transfer was
running, the late result is recorded as an event and otherwise dropped.
"""

from __future__ import annotations

import hashlib
import secrets
import time
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from paystub.core.clock import Clock
from paystub.core.constants import (
    TERMINAL_STATES,
    TRANSFERABLE_DOCUMENT_STATUSES,
    DocumentStatus,
    RecordState,
    Severity,
    UploadStatus,
)
from paystub.core.logging import get_logger
from paystub.db.models.document import Document
from paystub.db.models.job import Job
from paystub.db.models.loan_application import LoanApplication
from paystub.db.models.upload_attempt import UploadAttempt
from paystub.db.models.work_record import WorkRecord
from paystub.pipeline.errors import (
    DocumentFormatError,
    Failure,
    RemoteSystemError,
    ValidationError,
    classify,
)
from paystub.pipeline.transfer import DocumentSource, TransferClient
from paystub.repositories import documents, events, jobs, loans, uploads, work_records

logger = get_logger(__name__)


@dataclass
class UploadOutcome:
    """Result of one executor call."""

    succeeded: bool
    attempt: int
    session_id: str
    upload_attempt_id: int
    duration_ms: int = 0
    remote_ref: str | None = None
    failure: Failure | None = None
    superseded: bool = False


def new_session_id(now_ts: float) -> str:
    """Remote session id: ``rpa_<unix ts>_<hex>``."""
    return f"rpa_{int(now_ts)}_{secrets.token_hex(4)}"


def check_prerequisites(document: Document) -> None:
    """Raise DocumentFormatError if the document cannot be transferred."""
    if document.status not in TRANSFERABLE_DOCUMENT_STATUSES:
        raise DocumentFormatError(
            f"Document {document.id} is {document.status}, expected received or verified"
        )
    if not document.storage_url:
        raise DocumentFormatError(f"Document {document.id} has no storage locator")
    if not document.sha256:
        raise DocumentFormatError(f"Document {document.id} has no checksum")


class UploadExecutor:
    """Runs the upload sub-steps against a TransferClient and DocumentSource."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock,
        client: TransferClient,
        source: DocumentSource,
    ) -> None:
        self.db = db
        self.clock = clock
        self.client = client
        self.source = source

    async def upload(self, record: WorkRecord, document: Document) -> UploadOutcome:
        check_prerequisites(document)

        loan = await loans.get_loan(self.db, record.loan_application_id)
        if loan is None:
            raise ValidationError(
                f"Loan application {record.loan_application_id} not found",
                work_record_id=record.id,
            )
        job = await jobs.get_job(self.db, record.job_id)

        started_at = self.clock.now()
        attempt_number = await uploads.next_attempt_number(self.db, record.id)
        session_id = new_session_id(started_at.timestamp())
        upload = await uploads.create_attempt(
            self.db,
            work_record_id=record.id,
            document_id=document.id,
            attempt=attempt_number,
            session_id=session_id,
            started_at=started_at,
        )
        # Visible to the stuck detector even if we die mid-transfer
        await self.db.commit()

        log = logger.bind(
            work_record_id=record.id,
            document_id=document.id,
            attempt=attempt_number,
            session_id=session_id,
        )
        log.info("Upload attempt started")
        t0 = time.monotonic()

        failure: Failure | None = None
        remote_ref: str | None = None
        try:
            remote_ref = await self._transfer(session_id, loan, document, log)
        except Exception as exc:
            failure = classify(exc)
        duration_ms = int((time.monotonic() - t0) * 1000)
        ended_at = self.clock.now()

        outcome = UploadOutcome(
            succeeded=failure is None,
            attempt=attempt_number,
            session_id=session_id,
            upload_attempt_id=upload.id,
            duration_ms=duration_ms,
            remote_ref=remote_ref,
            failure=failure,
        )

        # Serialized with the stuck detector: attempt first, then record
        upload = await uploads.lock_attempt(self.db, upload.id)
        record = await work_records.lock_record(self.db, record.id)
        if upload.status != UploadStatus.IN_PROGRESS or record.state in TERMINAL_STATES:
            await self._discard_late_result(upload, record, job, outcome, ended_at, log)
            outcome.superseded = True
            return outcome

        if failure is not None:
            await uploads.update_attempt(
                self.db,
                upload,
                status=UploadStatus.FAILED,
                ended_at=ended_at,
                error_code=failure.code,
                error_message=failure.message,
            )
            await work_records.update_record(
                self.db,
                record,
                last_error_code=failure.code,
                last_error_message=failure.message,
            )
            await events.record_job_event(
                self.db,
                job,
                record=record,
                event_type="upload_failed",
                phase="execute",
                severity=Severity.WARN if failure.retryable else Severity.ERROR,
                message=f"Upload attempt {attempt_number} failed: {failure.code}: {failure.message}",
                ts=ended_at,
            )
            log.warning(
                "Upload attempt failed",
                error_code=failure.code,
                retryable=failure.retryable,
                duration_ms=duration_ms,
            )
            return outcome

        await uploads.update_attempt(self.db, upload, status=UploadStatus.SUCCEEDED, ended_at=ended_at)
        await documents.update_document(self.db, document, status=DocumentStatus.UPLOADED)
        await work_records.update_record(
            self.db,
            record,
            state=RecordState.UPLOADED,
            last_error_code=None,
            last_error_message=None,
        )
        await events.record_job_event(
            self.db,
            job,
            record=record,
            event_type="upload_succeeded",
            phase="execute",
            message=f"Pay stub uploaded to LOS loan {loan.los_external_id} (attempt {attempt_number})",
            ts=ended_at,
        )
        log.info("Upload attempt succeeded", duration_ms=duration_ms, remote_ref=remote_ref)
        return outcome

    async def _discard_late_result(
        self,
        upload: UploadAttempt,
        record: WorkRecord,
        job: Job,
        outcome: UploadOutcome,
        ended_at,
        log,
    ) -> None:
        """Keep the record as it is; close the attempt only if nobody else did."""
        result = "succeeded" if outcome.succeeded else f"failed ({outcome.failure.code})"
        prior_status = upload.status
        if upload.status == UploadStatus.IN_PROGRESS:
            fields = {"status": UploadStatus.SUCCEEDED if outcome.succeeded else UploadStatus.FAILED}
            if outcome.failure is not None:
                fields.update(error_code=outcome.failure.code, error_message=outcome.failure.message)
            await uploads.update_attempt(self.db, upload, ended_at=ended_at, **fields)
        await events.record_job_event(
            self.db,
            job,
            record=record,
            event_type="upload_result_discarded",
            phase="execute",
            severity=Severity.WARN,
            message=(
                f"Upload attempt {outcome.attempt} {result} after the attempt was "
                f"{prior_status} and the record {record.state}; result ignored"
            ),
            ts=ended_at,
        )
        log.warning(
            "Late upload result discarded",
            attempt_status=prior_status,
            record_state=record.state,
            succeeded=outcome.succeeded,
        )


    async def _transfer(self, session_id: str, loan: LoanApplication, document: Document, log) -> str:
        """Ordered sub-steps; cleanup always runs."""
        try:
            await self.client.open_session(session_id)
            await self.client.authenticate(session_id)
            await self.client.navigate(session_id, loan.los_external_id)

            data = await self.source.fetch(document.storage_url, document.kms_key_id)
            digest = hashlib.sha256(data).hexdigest()
            if digest != document.sha256:
                raise DocumentFormatError(
                    f"Checksum mismatch for document {document.id}",
                    details={"expected": document.sha256, "actual": digest},
                )

            filename = f"paystub_{loan.los_external_id}_{document.id}.pdf"
            remote_ref = await self.client.push(
                session_id, loan.los_external_id, filename, data, document.sha256
            )
            if not await self.client.verify(session_id, loan.los_external_id, remote_ref, document.sha256):
                raise RemoteSystemError(f"LOS could not confirm upload {remote_ref}")
            return remote_ref
        finally:
            try:
                await self.client.close_session(session_id)
            except Exception as exc:
                log.warning("Session cleanup failed", error=str(exc))
