"""
StuckDetector — force-fails uploads abandoned mid-transfer.

An UploadAttempt still ``in_progress`` long after it started means the
worker that owned it died (the attempt row is committed before the
transfer begins).  Such attempts are failed with ``timeout`` and the
owning record is escalated.
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from paystub.core.clock import Clock, ensure_utc
from paystub.core.config import settings
from paystub.core.constants import (
    TERMINAL_STATES,
    EscalationReason,
    RecordState,
    Severity,
    UploadStatus,
)
from paystub.core.logging import get_logger
from paystub.db.models.upload_attempt import UploadAttempt
from paystub.escalation.engine import EscalationEngine
from paystub.pipeline.errors import RemoteTimeoutError, classify
from paystub.repositories import events, jobs, uploads, work_records

logger = get_logger(__name__)


class StuckDetector:
    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock,
        escalation: EscalationEngine,
    ) -> None:
        self.db = db
        self.clock = clock
        self.escalation = escalation

    @staticmethod
    def default_threshold() -> timedelta:
        return timedelta(minutes=settings.STUCK_UPLOAD_THRESHOLD_MINUTES)

    async def detect(self, threshold: timedelta | None = None) -> list[UploadAttempt]:
        """In-progress attempts that started more than ``threshold`` ago."""
        cutoff = self.clock.now() - (threshold or self.default_threshold())
        return await uploads.list_stuck_attempts(self.db, started_before=cutoff)

    async def escalate_stuck(self, threshold: timedelta | None = None) -> int:
        """Fail and escalate every stuck attempt; returns how many were handled."""
        stuck_ids = [attempt.id for attempt in await self.detect(threshold)]
        if not stuck_ids:
            return 0

        logger.warning("Stuck uploads detected", count=len(stuck_ids))
        handled = 0
        for attempt_id in stuck_ids:
            try:
                await self._handle(attempt_id)
                await self.db.commit()
                handled += 1
            except Exception as exc:
                await self.db.rollback()
                logger.exception("Failed to handle stuck upload", upload_attempt_id=attempt_id, error=str(exc))
        return handled

    async def _handle(self, attempt_id: int) -> None:
        # Same lock order as the executor: attempt first, then record
        upload = await uploads.lock_attempt(self.db, attempt_id)
        if upload is None or upload.status != UploadStatus.IN_PROGRESS:
            return

        now = self.clock.now()
        minutes = int((now - ensure_utc(upload.started_at)).total_seconds() // 60)
        failure = classify(RemoteTimeoutError(
            f"Upload stuck in progress for {minutes} minutes",
            work_record_id=upload.work_record_id,
        ))
        await uploads.update_attempt(
            self.db,
            upload,
            status=UploadStatus.FAILED,
            ended_at=now,
            error_code=failure.code,
            error_message=failure.message,
        )

        record = await work_records.lock_record(self.db, upload.work_record_id)
        job = await jobs.get_job(self.db, record.job_id)
        log = logger.bind(upload_attempt_id=attempt_id, work_record_id=record.id, minutes_stuck=minutes)

        terminal = record.state in TERMINAL_STATES
        await events.record_job_event(
            self.db,
            job,
            record=record,
            event_type="upload_stuck_detected",
            phase="monitor",
            severity=Severity.WARN if terminal else Severity.ERROR,
            message=f"Upload attempt {upload.attempt} stuck for {minutes} minutes, marked failed",
            ts=now,
        )
        if terminal:
            log.info("Stuck attempt belongs to a finished record, attempt closed only", state=record.state)
            return

        await work_records.update_record(
            self.db,
            record,
            state=RecordState.FAILED,
            last_error_code=failure.code,
            last_error_message=failure.message,
        )
        await self.escalation.escalate(record, EscalationReason.STUCK_UPLOAD, final_error=failure)
        log.warning("Stuck upload force-failed and escalated")
