"""
Escalation context — everything a human needs to pick up a failed record.

Built once per escalation, persisted on the Escalation row as JSON and
rendered into the notification bodies.
"""

from __future__ import annotations

import re
from collections import Counter
from datetime import datetime
from typing import Iterable, Sequence

from pydantic import BaseModel, Field

from paystub.core.clock import ensure_utc
from paystub.core.constants import UploadStatus
from paystub.db.models.document import Document
from paystub.db.models.event import Event
from paystub.db.models.loan_application import LoanApplication
from paystub.db.models.upload_attempt import UploadAttempt
from paystub.db.models.work_record import WorkRecord
from paystub.pipeline.errors import Failure

RECENT_EVENT_LIMIT = 20

NO_PATTERN = "No clear error pattern detected"


class LoanSummary(BaseModel):
    id: int
    applicant_id: str
    los_external_id: str
    status: str
    approved_at: datetime | None = None


class RetrySummary(BaseModel):
    total_attempts: int
    max_attempts_allowed: int
    first_failure_at: datetime | None = None
    final_failure_at: datetime | None = None
    time_span_hours: float = 0.0


class FinalError(BaseModel):
    code: str | None = None
    message: str | None = None
    error_class: str | None = None
    is_retryable: bool | None = None


class DocumentInfo(BaseModel):
    id: int
    status: str
    size_bytes: int | None = None
    storage_url: str | None = None      # last path segment masked
    created_at: datetime | None = None


class UploadAttemptInfo(BaseModel):
    attempt: int
    status: str
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration_seconds: int | None = None
    error_code: str | None = None
    error_message: str | None = None
    session_id: str | None = None


class FailureAnalysis(BaseModel):
    total_failures: int = 0
    unique_error_codes: list[str] = Field(default_factory=list)
    error_frequency: dict[str, int] = Field(default_factory=dict)
    most_common_error: str | None = None
    pattern_analysis: list[str] = Field(default_factory=lambda: [NO_PATTERN])


class EventInfo(BaseModel):
    timestamp: datetime
    event_type: str
    phase: str | None = None
    severity: str
    message: str


class EscalationInfo(BaseModel):
    escalated_at: datetime
    reason: str
    description: str
    requires_manual_intervention: bool = True
    suggested_actions: list[str] = Field(default_factory=list)


class EscalationContext(BaseModel):
    work_record_id: int
    job_id: int
    loan: LoanSummary
    retry_summary: RetrySummary
    final_error: FinalError
    document_info: DocumentInfo | None = None
    upload_attempts: list[UploadAttemptInfo] = Field(default_factory=list)
    failure_analysis: FailureAnalysis
    recent_events: list[EventInfo] = Field(default_factory=list)
    escalation_info: EscalationInfo


# ─── Builders ──────────────────────────────────────────────

def mask_storage_url(url: str | None) -> str | None:
    """Replace the final path segment (the file name) with ``***``."""
    if not url:
        return url
    return re.sub(r"/[^/]+$", "/***", url)


def analyze_failures(error_codes: Iterable[str | None]) -> FailureAnalysis:
    """Frequency table and pattern flags over failed attempts' error codes."""
    codes = list(error_codes)
    known = [code for code in codes if code]
    frequency = Counter(known)
    most_common = frequency.most_common(1)

    patterns = []
    if frequency["timeout"] >= 2:
        patterns.append("Repeated timeout errors suggest LOS system performance issues")
    if frequency["authentication_error"] >= 1:
        patterns.append("Authentication errors suggest credential or session management issues")
    if frequency["system_error"] >= 2:
        patterns.append("System errors suggest LOS application issues")

    return FailureAnalysis(
        total_failures=len(codes),
        unique_error_codes=list(dict.fromkeys(known)),
        error_frequency=dict(frequency),
        most_common_error=most_common[0][0] if most_common else None,
        pattern_analysis=patterns or [NO_PATTERN],
    )


def suggested_actions(los_external_id: str, last_error_code: str | None) -> list[str]:
    actions = [
        f"1. Review loan application {los_external_id} in LOS system",
        "2. Verify document is available and properly formatted",
        "3. Check LOS system status and connectivity",
    ]
    match last_error_code:
        case "timeout":
            actions += [
                "4. Check LOS system performance and network connectivity",
                "5. Consider uploading during off-peak hours",
            ]
        case "authentication_error":
            actions += [
                "4. Verify upload credentials and session management",
                "5. Check if LOS authentication requirements have changed",
            ]
        case "system_error":
            actions += [
                "4. Check LOS system status and error logs",
                "5. Contact LOS support if system issues persist",
            ]
        case "document_format_error" | "document_not_received":
            actions += [
                "4. Verify document format and content",
                "5. Request new document from applicant if corrupted",
            ]
        case "missing_routing_rule" | "configuration_error":
            actions += [
                "4. Check the organization's routing configuration",
                "5. Re-trigger collection once routing is fixed",
            ]
        case _:
            actions += [
                "4. Review detailed error logs for specific failure cause",
                "5. Consider manual upload through LOS interface",
            ]
    actions += [
        "6. Contact IT support if technical issues persist",
        "7. Update applicant on status and next steps",
    ]
    return actions


def _attempt_info(upload: UploadAttempt) -> UploadAttemptInfo:
    started_at = ensure_utc(upload.started_at)
    ended_at = ensure_utc(upload.ended_at)
    duration = round((ended_at - started_at).total_seconds()) if started_at and ended_at else None
    return UploadAttemptInfo(
        attempt=upload.attempt,
        status=upload.status,
        started_at=started_at,
        ended_at=ended_at,
        duration_seconds=duration,
        error_code=upload.error_code,
        error_message=upload.error_message,
        session_id=upload.session_id,
    )


def _retry_summary(attempts: Sequence[UploadAttempt], max_attempts: int) -> RetrySummary:
    failed = [a for a in attempts if a.status == UploadStatus.FAILED]
    first_failure_at = ensure_utc(failed[0].started_at) if failed else None
    final_failure_at = ensure_utc(attempts[-1].ended_at) if attempts else None
    span = 0.0
    if first_failure_at and final_failure_at:
        span = round((final_failure_at - first_failure_at).total_seconds() / 3600, 1)
    return RetrySummary(
        total_attempts=len(attempts),
        max_attempts_allowed=max_attempts,
        first_failure_at=first_failure_at,
        final_failure_at=final_failure_at,
        time_span_hours=span,
    )


def build_context(
    *,
    record: WorkRecord,
    loan: LoanApplication,
    document: Document | None,
    attempts: Sequence[UploadAttempt],
    recent_events: Sequence[Event],
    reason: str,
    final_error: Failure | None,
    max_attempts: int,
    escalated_at: datetime,
) -> EscalationContext:
    if final_error is not None:
        error = FinalError(
            code=final_error.code,
            message=final_error.message,
            error_class=final_error.error_class,
            is_retryable=final_error.retryable,
        )
    else:
        error = FinalError(code=record.last_error_code, message=record.last_error_message)

    failed_codes = [a.error_code for a in attempts if a.status == UploadStatus.FAILED]
    last_code = (attempts[-1].error_code if attempts else None) or error.code

    return EscalationContext(
        work_record_id=record.id,
        job_id=record.job_id,
        loan=LoanSummary(
            id=loan.id,
            applicant_id=loan.applicant_id,
            los_external_id=loan.los_external_id,
            status=loan.status,
            approved_at=ensure_utc(loan.approved_at),
        ),
        retry_summary=_retry_summary(attempts, max_attempts),
        final_error=error,
        document_info=DocumentInfo(
            id=document.id,
            status=document.status,
            size_bytes=document.size_bytes,
            storage_url=mask_storage_url(document.storage_url),
            created_at=ensure_utc(document.created_at),
        ) if document is not None else None,
        upload_attempts=[_attempt_info(a) for a in attempts],
        failure_analysis=analyze_failures(failed_codes),
        recent_events=[
            EventInfo(
                timestamp=ensure_utc(e.ts),
                event_type=e.event_type,
                phase=e.phase,
                severity=e.severity,
                message=e.message,
            )
            for e in list(recent_events)[-RECENT_EVENT_LIMIT:]
        ],
        escalation_info=EscalationInfo(
            escalated_at=escalated_at,
            reason=reason,
            description=f"Automation stopped after {record.retry_count} failed attempts ({reason})",
            suggested_actions=suggested_actions(loan.los_external_id, last_code),
        ),
    )
