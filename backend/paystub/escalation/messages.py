"""Plain-text renderings of an EscalationContext per channel."""

from __future__ import annotations

from paystub.escalation.context import EscalationContext
from paystub.notifications import NotificationMessage


def render_email(ctx: EscalationContext) -> NotificationMessage:
    loan = ctx.loan
    retry = ctx.retry_summary
    error = ctx.final_error
    analysis = ctx.failure_analysis

    attempts = "\n".join(
        f"Attempt {a.attempt}: {a.status} "
        f"({f'{a.duration_seconds}s' if a.duration_seconds is not None else 'N/A'}) - "
        f"{a.error_message or ''}"
        for a in ctx.upload_attempts
    ) or "No upload attempts recorded"
    patterns = "\n".join(f"  * {p}" for p in analysis.pattern_analysis)

    body = f"""URGENT: Manual Intervention Required - Pay Stub Upload Failed

A pay stub upload could not be completed automatically and needs manual intervention.

LOAN DETAILS:
- Applicant ID: {loan.applicant_id}
- LOS External ID: {loan.los_external_id}
- Loan Status: {loan.status}
- Approved At: {loan.approved_at}

FAILURE SUMMARY:
- Total Attempts: {retry.total_attempts} of {retry.max_attempts_allowed}
- First Failure: {retry.first_failure_at}
- Final Failure: {retry.final_failure_at}
- Time Span: {retry.time_span_hours} hours

FINAL ERROR:
- Error Code: {error.code}
- Error Message: {error.message}
- Error Type: {error.error_class}
- Is Retryable: {error.is_retryable}

FAILURE PATTERN ANALYSIS:
- Total Failures: {analysis.total_failures}
- Unique Error Types: {', '.join(analysis.unique_error_codes)}
- Most Common Error: {analysis.most_common_error}
- Pattern Analysis:
{patterns}

UPLOAD ATTEMPT HISTORY:
{attempts}

SUGGESTED ACTIONS:
{chr(10).join(ctx.escalation_info.suggested_actions)}

The system will not retry this upload automatically.

Work Record ID: {ctx.work_record_id}
Escalated At: {ctx.escalation_info.escalated_at.isoformat()}
"""
    return NotificationMessage(
        subject=f"Pay stub upload failed for loan {loan.los_external_id}",
        body=body,
        priority="high",
        metadata={"work_record_id": ctx.work_record_id, "reason": ctx.escalation_info.reason},
    )


def render_sms(ctx: EscalationContext) -> NotificationMessage:
    loan = ctx.loan
    return NotificationMessage(
        subject="Pay stub upload failed",
        body=(
            f"URGENT: pay stub upload failed for loan {loan.los_external_id} "
            f"({loan.applicant_id}). {ctx.retry_summary.total_attempts} attempts failed. "
            "Manual intervention required."
        ),
        priority="high",
    )


def render_team_chat(ctx: EscalationContext, recipients: int) -> NotificationMessage:
    return NotificationMessage(
        subject="Pay stub upload escalated",
        body=(
            f"Loan {ctx.loan.los_external_id}: upload escalated ({ctx.escalation_info.reason}), "
            f"last error {ctx.final_error.code}, {recipients} recipient(s) notified."
        ),
        priority="high",
    )
