"""
EscalationEngine — hands a work record to humans, at most once.

Invoked by the Monitor phase, the retry scheduler (exhausted or
non-retryable), the stuck detector and missing-routing handling.
Delivery failures are recorded per Notification and never undo the
escalation itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from paystub.core.clock import Clock, ensure_utc
from paystub.core.config import settings
from paystub.core.constants import (
    ESCALATION_ROLES,
    NotificationChannel,
    NotificationStatus,
    NotificationType,
    RecordState,
    Severity,
)
from paystub.core.logging import get_logger
from paystub.db.models.loan_application import LoanApplication
from paystub.db.models.user import User
from paystub.db.models.work_record import WorkRecord
from paystub.escalation.context import EscalationContext, build_context
from paystub.escalation.messages import render_email, render_sms, render_team_chat
from paystub.notifications import ChannelSender, ChannelSenders, NotificationMessage
from paystub.pipeline.errors import Failure, ValidationError
from paystub.pipeline.retry import RetryPolicyConfig
from paystub.repositories import documents, events, jobs, loans, notifications, uploads, users, work_records

logger = get_logger(__name__)

ESCALATED_ERROR_CODE = "escalated_to_human"


@dataclass
class EscalationResult:
    escalated: bool
    reason: str
    recipients_notified: int = 0
    notifications_created: int = 0
    notifications_failed: int = 0
    escalation_id: int | None = None
    context: EscalationContext | None = None
    recipient_ids: list[int] = field(default_factory=list)


class EscalationEngine:
    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock,
        policy: RetryPolicyConfig,
        senders: ChannelSenders,
    ) -> None:
        self.db = db
        self.clock = clock
        self.policy = policy
        self.senders = senders

    async def escalate(
        self,
        record: WorkRecord,
        reason: str,
        final_error: Failure | None = None,
    ) -> EscalationResult:
        """
        Build the context, notify recipients, persist the Escalation row and
        move the record to ``escalated``.  A record that is already
        escalated is left untouched.
        """
        log = logger.bind(work_record_id=record.id, reason=str(reason))

        if record.state == RecordState.ESCALATED or await notifications.get_escalation(self.db, record.id):
            log.info("Record already escalated, skipping")
            return EscalationResult(escalated=False, reason=reason)

        job = await jobs.get_job(self.db, record.job_id)
        loan = await loans.get_loan(self.db, record.loan_application_id)
        if job is None or loan is None:
            raise ValidationError(
                f"Work record {record.id} has no job or loan application",
                work_record_id=record.id,
            )

        now = self.clock.now()
        context = build_context(
            record=record,
            loan=loan,
            document=await documents.get_pay_stub(self.db, loan.id),
            attempts=await uploads.list_attempts(self.db, record.id),
            recent_events=await events.list_events(self.db, work_record_id=record.id),
            reason=reason,
            final_error=final_error,
            max_attempts=self.policy.max_attempts,
            escalated_at=now,
        )

        recipients = await self.resolve_recipients(job.organization_id)
        if not recipients:
            log.error(
                "No active users to notify for escalation",
                organization_id=job.organization_id,
                error_code="configuration_error",
            )

        urgent = self.is_urgent(loan, record)
        created = failed = 0
        email = render_email(context)
        sms = render_sms(context) if urgent else None
        for user in recipients:
            ok = await self._notify(record, job.organization_id, user, NotificationChannel.EMAIL, user.email, email)
            created += 1
            failed += 0 if ok else 1
            if sms is not None:
                ok = await self._notify(record, job.organization_id, user, NotificationChannel.SMS, user.phone, sms)
                created += 1
                failed += 0 if ok else 1

        await self._post_team_chat(context, len(recipients))

        escalation = await notifications.create_escalation(
            self.db,
            work_record_id=record.id,
            reason=reason,
            context=context.model_dump(mode="json"),
            recipients_notified=len(recipients),
        )
        await work_records.update_record(
            self.db,
            record,
            state=RecordState.ESCALATED,
            last_error_code=ESCALATED_ERROR_CODE,
            last_error_message=(
                f"Escalated to human intervention after {record.retry_count} failed attempts ({reason})"
            ),
        )

        message = (
            f"Escalated to {len(recipients)} recipient(s) ({reason}) after "
            f"{record.retry_count} failed attempts. Final error: {context.final_error.code}"
        )
        if not recipients:
            message += ". No active recipients configured for the organization"
        await events.record_job_event(
            self.db,
            job,
            record=record,
            event_type="record_escalated",
            phase="escalation",
            severity=Severity.ERROR,
            message=message,
            ts=now,
        )

        log.warning(
            "Record escalated",
            recipients=len(recipients),
            notifications=created,
            notifications_failed=failed,
            urgent=urgent,
        )
        return EscalationResult(
            escalated=True,
            reason=reason,
            recipients_notified=len(recipients),
            notifications_created=created,
            notifications_failed=failed,
            escalation_id=escalation.id,
            context=context,
            recipient_ids=[u.id for u in recipients],
        )

    async def resolve_recipients(self, organization_id: int) -> list[User]:
        """Escalation-role users; else one active user of any role; else none."""
        recipients = await users.list_active_users(self.db, organization_id, roles=ESCALATION_ROLES)
        if recipients:
            return recipients
        return await users.list_active_users(self.db, organization_id, limit=1)

    def is_urgent(self, loan: LoanApplication, record: WorkRecord) -> bool:
        """SMS goes out for freshly approved loans or persistent failures."""
        approved_at = ensure_utc(loan.approved_at)
        window = timedelta(hours=settings.SMS_URGENCY_WINDOW_HOURS)
        recently_approved = approved_at is not None and approved_at > self.clock.now() - window
        return recently_approved or record.retry_count >= settings.SMS_URGENCY_RETRY_COUNT

    async def _notify(
        self,
        record: WorkRecord,
        organization_id: int,
        user: User,
        channel: str,
        address: str | None,
        message: NotificationMessage,
    ) -> bool:
        notification = await notifications.create_notification(
            self.db,
            organization_id=organization_id,
            work_record_id=record.id,
            user_id=user.id,
            channel=channel,
            notification_type=NotificationType.UPLOAD_FAILURE,
        )
        sender: ChannelSender = self.senders.sms if channel == NotificationChannel.SMS else self.senders.email

        if not address:
            error = f"{channel} send failed: user {user.id} has no {channel} address"
        else:
            try:
                result = await sender.send(address, message)
                error = None if result.ok else (result.error or f"{channel} send failed")
            except Exception as exc:
                error = f"{channel} send failed: {exc}"

        if error is None:
            await notifications.update_notification(
                self.db, notification, status=NotificationStatus.SENT, sent_at=self.clock.now()
            )
            return True

        logger.warning(
            "Escalation notification failed",
            work_record_id=record.id,
            user_id=user.id,
            channel=channel,
            error=error,
        )
        await notifications.update_notification(
            self.db, notification, status=NotificationStatus.FAILED, error_message=error
        )
        return False

    async def _post_team_chat(self, context: EscalationContext, recipients: int) -> None:
        if self.senders.team_chat is None:
            return
        try:
            result = await self.senders.team_chat.send("organization", render_team_chat(context, recipients))
            if not result.ok:
                logger.warning("Team chat escalation post failed", error=result.error)
        except Exception as exc:
            logger.warning("Team chat escalation post failed", error=str(exc))
