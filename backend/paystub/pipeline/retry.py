"""
Retry scheduling — backoff policy and the reschedule-or-escalate decision.

The RetryPolicy row is read once per worker process into a frozen
``RetryPolicyConfig`` and passed explicitly to everything that needs
it.  A retry is never a sleep: the record is parked in
``retry_scheduled`` and an ``execute_upload`` task is enqueued with an
ETA on the organization's upload queue.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession

from paystub.core.clock import Clock
from paystub.core.config import settings
from paystub.core.constants import (
    TRANSFERABLE_DOCUMENT_STATUSES,
    ErrorKind,
    EscalationReason,
    RecordState,
    Severity,
    TaskName,
)
from paystub.core.logging import get_logger
from paystub.db.models.retry_policy import RetryPolicy
from paystub.db.models.work_record import WorkRecord
from paystub.pipeline.errors import ConfigurationError, Failure, classify
from paystub.repositories import documents, events, jobs, retry_policies, routing_rules, work_records
from paystub.tasks.queue import TaskQueue

if TYPE_CHECKING:
    from paystub.escalation.engine import EscalationEngine

logger = get_logger(__name__)


# ═══════════════════════════════════════════════════════════
#  Policy
# ═══════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryPolicyConfig:
    name: str
    max_attempts: int
    base_backoff_sec: int
    jitter_pct: int

    @classmethod
    def from_model(cls, policy: RetryPolicy) -> "RetryPolicyConfig":
        return cls(
            name=policy.name,
            max_attempts=policy.max_attempts,
            base_backoff_sec=policy.base_backoff_sec,
            jitter_pct=policy.jitter_pct,
        )

    @classmethod
    def from_settings(cls) -> "RetryPolicyConfig":
        return cls(
            name=settings.RETRY_POLICY_NAME,
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_backoff_sec=settings.RETRY_BASE_BACKOFF_SEC,
            jitter_pct=settings.RETRY_JITTER_PCT,
        )


async def load_policy(db: AsyncSession, name: str | None = None) -> RetryPolicyConfig:
    """Named policy from the store, or the settings defaults when absent."""
    name = name or settings.RETRY_POLICY_NAME
    policy = await retry_policies.get_policy_by_name(db, name)
    if policy is None:
        logger.warning("Retry policy not found, using settings defaults", policy=name)
        return RetryPolicyConfig.from_settings()
    return RetryPolicyConfig.from_model(policy)


class RetryPolicyProvider:
    """Per-process holder: load once, hand out the same config until refresh()."""

    def __init__(self, name: str | None = None) -> None:
        self.name = name or settings.RETRY_POLICY_NAME
        self._config: RetryPolicyConfig | None = None

    async def get(self, db: AsyncSession) -> RetryPolicyConfig:
        if self._config is None:
            self._config = await load_policy(db, self.name)
        return self._config

    async def refresh(self, db: AsyncSession) -> RetryPolicyConfig:
        self._config = await load_policy(db, self.name)
        logger.info("Retry policy reloaded", policy=self._config.name)
        return self._config


def compute_delay(
    policy: RetryPolicyConfig,
    retry_count: int,
    rng: random.Random | None = None,
) -> float:
    """
    Seconds to wait before attempt ``retry_count + 1``.

    backoff = base * 2^(retry_count - 1), then ± jitter_pct of it.
    """
    rng = rng or random.Random()
    exponent = max(retry_count - 1, 0)
    backoff = policy.base_backoff_sec * (2 ** exponent)
    jitter = backoff * policy.jitter_pct / 100
    return max(backoff + rng.uniform(-jitter, jitter), 0.0)


# ═══════════════════════════════════════════════════════════
#  Scheduler
# ═══════════════════════════════════════════════════════════

@dataclass
class RetryDecision:
    """What the scheduler did with a failed record."""

    rescheduled: bool
    retry_count: int
    next_attempt_at: datetime | None = None
    delay_sec: float | None = None
    queue: str | None = None
    escalation_reason: str | None = None


class RetryScheduler:
    """Reschedules retryable upload failures; escalates everything else."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock,
        policy: RetryPolicyConfig,
        queue: TaskQueue,
        escalation: EscalationEngine,
        rng: random.Random | None = None,
    ) -> None:
        self.db = db
        self.clock = clock
        self.policy = policy
        self.queue = queue
        self.escalation = escalation
        self.rng = rng or random.Random()

    async def handle_failure(self, record: WorkRecord, failure: Failure) -> RetryDecision:
        """Decide between reschedule and escalation for one failed upload."""
        log = logger.bind(work_record_id=record.id, error_code=failure.code)

        match failure.kind:
            case ErrorKind.NON_RETRYABLE:
                log.warning("Non-retryable failure, escalating")
                await self._fail(record, failure)
                await self.escalation.escalate(
                    record, EscalationReason.NON_RETRYABLE, final_error=failure
                )
                return RetryDecision(
                    rescheduled=False,
                    retry_count=record.retry_count,
                    escalation_reason=EscalationReason.NON_RETRYABLE,
                )
            case ErrorKind.RETRYABLE:
                return await self._reschedule(record, failure)

    async def _reschedule(self, record: WorkRecord, failure: Failure) -> RetryDecision:
        log = logger.bind(work_record_id=record.id, error_code=failure.code)
        retry_count = record.retry_count + 1
        await work_records.update_record(self.db, record, retry_count=retry_count)

        if retry_count >= self.policy.max_attempts:
            log.warning(
                "Retries exhausted, escalating",
                retry_count=retry_count,
                max_attempts=self.policy.max_attempts,
            )
            await self._fail(record, failure)
            await self.escalation.escalate(
                record, EscalationReason.RETRIES_EXHAUSTED, final_error=failure
            )
            return RetryDecision(
                rescheduled=False,
                retry_count=retry_count,
                escalation_reason=EscalationReason.RETRIES_EXHAUSTED,
            )

        delay = compute_delay(self.policy, retry_count, self.rng)
        next_attempt_at = self.clock.now() + timedelta(seconds=delay)
        queue = await self._schedule(record, next_attempt_at, reason=failure.code)
        if queue is None:
            return RetryDecision(
                rescheduled=False,
                retry_count=retry_count,
                escalation_reason=EscalationReason.MISSING_ROUTING_RULE,
            )

        log.info(
            "Upload retry scheduled",
            retry_count=retry_count,
            delay_sec=round(delay, 1),
            queue=queue,
        )
        return RetryDecision(
            rescheduled=True,
            retry_count=retry_count,
            next_attempt_at=next_attempt_at,
            delay_sec=delay,
            queue=queue,
        )

    async def _schedule(
        self,
        record: WorkRecord,
        next_attempt_at: datetime,
        *,
        reason: str,
    ) -> str | None:
        """
        Park the record in retry_scheduled and enqueue its upload.

        Returns the queue used, or None when the organization has no
        routing rule (the record is then failed and escalated).
        """
        job = await jobs.get_job(self.db, record.job_id)
        rule = await routing_rules.find_active_rule(self.db, job.organization_id)
        if rule is None:
            failure = classify(ConfigurationError(
                f"No enabled routing rule for organization {job.organization_id}",
                work_record_id=record.id,
                code=EscalationReason.MISSING_ROUTING_RULE,
            ))
            logger.error(
                "Cannot reschedule upload without routing rule",
                work_record_id=record.id,
                organization_id=job.organization_id,
            )
            await self._fail(record, failure)
            await self.escalation.escalate(
                record, EscalationReason.MISSING_ROUTING_RULE, final_error=failure
            )
            return None

        queue = rule.queue_for("upload") or settings.UPLOAD_QUEUE
        await work_records.update_record(
            self.db,
            record,
            state=RecordState.RETRY_SCHEDULED,
            next_attempt_at=next_attempt_at,
        )
        await events.record_job_event(
            self.db,
            job,
            record=record,
            event_type="upload_retry_scheduled",
            phase="execute",
            severity=Severity.WARN,
            message=(
                f"Upload retry {record.retry_count}/{self.policy.max_attempts} "
                f"scheduled for {next_attempt_at.isoformat()} ({reason})"
            ),
            ts=self.clock.now(),
        )
        # The worker must see retry_scheduled when the task lands
        await self.db.commit()
        self.queue.enqueue(TaskName.EXECUTE_UPLOAD, record.id, queue=queue, eta=next_attempt_at)
        return queue

    async def _fail(self, record: WorkRecord, failure: Failure) -> None:
        await work_records.update_record(
            self.db,
            record,
            state=RecordState.FAILED,
            last_error_code=failure.code,
            last_error_message=failure.message,
        )

    async def retry_due_uploads(self, *, limit: int = 500) -> int:
        """
        Periodic sweep: re-enqueue uploads whose retry time has passed.

        Only records whose document can be transferred are picked up.
        One record's error never stops the sweep.
        """
        now = self.clock.now()
        due = await work_records.list_due_for_retry(
            self.db, now=now, max_attempts=self.policy.max_attempts, limit=limit
        )
        record_ids = [record.id for record in due]
        requeued = 0
        for record_id in record_ids:
            try:
                record = await work_records.get_record(self.db, record_id)
                if record is None:
                    continue
                document = await documents.get_pay_stub(self.db, record.loan_application_id)
                if document is None or document.status not in TRANSFERABLE_DOCUMENT_STATUSES:
                    continue
                if await self._schedule(record, now, reason="retry sweep") is not None:
                    requeued += 1
                await self.db.commit()
            except Exception as exc:
                await self.db.rollback()
                logger.exception(
                    "Retry sweep failed for record",
                    work_record_id=record_id,
                    error=str(exc),
                )
        logger.info("Retry sweep finished", due=len(record_ids), requeued=requeued)
        return requeued
