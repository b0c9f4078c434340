"""Backoff policy, reschedule-or-escalate decisions and the retry sweep."""

import random
from datetime import timedelta

import pytest

from paystub.core.clock import ensure_utc
from paystub.core.constants import (
    DocumentStatus,
    EscalationReason,
    RecordState,
    TaskName,
)
from paystub.pipeline.errors import DocumentFormatError, RemoteTimeoutError, classify
from paystub.pipeline.retry import (
    RetryPolicyConfig,
    RetryPolicyProvider,
    compute_delay,
    load_policy,
)
from paystub.repositories import documents, events, notifications, retry_policies

from conftest import NOW, World


# =============================================================================
# Backoff
# =============================================================================

class TestComputeDelay:
    @pytest.mark.parametrize("retry_count", [1, 2, 3, 4, 5])
    def test_delay_within_jitter_band(self, policy, retry_count):
        rng = random.Random(retry_count)
        backoff = policy.base_backoff_sec * 2 ** (retry_count - 1)
        low = backoff * (1 - policy.jitter_pct / 100)
        high = backoff * (1 + policy.jitter_pct / 100)
        for _ in range(200):
            assert low <= compute_delay(policy, retry_count, rng) <= high

    def test_zero_jitter_is_exact(self):
        policy = RetryPolicyConfig(name="flat", max_attempts=3, base_backoff_sec=10, jitter_pct=0)
        assert [compute_delay(policy, n) for n in (1, 2, 3)] == [10, 20, 40]

    def test_delay_never_negative(self):
        policy = RetryPolicyConfig(name="wild", max_attempts=3, base_backoff_sec=1, jitter_pct=150)
        rng = random.Random(3)
        assert all(compute_delay(policy, 1, rng) >= 0 for _ in range(200))


# =============================================================================
# Policy loading
# =============================================================================

class TestPolicyLoading:
    async def test_missing_policy_falls_back_to_settings(self, db):
        config = await load_policy(db, "does-not-exist")
        assert config == RetryPolicyConfig.from_settings()
        assert (config.max_attempts, config.base_backoff_sec, config.jitter_pct) == (3, 30, 25)

    async def test_named_policy_is_read_from_store(self, db):
        await retry_policies.upsert_policy(db, name="fast", max_attempts=3, base_backoff_sec=10, jitter_pct=15)
        config = await load_policy(db, "fast")
        assert config == RetryPolicyConfig(name="fast", max_attempts=3, base_backoff_sec=10, jitter_pct=15)

    async def test_provider_caches_until_refresh(self, db):
        await retry_policies.upsert_policy(db, name="fast", max_attempts=3, base_backoff_sec=10, jitter_pct=15)
        provider = RetryPolicyProvider("fast")
        first = await provider.get(db)

        await retry_policies.upsert_policy(db, name="fast", max_attempts=5, base_backoff_sec=10, jitter_pct=15)
        assert await provider.get(db) is first
        assert (await provider.refresh(db)).max_attempts == 5


# =============================================================================
# Scheduler decisions
# =============================================================================

class TestHandleFailure:
    async def test_retryable_failure_is_rescheduled_on_upload_queue(self, db, services, queue, factory, world):
        loan = await factory.loan(world.org)
        record = await factory.record(world, loan, state=RecordState.UPLOADING)

        decision = await services.scheduler.handle_failure(record, classify(RemoteTimeoutError("slow")))

        assert decision.rescheduled
        assert decision.retry_count == 1
        assert decision.queue == "acme_upload"
        assert 22.5 <= decision.delay_sec <= 37.5

        await db.refresh(record)
        assert record.state == RecordState.RETRY_SCHEDULED
        assert record.retry_count == 1
        assert ensure_utc(record.next_attempt_at) == decision.next_attempt_at

        [sent] = queue.named(TaskName.EXECUTE_UPLOAD)
        assert sent.target_id == record.id
        assert sent.queue == "acme_upload"
        assert sent.eta == decision.next_attempt_at

        scheduled = await events.list_events(db, work_record_id=record.id, event_type="upload_retry_scheduled")
        assert len(scheduled) == 1
        assert scheduled[0].severity == "warn"

    async def test_upload_queue_falls_back_when_rule_names_none(self, db, services, queue, factory):
        org = await factory.organization()
        officer = await factory.user(org)
        await factory.rule(org, queues={})
        loan = await factory.loan(org)
        record = await factory.record(World(org=org, officer=officer, rule=None), loan, state=RecordState.UPLOADING)

        decision = await services.scheduler.handle_failure(record, classify(RemoteTimeoutError("slow")))
        assert decision.queue == "los_upload"
        assert queue.sent[-1].queue == "los_upload"

    async def test_exhausted_retries_escalate(self, db, services, queue, factory, world):
        loan = await factory.loan(world.org)
        record = await factory.record(world, loan, state=RecordState.UPLOADING, retry_count=2)

        decision = await services.scheduler.handle_failure(record, classify(RemoteTimeoutError("slow")))

        assert not decision.rescheduled
        assert decision.retry_count == 3
        assert decision.escalation_reason == EscalationReason.RETRIES_EXHAUSTED
        assert record.state == RecordState.ESCALATED
        assert record.retry_count == 3
        assert queue.sent == []
        escalation = await notifications.get_escalation(db, record.id)
        assert escalation.reason == EscalationReason.RETRIES_EXHAUSTED

    async def test_non_retryable_failure_escalates_without_retry(self, db, services, queue, factory, world):
        loan = await factory.loan(world.org)
        record = await factory.record(world, loan, state=RecordState.UPLOADING)

        decision = await services.scheduler.handle_failure(record, classify(DocumentFormatError("corrupt")))

        assert not decision.rescheduled
        assert decision.escalation_reason == EscalationReason.NON_RETRYABLE
        assert record.retry_count == 0
        assert record.state == RecordState.ESCALATED
        assert queue.sent == []
        escalation = await notifications.get_escalation(db, record.id)
        assert escalation.context["final_error"]["code"] == "document_format_error"

    async def test_missing_routing_rule_fails_and_escalates(self, db, services, queue, factory):
        world = await factory.world(with_rule=False)
        loan = await factory.loan(world.org)
        record = await factory.record(world, loan, state=RecordState.UPLOADING)

        decision = await services.scheduler.handle_failure(record, classify(RemoteTimeoutError("slow")))

        assert not decision.rescheduled
        assert decision.escalation_reason == EscalationReason.MISSING_ROUTING_RULE
        assert record.state == RecordState.ESCALATED
        assert queue.sent == []
        escalation = await notifications.get_escalation(db, record.id)
        assert escalation.reason == EscalationReason.MISSING_ROUTING_RULE
        assert escalation.context["final_error"]["code"] == "missing_routing_rule"


# =============================================================================
# Retry sweep
# =============================================================================

class TestRetryDueUploads:
    async def test_due_records_with_received_documents_are_requeued(self, db, services, queue, factory, world, clock):
        due_loan = await factory.loan(world.org)
        await factory.received_document(due_loan)
        due = await factory.record(world, due_loan, state=RecordState.FAILED, retry_count=1)

        waiting_loan = await factory.loan(world.org)
        doc = await factory.received_document(waiting_loan)
        await documents.update_document(db, doc, status=DocumentStatus.COLLECTION_SENT)
        waiting = await factory.record(world, waiting_loan, state=RecordState.UPLOADING)

        exhausted_loan = await factory.loan(world.org)
        await factory.received_document(exhausted_loan)
        await factory.record(world, exhausted_loan, state=RecordState.FAILED, retry_count=3)
        clock.advance(minutes=1)

        requeued = await services.scheduler.retry_due_uploads()

        assert requeued == 1
        assert [e.target_id for e in queue.named(TaskName.EXECUTE_UPLOAD)] == [due.id]
        await db.refresh(due)
        await db.refresh(waiting)
        assert due.state == RecordState.RETRY_SCHEDULED
        assert waiting.state == RecordState.UPLOADING

    async def test_verified_documents_are_requeued_too(self, db, services, queue, factory, world, clock):
        loan = await factory.loan(world.org)
        doc = await factory.received_document(loan)
        await documents.update_document(db, doc, status=DocumentStatus.VERIFIED)
        record = await factory.record(world, loan, state=RecordState.FAILED, retry_count=1)
        clock.advance(minutes=1)

        assert await services.scheduler.retry_due_uploads() == 1
        assert [e.target_id for e in queue.named(TaskName.EXECUTE_UPLOAD)] == [record.id]

    async def test_future_retry_time_is_left_alone(self, db, services, queue, factory, world, clock):
        loan = await factory.loan(world.org)
        await factory.received_document(loan)
        record = await factory.record(world, loan, state=RecordState.FAILED, retry_count=1)
        record.next_attempt_at = NOW + timedelta(hours=1)
        await db.commit()

        assert await services.scheduler.retry_due_uploads() == 0
        assert queue.sent == []
