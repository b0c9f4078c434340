"""
Per-task wiring.

Every Celery task runs one coroutine under ``asyncio.run()`` with a
fresh engine (see ``worker_session``).  ``task_services()`` builds the
whole service graph on that session; the retry policy is read once per
worker process and reused.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from celery.signals import worker_process_init
from sqlalchemy.ext.asyncio import AsyncSession

from paystub.collection import DocumentCollector
from paystub.core.clock import Clock, SystemClock
from paystub.core.config import settings
from paystub.core.logging import bind_trace_id, clear_trace_id, setup_logging
from paystub.db.session import worker_session
from paystub.dispatch.dispatcher import BatchDispatcher
from paystub.escalation import EscalationEngine
from paystub.monitoring import StuckDetector
from paystub.notifications import ChannelSenders, build_senders
from paystub.pipeline.engine import PipelineEngine
from paystub.pipeline.executor import UploadExecutor
from paystub.pipeline.phases import PhaseServices, build_phases
from paystub.pipeline.retry import RetryPolicyConfig, RetryPolicyProvider, RetryScheduler
from paystub.pipeline.step import PipelineStep
from paystub.pipeline.transfer import HttpDocumentSource, HttpTransferClient
from paystub.tasks.queue import CeleryTaskQueue, TaskQueue

T = TypeVar("T")

policy_provider = RetryPolicyProvider()


@worker_process_init.connect
def _init_worker_logging(**_kwargs) -> None:
    setup_logging(settings.LOG_LEVEL, json_logs=settings.APP_ENV != "development")


@dataclass
class Services:
    db: AsyncSession
    clock: Clock
    policy: RetryPolicyConfig
    queue: TaskQueue
    senders: ChannelSenders
    escalation: EscalationEngine
    scheduler: RetryScheduler
    phases: list[PipelineStep]
    engine: PipelineEngine
    dispatcher: BatchDispatcher
    stuck: StuckDetector


def build_services(
    db: AsyncSession,
    *,
    policy: RetryPolicyConfig,
    clock: Clock,
    queue: TaskQueue,
    senders: ChannelSenders,
    client,
    source,
) -> Services:
    """Assemble the service graph on one session."""
    escalation = EscalationEngine(db, clock=clock, policy=policy, senders=senders)
    scheduler = RetryScheduler(db, clock=clock, policy=policy, queue=queue, escalation=escalation)
    phases = build_phases(PhaseServices(
        collector=DocumentCollector(db, clock=clock, sender=senders.applicant),
        executor=UploadExecutor(db, clock=clock, client=client, source=source),
        scheduler=scheduler,
        escalation=escalation,
        email_sender=senders.email,
    ))
    return Services(
        db=db,
        clock=clock,
        policy=policy,
        queue=queue,
        senders=senders,
        escalation=escalation,
        scheduler=scheduler,
        phases=phases,
        engine=PipelineEngine(db, clock=clock, policy=policy, phases=phases, escalation=escalation),
        dispatcher=BatchDispatcher(db, clock=clock, policy=policy, queue=queue),
        stuck=StuckDetector(db, clock=clock, escalation=escalation),
    )


@asynccontextmanager
async def task_services() -> AsyncIterator[Services]:
    async with worker_session() as db, HttpTransferClient() as client, HttpDocumentSource() as source:
        policy = await policy_provider.get(db)
        yield build_services(
            db,
            policy=policy,
            clock=SystemClock(),
            queue=CeleryTaskQueue(),
            senders=build_senders(),
            client=client,
            source=source,
        )


def run_async(fn: Callable[[Services], Awaitable[T]], *, trace_id: str | None = None) -> T:
    """Run ``fn(services)`` to completion with a trace id bound."""

    async def _main() -> T:
        async with task_services() as services:
            return await fn(services)

    bind_trace_id(trace_id)
    try:
        return asyncio.run(_main())
    finally:
        clear_trace_id()
