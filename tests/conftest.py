"""
Pytest fixtures for the pay stub pipeline test suite.

Provides:
- An in-memory SQLite database (aiosqlite) with every table created
- A fixed clock, a recording task queue and scripted remote collaborators
- Factory helpers for organizations, users, loans and documents
- The full service graph wired the same way the Celery runtime wires it
"""

from __future__ import annotations

import hashlib
import random
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.pool import StaticPool

from paystub.core.clock import FixedClock
from paystub.core.constants import DocumentStatus, LoanStatus, RecordState, TriggerSource, UserRole
from paystub.db.models import (
    Base,
    Document,
    LoanApplication,
    Organization,
    RoutingRule,
    User,
    WorkRecord,
)
from paystub.db.session import make_engine, make_session_factory
from paystub.notifications import ChannelSenders, DeliveryResult, NotificationMessage
from paystub.pipeline.errors import StorageFetchError
from paystub.pipeline.retry import RetryPolicyConfig
from paystub.repositories import jobs, work_records
from paystub.tasks.runtime import build_services

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)

PDF_BYTES = b"%PDF-1.7\n" + b"0" * 4096


# =============================================================================
# Fakes
# =============================================================================

@dataclass
class Enqueued:
    task_name: str
    target_id: int
    queue: str | None
    eta: datetime | None


class RecordingQueue:
    """TaskQueue that remembers every enqueue; ids in ``fail_for`` raise."""

    def __init__(self) -> None:
        self.sent: list[Enqueued] = []
        self.fail_for: set[int] = set()

    def enqueue(self, task_name, target_id, *, queue=None, eta=None) -> None:
        if target_id in self.fail_for:
            raise ConnectionError(f"broker unavailable for {target_id}")
        self.sent.append(Enqueued(str(task_name), target_id, queue, eta))

    def named(self, task_name) -> list[Enqueued]:
        return [e for e in self.sent if e.task_name == str(task_name)]


class ScriptedTransferClient:
    """
    TransferClient whose push outcome is scripted per call.

    ``push_errors`` is consumed one entry per push; ``None`` (or an empty
    script) means the push succeeds.  ``during_push`` is awaited once, on
    the next push, to let another worker act while the transfer is open.
    """

    def __init__(self, push_errors=(), *, verify_result: bool = True) -> None:
        self.push_errors = deque(push_errors)
        self.verify_result = verify_result
        self.during_push = None
        self.calls: list[tuple[str, str]] = []
        self.pushed: list[tuple[str, bytes]] = []

    async def open_session(self, session_id):
        self.calls.append(("open_session", session_id))

    async def authenticate(self, session_id):
        self.calls.append(("authenticate", session_id))

    async def navigate(self, session_id, los_external_id):
        self.calls.append(("navigate", session_id))

    async def push(self, session_id, los_external_id, filename, data, sha256):
        self.calls.append(("push", session_id))
        if self.during_push is not None:
            hook, self.during_push = self.during_push, None
            await hook()
        error = self.push_errors.popleft() if self.push_errors else None
        if error is not None:
            raise error
        self.pushed.append((filename, data))
        return f"los-doc-{len(self.pushed)}"

    async def verify(self, session_id, los_external_id, remote_ref, sha256):
        self.calls.append(("verify", session_id))
        return self.verify_result

    async def close_session(self, session_id):
        self.calls.append(("close_session", session_id))

    def steps(self) -> list[str]:
        return [name for name, _ in self.calls]


class InMemoryDocumentSource:
    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}

    async def fetch(self, storage_url, kms_key_id):
        try:
            return self.blobs[storage_url]
        except KeyError:
            raise StorageFetchError(f"no blob at {storage_url}") from None


class RecordingSender:
    def __init__(self, channel: str, *, ok: bool = True, error: Exception | None = None) -> None:
        self.channel = channel
        self.ok = ok
        self.error = error
        self.sent: list[tuple[str, NotificationMessage]] = []

    async def send(self, address, message):
        if self.error is not None:
            raise self.error
        self.sent.append((address, message))
        if self.ok:
            return DeliveryResult(ok=True)
        return DeliveryResult(ok=False, error=f"{self.channel} gateway rejected message")


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
async def engine():
    engine = make_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db(engine):
    factory = make_session_factory(engine)
    async with factory() as session:
        yield session


@pytest.fixture
async def other_db(engine):
    """A second session on the same database, as another worker would hold."""
    factory = make_session_factory(engine)
    async with factory() as session:
        yield session


# =============================================================================
# Collaborators
# =============================================================================

@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def policy():
    return RetryPolicyConfig(name="test", max_attempts=3, base_backoff_sec=30, jitter_pct=25)


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def transfer():
    return ScriptedTransferClient()


@pytest.fixture
def source():
    return InMemoryDocumentSource()


@pytest.fixture
def senders():
    return ChannelSenders(
        email=RecordingSender("email"),
        sms=RecordingSender("sms"),
        applicant=RecordingSender("applicant"),
    )


@pytest.fixture
def services(db, clock, policy, queue, transfer, source, senders):
    built = build_services(
        db,
        policy=policy,
        clock=clock,
        queue=queue,
        senders=senders,
        client=transfer,
        source=source,
    )
    built.scheduler.rng = random.Random(7)
    return built


@pytest.fixture
def other_worker(other_db, policy, queue, transfer, source, senders):
    """Builds the service graph on ``other_db`` with a clock of its own."""

    def build(clock):
        return build_services(
            other_db,
            policy=policy,
            clock=clock,
            queue=queue,
            senders=senders,
            client=transfer,
            source=source,
        )

    return build


# =============================================================================
# Factories
# =============================================================================

@dataclass
class World:
    """An organization with an officer and an enabled routing rule."""

    org: Organization
    officer: User
    rule: RoutingRule
    loans: list[LoanApplication] = field(default_factory=list)


class Factory:
    def __init__(self, db, clock, source) -> None:
        self.db = db
        self.clock = clock
        self.source = source
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    async def organization(self, name: str = "Acme Lending") -> Organization:
        org = Organization(name=name)
        self.db.add(org)
        await self.db.flush()
        return org

    async def user(
        self,
        org: Organization,
        *,
        role: str = UserRole.LENDING_OFFICER,
        status: str = "active",
        phone: str | None = "+15550001111",
    ) -> User:
        n = self._next()
        user = User(
            organization_id=org.id,
            email=f"user{n}@acme.example",
            name=f"User {n}",
            role=role,
            status=status,
            phone=phone,
        )
        self.db.add(user)
        await self.db.flush()
        return user

    async def rule(self, org: Organization, *, queues: dict | None = None, enabled: bool = True) -> RoutingRule:
        rule = RoutingRule(
            organization_id=org.id,
            enabled=enabled,
            criteria_json={
                "trigger": "loan_approved",
                "requires_income_doc": True,
                "queues": queues if queues is not None else {
                    "collect": "acme_collect",
                    "batch_collect": "acme_batch",
                    "upload": "acme_upload",
                },
            },
        )
        self.db.add(rule)
        await self.db.flush()
        return rule

    async def loan(
        self,
        org: Organization,
        *,
        status: str = LoanStatus.APPROVED,
        income_doc_required: bool = True,
        approved_at: datetime | None = None,
    ) -> LoanApplication:
        n = self._next()
        loan = LoanApplication(
            organization_id=org.id,
            applicant_id=f"applicant-{n}",
            los_external_id=f"LOS-{1000 + n}",
            status=status,
            income_doc_required=income_doc_required,
            approved_at=approved_at if approved_at is not None else self.clock.now() - timedelta(days=3),
        )
        self.db.add(loan)
        await self.db.flush()
        return loan

    async def received_document(self, loan: LoanApplication, data: bytes = PDF_BYTES) -> Document:
        """A pay stub already uploaded by the applicant, with bytes in storage."""
        storage_url = f"s3://secure-psc-documents/{loan.organization_id}/{loan.id}/paystub.pdf"
        document = Document(
            loan_application_id=loan.id,
            document_type="PAY_STUB",
            status=DocumentStatus.RECEIVED,
            sha256=hashlib.sha256(data).hexdigest(),
            size_bytes=len(data),
            storage_url=storage_url,
            kms_key_id="kms:us-east-1:test",
        )
        self.db.add(document)
        await self.db.flush()
        self.source.blobs[storage_url] = data
        return document

    async def record(
        self,
        world: World,
        loan: LoanApplication,
        *,
        state: str = RecordState.TRIGGERED,
        retry_count: int = 0,
    ) -> WorkRecord:
        """A one-record job for ``loan``, committed."""
        now = self.clock.now()
        job = await jobs.create_job(
            self.db,
            organization_id=world.org.id,
            user_id=world.officer.id,
            trigger_source=TriggerSource.LOAN_APPROVAL,
            total_records=1,
            started_at=now,
        )
        [record] = await work_records.create_records(self.db, job_id=job.id, loan_ids=[loan.id], now=now)
        await work_records.update_record(self.db, record, state=state, retry_count=retry_count)
        await self.db.commit()
        return record

    async def world(self, *, with_rule: bool = True) -> World:
        org = await self.organization()
        officer = await self.user(org)
        rule = await self.rule(org) if with_rule else None
        await self.db.commit()
        return World(org=org, officer=officer, rule=rule)


@pytest.fixture
def factory(db, clock, source):
    return Factory(db, clock, source)


@pytest.fixture
async def world(factory):
    return await factory.world()
