"""Trigger request models and dispatcher result structs."""

from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from paystub.core.config import settings
from paystub.core.constants import TriggerSource


class BatchTriggerRequest(BaseModel):
    """Batch approval trigger: many loans for one organization."""

    organization_id: int
    user_id: int
    loan_ids: list[int] = Field(default_factory=list)
    # Range-checked by the dispatcher so callers get our ValidationError
    batch_size: int = Field(default_factory=lambda: settings.BATCH_DEFAULT_SIZE)
    trigger_source: TriggerSource = TriggerSource.BATCH_APPROVAL


class SingleTriggerRequest(BaseModel):
    """Single loan approval."""

    loan_id: int
    user_id: int
    notes: str | None = None


@dataclass
class CreatedJob:
    job_id: int
    record_ids: list[int]
    queue: str


@dataclass
class TriggerResult:
    jobs: list[CreatedJob] = field(default_factory=list)
    ineligible_loan_ids: list[int] = field(default_factory=list)

    @property
    def total_jobs_created(self) -> int:
        return len(self.jobs)

    @property
    def total_records(self) -> int:
        return sum(len(job.record_ids) for job in self.jobs)


@dataclass
class BatchStats:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
        }


@dataclass
class JobProgress:
    job_id: int
    job_status: str
    total_records: int
    state_breakdown: dict[str, int]
    completed: int = 0
    failed: int = 0
    escalated: int = 0
    cancelled: int = 0
    in_progress: int = 0
    not_started: int = 0

    @property
    def percent_complete(self) -> float:
        if not self.total_records:
            return 0.0
        done = self.completed + self.failed + self.escalated + self.cancelled
        return round(done / self.total_records * 100, 1)
