"""
PipelineContext — mutable state object carried through every phase.

This is the single source of truth for one pipeline run over one
WorkRecord.  Phases read the record, job and document from the context
and write their outcome back to the database; the engine commits after
each phase.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession

from paystub.core.clock import Clock
from paystub.db.models.job import Job
from paystub.db.models.work_record import WorkRecord

if TYPE_CHECKING:
    from paystub.pipeline.retry import RetryPolicyConfig


# ═══════════════════════════════════════════════════════════
#  StepResult
# ═══════════════════════════════════════════════════════════

@dataclass
class StepResult:
    """Outcome of a single phase execution."""

    step_name: str
    status: str                     # StepStatus value
    from_state: str | None = None
    to_state: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_name": self.step_name,
            "status": self.status,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "metadata": self.metadata,
        }


# ═══════════════════════════════════════════════════════════
#  PipelineContext
# ═══════════════════════════════════════════════════════════

@dataclass
class PipelineContext:
    """
    Carries all state between phases of one run.

    ``record`` and ``job`` are loaded by the engine before the first
    phase.  A phase that hands the record off elsewhere (a scheduled
    retry, an escalation) calls ``halt()`` so the engine stops cleanly.
    """

    # ─── Identity (set at init) ────────────────────────
    db: AsyncSession
    work_record_id: int
    clock: Clock
    policy: RetryPolicyConfig
    execution_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # ─── Loaded by the engine ──────────────────────────
    record: WorkRecord | None = None
    job: Job | None = None

    # ─── Execution tracking ────────────────────────────
    step_results: list[StepResult] = field(default_factory=list)
    halted: bool = False
    halt_reason: str | None = None

    @property
    def state(self) -> str | None:
        return self.record.state if self.record is not None else None

    def now(self) -> datetime:
        return self.clock.now()

    def halt(self, reason: str) -> None:
        """Stop the run after the current phase."""
        self.halted = True
        self.halt_reason = reason

    def to_summary_dict(self) -> dict[str, Any]:
        """Compact summary for logging."""
        return {
            "execution_id": self.execution_id,
            "work_record_id": self.work_record_id,
            "job_id": self.job.id if self.job is not None else None,
            "state": self.state,
            "retry_count": self.record.retry_count if self.record is not None else None,
            "steps_run": len(self.step_results),
            "halted": self.halted,
            "halt_reason": self.halt_reason,
        }
