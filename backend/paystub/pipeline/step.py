"""
PipelineStep — abstract base class for all pipeline phases.

Every phase inherits from this class.  The engine calls execute() and
records timing, logging, audit events and commits automatically.
Phases only need to implement the business logic.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from paystub.core.constants import StepStatus
from paystub.pipeline.context import PipelineContext, StepResult


class PipelineStep(ABC):
    """
    Base class for every phase.

    Subclasses MUST implement:
        - name (str)              — unique identifier, e.g. "define"
        - description (str)       — human-readable label for logs
        - applies_to (frozenset)  — record states the phase acts on
        - execute(ctx)            — the actual business logic

    Subclasses MAY implement:
        - rollback(ctx)       — cleanup on failure
        - should_skip(ctx)    — defaults to "state not in applies_to"
    """

    name: str = "unnamed_step"
    description: str = "No description"
    applies_to: frozenset[str] = frozenset()

    @abstractmethod
    async def execute(self, ctx: PipelineContext) -> StepResult:
        """
        Run the phase.  Must return a StepResult.

        Raise a NonRetryableError for conditions a retry cannot fix;
        anything else escaping here is left to the task runtime.
        """
        ...

    async def rollback(self, ctx: PipelineContext) -> None:
        """Optional cleanup when this phase fails."""
        pass

    async def should_skip(self, ctx: PipelineContext) -> bool:
        """Skip when the record's persisted state is not one we act on."""
        return ctx.state not in self.applies_to

    # ─── Helpers available to all phases ───────────────

    def _success(
        self,
        ctx: PipelineContext,
        started_at: datetime,
        from_state: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> StepResult:
        """Build a successful StepResult with timing."""
        now = ctx.now()
        return StepResult(
            step_name=self.name,
            status=StepStatus.COMPLETED,
            from_state=from_state,
            to_state=ctx.state,
            started_at=started_at,
            completed_at=now,
            duration_ms=int((now - started_at).total_seconds() * 1000),
            metadata=metadata or {},
        )

    def _failure(
        self,
        ctx: PipelineContext,
        started_at: datetime,
        from_state: str | None,
        error: str,
        metadata: dict[str, Any] | None = None,
    ) -> StepResult:
        """Build a failed StepResult with timing and error message."""
        now = ctx.now()
        return StepResult(
            step_name=self.name,
            status=StepStatus.FAILED,
            from_state=from_state,
            to_state=ctx.state,
            started_at=started_at,
            completed_at=now,
            duration_ms=int((now - started_at).total_seconds() * 1000),
            error=error,
            metadata=metadata or {},
        )
