"""
WorkRecord — one loan's progress through the phase pipeline.

Created once by the dispatcher; afterwards only the pipeline, the
retry scheduler, the stuck detector and cancellation write to it.
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from paystub.db.models.base import Base, utcnow


class WorkRecord(Base):
    """One row per document to collect."""

    __tablename__ = "work_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=False, index=True)
    loan_application_id = Column(Integer, ForeignKey("loan_applications.id"), nullable=False, index=True)

    state = Column(String(30), nullable=False, default="triggered", index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)

    # ── Error ─────────────────────────────────
    last_error_code = Column(String(100), nullable=True)
    last_error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<WorkRecord {self.id} job={self.job_id} state={self.state} retries={self.retry_count}>"
