"""
Job — one trigger's aggregate unit of work.

A single-loan approval creates a Job with one record; a batch trigger
creates one Job per chunk.  ``status`` is maintained by explicit
updates from the dispatcher (it is not recomputed from record states).
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from paystub.db.models.base import Base, utcnow


class Job(Base):
    """One row per trigger instance (or batch chunk)."""

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    agent_type = Column(String(50), nullable=False, default="PAY_STUB_COLLECTOR")
    trigger_source = Column(String(50), nullable=False)

    # ── Status / Progress ────────────────────
    status = Column(String(20), nullable=False, default="running", index=True)
    total_records = Column(Integer, nullable=False)

    # ── Timing (UTC) ─────────────────────────
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Job {self.id} status={self.status} records={self.total_records}>"
