"""
Event — immutable audit trail entry.

Written by every component on every state transition.  Job-level
events (batch created / completed / cancelled) leave work_record_id
empty.  Rows are never updated or deleted.
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from paystub.db.models.base import Base


class Event(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=True, index=True)
    work_record_id = Column(Integer, ForeignKey("work_records.id"), nullable=True, index=True)

    event_type = Column(String(100), nullable=False, index=True)
    phase = Column(String(50), nullable=True)
    severity = Column(String(10), nullable=False, default="info")
    message = Column(Text, nullable=False)

    ts = Column(DateTime(timezone=True), nullable=False, index=True)
    trace_id = Column(String(40), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<Event {self.id} {self.event_type} severity={self.severity}>"
