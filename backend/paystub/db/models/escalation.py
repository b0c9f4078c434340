"""
Escalation — the persisted hand-off of one work record to humans.

Unique on work_record_id: a record can be escalated at most once.
``context`` holds the full serialized EscalationContext.
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from paystub.db.models.base import Base, JSONType, utcnow


class Escalation(Base):
    __tablename__ = "escalations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    work_record_id = Column(Integer, ForeignKey("work_records.id"), nullable=False, unique=True)

    reason = Column(String(50), nullable=False)
    context = Column(JSONType, nullable=False, default=dict)
    recipients_notified = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Escalation {self.id} record={self.work_record_id} reason={self.reason}>"
