"""
UploadAttempt — one row per transfer attempt to the LOS.

Attempt numbers are contiguous from 1 per work record; the unique
constraint rejects a duplicate number from a concurrent run.
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from paystub.db.models.base import Base, utcnow


class UploadAttempt(Base):
    __tablename__ = "upload_attempts"
    __table_args__ = (
        UniqueConstraint("work_record_id", "attempt", name="uq_upload_attempts_record_attempt"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    work_record_id = Column(Integer, ForeignKey("work_records.id"), nullable=False, index=True)
    document_id = Column(Integer, ForeignKey("documents.id"), nullable=False, index=True)

    session_id = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default="in_progress", index=True)
    attempt = Column(Integer, nullable=False)

    # ── Timing (UTC) ─────────────────────────
    started_at = Column(DateTime(timezone=True), nullable=False, index=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    # ── Error ─────────────────────────────────
    error_code = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<UploadAttempt {self.id} record={self.work_record_id} #{self.attempt} status={self.status}>"
