"""RetryPolicy — named backoff/limit configuration (e.g. "default", "fast")."""

from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, String

from paystub.db.models.base import Base, utcnow


class RetryPolicy(Base):
    __tablename__ = "retry_policies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(50), nullable=False, unique=True)
    max_attempts = Column(Integer, nullable=False)
    base_backoff_sec = Column(Integer, nullable=False)
    jitter_pct = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<RetryPolicy {self.name} max={self.max_attempts} base={self.base_backoff_sec}s jitter={self.jitter_pct}%>"
