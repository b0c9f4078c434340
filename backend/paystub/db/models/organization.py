"""Organization — the lender that owns loans, users and routing rules."""

from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, String

from paystub.db.models.base import Base, utcnow


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="active")

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Organization {self.id} {self.name}>"
