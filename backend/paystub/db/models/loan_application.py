"""LoanApplication — the target entity a pay stub is collected for."""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String

from paystub.db.models.base import Base, utcnow


class LoanApplication(Base):
    __tablename__ = "loan_applications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)

    applicant_id = Column(String(100), nullable=False)
    los_external_id = Column(String(100), nullable=False)
    status = Column(String(50), nullable=False, default="pending")
    income_doc_required = Column(Boolean, nullable=False, default=False)
    approved_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<LoanApplication {self.id} los={self.los_external_id} status={self.status}>"
