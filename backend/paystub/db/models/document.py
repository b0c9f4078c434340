"""Document — the pay stub collected for a loan application."""

from __future__ import annotations

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String

from paystub.db.models.base import Base, utcnow


class Document(Base):
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    loan_application_id = Column(Integer, ForeignKey("loan_applications.id"), nullable=False, index=True)
    document_type = Column(String(50), nullable=False, default="PAY_STUB")

    status = Column(String(30), nullable=False, default="requested")

    # ── Content / storage ─────────────────────
    sha256 = Column(String(64), nullable=True, index=True)
    size_bytes = Column(BigInteger, nullable=True)
    storage_url = Column(String(1024), nullable=True)
    kms_key_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Document {self.id} loan={self.loan_application_id} status={self.status}>"
