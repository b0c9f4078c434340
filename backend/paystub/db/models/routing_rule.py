"""
RoutingRule — per-organization routing configuration.

``criteria_json`` example::

    {
        "trigger": "loan_approved",
        "requires_income_doc": true,
        "queues": {"collect": "pay_stub_collect", "upload": "los_upload",
                   "batch_collect": "pay_stub_batch"}
    }
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String

from paystub.db.models.base import Base, JSONType, utcnow


class RoutingRule(Base):
    __tablename__ = "routing_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)

    enabled = Column(Boolean, nullable=False, default=True)
    criteria_json = Column(JSONType, nullable=False, default=dict)
    checksum = Column(String(64), nullable=True)
    canary = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def queue_for(self, phase: str) -> str | None:
        """Queue name configured for a phase ("collect", "upload", "batch_collect")."""
        queues = (self.criteria_json or {}).get("queues") or {}
        return queues.get(phase)

    def __repr__(self) -> str:
        return f"<RoutingRule {self.id} org={self.organization_id} enabled={self.enabled}>"
