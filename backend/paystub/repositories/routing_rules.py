"""Routing configuration repository (read-only at run time)."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paystub.db.models.routing_rule import RoutingRule

LOAN_APPROVED_TRIGGER = "loan_approved"


def _matches_pay_stub_trigger(rule: RoutingRule) -> bool:
    criteria = rule.criteria_json or {}
    requires_doc = criteria.get("requires_income_doc")
    if isinstance(requires_doc, str):
        requires_doc = requires_doc.lower() == "true"
    return criteria.get("trigger") == LOAN_APPROVED_TRIGGER and bool(requires_doc)


async def find_active_rule(db: AsyncSession, organization_id: int) -> RoutingRule | None:
    """
    First enabled rule for the organization that routes approved loans
    needing an income document.  None means the organization's work
    cannot be routed.
    """
    stmt = (
        select(RoutingRule)
        .where(
            RoutingRule.organization_id == organization_id,
            RoutingRule.enabled.is_(True),
        )
        .order_by(RoutingRule.id)
    )
    result = await db.execute(stmt)
    for rule in result.scalars():
        if _matches_pay_stub_trigger(rule):
            return rule
    return None
