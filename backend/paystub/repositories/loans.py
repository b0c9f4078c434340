"""Loan application repository."""

from __future__ import annotations

from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paystub.core.constants import RecordState
from paystub.db.models.loan_application import LoanApplication
from paystub.db.models.work_record import WorkRecord

_SETTLED_STATES = [
    RecordState.COMPLETED,
    RecordState.ESCALATED,
    RecordState.CANCELLED,
    RecordState.FAILED,
]


async def get_loan(db: AsyncSession, loan_id: int) -> LoanApplication | None:
    return await db.get(LoanApplication, loan_id)


async def list_loans_for_organization(
    db: AsyncSession,
    organization_id: int,
    loan_ids: Sequence[int],
) -> list[LoanApplication]:
    """Loans with the given ids that belong to the organization, id order."""
    if not loan_ids:
        return []
    stmt = (
        select(LoanApplication)
        .where(
            LoanApplication.organization_id == organization_id,
            LoanApplication.id.in_(list(loan_ids)),
        )
        .order_by(LoanApplication.id)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def loans_in_flight(db: AsyncSession, loan_ids: Sequence[int]) -> set[int]:
    """Loan ids that already have a work record in flight (not settled)."""
    if not loan_ids:
        return set()
    stmt = (
        select(WorkRecord.loan_application_id)
        .where(
            WorkRecord.loan_application_id.in_(list(loan_ids)),
            WorkRecord.state.not_in(_SETTLED_STATES),
        )
        .distinct()
    )
    result = await db.execute(stmt)
    return set(result.scalars().all())
