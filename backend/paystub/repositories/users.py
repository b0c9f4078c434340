"""
User repository — lookups used for escalation recipient resolution.

Repository rules:
- Pure data-access logic only
- Every function receives AsyncSession explicitly
- Functions flush, but never commit
"""

from __future__ import annotations

from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paystub.core.constants import UserStatus
from paystub.db.models.user import User


async def get_user_by_id(db: AsyncSession, user_id: int) -> User | None:
    """Fetch a user by primary key."""
    return await db.get(User, user_id)


async def list_active_users(
    db: AsyncSession,
    organization_id: int,
    *,
    roles: Iterable[str] | None = None,
    limit: int | None = None,
) -> list[User]:
    """Active users of an organization, optionally restricted to roles."""
    stmt = (
        select(User)
        .where(
            User.organization_id == organization_id,
            User.status == UserStatus.ACTIVE,
        )
        .order_by(User.id)
    )
    if roles is not None:
        stmt = stmt.where(User.role.in_([str(r) for r in roles]))
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
