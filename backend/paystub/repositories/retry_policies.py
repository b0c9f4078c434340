"""RetryPolicy store — named backoff/limit configuration."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paystub.db.models.retry_policy import RetryPolicy


async def get_policy_by_name(db: AsyncSession, name: str) -> RetryPolicy | None:
    stmt = select(RetryPolicy).where(RetryPolicy.name == name)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def upsert_policy(
    db: AsyncSession,
    *,
    name: str,
    max_attempts: int,
    base_backoff_sec: int,
    jitter_pct: int,
) -> RetryPolicy:
    """Create or overwrite a named policy (used by seeding)."""
    policy = await get_policy_by_name(db, name)
    if policy is None:
        policy = RetryPolicy(name=name)
        db.add(policy)
    policy.max_attempts = max_attempts
    policy.base_backoff_sec = base_backoff_sec
    policy.jitter_pct = jitter_pct
    await db.flush()
    return policy
