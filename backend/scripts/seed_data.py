"""
Seed a development organization, its users, routing rule and retry policies.
Run: python -m scripts.seed_data  (from backend/)
"""

import asyncio

from paystub.core.config import settings
from paystub.core.constants import UserRole
from paystub.db.models import Base, Organization, RoutingRule, User
from paystub.db.session import make_engine, make_session_factory
from paystub.repositories.retry_policies import upsert_policy

SEED_ORGANIZATION = "Demo Lending Co"

SEED_USERS = [
    {
        "email": "officer@demo-lending.example",
        "name": "Loan Officer",
        "role": UserRole.LENDING_OFFICER,
        "phone": "+15550100001",
    },
    {
        "email": "manager@demo-lending.example",
        "name": "Loan Manager",
        "role": UserRole.LOAN_MANAGER,
        "phone": "+15550100002",
    },
    {
        "email": "ops@demo-lending.example",
        "name": "Operations Manager",
        "role": UserRole.OPERATIONS_MANAGER,
        "phone": None,
    },
]

SEED_POLICIES = [
    {"name": "default", "max_attempts": 3, "base_backoff_sec": 30, "jitter_pct": 25},
    {"name": "fast", "max_attempts": 3, "base_backoff_sec": 10, "jitter_pct": 15},
]


async def seed():
    """Create tables if missing, then insert seed rows."""
    engine = make_engine()
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        factory = make_session_factory(engine)
        async with factory() as session:
            org = Organization(name=SEED_ORGANIZATION)
            session.add(org)
            await session.flush()
            print(f"  Created organization: {org.name} (id={org.id})")

            for data in SEED_USERS:
                user = User(organization_id=org.id, **data)
                session.add(user)
                await session.flush()
                print(f"  Created user: {user.email} ({user.role})")

            session.add(RoutingRule(
                organization_id=org.id,
                criteria_json={
                    "trigger": "loan_approved",
                    "requires_income_doc": True,
                    "queues": {
                        "collect": settings.COLLECT_QUEUE,
                        "batch_collect": settings.BATCH_QUEUE,
                        "upload": settings.UPLOAD_QUEUE,
                    },
                },
            ))
            print("  Created routing rule")

            for data in SEED_POLICIES:
                policy = await upsert_policy(session, **data)
                print(f"  Upserted retry policy: {policy.name}")

            await session.commit()
    finally:
        await engine.dispose()
    print(f"Seeded 1 organization, {len(SEED_USERS)} users, {len(SEED_POLICIES)} retry policies.")


if __name__ == "__main__":
    asyncio.run(seed())
