"""
Idempotent seed: the three demo accounts (free, essentials, pro).
For local/dev only; override the shared password with SEED_DEMO_PASSWORD.
"""
import asyncio
from datetime import datetime, timedelta, timezone
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent / ".env")

from auth import hash_password
from database import get_db_context
from models import Account, SubscriptionTier
from services.account_repository import MongoAccountRepository
from services.plan_registry import BILLING_PERIOD, plan_registry

SEED_DEMO_PASSWORD = os.environ.get("SEED_DEMO_PASSWORD", "Password123")


def demo_accounts(now: datetime):
    return [
        {
            "email": "demo@phdwriter.com",
            "full_name": "Demo User",
            "subscription_tier": SubscriptionTier.FREE,
            "essays_used": 1,
            "subscription_expiry": None,
        },
        {
            "email": "john.doe@university.edu",
            "full_name": "Dr. John Doe",
            "subscription_tier": SubscriptionTier.ESSENTIALS,
            "essays_used": 3,
            "subscription_expiry": now + BILLING_PERIOD,
        },
        {
            "email": "sarah.smith@research.org",
            "full_name": "Prof. Sarah Smith",
            "subscription_tier": SubscriptionTier.PRO,
            "essays_used": 15,
            "subscription_expiry": now + timedelta(days=365),
        },
    ]


async def seed_database():
    print("Seeding database (idempotent)...")
    now = datetime.now(timezone.utc)

    async with get_db_context() as db:
        repository = MongoAccountRepository(db)
        for demo in demo_accounts(now):
            if await repository.get_by_email(demo["email"]):
                print(f"  Demo account already exists: {demo['email']}")
                continue
            account = Account(
                **demo,
                password_hash=hash_password(SEED_DEMO_PASSWORD),
                email_verified=True,
                email_verified_at=now,
                max_essays=plan_registry.quota_for_tier(demo["subscription_tier"]),
            )
            await repository.insert(account)
            print(f"  Demo account created: {demo['email']} ({demo['subscription_tier'].value})")

    print("Seed complete.")


if __name__ == "__main__":
    asyncio.run(seed_database())
