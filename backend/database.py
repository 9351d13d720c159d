from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            # tz_aware so expiry comparisons stay in UTC after a round trip
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes.

        A unique index that cannot be built stops startup. The metering lease
        relies on account_locks.account_id to make its upsert collide, and
        webhook dedup relies on (provider, event_id) in payment_events.
        Lookup index failures are only logged.
        """
        await self._create_required_indexes()
        try:
            await self.db.accounts.create_index("subscription_id", sparse=True)
            await self.db.accounts.create_index("verification_token_hash", sparse=True)

            await self.db.account_billing.create_index("stripe_customer_id", sparse=True)

            await self.db.payment_events.create_index(
                [("provider", 1), ("subscription_id", 1), ("status", 1), ("occurred_at", 1)]
            )

            await self.db.charges.create_index([("provider", 1), ("provider_reference", 1)])
            await self.db.charges.create_index("account_id")

            await self.db.essays.create_index([("account_id", 1), ("created_at", -1)])

            # Audit log indexes - for per-account timelines
            await self.db.audit_logs.create_index([("account_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            logger.warning(f"Index creation note: {e}")

    async def _create_required_indexes(self):
        required = [
            (self.db.accounts, "account_id"),
            (self.db.accounts, "email"),
            (self.db.account_billing, "account_id"),
            (self.db.account_locks, "account_id"),
            (self.db.payment_events, [("provider", 1), ("event_id", 1)]),
            (self.db.charges, "charge_id"),
            (self.db.essays, "essay_id"),
            (self.db.saved_articles, [("account_id", 1), ("article_id", 1)]),
        ]
        for collection, keys in required:
            try:
                await collection.create_index(keys, unique=True)
            except Exception as e:
                logger.error(f"Required unique index on {collection.name} {keys} could not be built: {e}")
                raise

# Global database instance
database = Database()

@asynccontextmanager
async def get_db_context():
    """Context manager for standalone scripts to access the database.

    Usage in scripts:
        async with get_db_context() as db:
            await db.accounts.find_one(...)
    """
    client = None
    try:
        mongo_url = os.environ['MONGO_URL']
        db_name = os.environ['DB_NAME']
        client = AsyncIOMotorClient(mongo_url, tz_aware=True)
        db = client[db_name]
        # Verify connection
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {db_name}")
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
