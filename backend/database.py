from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url)
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
        """Create MongoDB indexes for the ledger, jobs and per-user locks."""
        try:
            # Credit ledger - entry id, per-user history (most recent first)
            await self.db.credit_ledger.create_index("id", unique=True)
            await self.db.credit_ledger.create_index([("user_id", 1), ("created_at", -1)])
            await self.db.credit_ledger.create_index([("status", 1), ("created_at", 1)])
            # One debit per client idempotency key, one refund per debit, one grant per purchase
            await self.db.credit_ledger.create_index(
                [("user_id", 1), ("idempotency_key", 1)],
                unique=True,
                partialFilterExpression={"idempotency_key": {"$type": "string"}},
            )
            await self.db.credit_ledger.create_index(
                "metadata.refund_for",
                unique=True,
                partialFilterExpression={"metadata.refund_for": {"$type": "string"}},
            )
            await self.db.credit_ledger.create_index(
                "metadata.purchase_reference",
                unique=True,
                partialFilterExpression={"metadata.purchase_reference": {"$type": "string"}},
            )

            # Operation jobs
            await self.db.operation_jobs.create_index("id", unique=True)
            await self.db.operation_jobs.create_index([("user_id", 1), ("status", 1)])
            await self.db.operation_jobs.create_index([("user_id", 1), ("created_at", -1)])
            await self.db.operation_jobs.create_index([("status", 1), ("updated_at", 1)])
            await self.db.operation_jobs.create_index("ledger_entry_id", sparse=True)

            # Per-user ledger lock documents
            await self.db.credit_locks.create_index("user_id", unique=True)
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()
