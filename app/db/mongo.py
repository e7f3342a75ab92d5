import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from app.core.config import settings
from app.repositories.ledger_repo import LedgerRepository

logger = logging.getLogger(__name__)

class MongoDatabase:
    """MongoDB connection manager."""
    
    client: AsyncIOMotorClient = None
    db: AsyncIOMotorDatabase = None

mongodb = MongoDatabase()

async def connect_to_mongo():
    """Connect to MongoDB."""
    mongodb.client = AsyncIOMotorClient(settings.MONGODB_URI)
    mongodb.db = mongodb.client[settings.MONGODB_DB]
    
    await create_indexes()
    logger.info("Connected to MongoDB: %s", settings.MONGODB_DB)

async def close_mongo_connection():
    """Disconnect from MongoDB."""
    if mongodb.client is not None:
        mongodb.client.close()
    logger.info("Disconnected from MongoDB")

async def create_indexes():
    """Create database indexes."""
    await LedgerRepository(mongodb.db).create_indexes()

def get_db() -> AsyncIOMotorDatabase:
    """Get database instance."""
    return mongodb.db

def get_ledger_repo() -> LedgerRepository:
    """Ledger store bound to the active database."""
    return LedgerRepository(get_db())
