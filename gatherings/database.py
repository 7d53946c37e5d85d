from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from gatherings import config

GATHERINGS_COLLECTION = "gatherings"
USERS_COLLECTION = "users"


def connect(mongo_url: str = None, db_name: str = None) -> AsyncIOMotorDatabase:
    # 5 second selection timeout so a missing DB fails requests instead of hanging them
    client = AsyncIOMotorClient(mongo_url or config.MONGO_URL, serverSelectionTimeoutMS=5000)
    return client[db_name or config.DB_NAME]
