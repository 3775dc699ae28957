import os

import motor.motor_asyncio
from dotenv import load_dotenv
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from jobmatch.utils.logging_config import get_logger

logger = get_logger(__name__)

load_dotenv()

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
DB_NAME = os.getenv("DB_NAME", "jobmatch")

logger.info(f"Initializing MongoDB connection to database: {DB_NAME}")

client = motor.motor_asyncio.AsyncIOMotorClient(MONGO_URI)
db = client[DB_NAME]

# Collections
jobs_coll = db["jobs"]
users_coll = db["users"]
matches_coll = db["matches"]
send_ledger_coll = db["send_ledger"]

INDEXES = [
    (jobs_coll, [("job_hash", ASCENDING)], {"unique": True}),
    (jobs_coll, [("is_active", ASCENDING), ("city", ASCENDING)], {}),
    (jobs_coll, [("categories", ASCENDING)], {}),
    (jobs_coll, [("created_at", DESCENDING)], {}),
    (users_coll, [("user_id", ASCENDING)], {"unique": True}),
    (matches_coll, [("user_id", ASCENDING), ("job_hash", ASCENDING)], {"unique": True}),
    (matches_coll, [("user_id", ASCENDING), ("matched_at", DESCENDING)], {}),
    (send_ledger_coll, [("user_id", ASCENDING), ("week_start", ASCENDING)], {"unique": True}),
]


async def init_indexes():
    """Create the indexes the engine queries on. Failures are logged, not fatal."""
    logger.info("Starting database index initialization")
    created = 0
    for coll, keys, options in INDEXES:
        name = ", ".join(k for k, _ in keys)
        try:
            await coll.create_index(keys, **options)
            created += 1
            logger.debug(f"Ensured index on {coll.name}.({name})")
        except PyMongoError as e:
            if "already exists" in str(e).lower():
                logger.debug(f"Index on {coll.name}.({name}) already exists")
            else:
                logger.warning(f"Could not create index on {coll.name}.({name}): {e}")
    logger.info(f"Database index initialization completed ({created}/{len(INDEXES)} ensured)")
