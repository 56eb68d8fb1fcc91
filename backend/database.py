"""
MongoDB handle for the voice minutes service.

One motor client per process. Wallet and ledger writes rely on
retryWrites, so a dropped primary during a credit or debit is retried
by the driver before our own idempotency kicks in.
"""
import os
import logging
from pathlib import Path

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient

logger = logging.getLogger(__name__)

load_dotenv(Path(__file__).parent / '.env')

REQUIRED_ENV_VARS = {
    "MONGO_URL": "MongoDB connection string, e.g. mongodb://localhost:27017",
    "DB_NAME": "database holding wallets, ledger and sessions, e.g. voice_minutes"
}


def validate_required_env_vars():
    """Raise ValueError naming every missing variable."""
    missing = [f"  - {var}: {hint}" for var, hint in REQUIRED_ENV_VARS.items() if not os.environ.get(var)]
    if missing:
        raise ValueError(
            "Voice minutes cannot start, missing environment variables:\n"
            + "\n".join(missing)
            + "\nSet them in backend/.env (see .env.example)."
        )


validate_required_env_vars()

try:
    client = AsyncIOMotorClient(
        os.environ['MONGO_URL'],
        maxPoolSize=int(os.environ.get("MONGO_MAX_POOL_SIZE", "50")),
        minPoolSize=int(os.environ.get("MONGO_MIN_POOL_SIZE", "5")),
        connectTimeoutMS=5000,
        serverSelectionTimeoutMS=5000,
        retryWrites=True
    )
except Exception as e:
    raise ValueError(f"Failed to create MongoDB client: {e}")

db = client[os.environ['DB_NAME']]


def get_database():
    """FastAPI dependency; tests override it with an in-memory database."""
    return db


async def check_db_connection():
    """
    Returns:
        (ok, error_message) after pinging the server and listing collections
    """
    try:
        await client.admin.command('ping')
        await db.list_collection_names()
    except Exception as e:
        error_msg = f"Database connection failed: {e}"
        logger.error(error_msg)
        return False, error_msg

    logger.info(f"Database connected: {os.environ['DB_NAME']}")
    return True, None
