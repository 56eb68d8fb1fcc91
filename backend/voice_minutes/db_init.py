"""
Voice Minutes Database Initialization Script

Rules:
1. Environment Guard - requires APP_ENV and VOICE_MINUTES_INIT_CONFIRM=YES for production
2. Idempotent - running multiple times must not duplicate anything
3. No destructive operations - no dropping, deleting, truncation
4. Lazy wallet creation - wallets created on first use, not here
5. Safe index creation - handles "index already exists" gracefully
6. Package catalog seeded with $setOnInsert, so admin edits are never overwritten
7. Dry-run mode - --dry-run prints what it would do

The unique (reference, transaction_type) index on minute_transactions is
what makes crediting a payment twice impossible; the app calls
ensure_schema() at startup as well.

Usage:
    CLI one-off: python -m voice_minutes.db_init
    With dry-run: python -m voice_minutes.db_init --dry-run
    In production: APP_ENV=production VOICE_MINUTES_INIT_CONFIRM=YES python -m voice_minutes.db_init
"""

import os
import sys
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure

from .config import DEFAULT_MINUTE_PACKAGES

logger = logging.getLogger(__name__)

# Version tracking
INIT_VERSION = "v1.0.0"

REQUIRED_COLLECTIONS = [
    "minute_wallets",
    "minute_transactions",
    "minute_packages",
    "minute_purchases",
    "voice_sessions",
    "voice_minutes_meta"  # For version tracking
]

# Index definitions: (collection, index_spec, options)
REQUIRED_INDEXES = [
    # minute_wallets indexes
    ("minute_wallets", [("user_id", 1)], {"unique": True, "name": "idx_user_id_unique"}),

    # minute_transactions indexes
    ("minute_transactions", [("reference", 1), ("transaction_type", 1)],
     {"unique": True, "name": "idx_reference_type_unique"}),
    ("minute_transactions", [("user_id", 1), ("created_at", -1)], {"name": "idx_user_created"}),

    # minute_packages indexes
    ("minute_packages", [("id", 1)], {"unique": True, "name": "idx_package_id_unique"}),

    # minute_purchases indexes
    ("minute_purchases", [("purchase_id", 1)], {"unique": True, "name": "idx_purchase_id_unique"}),
    ("minute_purchases", [("checkout_session_id", 1)], {"sparse": True, "name": "idx_checkout_session_id"}),
    ("minute_purchases", [("user_id", 1), ("created_at", -1)], {"name": "idx_user_created"}),

    # voice_sessions indexes
    ("voice_sessions", [("id", 1)], {"unique": True, "name": "idx_session_id_unique"}),
    ("voice_sessions", [("user_id", 1), ("start_time", -1)], {"name": "idx_user_start"}),
    ("voice_sessions", [("status", 1), ("start_time", 1)], {"name": "idx_status_start"}),
]


def check_environment() -> Tuple[bool, str]:
    """
    Check environment and confirm if production execution is allowed.

    Returns:
        Tuple of (allowed, message)
    """
    app_env = os.environ.get("APP_ENV", os.environ.get("ENVIRONMENT", "development"))

    if app_env.lower() == "production":
        confirm = os.environ.get("VOICE_MINUTES_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: VOICE_MINUTES_INIT_CONFIRM=YES\n"
                "Current value: VOICE_MINUTES_INIT_CONFIRM='%s'" % confirm
            )

    return True, f"Environment: {app_env}"


async def create_collection_if_not_exists(db, collection_name: str, dry_run: bool = False) -> str:
    """Create a collection if it doesn't exist."""
    existing = await db.list_collection_names()

    if collection_name in existing:
        return f"  [SKIP] Collection '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create collection '{collection_name}'"

    try:
        await db.create_collection(collection_name)
        return f"  [CREATE] Created collection '{collection_name}'"
    except CollectionInvalid:
        return f"  [SKIP] Collection '{collection_name}' already exists (race)"


async def create_index_if_not_exists(
    db,
    collection_name: str,
    index_spec: List[Tuple],
    options: dict,
    dry_run: bool = False
) -> str:
    """Create an index if it doesn't exist."""
    collection = db[collection_name]
    index_name = options.get("name", str(index_spec))

    existing_indexes = await collection.index_information()

    if index_name in existing_indexes:
        return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{index_name}' on '{collection_name}'"

    try:
        await collection.create_index(index_spec, **options)
        return f"  [CREATE] Created index '{index_name}' on '{collection_name}'"
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists (race)"
        raise


async def seed_packages(db, dry_run: bool = False) -> List[str]:
    """Insert default packages that are not in the catalog yet."""
    results = []
    for package in DEFAULT_MINUTE_PACKAGES:
        if dry_run:
            results.append(f"  [DRY-RUN] Would seed package '{package['id']}'")
            continue

        result = await db.minute_packages.update_one(
            {"id": package["id"]},
            {"$setOnInsert": package},
            upsert=True
        )
        if result.upserted_id is not None:
            results.append(f"  [CREATE] Seeded package '{package['id']}'")
        else:
            results.append(f"  [SKIP] Package '{package['id']}' already exists")
    return results


async def update_version_stamp(db, dry_run: bool = False) -> str:
    """Update or create version stamp document."""
    if dry_run:
        return f"  [DRY-RUN] Would update version stamp to {INIT_VERSION}"

    await db.voice_minutes_meta.update_one(
        {"_id": "voice_minutes_init"},
        {
            "$set": {
                "version": INIT_VERSION,
                "applied_at": datetime.now(timezone.utc).isoformat()
            }
        },
        upsert=True
    )
    return f"  [UPDATE] Version stamp updated to {INIT_VERSION}"


async def ensure_schema(db, dry_run: bool = False, seed: bool = True) -> None:
    """Collections, indexes and package catalog. Safe to run on every startup."""
    logger.info("=== Collections ===")
    for collection_name in REQUIRED_COLLECTIONS:
        logger.info(await create_collection_if_not_exists(db, collection_name, dry_run))

    logger.info("=== Indexes ===")
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        logger.info(await create_index_if_not_exists(db, collection_name, index_spec, options, dry_run))

    if seed:
        logger.info("=== Packages ===")
        for line in await seed_packages(db, dry_run):
            logger.info(line)

    logger.info("=== Version Stamp ===")
    logger.info(await update_version_stamp(db, dry_run))


async def run_init(dry_run: bool = False):
    """Run the database initialization."""
    from dotenv import load_dotenv

    env_path = Path(__file__).parent.parent / '.env'
    load_dotenv(env_path)

    allowed, env_message = check_environment()
    logger.info(env_message)

    if not allowed:
        logger.error("Init blocked due to environment guard")
        sys.exit(1)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')

    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        sys.exit(1)

    logger.info(f"Database: {db_name}")
    logger.info(f"Dry Run: {dry_run}")
    logger.info("-" * 50)

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    try:
        await client.admin.command('ping')
        logger.info("MongoDB connection: OK")
    except Exception as e:
        logger.error(f"MongoDB connection failed: {e}")
        sys.exit(1)

    await ensure_schema(db, dry_run)

    client.close()

    logger.info("=" * 50)
    logger.info("SUCCESS: Voice Minutes DB init completed")
    logger.info("=" * 50)


def main():
    """Main entry point."""
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(
        description="Voice Minutes Database Initialization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Development (default)
    python -m voice_minutes.db_init

    # Dry run (no changes)
    python -m voice_minutes.db_init --dry-run

    # Production
    APP_ENV=production VOICE_MINUTES_INIT_CONFIRM=YES python -m voice_minutes.db_init
        """
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )

    args = parser.parse_args()

    asyncio.run(run_init(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
