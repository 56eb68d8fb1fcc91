"""
Shared fixtures for Voice Minutes tests.

The database is an in-memory mongomock-motor instance with the real
collections and indexes created by db_init, so unique-index behaviour
(ledger idempotency) is exercised rather than mocked.
"""

import os
import sys
import uuid
from pathlib import Path

import pytest

# database.py validates these on import
os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "voice_minutes_test")
os.environ["ENVIRONMENT"] = "test"

sys.path.insert(0, str(Path(__file__).parent.parent))

from mongomock_motor import AsyncMongoMockClient

from voice_minutes.balance_store import BalanceStore
from voice_minutes.db_init import ensure_schema


@pytest.fixture
async def db():
    """Fresh database with indexes and the default package catalog."""
    client = AsyncMongoMockClient()
    database = client[f"voice_minutes_{uuid.uuid4().hex[:8]}"]
    await ensure_schema(database)
    return database


@pytest.fixture
async def user(db):
    doc = {"id": "user-1", "email": "alex@example.com", "name": "Alex", "is_admin": False}
    await db.users.insert_one(dict(doc))
    return doc


@pytest.fixture
async def partner(db):
    doc = {"id": "user-2", "email": "sam@example.com", "name": "Sam", "is_admin": False}
    await db.users.insert_one(dict(doc))
    return doc


@pytest.fixture
async def admin(db):
    doc = {"id": "admin-1", "email": "admin@example.com", "name": "Admin", "is_admin": True}
    await db.users.insert_one(dict(doc))
    return doc


@pytest.fixture
async def accepted_link(db, user, partner):
    doc = {"id": "link-1", "user_id": user["id"], "partner_id": partner["id"], "status": "accepted"}
    await db.partner_links.insert_one(dict(doc))
    return doc


class LostWalletWrite:
    """Wallet collection whose first `$inc` update raises, as if the connection dropped."""

    def __init__(self, collection, failures=1):
        self._collection = collection
        self.failures = failures

    def __getattr__(self, name):
        return getattr(self._collection, name)

    async def find_one_and_update(self, filter, update, *args, **kwargs):
        if self.failures and isinstance(update, dict) and "$inc" in update:
            self.failures -= 1
            raise RuntimeError("wallet write lost")
        return await self._collection.find_one_and_update(filter, update, *args, **kwargs)


@pytest.fixture
def interrupted_store(db):
    """BalanceStore whose first credit dies between the ledger insert and the wallet update."""
    store = BalanceStore(db)
    store.wallets = LostWalletWrite(db.minute_wallets)
    return store
