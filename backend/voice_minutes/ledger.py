"""
Transaction Ledger

Append-only history of signed minute amounts explaining every wallet change.

The unique index on (reference, transaction_type) created by db_init makes
idempotency structural: a second insert for the same payment or session
fails at the storage layer, whatever the calling code checked beforehand.

Entries are written `applied: False` before the wallet moves and flipped
to `applied: True` once it has. An unapplied entry is an interrupted
operation that a retry of the same reference completes; only applied
entries count towards balances, listings and totals.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from pymongo.errors import DuplicateKeyError

from .errors import DuplicateCredit
from .models import MinuteTransaction

logger = logging.getLogger(__name__)

# Entries written before the applied flag existed count as applied
APPLIED = {"applied": {"$ne": False}}


class TransactionLedger:
    """Ledger stored in the minute_transactions collection."""

    def __init__(self, db):
        self.db = db
        self.collection = db.minute_transactions

    async def append(
        self,
        user_id: str,
        amount: int,
        transaction_type: str,
        reference: str,
        description: Optional[str] = None,
        package_id: Optional[str] = None,
        applied: bool = True
    ) -> Dict[str, Any]:
        """
        Insert an immutable ledger entry.

        Raises:
            DuplicateCredit: an entry with this (reference, type) exists
        """
        entry = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "amount": amount,
            "transaction_type": transaction_type,
            "reference": reference,
            "description": description,
            "package_id": package_id,
            "applied": applied,
            "created_at": datetime.now(timezone.utc).isoformat()
        }

        try:
            await self.collection.insert_one(entry)
        except DuplicateKeyError:
            logger.info(
                f"Ledger entry already exists: reference={reference} type={transaction_type} user={user_id}"
            )
            raise DuplicateCredit(reference, transaction_type)

        entry.pop("_id", None)
        return entry

    async def mark_applied(self, reference: str, transaction_type: str, amount: Optional[int] = None) -> None:
        """Flip a pending entry once its wallet change has landed."""
        updates = {"applied": True}
        if amount is not None:
            updates["amount"] = amount
        await self.collection.update_one(
            {"reference": reference, "transaction_type": transaction_type, "applied": False},
            {"$set": updates}
        )

    async def discard_pending(self, reference: str, transaction_type: str) -> None:
        """Drop a pending entry whose wallet change moved nothing."""
        await self.collection.delete_one(
            {"reference": reference, "transaction_type": transaction_type, "applied": False}
        )

    async def exists(self, reference: str, transaction_type: str) -> bool:
        """True once the entry is applied; a pending entry still needs completing."""
        existing = await self.collection.find_one(
            {"reference": reference, "transaction_type": transaction_type, **APPLIED},
            {"_id": 0, "id": 1}
        )
        return existing is not None

    async def find(self, reference: str, transaction_type: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one(
            {"reference": reference, "transaction_type": transaction_type},
            {"_id": 0}
        )

    async def list_for_user(self, user_id: str, limit: int = 50) -> List[MinuteTransaction]:
        """Most recent entries first."""
        cursor = self.collection.find(
            {"user_id": user_id, **APPLIED},
            {"_id": 0}
        ).sort("created_at", -1).limit(limit)

        return [MinuteTransaction(**doc) for doc in await cursor.to_list(length=limit)]

    async def sum_for_user(self, user_id: str) -> int:
        pipeline = [
            {"$match": {"user_id": user_id, **APPLIED}},
            {"$group": {"_id": None, "total": {"$sum": "$amount"}}}
        ]
        result = await self.collection.aggregate(pipeline).to_list(1)
        return result[0]["total"] if result else 0

    async def totals(self) -> Dict[str, int]:
        """Absolute minutes per transaction type, across all users."""
        pipeline = [
            {"$match": APPLIED},
            {"$group": {"_id": "$transaction_type", "total": {"$sum": "$amount"}}}
        ]
        rows = await self.collection.aggregate(pipeline).to_list(20)
        return {row["_id"]: abs(row["total"]) for row in rows}
