"""
Balance Store

Authoritative per-user minutes balance and lifetime counters.

CRITICAL: Balance changes are single-document atomic updates. A debit is
one pipeline update that subtracts min(amount, balance), so a negative
balance is impossible under any concurrency scenario, and no code path
writes a balance computed in application memory.

Exactly-once across the wallet and the ledger:
1. The ledger entry is inserted `applied: False` (unique per reference+type)
2. The wallet update records `applied.<type>:<reference>` in the same
   document it changes, and only matches wallets without that marker
3. The ledger entry is flipped to `applied: True`

A failure between steps leaves a pending entry. Retrying the same
reference (Stripe redelivery, a repeated end()) finishes the remaining
steps, and the wallet marker keeps step 2 from applying twice.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from pymongo import ReturnDocument

from .config import TX_USAGE, TX_REFUND, CREDIT_TRANSACTION_TYPES
from .errors import DuplicateCredit, ValidationError
from .ledger import TransactionLedger
from .models import MinutesWallet, DebitResult, WalletAudit

logger = logging.getLogger(__name__)

WALLET_PROJECTION = {"_id": 0, "applied": 0}


def applied_marker(transaction_type: str, reference: str) -> str:
    """Wallet field recording the minutes one ledger reference moved."""
    return f"applied.{transaction_type}:{reference}"


class BalanceStore:
    """Minutes wallets stored in the minute_wallets collection."""

    def __init__(self, db, ledger: Optional[TransactionLedger] = None):
        self.db = db
        self.wallets = db.minute_wallets
        self.ledger = ledger or TransactionLedger(db)

    async def get(self, user_id: str) -> MinutesWallet:
        """
        Get the user's wallet, creating a zeroed one if absent.

        The upsert only sets fields on insert, so concurrent first
        accesses converge on a single wallet.
        """
        now = datetime.now(timezone.utc).isoformat()

        wallet = await self.wallets.find_one_and_update(
            {"user_id": user_id},
            {
                "$setOnInsert": {
                    "user_id": user_id,
                    "minutes_balance": 0,
                    "lifetime_purchased": 0,
                    "lifetime_used": 0,
                    "created_at": now,
                    "updated_at": now
                }
            },
            projection=WALLET_PROJECTION,
            upsert=True,
            return_document=ReturnDocument.AFTER
        )
        return MinutesWallet(**wallet)

    async def _applied_amount(self, user_id: str, transaction_type: str, reference: str) -> int:
        doc = await self.wallets.find_one({"user_id": user_id}, {"_id": 0, "applied": 1}) or {}
        return (doc.get("applied") or {}).get(f"{transaction_type}:{reference}", 0)

    # ==================== CREDIT ====================

    async def credit(
        self,
        user_id: str,
        amount: int,
        reference: str,
        transaction_type: str = "purchase",
        description: Optional[str] = None,
        package_id: Optional[str] = None
    ) -> int:
        """
        Credit minutes to a wallet, exactly once per (reference, type).

        A pending ledger entry left by an interrupted credit is completed
        with its recorded amount instead of being rejected as a duplicate.

        Returns:
            The balance after the credit

        Raises:
            DuplicateCredit: reference already credited
            ValidationError: non-positive amount or non-credit type
        """
        if amount <= 0:
            raise ValidationError(f"Credit amount must be positive, got {amount}")
        if transaction_type not in CREDIT_TRANSACTION_TYPES:
            raise ValidationError(f"Not a credit transaction type: {transaction_type}")

        try:
            await self.ledger.append(
                user_id=user_id,
                amount=amount,
                transaction_type=transaction_type,
                reference=reference,
                description=description,
                package_id=package_id,
                applied=False
            )
        except DuplicateCredit:
            entry = await self.ledger.find(reference, transaction_type)
            if not entry or entry.get("applied", True):
                raise
            logger.warning(
                f"Completing interrupted credit user={entry['user_id']} amount={entry['amount']} "
                f"reference={reference} type={transaction_type}"
            )
            user_id, amount = entry["user_id"], entry["amount"]

        await self.get(user_id)

        # Refunds give back used minutes; purchases and grants add to purchased.
        if transaction_type == TX_REFUND:
            increments = {"minutes_balance": amount, "lifetime_used": -amount}
        else:
            increments = {"minutes_balance": amount, "lifetime_purchased": amount}

        marker = applied_marker(transaction_type, reference)

        try:
            before = await self.wallets.find_one_and_update(
                {"user_id": user_id, marker: {"$exists": False}},
                {
                    "$inc": increments,
                    "$set": {marker: amount, "updated_at": datetime.now(timezone.utc).isoformat()}
                },
                projection=WALLET_PROJECTION,
                return_document=ReturnDocument.BEFORE
            )
            await self.ledger.mark_applied(reference, transaction_type)
        except Exception as e:
            logger.error(
                f"LEDGER/WALLET MISMATCH: credit left pending "
                f"user={user_id} amount={amount} reference={reference} type={transaction_type}: {e}"
            )
            raise

        if before is None:
            # Wallet already carried this reference; only the ledger flip was missing.
            balance = (await self.get(user_id)).minutes_balance
        else:
            balance = before["minutes_balance"] + amount

        logger.info(
            f"Credited {amount} minutes to user {user_id} "
            f"(type={transaction_type}, reference={reference}, balance={balance})"
        )
        return balance

    # ==================== DEBIT ====================

    async def debit(
        self,
        user_id: str,
        amount: int,
        reference: str,
        description: Optional[str] = None
    ) -> DebitResult:
        """
        Deduct up to `amount` minutes, clamped to the available balance.

        The wallet update is a single pipeline that subtracts
        min(amount, balance) and returns the document as it was before,
        so contention never needs a retry and never under-bills. A
        shortfall is logged, never raised: a session that already
        consumed provider time must still close.
        """
        requested = max(amount, 0)

        # One usage entry per reference
        existing = await self.ledger.find(reference, TX_USAGE)
        if existing and existing.get("applied", True):
            wallet = await self.get(user_id)
            logger.info(f"Usage already billed for reference {reference}, not debiting again")
            return DebitResult(
                requested=requested,
                deducted=abs(existing["amount"]),
                balance=wallet.minutes_balance
            )

        wallet = await self.get(user_id)
        if not existing and (requested == 0 or wallet.minutes_balance == 0):
            if requested:
                logger.warning(
                    f"CONSISTENCY WARNING: debit clamped for user {user_id}: "
                    f"requested={requested} deducted=0 reference={reference}"
                )
            return DebitResult(requested=requested, deducted=0, balance=wallet.minutes_balance)

        if not existing:
            try:
                await self.ledger.append(
                    user_id=user_id,
                    amount=0,
                    transaction_type=TX_USAGE,
                    reference=reference,
                    description=description,
                    applied=False
                )
            except DuplicateCredit:
                # A concurrent debit of this reference got here first; the wallet marker
                # decides which of us moves the balance.
                pass
        else:
            logger.warning(f"Completing interrupted debit user={user_id} reference={reference}")

        marker = applied_marker(TX_USAGE, reference)
        taken = {"$min": [requested, "$minutes_balance"]}

        try:
            before = await self.wallets.find_one_and_update(
                {"user_id": user_id, marker: {"$exists": False}},
                [{
                    "$set": {
                        "minutes_balance": {"$max": [0, {"$subtract": ["$minutes_balance", requested]}]},
                        "lifetime_used": {"$add": ["$lifetime_used", taken]},
                        marker: taken,
                        "updated_at": datetime.now(timezone.utc).isoformat()
                    }
                }],
                projection=WALLET_PROJECTION,
                return_document=ReturnDocument.BEFORE
            )

            if before is None:
                deducted = await self._applied_amount(user_id, TX_USAGE, reference)
                balance = (await self.get(user_id)).minutes_balance
            else:
                deducted = min(requested, before["minutes_balance"])
                balance = before["minutes_balance"] - deducted

            if deducted > 0:
                await self.ledger.mark_applied(reference, TX_USAGE, amount=-deducted)
            else:
                await self.ledger.discard_pending(reference, TX_USAGE)
        except Exception as e:
            logger.error(
                f"LEDGER/WALLET MISMATCH: debit left pending "
                f"user={user_id} requested={requested} reference={reference}: {e}"
            )
            raise

        if deducted < requested:
            logger.warning(
                f"CONSISTENCY WARNING: debit clamped for user {user_id}: "
                f"requested={requested} deducted={deducted} reference={reference}"
            )

        return DebitResult(requested=requested, deducted=deducted, balance=balance)

    # ==================== ADMIN ====================

    async def audit(self, user_id: str) -> WalletAudit:
        """Compare a wallet with its invariant and its ledger."""
        wallet = await self.get(user_id)
        ledger_sum = await self.ledger.sum_for_user(user_id)

        return WalletAudit(
            user_id=user_id,
            minutes_balance=wallet.minutes_balance,
            lifetime_purchased=wallet.lifetime_purchased,
            lifetime_used=wallet.lifetime_used,
            ledger_sum=ledger_sum,
            invariant_holds=(
                wallet.minutes_balance == wallet.lifetime_purchased - wallet.lifetime_used
                and wallet.minutes_balance >= 0
            ),
            matches_ledger=ledger_sum == wallet.minutes_balance
        )

    async def count_wallets(self) -> int:
        return await self.wallets.count_documents({})
