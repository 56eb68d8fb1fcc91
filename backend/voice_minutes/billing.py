"""
Billing Reconciler

Closes a voice session and charges for it:
- minutes_billed = ceil(duration_seconds / 60), never below zero
- the debit is clamped to the wallet balance; the clamped amount is final
- cost_cents = minutes actually deducted * COST_PER_MINUTE_CENTS

The session is claimed with a conditional update on status=initiated
before anything is charged, so only one caller can ever bill a session.
The claim records minutes_due; the debit is idempotent per session, so a
claimed session whose charge was interrupted is settled again from it.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from pymongo import ReturnDocument

from .balance_store import BalanceStore
from .config import (
    COST_PER_MINUTE_CENTS,
    SECONDS_PER_BILLED_MINUTE,
    SESSION_STATUS_INITIATED,
    SESSION_STATUS_ENDED,
    SESSION_STATUS_ABANDONED
)
from .models import EndSessionResult
from .notifications import fire_and_forget

logger = logging.getLogger(__name__)


def minutes_for_duration(duration_seconds: Optional[int]) -> int:
    """Ceiling billing: any started minute is a billed minute."""
    if not duration_seconds or duration_seconds <= 0:
        return 0
    return math.ceil(duration_seconds / SECONDS_PER_BILLED_MINUTE)


def result_from_session(session: Dict[str, Any], new_balance: int) -> EndSessionResult:
    """Build the caller-facing billing result from a stored session."""
    return EndSessionResult(
        session_id=session["id"],
        duration_seconds=session.get("duration_seconds") or 0,
        minutes_billed=session.get("minutes_billed") or 0,
        cost_cents=session.get("cost_cents") or 0,
        new_balance=new_balance,
        status=session["status"]
    )


class BillingReconciler:
    """Claims, charges and finalizes voice sessions."""

    def __init__(self, db, balance_store: Optional[BalanceStore] = None, notifier=None):
        self.db = db
        self.sessions = db.voice_sessions
        self.balance_store = balance_store or BalanceStore(db)
        self.notifier = notifier

    async def close_session(
        self,
        session: Dict[str, Any],
        duration_seconds: Optional[int],
        transcripts: Optional[Dict[str, Optional[str]]] = None
    ) -> Optional[EndSessionResult]:
        """
        End an initiated session and bill it.

        Returns:
            The billing result, or None if another caller claimed the
            session first (the caller should read the recorded result).
        """
        duration = max(duration_seconds or 0, 0)
        now = datetime.now(timezone.utc).isoformat()

        claim = {
            "status": SESSION_STATUS_ENDED,
            "end_time": now,
            "duration_seconds": duration,
            "minutes_due": minutes_for_duration(duration)
        }
        for field, value in (transcripts or {}).items():
            if value is not None:
                claim[field] = value

        claimed = await self._claim(session["id"], claim)
        if not claimed:
            return None

        return await self._charge(claimed, claim["minutes_due"])

    async def abandon_session(
        self,
        session: Dict[str, Any],
        bill_minutes: int = 0,
        reason: str = "timeout"
    ) -> Optional[EndSessionResult]:
        """Mark an unreported session abandoned, charging `bill_minutes`."""
        now = datetime.now(timezone.utc).isoformat()

        minutes_due = max(bill_minutes, 0)
        claimed = await self._claim(session["id"], {
            "status": SESSION_STATUS_ABANDONED,
            "abandoned_at": now,
            "abandon_reason": reason,
            "minutes_due": minutes_due
        })
        if not claimed:
            return None

        return await self._charge(claimed, minutes_due)

    async def settle(self, session: Dict[str, Any]) -> EndSessionResult:
        """
        Charge a claimed session whose billing never got recorded.

        Safe to repeat: the debit is keyed on the session id, so a charge
        that already reached the wallet is reported rather than taken again.
        """
        minutes = session.get("minutes_due")
        if minutes is None:
            minutes = minutes_for_duration(session.get("duration_seconds"))

        logger.warning(f"Settling unbilled session {session['id']} ({minutes} minutes due)")
        return await self._charge(session, minutes)

    async def _claim(self, session_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        # BEFORE: the updated document no longer matches status=initiated
        before = await self.sessions.find_one_and_update(
            {"id": session_id, "status": SESSION_STATUS_INITIATED},
            {"$set": updates},
            projection={"_id": 0},
            return_document=ReturnDocument.BEFORE
        )
        if before is None:
            return None
        return {**before, **updates}

    async def _charge(self, session: Dict[str, Any], minutes: int) -> EndSessionResult:
        user_id = session["user_id"]
        session_id = session["id"]

        debit = await self.balance_store.debit(
            user_id,
            minutes,
            reference=session_id,
            description=f"Voice session {session.get('session_type', 'solo')}"
        )

        if debit.shortfall:
            logger.warning(
                f"Session {session_id} under-billed: wanted {minutes} minutes, "
                f"charged {debit.deducted} (user={user_id})"
            )

        cost_cents = debit.deducted * COST_PER_MINUTE_CENTS

        await self.sessions.update_one(
            {"id": session_id},
            {
                "$set": {
                    "minutes_billed": debit.deducted,
                    "cost_cents": cost_cents,
                    "final_balance": debit.balance
                }
            }
        )

        logger.info(
            f"Session {session_id} {session['status']}: duration={session.get('duration_seconds')}s "
            f"billed={debit.deducted}min cost={cost_cents}c balance={debit.balance}"
        )

        if self.notifier and debit.deducted > 0 and debit.balance == 0:
            fire_and_forget(self.notifier.balance_depleted(user_id))

        session = {**session, "minutes_billed": debit.deducted, "cost_cents": cost_cents}
        return result_from_session(session, debit.balance)
