"""
Abandoned Session Sweep

A client that disconnects without calling end() leaves its session in
`initiated`. This job moves such sessions to `abandoned` once they are
older than SESSION_ABANDON_AFTER_MINUTES, charging
ABANDONED_SESSION_BILL_MINUTES through the normal clamped debit. The same
pass settles old sessions whose claim landed but whose charge did not.

STARTUP USAGE:
    scheduler = AsyncIOScheduler()
    register_sweep_job(scheduler, AbandonedSessionSweeper(db))
    scheduler.start()
"""

import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from apscheduler.triggers.interval import IntervalTrigger

from .billing import BillingReconciler
from .config import (
    SESSION_ABANDON_AFTER_MINUTES,
    ABANDONED_SESSION_BILL_MINUTES,
    SWEEP_INTERVAL_MINUTES,
    SESSION_STATUS_INITIATED,
    SESSION_STATUS_ENDED,
    SESSION_STATUS_ABANDONED
)

logger = logging.getLogger(__name__)

SWEEP_BATCH_SIZE = 500


class AbandonedSessionSweeper:
    def __init__(
        self,
        db,
        reconciler: Optional[BillingReconciler] = None,
        abandon_after_minutes: int = SESSION_ABANDON_AFTER_MINUTES,
        bill_minutes: int = ABANDONED_SESSION_BILL_MINUTES
    ):
        self.db = db
        self.reconciler = reconciler or BillingReconciler(db)
        self.abandon_after = timedelta(minutes=abandon_after_minutes)
        self.bill_minutes = bill_minutes

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """Abandon stale initiated sessions. Returns how many were abandoned."""
        now = now or datetime.now(timezone.utc)
        cutoff = (now - self.abandon_after).isoformat()

        cursor = self.db.voice_sessions.find(
            {"status": SESSION_STATUS_INITIATED, "start_time": {"$lt": cutoff}},
            {"_id": 0}
        ).limit(SWEEP_BATCH_SIZE)
        stale = await cursor.to_list(length=SWEEP_BATCH_SIZE)

        abandoned = 0
        for session in stale:
            try:
                result = await self.reconciler.abandon_session(session, bill_minutes=self.bill_minutes)
            except Exception as e:
                logger.error(f"Failed to abandon session {session['id']} (user={session['user_id']}): {e}")
                continue
            # None: end() won the race for this session
            if result is not None:
                abandoned += 1

        if abandoned:
            logger.info(f"Abandoned {abandoned} voice sessions started before {cutoff}")

        await self.settle_unbilled(cutoff)
        return abandoned

    async def settle_unbilled(self, cutoff: str) -> int:
        """Charge old sessions that were claimed but whose billing never got recorded."""
        cursor = self.db.voice_sessions.find(
            {
                "status": {"$in": [SESSION_STATUS_ENDED, SESSION_STATUS_ABANDONED]},
                "minutes_billed": None,
                "start_time": {"$lt": cutoff}
            },
            {"_id": 0}
        ).limit(SWEEP_BATCH_SIZE)
        unbilled = await cursor.to_list(length=SWEEP_BATCH_SIZE)

        settled = 0
        for session in unbilled:
            try:
                await self.reconciler.settle(session)
            except Exception as e:
                logger.error(f"Failed to settle session {session['id']} (user={session['user_id']}): {e}")
                continue
            settled += 1

        if settled:
            logger.warning(f"Settled {settled} voice sessions left unbilled")
        return settled


def register_sweep_job(scheduler, sweeper: AbandonedSessionSweeper) -> None:
    """Register the sweep with an APScheduler instance. Call before scheduler.start()."""
    scheduler.add_job(
        sweeper.sweep,
        IntervalTrigger(minutes=SWEEP_INTERVAL_MINUTES),
        id="abandoned_voice_session_sweep",
        name="Abandon unreported voice sessions",
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )
    logger.info(f"Abandoned session sweep scheduled every {SWEEP_INTERVAL_MINUTES} minutes")
