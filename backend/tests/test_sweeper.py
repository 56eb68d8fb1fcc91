"""
Unit Tests for the Abandoned Session Sweep
"""

from datetime import datetime, timezone, timedelta

import pytest
from unittest.mock import MagicMock

from voice_minutes.balance_store import BalanceStore
from voice_minutes.billing import BillingReconciler
from voice_minutes.sweeper import AbandonedSessionSweeper, register_sweep_job

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def insert_session(db, session_id, started_minutes_ago, status="initiated"):
    await db.voice_sessions.insert_one({
        "id": session_id,
        "user_id": "u1",
        "session_type": "solo",
        "status": status,
        "start_time": (NOW - timedelta(minutes=started_minutes_ago)).isoformat(),
        "minutes_billed": None,
        "cost_cents": 0,
        "initial_balance": 5
    })


class TestSweep:

    @pytest.mark.asyncio
    async def test_only_stale_initiated_sessions_are_abandoned(self, db):
        await BalanceStore(db).credit("u1", 5, reference="pi_1")
        await insert_session(db, "stale", 180)
        await insert_session(db, "fresh", 10)
        await insert_session(db, "done", 300, status="ended")

        sweeper = AbandonedSessionSweeper(db, abandon_after_minutes=120, bill_minutes=0)
        assert await sweeper.sweep(now=NOW) == 1

        stale = await db.voice_sessions.find_one({"id": "stale"})
        assert stale["status"] == "abandoned"
        assert stale["minutes_billed"] == 0
        assert (await db.voice_sessions.find_one({"id": "fresh"}))["status"] == "initiated"
        assert (await db.voice_sessions.find_one({"id": "done"}))["status"] == "ended"
        assert (await BalanceStore(db).get("u1")).minutes_balance == 5

    @pytest.mark.asyncio
    async def test_abandon_bills_configured_minutes(self, db):
        await BalanceStore(db).credit("u1", 5, reference="pi_1")
        await insert_session(db, "stale", 180)

        await AbandonedSessionSweeper(db, abandon_after_minutes=120, bill_minutes=2).sweep(now=NOW)

        assert (await BalanceStore(db).get("u1")).minutes_balance == 3

    @pytest.mark.asyncio
    async def test_second_sweep_is_noop(self, db):
        await insert_session(db, "stale", 180)
        sweeper = AbandonedSessionSweeper(db, abandon_after_minutes=120)

        assert await sweeper.sweep(now=NOW) == 1
        assert await sweeper.sweep(now=NOW) == 0

    @pytest.mark.asyncio
    async def test_failure_on_one_session_does_not_stop_sweep(self, db):
        await insert_session(db, "a", 180)
        await insert_session(db, "b", 200)

        reconciler = BillingReconciler(db)
        real_abandon = reconciler.abandon_session

        async def flaky(session, **kwargs):
            if session["id"] == "a":
                raise RuntimeError("write failed")
            return await real_abandon(session, **kwargs)

        reconciler.abandon_session = flaky
        sweeper = AbandonedSessionSweeper(db, reconciler=reconciler, abandon_after_minutes=120)

        assert await sweeper.sweep(now=NOW) == 1
        assert (await db.voice_sessions.find_one({"id": "b"}))["status"] == "abandoned"


    @pytest.mark.asyncio
    async def test_sweep_settles_claimed_but_unbilled_session(self, db):
        await BalanceStore(db).credit("u1", 5, reference="pi_1")
        await insert_session(db, "cut-off", 180, status="ended")
        await db.voice_sessions.update_one(
            {"id": "cut-off"},
            {"$set": {"duration_seconds": 100, "minutes_due": 2}}
        )

        await AbandonedSessionSweeper(db, abandon_after_minutes=120).sweep(now=NOW)

        stored = await db.voice_sessions.find_one({"id": "cut-off"})
        assert stored["status"] == "ended"
        assert stored["minutes_billed"] == 2
        assert stored["final_balance"] == 3
        assert (await BalanceStore(db).get("u1")).minutes_balance == 3

        await AbandonedSessionSweeper(db, abandon_after_minutes=120).sweep(now=NOW)
        assert (await BalanceStore(db).get("u1")).minutes_balance == 3


def test_register_sweep_job():
    scheduler = MagicMock()
    sweeper = AbandonedSessionSweeper(MagicMock(), reconciler=MagicMock())

    register_sweep_job(scheduler, sweeper)

    args, kwargs = scheduler.add_job.call_args
    assert args[0] == sweeper.sweep
    assert kwargs["id"] == "abandoned_voice_session_sweep"
    assert kwargs["max_instances"] == 1
