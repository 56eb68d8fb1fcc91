"""
Voice Session Lifecycle

Starts, validates and ends metered voice sessions:

    initiated --end()--> ended
    initiated --sweep--> abandoned

start() refuses to create a session unless the wallet holds at least
MIN_MINUTES_TO_START minutes, so every stored session had minutes
available when it was created. end() is idempotent: a session that is
already terminal returns its recorded billing without charging again.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple

from .balance_store import BalanceStore
from .billing import BillingReconciler, result_from_session
from .config import (
    MIN_MINUTES_TO_START,
    SESSION_TYPES,
    SESSION_STATUS_INITIATED
)
from .errors import (
    Forbidden,
    InsufficientMinutes,
    InvalidPairing,
    SessionNotFound,
    ValidationError
)
from .models import VoiceSession, StartSessionResult, EndSessionResult
from .realtime_token import RealtimeTokenIssuer

logger = logging.getLogger(__name__)

# How long a losing concurrent end() waits for the winner's billing to land
SETTLE_POLL_ATTEMPTS = 20
SETTLE_POLL_SECONDS = 0.05


class SessionManager:
    """Owns the voice_sessions collection lifecycle."""

    def __init__(
        self,
        db,
        balance_store: Optional[BalanceStore] = None,
        reconciler: Optional[BillingReconciler] = None,
        token_issuer: Optional[RealtimeTokenIssuer] = None
    ):
        self.db = db
        self.sessions = db.voice_sessions
        self.balance_store = balance_store or BalanceStore(db)
        self.reconciler = reconciler or BillingReconciler(db, self.balance_store)
        self.token_issuer = token_issuer or RealtimeTokenIssuer()

    # ==================== START ====================

    async def start(
        self,
        user_id: str,
        session_type: str = "solo",
        paired_link_id: Optional[str] = None
    ) -> StartSessionResult:
        """
        Start a metered session.

        Raises:
            ValidationError: unknown session type
            InvalidPairing: paired session without an accepted link naming the user
            InsufficientMinutes: balance below MIN_MINUTES_TO_START; no session is created
        """
        if session_type not in SESSION_TYPES:
            raise ValidationError(f"Invalid session_type. Valid options: {list(SESSION_TYPES)}")

        partner_id = None
        if session_type == "paired":
            partner_id = await self._validate_pairing(user_id, paired_link_id)

        wallet = await self.balance_store.get(user_id)
        if wallet.minutes_balance < MIN_MINUTES_TO_START:
            logger.info(f"Insufficient minutes for user {user_id}: balance={wallet.minutes_balance}")
            raise InsufficientMinutes(minutes_balance=wallet.minutes_balance)

        now = datetime.now(timezone.utc).isoformat()
        session_doc = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "session_type": session_type,
            "paired_link_id": paired_link_id if session_type == "paired" else None,
            "status": SESSION_STATUS_INITIATED,
            "start_time": now,
            "end_time": None,
            "duration_seconds": None,
            "minutes_billed": None,
            "cost_cents": 0,
            "initial_balance": wallet.minutes_balance
        }
        await self.sessions.insert_one(session_doc)

        display_name, partner_name = await self._participant_names(user_id, partner_id)

        logger.info(
            f"Session {session_doc['id']} initiated for user {user_id} "
            f"(type={session_type}, balance={wallet.minutes_balance})"
        )

        return StartSessionResult(
            session_id=session_doc["id"],
            session_type=session_type,
            minutes_balance=wallet.minutes_balance,
            display_name=display_name,
            partner_name=partner_name,
            status=SESSION_STATUS_INITIATED
        )

    async def _validate_pairing(self, user_id: str, paired_link_id: Optional[str]) -> str:
        """Returns the partner's user id."""
        if not paired_link_id:
            raise InvalidPairing("A partner link is required for paired sessions")

        link = await self.db.partner_links.find_one(
            {"id": paired_link_id, "status": "accepted"},
            {"_id": 0}
        )
        if not link:
            raise InvalidPairing()

        if user_id == link.get("user_id"):
            return link.get("partner_id")
        if user_id == link.get("partner_id"):
            return link.get("user_id")

        logger.warning(f"User {user_id} is not a participant of partner link {paired_link_id}")
        raise InvalidPairing("Not authorized for this partner link")

    async def _participant_names(
        self,
        user_id: str,
        partner_id: Optional[str] = None
    ) -> Tuple[Optional[str], Optional[str]]:
        ids = [user_id] + ([partner_id] if partner_id else [])
        cursor = self.db.users.find({"id": {"$in": ids}}, {"_id": 0, "id": 1, "name": 1})
        names = {u["id"]: u.get("name") for u in await cursor.to_list(length=len(ids))}
        return names.get(user_id), names.get(partner_id) if partner_id else None

    # ==================== TOKEN ====================

    async def issue_token(self, user_id: str, session_id: str) -> Dict[str, Any]:
        """Ephemeral provider credential for an owned, initiated session."""
        session = await self._load_owned(user_id, session_id)

        if session["status"] != SESSION_STATUS_INITIATED:
            raise ValidationError(f"Session {session_id} is {session['status']}")

        partner_id = None
        if session["session_type"] == "paired" and session.get("paired_link_id"):
            link = await self.db.partner_links.find_one({"id": session["paired_link_id"]}, {"_id": 0})
            if link:
                partner_id = link["partner_id"] if link.get("user_id") == user_id else link.get("user_id")

        display_name, partner_name = await self._participant_names(user_id, partner_id)

        return await self.token_issuer.create_ephemeral_session(
            session_id=session_id,
            session_type=session["session_type"],
            display_name=display_name,
            partner_name=partner_name
        )

    # ==================== END ====================

    async def end(
        self,
        user_id: str,
        session_id: str,
        duration_seconds: Optional[int],
        transcripts: Optional[Dict[str, Optional[str]]] = None
    ) -> EndSessionResult:
        """
        End a session and bill it once.

        Raises:
            SessionNotFound: unknown session id
            Forbidden: caller does not own the session
        """
        session = await self._load_owned(user_id, session_id)

        if VoiceSession(**session).is_terminal:
            logger.info(f"Session {session_id} already {session['status']}, returning recorded result")
            return await self._recorded_result(session_id)

        result = await self.reconciler.close_session(session, duration_seconds, transcripts)
        if result is None:
            logger.info(f"Session {session_id} was closed concurrently, returning recorded result")
            return await self._recorded_result(session_id)

        return result

    async def _recorded_result(self, session_id: str) -> EndSessionResult:
        doc = await self.sessions.find_one({"id": session_id}, {"_id": 0})

        # The claimant sets minutes_billed right after its debit.
        for _ in range(SETTLE_POLL_ATTEMPTS):
            if VoiceSession(**doc).state.minutes_billed is not None:
                break
            await asyncio.sleep(SETTLE_POLL_SECONDS)
            doc = await self.sessions.find_one({"id": session_id}, {"_id": 0})

        session = VoiceSession(**doc)
        if session.state.minutes_billed is None:
            # Claimed but never billed: the claimant failed before recording its charge
            return await self.reconciler.settle(doc)

        balance = session.final_balance
        if balance is None:
            balance = (await self.balance_store.get(session.user_id)).minutes_balance

        return result_from_session(doc, balance)

    # ==================== QUERIES ====================

    async def _load_owned(self, user_id: str, session_id: str) -> Dict[str, Any]:
        session = await self.sessions.find_one({"id": session_id}, {"_id": 0})
        if not session:
            raise SessionNotFound()
        if session["user_id"] != user_id:
            logger.warning(f"User {user_id} tried to access session {session_id} owned by another user")
            raise Forbidden("Not authorized to access this session")
        return session

    async def get(self, user_id: str, session_id: str) -> VoiceSession:
        return VoiceSession(**await self._load_owned(user_id, session_id))

    async def history(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        cursor = self.sessions.find(
            {"user_id": user_id},
            {"_id": 0, "user_transcript": 0, "assistant_transcript": 0}
        ).sort("start_time", -1).limit(limit)
        return await cursor.to_list(length=limit)
