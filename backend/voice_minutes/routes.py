"""
Voice Minutes API Routes

Voice sessions:
- POST /api/voice/session/start - Start a metered session
- POST /api/voice/session/token - Ephemeral realtime credential for a session
- POST /api/voice/session/end - End and bill a session
- GET /api/voice/sessions - Session history
- GET /api/voice/sessions/{session_id} - Session detail

Minutes wallet:
- GET /api/minutes/wallet - Balance and lifetime counters
- GET /api/minutes/transactions - Ledger entries
- GET /api/minutes/packages - Package catalog
- POST /api/minutes/purchase - Start Stripe Checkout
- GET /api/minutes/purchase/{purchase_id} - Purchase status (pending until credited)
- POST /api/minutes/purchase/{purchase_id}/verify - Confirm a returned checkout with Stripe
- POST /api/minutes/webhook - Stripe webhook
"""

import uuid
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Query

from database import get_database
from utils.auth import get_current_user, get_admin_user
from voice_minutes.balance_store import BalanceStore
from voice_minutes.billing import BillingReconciler
from voice_minutes.checkout import CheckoutService
from voice_minutes.config import TX_BONUS, TX_REFUND
from voice_minutes.errors import VoiceMinutesError, ValidationError, DuplicateCredit
from voice_minutes.models import (
    StartSessionRequest,
    StartSessionResult,
    EndSessionRequest,
    EndSessionResult,
    TokenRequest,
    MinutesWallet,
    PurchaseCreateRequest,
    CheckoutResult,
    AdminGrantRequest,
    AdminRefundRequest,
    LedgerPage,
    MinutePurchase,
    WalletAudit
)
from voice_minutes.notifications import MinutesNotifier
from voice_minutes.sessions import SessionManager
from voice_minutes.webhook import WebhookCreditHandler

logger = logging.getLogger(__name__)

voice_router = APIRouter(prefix="/voice", tags=["Voice Sessions"])
minutes_router = APIRouter(prefix="/minutes", tags=["Voice Minutes"])


def _http_error(error: VoiceMinutesError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.to_dict())


def _session_manager(db) -> SessionManager:
    balance_store = BalanceStore(db)
    reconciler = BillingReconciler(db, balance_store, notifier=MinutesNotifier(db))
    return SessionManager(db, balance_store=balance_store, reconciler=reconciler)


# ==================== SESSION ENDPOINTS ====================

@voice_router.post("/session/start", response_model=StartSessionResult)
async def start_session(
    body: StartSessionRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_database)
):
    """
    Start a voice session.

    Returns 402 INSUFFICIENT_MINUTES when the wallet is empty; the UI
    shows the purchase prompt in that case.
    """
    try:
        return await _session_manager(db).start(user["id"], body.session_type, body.paired_link_id)
    except VoiceMinutesError as e:
        raise _http_error(e)


@voice_router.post("/session/token")
async def create_session_token(
    body: TokenRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_database)
):
    """Ephemeral realtime credential; the client connects to the provider directly."""
    try:
        return await _session_manager(db).issue_token(user["id"], body.session_id)
    except VoiceMinutesError as e:
        raise _http_error(e)


@voice_router.post("/session/end", response_model=EndSessionResult)
async def end_session(
    body: EndSessionRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_database)
):
    """End a session and bill it. Safe to retry: a closed session returns its recorded billing."""
    transcripts = {
        "summary": body.summary,
        "user_transcript": body.user_transcript,
        "assistant_transcript": body.assistant_transcript
    }
    try:
        return await _session_manager(db).end(user["id"], body.session_id, body.duration_seconds, transcripts)
    except VoiceMinutesError as e:
        raise _http_error(e)


@voice_router.get("/sessions")
async def list_sessions(
    limit: int = Query(20, ge=1, le=100),
    user: dict = Depends(get_current_user),
    db=Depends(get_database)
):
    sessions = await _session_manager(db).history(user["id"], limit)
    return {"sessions": sessions, "count": len(sessions)}


@voice_router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    user: dict = Depends(get_current_user),
    db=Depends(get_database)
):
    try:
        session = await _session_manager(db).get(user["id"], session_id)
    except VoiceMinutesError as e:
        raise _http_error(e)
    return session.model_dump()


# ==================== WALLET ENDPOINTS ====================

@minutes_router.get("/wallet", response_model=MinutesWallet)
async def get_wallet(user: dict = Depends(get_current_user), db=Depends(get_database)):
    """Current balance and lifetime counters (wallet is created on first access)."""
    return await BalanceStore(db).get(user["id"])


@minutes_router.get("/transactions", response_model=LedgerPage)
async def get_transactions(
    limit: int = Query(10, ge=1, le=200),
    user: dict = Depends(get_current_user),
    db=Depends(get_database)
):
    entries = await BalanceStore(db).ledger.list_for_user(user["id"], limit)
    return {"entries": entries, "count": len(entries)}


# ==================== PURCHASE ENDPOINTS ====================

@minutes_router.get("/packages")
async def get_packages(db=Depends(get_database)):
    packages = await CheckoutService(db).list_packages()
    return {"packages": [p.model_dump() for p in packages], "currency": "USD"}


@minutes_router.post("/purchase", response_model=CheckoutResult)
async def create_purchase(
    body: PurchaseCreateRequest,
    user: dict = Depends(get_current_user),
    db=Depends(get_database)
):
    """
    Start a Stripe Checkout for a minute package.

    The purchase stays pending until the webhook credits it.
    """
    try:
        return await CheckoutService(db).initiate_checkout(user["id"], body.package_id, body.return_path)
    except VoiceMinutesError as e:
        raise _http_error(e)


@minutes_router.get("/purchase/{purchase_id}", response_model=MinutePurchase)
async def get_purchase_status(
    purchase_id: str,
    user: dict = Depends(get_current_user),
    db=Depends(get_database)
):
    try:
        return await CheckoutService(db).get_purchase(user["id"], purchase_id)
    except VoiceMinutesError as e:
        raise _http_error(e)


@minutes_router.post("/purchase/{purchase_id}/verify", response_model=MinutePurchase)
async def verify_purchase(
    purchase_id: str,
    user: dict = Depends(get_current_user),
    db=Depends(get_database)
):
    """
    Confirm a checkout with Stripe after the redirect back.

    Credits the purchase if it is paid and the webhook has not yet done so.
    """
    handler = WebhookCreditHandler(db, notifier=MinutesNotifier(db))
    try:
        return await CheckoutService(db).verify_checkout(user["id"], purchase_id, credit_handler=handler)
    except VoiceMinutesError as e:
        raise _http_error(e)


# ==================== STRIPE WEBHOOK ====================

@minutes_router.post("/webhook")
async def stripe_webhook(request: Request, db=Depends(get_database)):
    """
    Handle Stripe webhook notifications.

    Minutes are credited only on a paid checkout.session.completed event.
    Malformed events are acknowledged with 200 so they are not redelivered.
    """
    payload = await request.body()
    handler = WebhookCreditHandler(db, notifier=MinutesNotifier(db))

    try:
        event = handler.verify(payload, request.headers.get("stripe-signature"))
    except VoiceMinutesError as e:
        raise _http_error(e)

    logger.info(f"Received Stripe webhook: {event.get('type')} (event_id={event.get('id')})")

    outcome = await handler.on_payment_confirmed(event)
    return {"received": True, **outcome.model_dump()}


# ==================== ADMIN ENDPOINTS ====================

@minutes_router.post("/admin/grant")
async def admin_grant_minutes(
    body: AdminGrantRequest,
    admin: dict = Depends(get_admin_user),
    db=Depends(get_database)
):
    """Gift minutes to a user (admin only)."""
    balance = await BalanceStore(db).credit(
        body.user_id,
        body.minutes,
        reference=f"grant_{uuid.uuid4()}",
        transaction_type=TX_BONUS,
        description=f"{body.reason} (by {admin.get('email')})"
    )
    return {"success": True, "user_id": body.user_id, "minutes": body.minutes, "new_balance": balance}


@minutes_router.post("/admin/refund")
async def admin_refund_session(
    body: AdminRefundRequest,
    admin: dict = Depends(get_admin_user),
    db=Depends(get_database)
):
    """Refund minutes billed for a session, at most once per session (admin only)."""
    session = await db.voice_sessions.find_one({"id": body.session_id}, {"_id": 0})
    if not session:
        raise HTTPException(status_code=404, detail={"error": "SESSION_NOT_FOUND"})

    billed = session.get("minutes_billed") or 0
    minutes = body.minutes or billed
    if minutes <= 0 or minutes > billed:
        raise _http_error(ValidationError(f"Refund must be between 1 and {billed} minutes"))

    try:
        balance = await BalanceStore(db).credit(
            session["user_id"],
            minutes,
            reference=body.session_id,
            transaction_type=TX_REFUND,
            description=f"{body.reason} (by {admin.get('email')})"
        )
    except DuplicateCredit as e:
        raise _http_error(e)

    return {"success": True, "user_id": session["user_id"], "minutes": minutes, "new_balance": balance}


@minutes_router.get("/admin/stats")
async def get_minutes_stats(admin: dict = Depends(get_admin_user), db=Depends(get_database)):
    """Aggregate minutes statistics (admin only)."""
    balance_store = BalanceStore(db)
    totals = await balance_store.ledger.totals()

    return {
        "total_wallets": await balance_store.count_wallets(),
        "total_minutes_sold": totals.get("purchase", 0),
        "total_minutes_used": totals.get("usage", 0),
        "total_minutes_granted": totals.get("bonus", 0),
        "total_minutes_refunded": totals.get("refund", 0),
        "purchases_by_status": await CheckoutService(db).purchase_counts()
    }


@minutes_router.get("/admin/audit/{user_id}", response_model=WalletAudit)
async def audit_wallet(user_id: str, admin: dict = Depends(get_admin_user), db=Depends(get_database)):
    """Compare a wallet with its ledger (admin only)."""
    return await BalanceStore(db).audit(user_id)
