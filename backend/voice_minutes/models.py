"""
Voice Minutes Data Models

Pydantic models for wallet, ledger, session and purchase operations.
These define the structure of documents stored in MongoDB collections
and the request/response bodies of the API.
"""

from pydantic import BaseModel, Field, TypeAdapter
from typing import Annotated, Optional, List, Literal, Union


# ==================== WALLET MODELS ====================

class MinutesWallet(BaseModel):
    """User's prepaid minutes wallet"""
    user_id: str
    minutes_balance: int = 0
    lifetime_purchased: int = 0
    lifetime_used: int = 0
    created_at: Optional[str] = None  # ISO datetime string
    updated_at: Optional[str] = None


class DebitResult(BaseModel):
    """Outcome of a clamped debit"""
    requested: int
    deducted: int
    balance: int

    @property
    def shortfall(self) -> int:
        return self.requested - self.deducted


class WalletAudit(BaseModel):
    """Wallet compared against its ledger"""
    user_id: str
    minutes_balance: int
    lifetime_purchased: int
    lifetime_used: int
    ledger_sum: int
    invariant_holds: bool
    matches_ledger: bool


# ==================== CATALOG MODELS ====================

class MinutePackage(BaseModel):
    """Admin-managed catalog entry"""
    id: str
    name: str
    description: Optional[str] = None
    minutes: int
    price_cents: int
    savings_percent: int = 0
    is_popular: bool = False
    is_active: bool = True
    sort_order: int = 0


# ==================== LEDGER MODELS ====================

class MinuteTransaction(BaseModel):
    """Immutable ledger entry; amount is signed (+credit / -debit)"""
    id: str
    user_id: str
    amount: int
    transaction_type: Literal["purchase", "usage", "refund", "bonus"]
    reference: str
    description: Optional[str] = None
    package_id: Optional[str] = None
    created_at: str


# ==================== SESSION MODELS ====================

class InitiatedState(BaseModel):
    status: Literal["initiated"] = "initiated"
    start_time: str


class EndedState(BaseModel):
    status: Literal["ended"] = "ended"
    start_time: str
    end_time: str
    duration_seconds: int
    minutes_billed: Optional[int] = None  # None while the claimant is still billing
    cost_cents: int = 0


class AbandonedState(BaseModel):
    status: Literal["abandoned"] = "abandoned"
    start_time: str
    abandoned_at: str
    minutes_billed: Optional[int] = None
    cost_cents: int = 0
    reason: str = "timeout"


SessionState = Annotated[
    Union[InitiatedState, EndedState, AbandonedState],
    Field(discriminator="status")
]

_session_state_adapter = TypeAdapter(SessionState)


class VoiceSession(BaseModel):
    """Persisted voice session document"""
    id: str
    user_id: str
    session_type: Literal["solo", "paired"]
    paired_link_id: Optional[str] = None
    status: Literal["initiated", "ended", "abandoned"]
    start_time: str
    end_time: Optional[str] = None
    duration_seconds: Optional[int] = None
    minutes_billed: Optional[int] = None
    minutes_due: Optional[int] = None
    cost_cents: int = 0
    initial_balance: int
    final_balance: Optional[int] = None
    summary: Optional[str] = None
    user_transcript: Optional[str] = None
    assistant_transcript: Optional[str] = None
    abandoned_at: Optional[str] = None
    abandon_reason: Optional[str] = None

    @property
    def state(self) -> SessionState:
        """Tagged view of the lifecycle state."""
        data = {"status": self.status, "start_time": self.start_time}
        if self.status == "ended":
            data.update(
                end_time=self.end_time,
                duration_seconds=self.duration_seconds or 0,
                minutes_billed=self.minutes_billed,
                cost_cents=self.cost_cents
            )
        elif self.status == "abandoned":
            data.update(
                abandoned_at=self.abandoned_at,
                minutes_billed=self.minutes_billed,
                cost_cents=self.cost_cents,
                reason=self.abandon_reason or "timeout"
            )
        return _session_state_adapter.validate_python(data)

    @property
    def is_terminal(self) -> bool:
        return not isinstance(self.state, InitiatedState)


class StartSessionRequest(BaseModel):
    session_type: Literal["solo", "paired"] = "solo"
    paired_link_id: Optional[str] = None


class StartSessionResult(BaseModel):
    session_id: str
    session_type: str
    minutes_balance: int
    display_name: Optional[str] = None
    partner_name: Optional[str] = None
    status: str = "initiated"


class EndSessionRequest(BaseModel):
    session_id: str
    duration_seconds: Optional[int] = Field(None, description="Elapsed seconds reported by the client")
    summary: Optional[str] = None
    user_transcript: Optional[str] = None
    assistant_transcript: Optional[str] = None


class EndSessionResult(BaseModel):
    session_id: str
    duration_seconds: int
    minutes_billed: int
    cost_cents: int
    new_balance: int
    status: str


class TokenRequest(BaseModel):
    session_id: str


# ==================== PURCHASE MODELS ====================

class MinutePurchase(BaseModel):
    """Checkout record; pending until the webhook credits it"""
    purchase_id: str
    user_id: str
    package_id: str
    minutes: int
    price_cents: int
    status: Literal["pending", "completed", "failed"]
    checkout_session_id: Optional[str] = None
    payment_reference: Optional[str] = None
    created_at: str
    completed_at: Optional[str] = None
    error_message: Optional[str] = None


class PurchaseCreateRequest(BaseModel):
    package_id: str = Field(..., description="Minute package ID")
    return_path: Optional[str] = None


class CheckoutResult(BaseModel):
    purchase_id: str
    package_id: str
    minutes: int
    price_cents: int
    checkout_session_id: str
    checkout_url: str


class WebhookOutcome(BaseModel):
    """What the credit handler did with one delivery"""
    status: Literal["credited", "duplicate", "ignored", "dropped"]
    reference: Optional[str] = None
    user_id: Optional[str] = None
    minutes: int = 0
    reason: Optional[str] = None


# ==================== ADMIN MODELS ====================

class AdminGrantRequest(BaseModel):
    user_id: str
    minutes: int = Field(..., ge=1)
    reason: str = "Admin gift"


class AdminRefundRequest(BaseModel):
    session_id: str
    minutes: Optional[int] = Field(None, ge=1, description="Defaults to everything billed")
    reason: str = "Session refund"


class LedgerPage(BaseModel):
    entries: List[MinuteTransaction]
    count: int
