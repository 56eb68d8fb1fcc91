"""
Voice Minutes Configuration and Constants

Pricing, default minute packages, realtime provider settings and
session sweep policy are defined here.
Deployment values (keys, timeouts) are read from the environment.
"""

import os

# ==================== BILLING ====================
COST_PER_MINUTE_CENTS = 25  # $0.25 per minute
SECONDS_PER_BILLED_MINUTE = 60

# A session may only start with at least this many minutes available
MIN_MINUTES_TO_START = 1

# ==================== SESSION TYPES / STATES ====================
SESSION_TYPES = ("solo", "paired")

SESSION_STATUS_INITIATED = "initiated"
SESSION_STATUS_ENDED = "ended"
SESSION_STATUS_ABANDONED = "abandoned"


# ==================== TRANSACTION TYPES ====================
TX_PURCHASE = "purchase"
TX_USAGE = "usage"
TX_REFUND = "refund"
TX_BONUS = "bonus"  # Admin grants

CREDIT_TRANSACTION_TYPES = (TX_PURCHASE, TX_REFUND, TX_BONUS)

# ==================== DEFAULT PACKAGES ====================
# Seeded into minute_packages by db_init; the collection is the catalog of record.
DEFAULT_MINUTE_PACKAGES = [
    {
        "id": "minutes_15",
        "name": "Starter",
        "description": "15 minutes of voice conversations",
        "minutes": 15,
        "price_cents": 499,
        "savings_percent": 0,
        "is_popular": False,
        "is_active": True,
        "sort_order": 1
    },
    {
        "id": "minutes_60",
        "name": "Standard",
        "description": "60 minutes of voice conversations",
        "minutes": 60,
        "price_cents": 1499,
        "savings_percent": 25,
        "is_popular": True,
        "is_active": True,
        "sort_order": 2
    },
    {
        "id": "minutes_180",
        "name": "Deep Dive",
        "description": "180 minutes of voice conversations",
        "minutes": 180,
        "price_cents": 3999,
        "savings_percent": 33,
        "is_popular": False,
        "is_active": True,
        "sort_order": 3
    }
]

# ==================== STRIPE ====================
CHECKOUT_METADATA_TYPE = "voice_minutes"
STRIPE_CHECKOUT_COMPLETED_EVENT = "checkout.session.completed"
DEFAULT_RETURN_PATH = "/voice"

# ==================== REALTIME VOICE PROVIDER ====================
REALTIME_API_BASE = "https://api.openai.com/v1"
REALTIME_MODEL = os.environ.get("REALTIME_MODEL", "gpt-4o-realtime-preview-2024-12-17")
REALTIME_VOICE = os.environ.get("REALTIME_VOICE", "alloy")
REALTIME_TIMEOUT_SECONDS = float(os.environ.get("REALTIME_TIMEOUT_SECONDS", "10"))

REALTIME_SESSION_OPTIONS = {
    "modalities": ["text", "audio"],
    "input_audio_format": "pcm16",
    "output_audio_format": "pcm16",
    "input_audio_transcription": {"model": "whisper-1"},
    "turn_detection": {
        "type": "server_vad",
        "threshold": 0.5,
        "prefix_padding_ms": 300,
        "silence_duration_ms": 1000
    },
    "temperature": 0.8,
    "max_response_output_tokens": 500
}

SOLO_VOICE_PROMPT = """You are Luna, a warm relationship and emotional wellness companion speaking via voice.

VOICE MODE:
- Keep responses short and conversational (2-4 sentences per turn)
- Ask one question at a time, then wait for the answer
- Acknowledge what you heard before responding

WHAT YOU DO:
1. Validate feelings first
2. Help name emotions
3. Offer frameworks and choices, not commands

SAFETY:
If the user mentions self-harm, abuse or danger, validate their pain and encourage
real-world help. In the US they can call or text 988. You are not a crisis service.

AVOID diagnosing, medical or legal advice, and long monologues."""

PAIRED_VOICE_PROMPT = """You are Luna, a relationship companion speaking with BOTH PARTNERS of a couple on one voice call.

COUPLES SESSION:
- Address both partners by name and give them equal attention
- When one speaks, acknowledge them, then invite the other's perspective
- Help them talk to each other, not only to you
- Never take sides in a disagreement

VOICE MODE:
- Keep responses short (2-4 sentences)
- Ask one question at a time, often directed at a specific partner

SAFETY:
If either partner mentions self-harm, abuse or danger, validate their pain and encourage
real-world help. In the US they can call or text 988."""

# ==================== NOTIFICATIONS ====================
NOTIFICATION_TIMEOUT_SECONDS = float(os.environ.get("NOTIFICATION_TIMEOUT_SECONDS", "10"))

# ==================== ABANDONED SESSION SWEEP ====================
SESSION_ABANDON_AFTER_MINUTES = int(os.environ.get("SESSION_ABANDON_AFTER_MINUTES", "120"))
ABANDONED_SESSION_BILL_MINUTES = int(os.environ.get("ABANDONED_SESSION_BILL_MINUTES", "0"))
SWEEP_INTERVAL_MINUTES = int(os.environ.get("SWEEP_INTERVAL_MINUTES", "5"))

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "INSUFFICIENT_MINUTES": "You need voice minutes to start a session. Add more minutes to continue.",
    "INVALID_PAIRING": "Invalid or inactive partner link.",
    "INVALID_PACKAGE": "Package not found or inactive.",
    "INVALID_REQUEST": "The request could not be processed.",
    "FORBIDDEN": "You are not allowed to access this resource.",
    "SESSION_NOT_FOUND": "Voice session not found.",
    "PURCHASE_NOT_FOUND": "Purchase not found.",
    "PROVIDER_UNAVAILABLE": "A required service is temporarily unavailable. Please try again.",
    "DUPLICATE_CREDIT": "This payment reference has already been credited."
}
