"""
Voice Minutes Errors

Services raise these; the API layer maps them onto HTTP responses.
A debit that would go negative is not an error: it is clamped and logged.
"""

from typing import Optional

from .config import ERROR_CODES


class VoiceMinutesError(Exception):
    """Base error carrying a stable code and an HTTP status."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: Optional[str] = None, **details):
        self.message = message or ERROR_CODES.get(self.code, self.code)
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.details}


# ==================== VALIDATION ====================

class ValidationError(VoiceMinutesError):
    status_code = 400
    code = "INVALID_REQUEST"


class InvalidPackage(ValidationError):
    code = "INVALID_PACKAGE"


class InvalidPairing(ValidationError):
    code = "INVALID_PAIRING"


# ==================== AUTHORIZATION ====================

class AuthorizationError(VoiceMinutesError):
    status_code = 403
    code = "FORBIDDEN"


class Forbidden(AuthorizationError):
    pass


# ==================== LOOKUPS ====================

class SessionNotFound(VoiceMinutesError):
    status_code = 404
    code = "SESSION_NOT_FOUND"


class PurchaseNotFound(VoiceMinutesError):
    status_code = 404
    code = "PURCHASE_NOT_FOUND"


# ==================== BUSINESS CONDITIONS ====================

class InsufficientMinutes(VoiceMinutesError):
    """Expected condition; the UI turns this into a purchase prompt."""

    status_code = 402
    code = "INSUFFICIENT_MINUTES"

    def __init__(self, minutes_balance: int = 0, message: Optional[str] = None):
        self.minutes_balance = minutes_balance
        super().__init__(message, minutes_balance=minutes_balance)


class DuplicateCredit(VoiceMinutesError):
    """A ledger entry with this (reference, type) already exists."""

    status_code = 409
    code = "DUPLICATE_CREDIT"

    def __init__(self, reference: str, transaction_type: str):
        self.reference = reference
        self.transaction_type = transaction_type
        super().__init__(reference=reference, transaction_type=transaction_type)


# ==================== EXTERNAL SERVICES ====================

class ProviderUnavailable(VoiceMinutesError):
    """External provider failed; retried by the UI, never internally."""

    status_code = 503
    code = "PROVIDER_UNAVAILABLE"

    def __init__(self, provider: str, message: Optional[str] = None):
        self.provider = provider
        super().__init__(message, provider=provider)
