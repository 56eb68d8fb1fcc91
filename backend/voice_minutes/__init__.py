"""
Voice Minutes Module
Prepaid, minute-metered access to realtime voice sessions

This module provides:
- Minutes wallet management (balance + lifetime counters)
- Immutable transaction ledger with per-reference idempotency
- Session lifecycle: start gating, ephemeral realtime credentials, billing on end
- Stripe Checkout for minute packages, credited by webhook
- Background sweep that closes abandoned sessions

Collections used:
- minute_wallets: User minute balances
- minute_transactions: Immutable transaction log
- minute_packages: Purchasable packages
- minute_purchases: Checkout records
- voice_sessions: Session state and billing
"""

__version__ = "1.0.0"
