"""
Stripe Webhook Credit Handler

Credits minutes for confirmed checkout payments.

Delivery is at-least-once and unordered, so crediting is idempotent on the
payment reference (PaymentIntent id, falling back to the Checkout Session
id): the ledger is checked first, and its unique (reference, type) index
rejects any duplicate that races past the check. A delivery that failed
halfway leaves a pending ledger entry that the next delivery completes.

Malformed events are logged and dropped, never guessed at, and still
acknowledged so Stripe stops redelivering data that cannot self-correct.
"""

import os
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

import stripe

from utils.environment import is_production

from .balance_store import BalanceStore
from .config import CHECKOUT_METADATA_TYPE, STRIPE_CHECKOUT_COMPLETED_EVENT, TX_PURCHASE
from .errors import DuplicateCredit, ProviderUnavailable, ValidationError
from .models import WebhookOutcome
from .notifications import fire_and_forget

logger = logging.getLogger(__name__)

CONFIRMATION_EVENTS = (
    STRIPE_CHECKOUT_COMPLETED_EVENT,
    "checkout.session.async_payment_succeeded"
)


class WebhookCreditHandler:
    """Handle Stripe payment confirmations"""

    def __init__(self, db, balance_store: Optional[BalanceStore] = None, notifier=None,
                 webhook_secret: Optional[str] = None):
        self.db = db
        self.balance_store = balance_store or BalanceStore(db)
        self.notifier = notifier
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None
            else os.environ.get("STRIPE_WEBHOOK_SECRET", "")
        )

    def verify(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify the Stripe signature and parse the event.

        Raises:
            ValidationError: bad payload or signature
            ProviderUnavailable: no webhook secret in production
        """
        if not self.webhook_secret:
            if is_production():
                logger.error("STRIPE_WEBHOOK_SECRET not configured")
                raise ProviderUnavailable("stripe", "Stripe webhook not configured")
            logger.warning("STRIPE_WEBHOOK_SECRET not configured, skipping signature verification")
        else:
            try:
                stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
            except ValueError as e:
                logger.error(f"Invalid payload: {e}")
                raise ValidationError("Invalid payload")
            except stripe.SignatureVerificationError as e:
                logger.error(f"Invalid signature: {e}")
                raise ValidationError("Invalid signature")

        try:
            return json.loads(payload)
        except ValueError:
            logger.error("Failed to parse webhook body")
            raise ValidationError("Invalid payload")

    async def on_payment_confirmed(self, event: Dict[str, Any]) -> WebhookOutcome:
        """Credit the wallet for one delivery of a payment-confirmed event."""
        event_type = event.get("type")
        if event_type not in CONFIRMATION_EVENTS:
            logger.info(f"Unhandled event type: {event_type}")
            return WebhookOutcome(status="ignored", reason=f"event type {event_type}")

        checkout = (event.get("data") or {}).get("object") or {}
        return await self.credit_checkout(checkout, event_id=event.get("id"))

    async def credit_checkout(self, checkout: Dict[str, Any], event_id: Optional[str] = None) -> WebhookOutcome:
        """
        Credit a paid minutes checkout exactly once.

        Shared by webhook delivery and the client-side verify call; both
        key the credit on the same payment reference, so whichever lands
        second reports a duplicate.
        """
        metadata = checkout.get("metadata") or {}

        if metadata.get("type") != CHECKOUT_METADATA_TYPE:
            logger.info("Not a minutes purchase, skipping")
            return WebhookOutcome(status="ignored", reason="not a minutes purchase")

        if checkout.get("payment_status") not in (None, "paid", "no_payment_required"):
            logger.info(f"Checkout {checkout.get('id')} not paid yet ({checkout.get('payment_status')})")
            return WebhookOutcome(status="ignored", reason="payment not completed")

        user_id = metadata.get("user_id")
        reference = checkout.get("payment_intent") or checkout.get("id")
        try:
            minutes = int(metadata.get("minutes") or 0)
        except (TypeError, ValueError):
            minutes = 0

        if not user_id or minutes <= 0 or not reference:
            logger.error(
                f"Dropping malformed minutes purchase {event_id or checkout.get('id')}: "
                f"user={user_id!r} minutes={metadata.get('minutes')!r} reference={reference!r}"
            )
            return WebhookOutcome(status="dropped", reference=reference, user_id=user_id,
                                  reason="missing or invalid metadata")

        package_id = metadata.get("package_id")

        # A pending (unapplied) entry is not a duplicate: credit() completes it
        if await self.balance_store.ledger.exists(reference, TX_PURCHASE):
            logger.info(f"Payment {reference} already credited, skipping")
            await self._complete_purchase(metadata, checkout, reference)
            return WebhookOutcome(status="duplicate", reference=reference, user_id=user_id, minutes=minutes)

        try:
            balance = await self.balance_store.credit(
                user_id,
                minutes,
                reference=reference,
                transaction_type=TX_PURCHASE,
                description=f"Purchased {minutes} voice minutes",
                package_id=package_id
            )
        except DuplicateCredit:
            logger.info(f"Payment {reference} credited by a concurrent delivery")
            await self._complete_purchase(metadata, checkout, reference)
            return WebhookOutcome(status="duplicate", reference=reference, user_id=user_id, minutes=minutes)
        except Exception as e:
            logger.error(
                f"Failed to credit purchase user={user_id} amount={minutes} reference={reference}: {e}"
            )
            raise

        await self._complete_purchase(metadata, checkout, reference)

        if self.notifier:
            fire_and_forget(self.notifier.minutes_credited(user_id, minutes, balance))

        logger.info(f"Minutes added successfully: user={user_id} minutes={minutes} reference={reference}")
        return WebhookOutcome(status="credited", reference=reference, user_id=user_id, minutes=minutes)

    async def _complete_purchase(self, metadata: Dict[str, Any], checkout: Dict[str, Any], reference: str):
        purchase_id = metadata.get("purchase_id") or checkout.get("client_reference_id")
        if purchase_id:
            query = {"purchase_id": purchase_id}
        elif checkout.get("id"):
            query = {"checkout_session_id": checkout["id"]}
        else:
            return

        await self.db.minute_purchases.update_one(
            {**query, "status": {"$ne": "completed"}},
            {
                "$set": {
                    "status": "completed",
                    "payment_reference": reference,
                    "completed_at": datetime.now(timezone.utc).isoformat()
                }
            }
        )
