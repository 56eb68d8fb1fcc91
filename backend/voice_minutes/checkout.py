"""
Minutes Checkout

Lists the package catalog and starts Stripe Checkout for a package.
Checkout never touches the wallet: minutes are credited only when the
payment is confirmed, by the Stripe webhook or by verify_checkout()
when the user returns from Checkout. Until then the purchase record
stays `pending`.

Required Environment Variables:
- STRIPE_SECRET_KEY
- PUBLIC_APP_URL
"""

import os
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

import stripe

from .config import CHECKOUT_METADATA_TYPE, DEFAULT_RETURN_PATH
from .errors import InvalidPackage, ProviderUnavailable, PurchaseNotFound, ValidationError
from .models import MinutePackage, MinutePurchase, CheckoutResult
from .webhook import WebhookCreditHandler

logger = logging.getLogger(__name__)


class CheckoutService:
    """Stripe Checkout for minute packages."""

    def __init__(self, db, api_key: Optional[str] = None):
        self.db = db
        self.api_key = api_key if api_key is not None else os.environ.get("STRIPE_SECRET_KEY", "")
        self.base_url = os.environ.get("PUBLIC_APP_URL", "http://localhost:3000").rstrip("/")

    async def list_packages(self) -> List[MinutePackage]:
        """Active packages in display order."""
        cursor = self.db.minute_packages.find({"is_active": True}, {"_id": 0}).sort("sort_order", 1)
        return [MinutePackage(**doc) for doc in await cursor.to_list(length=100)]

    async def get_package(self, package_id: str) -> MinutePackage:
        doc = await self.db.minute_packages.find_one({"id": package_id, "is_active": True}, {"_id": 0})
        if not doc:
            raise InvalidPackage(package_id=package_id)
        return MinutePackage(**doc)

    async def initiate_checkout(
        self,
        user_id: str,
        package_id: str,
        return_path: Optional[str] = None
    ) -> CheckoutResult:
        """
        Create a Stripe Checkout Session for a package.

        Flow:
        1. Validate the package
        2. Record a pending purchase
        3. Create the Checkout Session with the purchase tagged in metadata
        4. Return the redirect URL

        Raises:
            InvalidPackage: unknown or inactive package
            ProviderUnavailable: Stripe not configured or request failed
        """
        package = await self.get_package(package_id)

        if not self.api_key:
            logger.error("STRIPE_SECRET_KEY is not configured")
            raise ProviderUnavailable("stripe", "Payments are not configured")

        now = datetime.now(timezone.utc)
        purchase_id = str(uuid.uuid4())
        path = return_path or DEFAULT_RETURN_PATH

        purchase_doc = {
            "purchase_id": purchase_id,
            "user_id": user_id,
            "package_id": package.id,
            "minutes": package.minutes,
            "price_cents": package.price_cents,
            "status": "pending",
            "created_at": now.isoformat()
        }
        await self.db.minute_purchases.insert_one(purchase_doc)

        user = await self.db.users.find_one({"id": user_id}, {"_id": 0, "email": 1}) or {}

        params = {
            "mode": "payment",
            "line_items": [{
                "price_data": {
                    "currency": "usd",
                    "product_data": {
                        "name": f"Voice Minutes - {package.name}",
                        "description": f"{package.minutes} minutes of voice conversations"
                    },
                    "unit_amount": package.price_cents
                },
                "quantity": 1
            }],
            "success_url": f"{self.base_url}{path}?purchase=success&purchase_id={purchase_id}",
            "cancel_url": f"{self.base_url}{path}?purchase=cancelled",
            "client_reference_id": purchase_id,
            "metadata": {
                "user_id": user_id,
                "package_id": package.id,
                "minutes": str(package.minutes),
                "purchase_id": purchase_id,
                "type": CHECKOUT_METADATA_TYPE
            }
        }
        if user.get("email"):
            params["customer_email"] = user["email"]

        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=self.api_key,
                idempotency_key=purchase_id,
                **params
            )
        except stripe.StripeError as e:
            await self.db.minute_purchases.update_one(
                {"purchase_id": purchase_id},
                {"$set": {"status": "failed", "error_message": str(e)}}
            )
            logger.error(f"Stripe checkout creation failed for user {user_id} package {package.id}: {e}")
            raise ProviderUnavailable("stripe", "Failed to start checkout")

        await self.db.minute_purchases.update_one(
            {"purchase_id": purchase_id},
            {"$set": {"checkout_session_id": session["id"]}}
        )

        logger.info(f"Checkout session {session['id']} created for user {user_id} (package={package.id})")

        return CheckoutResult(
            purchase_id=purchase_id,
            package_id=package.id,
            minutes=package.minutes,
            price_cents=package.price_cents,
            checkout_session_id=session["id"],
            checkout_url=session["url"]
        )

    async def get_purchase(self, user_id: str, purchase_id: str) -> MinutePurchase:
        purchase = await self.db.minute_purchases.find_one(
            {"purchase_id": purchase_id, "user_id": user_id},
            {"_id": 0}
        )
        if not purchase:
            raise PurchaseNotFound()
        return MinutePurchase(**purchase)

    async def verify_checkout(
        self,
        user_id: str,
        purchase_id: str,
        credit_handler: Optional[WebhookCreditHandler] = None
    ) -> MinutePurchase:
        """
        Confirm a purchase with Stripe when the user returns from Checkout.

        Covers a webhook that is late or never arrives. The credit goes
        through the webhook's own path and payment reference, so the two
        together credit the purchase exactly once. An unpaid session
        leaves the purchase pending.

        Raises:
            PurchaseNotFound: unknown purchase or not the caller's
            ValidationError: the Stripe session belongs to another purchase
            ProviderUnavailable: Stripe not configured or request failed
        """
        purchase = await self.get_purchase(user_id, purchase_id)
        if purchase.status == "completed" or not purchase.checkout_session_id:
            return purchase

        if not self.api_key:
            logger.error("STRIPE_SECRET_KEY is not configured")
            raise ProviderUnavailable("stripe", "Payments are not configured")

        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.retrieve,
                purchase.checkout_session_id,
                api_key=self.api_key
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout lookup failed for purchase {purchase_id}: {e}")
            raise ProviderUnavailable("stripe", "Failed to verify checkout")

        checkout = _as_dict(session)
        metadata = checkout.get("metadata") or {}
        if metadata.get("purchase_id") != purchase_id or metadata.get("user_id") != user_id:
            logger.error(
                f"Checkout {purchase.checkout_session_id} metadata does not match purchase {purchase_id}"
            )
            raise ValidationError("Checkout session does not match this purchase")

        handler = credit_handler or WebhookCreditHandler(self.db)
        outcome = await handler.credit_checkout(checkout)
        logger.info(f"Verified purchase {purchase_id}: {outcome.status} ({outcome.reason or 'ok'})")

        return await self.get_purchase(user_id, purchase_id)

    async def purchase_counts(self) -> Dict[str, int]:
        rows = await self.db.minute_purchases.aggregate([
            {"$group": {"_id": "$status", "count": {"$sum": 1}}}
        ]).to_list(10)
        return {row["_id"]: row["count"] for row in rows}


def _as_dict(stripe_object: Any) -> Dict[str, Any]:
    if isinstance(stripe_object, dict):
        return stripe_object
    if hasattr(stripe_object, "to_dict_recursive"):
        return stripe_object.to_dict_recursive()
    if hasattr(stripe_object, "to_dict"):
        return stripe_object.to_dict()
    return dict(stripe_object)
