"""
Minutes Notifications using Resend

Informs users of balance-affecting events. Fire-and-forget: callers
schedule notifications in the background, and a failure here is logged
and never rolls back the credit or debit that caused it.
"""

import os
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Set

import resend

from .config import NOTIFICATION_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

# Strong references so pending notifications are not garbage collected mid-send
_pending: Set[asyncio.Task] = set()


def fire_and_forget(coro) -> asyncio.Task:
    """Run a notification in the background without delaying the response."""
    task = asyncio.create_task(coro)
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def drain_pending() -> None:
    """Wait for notifications scheduled on the running loop (shutdown and tests)."""
    loop = asyncio.get_running_loop()
    tasks = [task for task in _pending if task.get_loop() is loop]
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


EMAIL_TEMPLATES = {
    "minutes_credited": {
        "subject": "Your {{minutes}} voice minutes are ready",
        "enabled": True,
        "html": """
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
            <h2>Hi {{name}},</h2>
            <p>Thanks for your purchase! <strong>{{minutes}} minutes</strong> were added to your wallet.</p>
            <p>Your balance is now <strong>{{balance}} minutes</strong>.</p>
            <p><a href="{{voice_url}}">Start a voice session</a></p>
        </div>
        """
    },
    "balance_depleted": {
        "subject": "You're out of voice minutes",
        "enabled": True,
        "html": """
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
            <h2>Hi {{name}},</h2>
            <p>Your last voice session used up your remaining minutes.</p>
            <p><a href="{{voice_url}}">Add more minutes</a> whenever you're ready to talk again.</p>
        </div>
        """
    }
}


class MinutesNotifier:
    """Email notifications for wallet events"""

    def __init__(self, db):
        self.db = db
        self.api_key = os.environ.get("RESEND_API_KEY")
        self.sender_email = os.environ.get("SENDER_EMAIL", "onboarding@resend.dev")
        self.base_url = os.environ.get("PUBLIC_APP_URL", "http://localhost:3000")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _replace_variables(self, template: str, variables: dict) -> str:
        result = template
        for key, value in variables.items():
            result = result.replace(f"{{{{{key}}}}}", str(value))
        return result

    async def _get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.users.find_one({"id": user_id}, {"_id": 0, "email": 1, "name": 1})

    async def send_email(self, to_email: str, template_name: str, variables: dict) -> dict:
        """Send email using a template"""
        if not self.enabled:
            logger.debug("Email notifications not configured - skipping email")
            return {"status": "skipped", "reason": "Email service not configured"}

        template = EMAIL_TEMPLATES.get(template_name)
        if not template:
            return {"status": "error", "reason": f"Template '{template_name}' not found"}

        if not template.get("enabled", True):
            return {"status": "skipped", "reason": "Template disabled"}

        variables.setdefault("voice_url", f"{self.base_url}/voice")

        subject = self._replace_variables(template["subject"], variables)
        html = self._replace_variables(template["html"], variables)

        resend.api_key = self.api_key
        params = {
            "from": self.sender_email,
            "to": [to_email],
            "subject": subject,
            "html": html
        }

        email_result = await asyncio.wait_for(
            asyncio.to_thread(resend.Emails.send, params),
            timeout=NOTIFICATION_TIMEOUT_SECONDS
        )

        await self.db.email_logs.insert_one({
            "to": to_email,
            "template": template_name,
            "subject": subject,
            "status": "sent",
            "email_id": email_result.get("id"),
            "sent_at": datetime.now(timezone.utc).isoformat()
        })

        return {"status": "success", "email_id": email_result.get("id")}

    async def _notify(self, user_id: str, template_name: str, variables: dict) -> dict:
        try:
            user = await self._get_user(user_id)
            if not user or not user.get("email"):
                return {"status": "skipped", "reason": "No email on file"}

            variables.setdefault("name", user.get("name") or user["email"].split("@")[0])
            return await self.send_email(user["email"], template_name, variables)
        except asyncio.TimeoutError:
            logger.error(
                f"Notification '{template_name}' for user {user_id} timed out after {NOTIFICATION_TIMEOUT_SECONDS}s"
            )
            return {"status": "error", "reason": "timeout"}
        except Exception as e:
            logger.error(f"Notification '{template_name}' failed for user {user_id}: {e}")
            return {"status": "error", "reason": str(e)}

    async def minutes_credited(self, user_id: str, minutes: int, balance: int) -> dict:
        return await self._notify(user_id, "minutes_credited", {"minutes": minutes, "balance": balance})

    async def balance_depleted(self, user_id: str) -> dict:
        return await self._notify(user_id, "balance_depleted", {})
