"""
Realtime Voice Token Issuer

Requests a short-lived client credential from the realtime voice provider
for an already started session. The credential goes straight back to the
client; nothing secret is stored server-side.

Required Environment Variables:
- OPENAI_API_KEY
"""

import os
import logging
from typing import Optional, Dict, Any

import httpx

from .config import (
    REALTIME_API_BASE,
    REALTIME_MODEL,
    REALTIME_VOICE,
    REALTIME_TIMEOUT_SECONDS,
    REALTIME_SESSION_OPTIONS,
    SOLO_VOICE_PROMPT,
    PAIRED_VOICE_PROMPT
)
from .errors import ProviderUnavailable

logger = logging.getLogger(__name__)

PROVIDER_NAME = "realtime_voice"


def build_prompt(
    session_type: str,
    display_name: Optional[str] = None,
    partner_name: Optional[str] = None
) -> str:
    """Persona instructions, personalised with the participants' names."""
    if session_type == "paired" and display_name and partner_name:
        return (
            f"{PAIRED_VOICE_PROMPT}\n\n"
            f"COUPLE ON THIS CALL: {display_name} and {partner_name}\n"
            f"Start by warmly greeting both {display_name} and {partner_name}."
        )

    prompt = SOLO_VOICE_PROMPT
    if display_name:
        prompt += (
            f"\n\nThe user's name is {display_name}. "
            "Use their name occasionally to create warmth and connection."
        )
    return prompt


class RealtimeTokenIssuer:
    """Bridge to the realtime voice provider's ephemeral session endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = REALTIME_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = api_key if api_key is not None else os.environ.get("OPENAI_API_KEY", "")
        self.timeout = timeout
        self.transport = transport

    async def create_ephemeral_session(
        self,
        session_id: str,
        session_type: str,
        display_name: Optional[str] = None,
        partner_name: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Ask the provider for a client credential.

        Returns:
            {"session_id", "session_type", "provider": the provider payload verbatim}

        Raises:
            ProviderUnavailable: missing key, timeout, transport error or non-2xx
        """
        if not self.api_key:
            logger.error("OPENAI_API_KEY not configured")
            raise ProviderUnavailable(PROVIDER_NAME, "Realtime voice provider is not configured")

        body = {
            "model": REALTIME_MODEL,
            "voice": REALTIME_VOICE,
            "instructions": build_prompt(session_type, display_name, partner_name),
            **REALTIME_SESSION_OPTIONS
        }

        logger.info(f"Creating ephemeral realtime session for {session_id} (type={session_type})")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{REALTIME_API_BASE}/realtime/sessions",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json"
                    },
                    json=body
                )
        except httpx.HTTPError as e:
            logger.error(f"Realtime provider request failed for session {session_id}: {e!r}")
            raise ProviderUnavailable(PROVIDER_NAME)

        if response.status_code not in [200, 201]:
            logger.error(
                f"Realtime provider error for session {session_id}: "
                f"{response.status_code} {response.text[:500]}"
            )
            raise ProviderUnavailable(PROVIDER_NAME)

        try:
            payload = response.json()
        except ValueError:
            logger.error(f"Realtime provider returned non-JSON body for session {session_id}")
            raise ProviderUnavailable(PROVIDER_NAME)

        return {"session_id": session_id, "session_type": session_type, "provider": payload}
