"""
Unit Tests for the Realtime Token Issuer

The provider is replaced with httpx.MockTransport.
"""

import json

import httpx
import pytest

from voice_minutes.config import REALTIME_MODEL
from voice_minutes.errors import ProviderUnavailable
from voice_minutes.realtime_token import RealtimeTokenIssuer, build_prompt


class TestBuildPrompt:

    def test_solo_prompt_uses_name(self):
        prompt = build_prompt("solo", "Alex")
        assert "The user's name is Alex" in prompt

    def test_solo_prompt_without_name(self):
        assert "name is" not in build_prompt("solo")

    def test_paired_prompt_names_both_partners(self):
        prompt = build_prompt("paired", "Alex", "Sam")
        assert "BOTH PARTNERS" in prompt
        assert "Alex and Sam" in prompt

    def test_paired_without_partner_falls_back_to_solo(self):
        assert "BOTH PARTNERS" not in build_prompt("paired", "Alex", None)


class TestRealtimeTokenIssuer:

    @pytest.mark.asyncio
    async def test_returns_provider_payload(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "sess_abc", "client_secret": {"value": "ek_123"}})

        issuer = RealtimeTokenIssuer(api_key="sk-test", transport=httpx.MockTransport(handler))
        payload = await issuer.create_ephemeral_session("s-1", "solo", display_name="Alex")

        assert payload["provider"]["client_secret"]["value"] == "ek_123"
        assert payload["provider"]["id"] == "sess_abc"
        assert payload["session_id"] == "s-1"
        assert payload["session_type"] == "solo"
        assert seen["url"].endswith("/realtime/sessions")
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["model"] == REALTIME_MODEL
        assert "Alex" in seen["body"]["instructions"]

    @pytest.mark.asyncio
    async def test_missing_key(self):
        issuer = RealtimeTokenIssuer(api_key="")

        with pytest.raises(ProviderUnavailable) as exc:
            await issuer.create_ephemeral_session("s-1", "solo")
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_provider_error_status(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
        issuer = RealtimeTokenIssuer(api_key="sk-test", transport=transport)

        with pytest.raises(ProviderUnavailable):
            await issuer.create_ephemeral_session("s-1", "solo")

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        issuer = RealtimeTokenIssuer(api_key="sk-test", transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderUnavailable) as exc:
            await issuer.create_ephemeral_session("s-1", "solo")
        assert exc.value.provider == "realtime_voice"

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
        issuer = RealtimeTokenIssuer(api_key="sk-test", transport=transport)

        with pytest.raises(ProviderUnavailable):
            await issuer.create_ephemeral_session("s-1", "solo")
