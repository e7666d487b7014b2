"""
Twilio Programmable Messaging client used for reminders, confirmations and
on-the-way notifications.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import aiohttp
import structlog
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http import AsyncHttpClient
from twilio.http.async_http_client import AsyncTwilioHttpClient
from twilio.rest import Client as TwilioClient

from leadline.config import Settings
from leadline.errors import ConfigurationError, UpstreamUnavailable

log = structlog.get_logger(__name__)


class SmsClient:
    """Non-blocking wrapper around ``twilio.rest.Client`` with an async HTTP client."""

    def __init__(self, settings: Settings, http_client: Optional[AsyncHttpClient] = None):
        self.settings = settings
        self._http = http_client
        self._twilio: Optional[TwilioClient] = None

    @property
    def configured(self) -> bool:
        return self.settings.sms_configured

    async def _client(self) -> TwilioClient:
        if not self.configured:
            raise ConfigurationError("SMS gateway is not configured")
        if self._twilio is None:
            if self._http is None:
                self._http = AsyncTwilioHttpClient(timeout=self.settings.http_timeout_seconds)
            self._twilio = TwilioClient(
                self.settings.twilio_account_sid,
                self.settings.twilio_auth_token,
                http_client=self._http,
            )
        return self._twilio

    async def close(self) -> None:
        if self._http is not None:
            await self._http.close()
        self._twilio = None
        self._http = None

    async def send(self, to: str, body: str, from_number: Optional[str] = None) -> str:
        """Send one SMS. Returns the provider message SID."""
        client = await self._client()

        sender = from_number or self.settings.twilio_sms_from_number
        if sender:
            route = {"from_": sender}
        elif self.settings.twilio_messaging_service_sid:
            route = {"messaging_service_sid": self.settings.twilio_messaging_service_sid}
        else:
            raise ConfigurationError("No SMS sender number or messaging service configured")

        try:
            message = await client.messages.create_async(to=to, body=body, **route)
        except TwilioRestException as e:
            log.error("sms_send_rejected", to=to, status=e.status, code=e.code, detail=str(e.msg)[:200])
            raise UpstreamUnavailable(f"SMS gateway rejected message ({e.status})") from e
        except (TwilioException, aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.error("sms_send_failed", to=to, error=str(e) or type(e).__name__)
            raise UpstreamUnavailable(f"SMS gateway request failed: {type(e).__name__}") from e

        sid = message.sid or ""
        log.info("sms_sent", to=to, sid=sid)
        return sid
