from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from phone_otp.core.config import settings
from phone_otp.core.exceptions import SmsDeliveryFailed, SmsUnconfigured
from phone_otp.services.phone import mask_phone

logger = logging.getLogger(__name__)


def build_login_message(code: str, *, ttl_seconds: Optional[int] = None, product_name: Optional[str] = None) -> str:
    """Fixed-format login SMS: product, code, validity window, do-not-share warning."""
    ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.OTP_CODE_TTL_SECONDS
    product_name = product_name or settings.SMS_PRODUCT_NAME
    minutes = max(ttl_seconds // 60, 1)
    return (
        f"【{product_name}】認証コード: {code}\n\n"
        f"※{minutes}分間有効です。第三者には絶対に教えないでください。"
    )


class SMSProvider:
    async def send(self, to: str, body: str) -> None:
        raise NotImplementedError


@dataclass
class ConsoleSMSProvider(SMSProvider):
    async def send(self, to: str, body: str) -> None:
        masked = mask_phone(to)
        logger.info(f"[SMS:console] Send login message to {masked}")
        logger.debug(f"[SMS:console] {masked} <= {body}")


@dataclass
class UnconfiguredSMSProvider(SMSProvider):
    """Stands in when no real provider may deliver; every send reports it."""

    detail: str = "No SMS provider configured"

    async def send(self, to: str, body: str) -> None:
        raise SmsUnconfigured(self.detail)


@dataclass
class TwilioSMSProvider(SMSProvider):
    account_sid: Optional[str]
    auth_token: Optional[str]
    from_number: Optional[str]
    timeout: float = 10.0
    api_base_url: str = "https://api.twilio.com"
    # Only used by the direct HTTP path; tests inject a mock transport here
    http_transport: Optional[httpx.AsyncBaseTransport] = None
    _client: Any = field(default=None, init=False, repr=False)
    _sdk_unavailable: bool = field(default=False, init=False, repr=False)

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def _create_client(self) -> Any:
        # Imported here so a missing or broken SDK falls back to the HTTP API
        from twilio.http.http_client import TwilioHttpClient
        from twilio.rest import Client as TwilioClient

        return TwilioClient(
            self.account_sid,
            self.auth_token,
            http_client=TwilioHttpClient(timeout=self.timeout),
        )

    def _sdk_client(self) -> Any:
        if self._client is None and not self._sdk_unavailable:
            try:
                self._client = self._create_client()
            except Exception:
                logger.exception("Twilio SDK initialization failed, using direct HTTP API")
                self._sdk_unavailable = True
        return self._client

    async def send(self, to: str, body: str) -> None:
        if not self.configured:
            raise SmsUnconfigured("Twilio credentials or source number missing")
        client = self._sdk_client()
        if client is not None:
            await self._send_with_sdk(client, to, body)
        else:
            await self._send_direct(to, body)

    async def _send_with_sdk(self, client: Any, to: str, body: str) -> None:
        from twilio.base.exceptions import TwilioRestException

        masked = mask_phone(to)
        try:
            message = await asyncio.to_thread(
                client.messages.create,
                body=body,
                from_=self.from_number,
                to=to,
            )
        except TwilioRestException as e:
            logger.error(f"Twilio SMS failed for {masked}: Status={e.status}, Code={e.code}, Message={e.msg}")
            raise SmsDeliveryFailed("Twilio rejected the message", status_code=e.status, detail=str(e.msg)) from e
        except Exception as e:
            logger.exception(f"Twilio SDK error for {masked}")
            raise SmsDeliveryFailed("Twilio SDK error", detail=str(e)) from e
        logger.info(f"[SMS:twilio] Queued message {message.sid} to {masked} (status={message.status})")

    async def _send_direct(self, to: str, body: str) -> None:
        masked = mask_phone(to)
        url = f"{self.api_base_url.rstrip('/')}/2010-04-01/Accounts/{self.account_sid}/Messages.json"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.http_transport) as client:
                resp = await client.post(
                    url,
                    auth=(self.account_sid, self.auth_token),
                    data={"From": self.from_number, "To": to, "Body": body},
                )
        except httpx.HTTPError as e:
            logger.exception(f"Twilio HTTP API unreachable for {masked}")
            raise SmsDeliveryFailed("Twilio HTTP API unreachable", detail=str(e)) from e
        if resp.status_code >= 400:
            logger.error(f"Twilio HTTP API error for {masked}: Status={resp.status_code}, Body={resp.text}")
            raise SmsDeliveryFailed("Twilio HTTP API error", status_code=resp.status_code, detail=resp.text)
        data = resp.json()
        logger.info(f"[SMS:twilio-http] Queued message {data.get('sid')} to {masked} (status={data.get('status')})")


def get_sms_provider() -> SMSProvider:
    provider = settings.SMS_PROVIDER

    if provider == "twilio":
        if not settings.sms_configured:
            # Keep the Twilio provider so sends report the missing configuration
            logger.error("Twilio SMS configuration incomplete. Sends will fail as unconfigured.")
        return TwilioSMSProvider(
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            from_number=settings.TWILIO_PHONE_NUMBER,
            timeout=settings.SMS_TIMEOUT_SECONDS,
            api_base_url=settings.TWILIO_API_BASE_URL,
        )

    if settings.ENVIRONMENT != "local":
        # Console output reaches nobody outside local development
        logger.error(f"SMS_PROVIDER=console is not allowed in {settings.ENVIRONMENT}. Sends will fail as unconfigured.")
        return UnconfiguredSMSProvider(f"Console SMS provider is disabled in {settings.ENVIRONMENT}")

    return ConsoleSMSProvider()
