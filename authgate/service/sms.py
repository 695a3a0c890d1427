from __future__ import annotations

from typing import Optional

import httpx

from authgate.logging import get_logger, sanitize_error_message

logger = get_logger(__name__)


class SmsDeliveryError(Exception):
    """The SMS provider did not accept the message."""


class SmsService:
    """Sends one-time codes through the Twilio Messages REST API.

    Supports:
    - HTTP basic auth with the account SID and auth token
    - A bounded request timeout; delivery is never retried
    - Fallback to logging when not configured (TEST_MODE only)
    """

    def __init__(
        self,
        *,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        api_base_url: str = "https://api.twilio.com/2010-04-01",
        timeout_seconds: float = 10.0,
        allow_dev_fallback: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.allow_dev_fallback = allow_dev_fallback
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    @staticmethod
    def _redact_number(number: str) -> str:
        digits = number.strip()
        if len(digits) <= 4:
            return "***"
        return f"***{digits[-4:]}"

    def _messages_url(self) -> str:
        return f"{self.api_base_url}/Accounts/{self.account_sid}/Messages.json"

    async def send(self, destination: str, text: str) -> None:
        """Deliver ``text`` to ``destination``; raises SmsDeliveryError on failure."""
        if not self.is_configured:
            if not self.allow_dev_fallback:
                raise SmsDeliveryError("SMS provider credentials are not configured")
            logger.info(
                "sms_dev_mode",
                to=self._redact_number(destination),
                length=len(text),
            )
            return

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(
                    self._messages_url(),
                    data={"To": destination, "From": self.from_number, "Body": text},
                    auth=(self.account_sid, self.auth_token),
                )
        except httpx.TimeoutException as exc:
            logger.error(
                "sms_timeout",
                to=self._redact_number(destination),
                timeout=self.timeout_seconds,
            )
            raise SmsDeliveryError("SMS provider timed out") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "sms_transport_error",
                to=self._redact_number(destination),
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise SmsDeliveryError("SMS provider unreachable") from exc

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            provider_code = body.get("code") if isinstance(body, dict) else None
            logger.error(
                "sms_rejected",
                to=self._redact_number(destination),
                status=response.status_code,
                provider_error=provider_code,
            )
            raise SmsDeliveryError(f"SMS provider rejected message ({response.status_code})")

        logger.info("sms_sent", to=self._redact_number(destination))
