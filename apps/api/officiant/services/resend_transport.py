"""Secondary delivery transport through the Resend HTTP API."""

from __future__ import annotations

import logging

import httpx

from officiant.core.config import settings
from officiant.db.enums import EmailTransport
from officiant.services.email_errors import DeliveryConfigError, DeliveryTransientError
from officiant.services.email_transport import OutboundEmail

logger = logging.getLogger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"
RETRY_STATUSES = {429, 500, 502, 503, 504}


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)[:200]
    return str(data)[:200]


class ResendTransport:
    name = EmailTransport.RESEND

    def __init__(
        self,
        *,
        api_key: str,
        from_address: str,
        timeout: float = 10.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.from_address = from_address
        self.timeout = timeout
        self._http_transport = http_transport

    @classmethod
    def from_settings(cls) -> "ResendTransport":
        return cls(
            api_key=settings.RESEND_API_KEY,
            from_address=settings.RESEND_FROM_EMAIL,
            timeout=settings.EMAIL_PROVIDER_API_TIMEOUT,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.from_address)

    def build_payload(self, message: OutboundEmail) -> dict[str, object]:
        payload: dict[str, object] = {
            "from": self.from_address,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
        }
        if message.text:
            payload["text"] = message.text
        if message.cc:
            payload["cc"] = list(message.cc)
        if message.bcc:
            payload["bcc"] = list(message.bcc)
        return payload

    async def send(self, message: OutboundEmail) -> str | None:
        if not self.configured:
            raise DeliveryConfigError("Resend transport is not configured")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if message.idempotency_key:
            headers["Idempotency-Key"] = message.idempotency_key

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._http_transport
            ) as client:
                response = await client.post(
                    RESEND_SEND_URL, headers=headers, json=self.build_payload(message)
                )
        except httpx.TimeoutException as exc:
            raise DeliveryTransientError("Resend connection timeout") from exc
        except httpx.RequestError as exc:
            raise DeliveryTransientError(
                f"Resend connection error: {exc.__class__.__name__}"
            ) from exc

        if 200 <= response.status_code < 300 or response.status_code == 409:
            # 409 is an idempotency conflict: the message was already accepted.
            try:
                data = response.json()
            except ValueError:
                return None
            message_id = data.get("id") if isinstance(data, dict) else None
            return message_id if isinstance(message_id, str) and message_id else None

        error = f"Resend API error: {response.status_code} ({_error_detail(response)})"
        if response.status_code in RETRY_STATUSES:
            raise DeliveryTransientError(error)
        raise DeliveryConfigError(error)
