from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from tokenwarden.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class NotificationContent:
    subject: str
    html: str
    text: Optional[str] = None


@dataclass(frozen=True)
class DeliveryResult:
    ok: bool
    error: Optional[str] = None
    status_code: Optional[int] = None


class NotificationService:
    """Transactional email through a Resend-style HTTP API.

    Without an API key the message is logged instead of sent (dev mode).
    Delivery failures come back as a ``DeliveryResult``; nothing is retried
    here, the caller decides.
    """

    def __init__(
        self,
        *,
        api_url: str = "https://api.resend.com",
        api_key: Optional[str] = None,
        from_address: str = "Tokenwarden <noreply@localhost>",
        timeout_seconds: float = 10.0,
        app_name: str = "Tokenwarden",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.from_address = from_address
        self.timeout_seconds = timeout_seconds
        self.app_name = app_name
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=min(5.0, self.timeout_seconds)),
                headers={"Authorization": f"Bearer {self.api_key}"},
                transport=self._transport,
            )
        return self._client

    async def send(self, destination: str, content: NotificationContent) -> DeliveryResult:
        recipient = self._redact_email(destination)
        if not self.is_configured:
            logger.info(
                "notification_dev_mode",
                to=recipient,
                subject=content.subject,
                body_preview=(content.text or content.html)[:200],
            )
            return DeliveryResult(ok=True)

        payload = {
            "from": self.from_address,
            "to": [destination],
            "subject": content.subject,
            "html": content.html,
        }
        if content.text:
            payload["text"] = content.text
        try:
            response = await self._get_client().post(f"{self.api_url}/emails", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.error("notification_api_error", to=recipient, status_code=status)
            return DeliveryResult(ok=False, error="provider_rejected", status_code=status)
        except httpx.TimeoutException:
            logger.error("notification_timeout", to=recipient, timeout=self.timeout_seconds)
            return DeliveryResult(ok=False, error="timeout")
        except httpx.HTTPError as exc:
            logger.error(
                "notification_transport_error", to=recipient, error_type=type(exc).__name__
            )
            return DeliveryResult(ok=False, error="transport_error")
        logger.info("notification_sent", to=recipient, subject=content.subject)
        return DeliveryResult(ok=True, status_code=response.status_code)

    def render_password_change_code(self, code: str, ttl_minutes: int) -> NotificationContent:
        subject = f"Your {self.app_name} verification code"
        html = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <h1>Confirm your password change</h1>
        <p>Enter this code to finish changing your password:</p>
        <p style="font-size: 32px; font-weight: 700; letter-spacing: 6px; margin: 30px 0;">{code}</p>
        <p>This code will expire in {ttl_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
    </div>
</body>
</html>
"""
        text = (
            f"Your {self.app_name} verification code is {code}.\n\n"
            f"It expires in {ttl_minutes} minutes. If you didn't request this, ignore this email."
        )
        return NotificationContent(subject=subject, html=html, text=text)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["DeliveryResult", "NotificationContent", "NotificationService"]
