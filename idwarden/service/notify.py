from __future__ import annotations

from typing import Optional, Protocol

import httpx

from idwarden.logging import get_logger
from idwarden.service.errors import ServerError
from idwarden.storage.models import ChallengePurpose

logger = get_logger(__name__)


def redact_target(target: str) -> str:
    """Redact an email address or phone number for logging."""
    if "@" in target:
        local, domain = target.split("@", 1)
        return f"{local[:2]}***@{domain}"
    if len(target) <= 4:
        return "***"
    return f"{target[:3]}***{target[-2:]}"


class NotificationDispatcher(Protocol):
    async def deliver(self, target: str, code: str, purpose: ChallengePurpose) -> None:
        ...


class LogDispatcher:
    """Dispatcher that logs instead of sending (development and tests).

    The plaintext code is only written when ``log_codes`` is enabled.
    """

    def __init__(self, *, log_codes: bool = False) -> None:
        self.log_codes = log_codes

    async def deliver(self, target: str, code: str, purpose: ChallengePurpose) -> None:
        fields = {
            "recipient": redact_target(target),
            "purpose": ChallengePurpose(purpose).value,
            "code_length": len(code),
        }
        if self.log_codes:
            # dev_code is exempt from PII redaction
            fields["dev_code"] = code
        logger.info("verification_dev_mode", **fields)


class WebhookDispatcher:
    """Deliver codes by POSTing JSON to an SMS/email gateway.

    Body: ``{"target", "code", "purpose", "channel"}``. Any transport error or
    non-2xx answer becomes :class:`ServerError` so the caller's send window
    is released.
    """

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        self.url = url
        self.token = token
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
                headers=headers,
                follow_redirects=False,
            )
        return self._client

    async def deliver(self, target: str, code: str, purpose: ChallengePurpose) -> None:
        purpose = ChallengePurpose(purpose)
        channel = "email" if "@" in target else "sms"
        client = await self._get_client()
        try:
            response = await client.post(
                self.url,
                json={
                    "target": target,
                    "code": code,
                    "purpose": purpose.value,
                    "channel": channel,
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "notification_webhook_rejected",
                recipient=redact_target(target),
                status_code=exc.response.status_code,
            )
            raise ServerError("notification delivery failed") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "notification_webhook_unreachable",
                recipient=redact_target(target),
                error_type=type(exc).__name__,
            )
            raise ServerError("notification delivery failed") from exc
        logger.info(
            "verification_code_delivered",
            recipient=redact_target(target),
            purpose=purpose.value,
            channel=channel,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
