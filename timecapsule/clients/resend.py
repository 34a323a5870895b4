from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

import httpx

from timecapsule.domain.models import NotifierResult

logger = logging.getLogger("runtime")

RESEND_API_URL = "https://api.resend.com/emails"
DEFAULT_SENDER = "TimeCapsule <onboarding@resend.dev>"


@dataclass
class ResendNotifier:
    """Transactional email through the Resend HTTP API.

    The caller bounds total send time; `timeout_seconds` only bounds the
    individual HTTP exchange.
    """

    api_key: str
    sender: str = DEFAULT_SENDER
    api_url: str = RESEND_API_URL
    timeout_seconds: float = 10.0
    transport: httpx.AsyncBaseTransport | None = None

    async def send(self, *, to: str, subject: str, html_body: str) -> NotifierResult:
        body = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html_body,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(self.api_url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            return NotifierResult(
                delivered=False,
                reason=f"Email provider timed out: {exc}",
                error_code="notifier_timeout",
            )
        except httpx.HTTPError as exc:
            return NotifierResult(
                delivered=False,
                reason=f"Email provider is unreachable: {exc}",
                error_code="notifier_unavailable",
            )

        data = _response_json(response)
        external_id = data.get("id") if isinstance(data.get("id"), str) else None

        if response.is_success:
            return NotifierResult(delivered=True, external_id=external_id, status_code=response.status_code)

        message = _response_message(data, response)
        if response.status_code == 403 and external_id:
            # Free-tier restrictions can answer 403 while still handing out a
            # message id; the message was accepted.
            logger.warning(
                "resend reported an error but returned a message id",
                extra={"email_id": external_id, "status_code": response.status_code},
            )
            return NotifierResult(
                delivered=True,
                external_id=external_id,
                reason=message,
                status_code=response.status_code,
            )

        if response.status_code == 403 and ("can only send" in message or "unverified" in message):
            message = (
                "Resend free tier limitation: can only send to verified email addresses. "
                "Either verify this recipient or upgrade the Resend account."
            )
        return NotifierResult(
            delivered=False,
            reason=message,
            error_code="notifier_unavailable" if response.status_code >= 500 else "notifier_rejected",
            status_code=response.status_code,
        )


def _response_json(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _response_message(data: dict[str, Any], response: httpx.Response) -> str:
    message = data.get("message")
    if isinstance(message, str) and message.strip():
        return message.strip()
    return f"Email provider answered HTTP {response.status_code}"
