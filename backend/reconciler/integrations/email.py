"""Transactional email senders.

The reconciler never renders templates: it hands a provider template id and
its variables to the sender. Senders raise NotificationSendFailure on any
delivery failure; deduplication is the Notification Gate's job, not theirs.
"""

from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from reconciler.core.config import Settings, get_settings
from reconciler.core.exceptions import NotificationSendFailure

logger = structlog.get_logger(__name__)


@runtime_checkable
class EmailSender(Protocol):
    async def send(self, recipient: str, template_id: str, template_data: dict[str, Any]) -> None:
        ...


class ResendEmailSender:
    """Sends template emails through the Resend HTTP API."""

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None):
        self.settings = settings or get_settings()
        self._client = client

    def _resolve_template(self, template_id: str) -> str:
        return self.settings.email_template_ids.get(template_id) or template_id

    async def send(self, recipient: str, template_id: str, template_data: dict[str, Any]) -> None:
        payload = {
            "from": self.settings.email_from,
            "to": [recipient],
            "reply_to": self.settings.email_reply_to,
            "template": {
                "id": self._resolve_template(template_id),
                "variables": template_data,
            },
        }
        headers = {"Authorization": f"Bearer {self.settings.resend_api_key}"}

        try:
            if self._client is not None:
                response = await self._client.post(
                    f"{self.settings.resend_api_url}/emails", json=payload, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await client.post(
                        f"{self.settings.resend_api_url}/emails", json=payload, headers=headers
                    )
        except httpx.HTTPError as e:
            raise NotificationSendFailure(recipient, template_id, str(e)) from e

        if response.status_code >= 400:
            raise NotificationSendFailure(recipient, template_id, f"HTTP {response.status_code}: {response.text[:200]}")

        logger.info("email_sent", template_id=template_id, email_id=response.json().get("id"))


class LogEmailSender:
    """Dev/debug sender: logs instead of delivering."""

    async def send(self, recipient: str, template_id: str, template_data: dict[str, Any]) -> None:
        logger.info(
            "email_send_skipped_debug",
            recipient_domain=recipient.split("@")[-1],
            template_id=template_id,
            variables=sorted(template_data),
        )


def get_email_sender(settings: Settings | None = None) -> EmailSender:
    """Resend when an API key is configured, log-only otherwise (debug only)."""
    settings = settings or get_settings()
    if settings.resend_api_key:
        return ResendEmailSender(settings)
    if not settings.debug:
        raise RuntimeError("RESEND_API_KEY must be set outside debug mode")
    return LogEmailSender()
