"""Notification Gate: the single place outbound notifications are deduplicated.

State machines never call the email sender. They return NotificationIntents
keyed by a semantic key built from business ids; the dispatcher hands those to
the gate after the state writes of the event succeeded. The gate records the
key only after the send succeeded, so a failed send can be retried by a later
delivery and a successful one is never repeated.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog

from reconciler.integrations.email import EmailSender
from reconciler.schemas.records import NotificationLedgerEntry
from reconciler.store.collections import NOTIFICATIONS
from reconciler.store.document_store import DocumentStore

logger = structlog.get_logger(__name__)


class NotificationTemplate(str, Enum):
    SUBSCRIPTION_WELCOME = "subscription_welcome"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    TRIAL_ENDING = "trial_ending"
    PAYMENT_FAILED = "payment_failed"
    RENEWAL_REMINDER = "renewal_reminder"
    ORDER_CONFIRMATION = "order_confirmation"
    NEW_SALE = "new_sale"


class NotificationOutcome(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"  # key already in the ledger
    FAILED = "failed"


@dataclass(frozen=True)
class EmailMessage:
    recipient: str
    template: NotificationTemplate
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NotificationIntent:
    """One deduplicated notification: every message shares the semantic key."""

    key: str
    messages: tuple[EmailMessage, ...]

    @property
    def recipients(self) -> str:
        return ", ".join(message.recipient for message in self.messages)


def build_intent(key: str, *messages: EmailMessage | None) -> list[NotificationIntent]:
    """Wrap the messages that have a recipient; [] when none do."""
    deliverable = tuple(m for m in messages if m is not None and m.recipient)
    if not deliverable:
        logger.info("notification_no_recipient", semantic_key=key)
        return []
    return [NotificationIntent(key=key, messages=deliverable)]


class NotificationGate:
    def __init__(
        self,
        store: DocumentStore,
        sender: EmailSender,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.sender = sender
        self.clock = clock or (lambda: datetime.now(UTC))

    async def try_send(
        self,
        semantic_key: str,
        send: Callable[[], Awaitable[None]],
        recipient: str,
    ) -> NotificationOutcome:
        """Invoke send() unless semantic_key was already recorded; record it on success.

        Failures are logged and swallowed: a notification never fails the
        event that produced it.
        """
        try:
            if await self.store.get(NOTIFICATIONS, semantic_key) is not None:
                logger.info("notification_already_sent", semantic_key=semantic_key)
                return NotificationOutcome.SKIPPED
        except Exception as e:
            logger.warning("notification_ledger_read_failed", semantic_key=semantic_key, error=str(e))
            return NotificationOutcome.FAILED

        try:
            await send()
        except Exception as e:
            logger.warning(
                "notification_send_failed",
                semantic_key=semantic_key,
                error=str(e),
                error_type=type(e).__name__,
            )
            return NotificationOutcome.FAILED

        entry = NotificationLedgerEntry(semantic_key=semantic_key, recipient=recipient, sent_at=self.clock())
        try:
            created = await self.store.create(NOTIFICATIONS, semantic_key, entry.model_dump(mode="json"))
        except Exception as e:
            # Sent but unrecorded: a later duplicate delivery may send again.
            logger.error("notification_ledger_write_failed", semantic_key=semantic_key, error=str(e))
            return NotificationOutcome.SENT

        if not created:
            logger.warning("notification_sent_concurrently", semantic_key=semantic_key)
        logger.info("notification_sent", semantic_key=semantic_key)
        return NotificationOutcome.SENT

    async def deliver(self, intent: NotificationIntent) -> NotificationOutcome:
        """Send every message of the intent under its one semantic key."""

        async def _send() -> None:
            for message in intent.messages:
                await self.sender.send(message.recipient, message.template.value, message.data)

        return await self.try_send(intent.key, _send, intent.recipients)
