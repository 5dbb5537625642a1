"""Event dispatcher: claim, route by type, deliver notifications, commit."""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum

import structlog
from pydantic import ValidationError

from reconciler.core.exceptions import MalformedPayload, MissingEntityMapping, UnknownEventType
from reconciler.domain.notifications import NotificationGate, NotificationIntent, NotificationOutcome
from reconciler.webhooks.events import EventType, WebhookEvent
from reconciler.webhooks.ledger import ClaimResult, EventLedger

logger = structlog.get_logger(__name__)

Handler = Callable[[WebhookEvent], Awaitable[list[NotificationIntent]]]


class DispatchStatus(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"  # no internal record for the external id
    IGNORED = "ignored"  # event type outside the handled set
    DUPLICATE = "duplicate"
    IN_FLIGHT = "in_flight"
    MALFORMED = "malformed"  # verified envelope whose object a handler rejected


@dataclass
class DispatchResult:
    event_id: str
    event_type: str
    status: DispatchStatus
    notifications: list[NotificationOutcome] = field(default_factory=list)


class EventDispatcher:
    """Routes a verified event to its state machine exactly once.

    The event is claimed in the ledger before any handler runs. A handler
    failure or timeout releases the claim without committing, and the error
    propagates so the provider redelivers. An object the handler rejects as
    malformed is committed with outcome "malformed" and surfaces as
    MalformedPayload, since redelivering it can never succeed. Notification intents are handed to
    the gate only after the handler's state writes succeeded, and a
    notification failure never fails the event.
    """

    def __init__(
        self,
        ledger: EventLedger,
        gate: NotificationGate,
        handlers: Mapping[EventType, Handler],
        timeout: float | None = 20.0,
    ):
        self.ledger = ledger
        self.gate = gate
        self.handlers = dict(handlers)
        self.timeout = timeout

    def handler_for(self, event: WebhookEvent) -> Handler:
        """Raises UnknownEventType for types outside the handled set."""
        event_type = event.event_type
        handler = self.handlers.get(event_type) if event_type else None
        if handler is None:
            raise UnknownEventType(event.type)
        return handler

    async def dispatch(self, event: WebhookEvent) -> DispatchResult:
        log = logger.bind(event_id=event.id, event_type=event.type)

        claim = await self.ledger.claim(event)
        if claim is ClaimResult.DUPLICATE:
            log.info("webhook_duplicate")
            return DispatchResult(event.id, event.type, DispatchStatus.DUPLICATE)
        if claim is ClaimResult.IN_FLIGHT:
            log.info("webhook_in_flight")
            return DispatchResult(event.id, event.type, DispatchStatus.IN_FLIGHT)

        try:
            handler = self.handler_for(event)
        except UnknownEventType:
            await self._commit(event, DispatchStatus.IGNORED)
            log.info("webhook_ignored")
            return DispatchResult(event.id, event.type, DispatchStatus.IGNORED)

        status = DispatchStatus.PROCESSED
        try:
            async with asyncio.timeout(self.timeout):
                intents = await handler(event)
        except MissingEntityMapping as e:
            log.warning("webhook_entity_unmapped", entity=e.entity, external_id=e.external_id)
            intents = []
            status = DispatchStatus.SKIPPED
        except (MalformedPayload, KeyError, ValidationError) as e:
            log.warning("webhook_malformed_object", error=str(e), error_type=type(e).__name__)
            await self._commit(event, DispatchStatus.MALFORMED)
            if isinstance(e, MalformedPayload):
                raise
            raise MalformedPayload(f"{event.type} object is malformed: {type(e).__name__}: {e}") from e
        except Exception as e:
            await self._release(event, e)
            log.error("webhook_failed", error=str(e), error_type=type(e).__name__)
            raise

        outcomes = [await self.gate.deliver(intent) for intent in intents]

        await self._commit(event, status)
        log.info(
            "webhook_processed",
            status=status.value,
            notifications=[outcome.value for outcome in outcomes],
        )
        return DispatchResult(event.id, event.type, status, outcomes)

    async def _commit(self, event: WebhookEvent, status: DispatchStatus) -> None:
        try:
            await self.ledger.mark_processed(event.id, outcome=status.value)
        except Exception as e:
            await self._release(event, e)
            logger.error("webhook_commit_failed", event_id=event.id, error=str(e), error_type=type(e).__name__)
            raise

    async def _release(self, event: WebhookEvent, error: Exception) -> None:
        message = f"{type(error).__name__}: {error}"
        try:
            await self.ledger.release(event.id, message)
        except Exception as release_error:
            # The claim lease still expires on its own.
            logger.error(
                "webhook_claim_release_failed",
                event_id=event.id,
                error=str(release_error),
            )
