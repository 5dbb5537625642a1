"""Provider event envelope and the closed set of handled event types."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ValidationError, model_validator

from reconciler.core.exceptions import MalformedPayload


class EventType(str, Enum):
    """Every event type the dispatcher routes. Anything else is acknowledged as a no-op."""

    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    CHARGE_REFUNDED = "charge.refunded"

    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"

    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_UPCOMING = "invoice.upcoming"

    ACCOUNT_UPDATED = "account.updated"
    ACCOUNT_UPDATED_V2 = "v2.core.account.updated"
    ACCOUNT_AUTHORIZED = "account.application.authorized"
    ACCOUNT_DEAUTHORIZED = "account.application.deauthorized"
    CAPABILITY_UPDATED = "capability.updated"

    PAYOUT_CREATED = "payout.created"
    PAYOUT_PAID = "payout.paid"
    PAYOUT_FAILED = "payout.failed"

    TRANSFER_CREATED = "transfer.created"
    TRANSFER_UPDATED = "transfer.updated"

    @classmethod
    def parse(cls, value: str) -> "EventType | None":
        try:
            return cls(value)
        except ValueError:
            return None


class EventData(BaseModel):
    object: dict[str, Any]
    previous_attributes: dict[str, Any] | None = None


class RelatedObject(BaseModel):
    """Pointer carried by thin (v2) events instead of an embedded snapshot."""

    id: str
    type: str | None = None
    url: str | None = None


class WebhookEvent(BaseModel):
    """A verified provider event."""

    id: str
    type: str
    livemode: bool = False
    created: int | None = None
    api_version: str | None = None
    # Connected account the event originated from (Connect endpoints only)
    account: str | None = None
    data: EventData | None = None
    related_object: RelatedObject | None = None

    @model_validator(mode="after")
    def _require_payload(self) -> "WebhookEvent":
        if not self.id or not self.type:
            raise ValueError("event id and type are required")
        if self.data is None and self.related_object is None:
            raise ValueError("event carries neither data.object nor related_object")
        return self

    @property
    def event_type(self) -> EventType | None:
        return EventType.parse(self.type)

    @property
    def object(self) -> dict[str, Any]:
        """The embedded object snapshot ({} for thin events)."""
        return self.data.object if self.data else {}


def parse_event(body: bytes) -> WebhookEvent:
    """Parse a verified raw body into a WebhookEvent.

    Raises:
        MalformedPayload: body is not JSON or lacks the event envelope fields
    """
    try:
        return WebhookEvent.model_validate_json(body)
    except ValidationError as e:
        raise MalformedPayload(f"Malformed event payload: {e.error_count()} validation error(s)") from e
