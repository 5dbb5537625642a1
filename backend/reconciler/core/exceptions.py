class ReconcilerError(Exception):
    """Base exception for the webhook reconciler."""

    pass


class InvalidSignature(ReconcilerError):
    """Raised when a webhook signature header is missing or does not match the body."""

    pass


class MalformedPayload(ReconcilerError):
    """Raised when a verified webhook body is not a well-formed provider event."""

    pass


class UnknownEventType(ReconcilerError):
    """Raised when an event type is outside the handled set."""

    def __init__(self, event_type: str):
        self.event_type = event_type
        super().__init__(f"Unhandled event type '{event_type}'")


class MissingEntityMapping(ReconcilerError):
    """Raised when an external id has no internal user/expert/transaction record.

    Not the provider's fault: the event is acknowledged and skipped.
    """

    def __init__(self, entity: str, external_id: str | None):
        self.entity = entity
        self.external_id = external_id
        super().__init__(f"No {entity} mapped to '{external_id}'")


class DownstreamWriteFailure(ReconcilerError):
    """Raised when a store or provider round-trip fails mid-processing."""

    pass


class ProviderLookupError(DownstreamWriteFailure):
    """Raised when the billing provider lookup API call fails."""

    pass


class NotificationSendFailure(ReconcilerError):
    """Raised by an email sender when delivery fails."""

    def __init__(self, recipient: str, template_id: str, reason: str):
        self.recipient = recipient
        self.template_id = template_id
        self.reason = reason
        super().__init__(f"Failed to send '{template_id}' to {recipient}: {reason}")
