"""WebhookEventRecord model: append-only audit trail and idempotency claims."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from reconciler.db.base import Base


class WebhookEventRecord(Base):
    """One row per provider event id. Rows are never deleted."""

    __tablename__ = "webhook_events"

    provider_id = Column(String(255), primary_key=True)
    type = Column(String(255), nullable=False)
    livemode = Column(Boolean, nullable=False, default=False)
    received_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    # Lease held by the worker currently processing the event (NULL = released)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    # Set only after every downstream effect succeeded
    processed_at = Column(DateTime(timezone=True), nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    outcome = Column(String(50), nullable=True)
    last_error = Column(Text, nullable=True)
