"""Re-export all models so Base.metadata sees them."""

from reconciler.db.models.webhook_event import WebhookEventRecord

__all__ = [
    "WebhookEventRecord",
]
