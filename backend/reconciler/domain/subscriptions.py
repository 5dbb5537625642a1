"""Subscription lifecycle: mirrors provider subscriptions and invoices per user."""

import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from reconciler.core.exceptions import MalformedPayload
from reconciler.domain.notifications import (
    EmailMessage,
    NotificationIntent,
    NotificationTemplate,
    build_intent,
)
from reconciler.domain.payload import (
    from_timestamp,
    invoice_subscription_id,
    object_id,
    subscription_period,
    subscription_plan_id,
)
from reconciler.domain.resolvers import EntityResolver
from reconciler.integrations.stripe_lookup import BillingProvider
from reconciler.schemas.records import (
    PaymentRecord,
    PaymentStatus,
    SubscriptionRecord,
    SubscriptionStatus,
)
from reconciler.store.collections import PAYMENTS, SUBSCRIPTIONS
from reconciler.store.document_store import Document, DocumentStore
from reconciler.webhooks.events import EventType, WebhookEvent

logger = structlog.get_logger(__name__)

SECONDS_PER_DAY = 86400


def days_until(moment: datetime, now: datetime) -> int | None:
    """Whole days from now until moment, rounded up; None if moment is not in the future."""
    remaining = (moment - now).total_seconds()
    if remaining <= 0:
        return None
    return math.ceil(remaining / SECONDS_PER_DAY)


def _status(value: str | None) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(value)
    except ValueError as e:
        raise MalformedPayload(f"Unknown subscription status '{value}'") from e


class SubscriptionLifecycle:
    """Handles customer.subscription.* and invoice.* events.

    One SubscriptionRecord per user, overwritten by each subscription event.
    A canceled record is only replaced by a different subscription id.
    """

    def __init__(
        self,
        store: DocumentStore,
        resolver: EntityResolver,
        provider: BillingProvider | None = None,
        trial_reminder_window_days: int = 3,
        renewal_reminder_window_days: int = 7,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.resolver = resolver
        self.provider = provider
        self.trial_window = timedelta(days=trial_reminder_window_days)
        self.renewal_window = timedelta(days=renewal_reminder_window_days)
        self.clock = clock or (lambda: datetime.now(UTC))

    async def _full_subscription(self, subscription: dict[str, Any]) -> dict[str, Any]:
        if subscription.get("items") or self.provider is None:
            return subscription
        logger.info("subscription_snapshot_refetched", subscription_id=subscription.get("id"))
        return await self.provider.retrieve_subscription(subscription["id"])

    def _snapshot(self, user_id: str, subscription: dict[str, Any]) -> SubscriptionRecord:
        period_start, period_end = subscription_period(subscription)
        return SubscriptionRecord(
            internal_user_id=user_id,
            subscription_id=subscription["id"],
            customer_id=object_id(subscription.get("customer")),
            status=_status(subscription.get("status")),
            plan_id=subscription_plan_id(subscription),
            current_period_start=from_timestamp(period_start),
            current_period_end=from_timestamp(period_end),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
            canceled_at=from_timestamp(subscription.get("canceled_at")),
            trial_end=from_timestamp(subscription.get("trial_end")),
            updated_at=self.clock(),
        )

    async def handle_subscription_upsert(self, event: WebhookEvent) -> list[NotificationIntent]:
        """customer.subscription.created / updated: overwrite the user's record."""
        subscription = await self._full_subscription(event.object)
        user_id, user = await self.resolver.user_for_customer(object_id(subscription.get("customer")))
        record = self._snapshot(user_id, subscription)
        data = record.model_dump(mode="json")

        previous: dict[str, Document | None] = {"doc": None}

        def _replaceable(current: Document) -> bool:
            previous["doc"] = current
            same = current.get("subscription_id") == record.subscription_id
            return not (same and current.get("status") == SubscriptionStatus.CANCELED.value)

        if await self.store.create(SUBSCRIPTIONS, user_id, data):
            written = True
        else:
            written = await self.store.update_if(SUBSCRIPTIONS, user_id, _replaceable, data)

        if not written:
            logger.info(
                "subscription_update_after_cancel_ignored",
                user_id=user_id,
                subscription_id=record.subscription_id,
            )
            return []

        logger.info(
            "subscription_synced",
            user_id=user_id,
            subscription_id=record.subscription_id,
            status=record.status.value,
            plan_id=record.plan_id,
        )

        prior = previous["doc"]
        first_time = prior is None or prior.get("subscription_id") != record.subscription_id
        if event.event_type is not EventType.SUBSCRIPTION_CREATED or not first_time:
            return []

        return build_intent(
            f"welcome_{record.subscription_id}",
            EmailMessage(
                recipient=user.get("email"),
                template=NotificationTemplate.SUBSCRIPTION_WELCOME,
                data={
                    "name": user.get("display_name"),
                    "plan_id": record.plan_id,
                    "status": record.status.value,
                    "trial_end": data["trial_end"],
                },
            ),
        )

    async def handle_subscription_deleted(self, event: WebhookEvent) -> list[NotificationIntent]:
        """customer.subscription.deleted: force the record to canceled."""
        subscription = event.object
        subscription_id = subscription["id"]
        user_id, user = await self.resolver.user_for_customer(object_id(subscription.get("customer")))
        now = self.clock()
        record = self._snapshot(user_id, {**subscription, "status": SubscriptionStatus.CANCELED.value})
        record.plan_id = None
        record.canceled_at = record.canceled_at or now
        data = record.model_dump(mode="json")

        applies = await self.store.create(SUBSCRIPTIONS, user_id, data) or await self.store.update_if(
            SUBSCRIPTIONS,
            user_id,
            lambda current: current.get("subscription_id") == subscription_id,
            data,
        )
        if not applies:
            logger.info(
                "subscription_delete_for_replaced_subscription",
                user_id=user_id,
                subscription_id=subscription_id,
            )
            return []

        logger.info("subscription_canceled", user_id=user_id, subscription_id=subscription_id)
        return build_intent(
            f"cancelled_{subscription_id}",
            EmailMessage(
                recipient=user.get("email"),
                template=NotificationTemplate.SUBSCRIPTION_CANCELLED,
                data={"name": user.get("display_name"), "canceled_at": data["canceled_at"]},
            ),
        )

    async def handle_trial_will_end(self, event: WebhookEvent) -> list[NotificationIntent]:
        """Remind the user when the trial ends within the reminder window."""
        subscription = event.object
        trial_end = from_timestamp(subscription.get("trial_end"))
        if trial_end is None:
            logger.info("trial_reminder_without_trial_end", subscription_id=subscription.get("id"))
            return []

        now = self.clock()
        days = days_until(trial_end, now)
        if days is None or trial_end - now > self.trial_window:
            logger.info("trial_reminder_outside_window", subscription_id=subscription.get("id"), days=days)
            return []

        _, user = await self.resolver.user_for_customer(object_id(subscription.get("customer")))
        return build_intent(
            f"trial_ending_{subscription['id']}_{days}",
            EmailMessage(
                recipient=user.get("email"),
                template=NotificationTemplate.TRIAL_ENDING,
                data={
                    "name": user.get("display_name"),
                    "days_remaining": days,
                    "trial_end": trial_end.isoformat(),
                },
            ),
        )

    async def handle_invoice_payment_succeeded(self, event: WebhookEvent) -> list[NotificationIntent]:
        invoice = event.object
        user_id, _ = await self.resolver.user_for_customer(object_id(invoice.get("customer")))
        paid_at = (invoice.get("status_transitions") or {}).get("paid_at") or invoice.get("created")
        record = PaymentRecord(
            id=invoice["id"],
            user_id=user_id,
            invoice_id=invoice["id"],
            subscription_id=invoice_subscription_id(invoice),
            amount=invoice.get("amount_paid") or 0,
            currency=invoice.get("currency"),
            status=PaymentStatus.SUCCEEDED,
            attempt_count=invoice.get("attempt_count"),
            occurred_at=from_timestamp(paid_at),
            created_at=self.clock(),
        )
        created = await self.store.create(PAYMENTS, record.id, record.model_dump(mode="json"))
        logger.info("invoice_payment_recorded", invoice_id=record.invoice_id, user_id=user_id, created=created)
        return []

    async def handle_invoice_payment_failed(self, event: WebhookEvent) -> list[NotificationIntent]:
        """Record the failed attempt and notify once per (invoice, attempt)."""
        invoice = event.object
        invoice_id = invoice["id"]
        attempt = invoice.get("attempt_count") or 1
        user_id, user = await self.resolver.user_for_customer(object_id(invoice.get("customer")))
        record = PaymentRecord(
            id=f"{invoice_id}_failed_{attempt}",
            user_id=user_id,
            invoice_id=invoice_id,
            subscription_id=invoice_subscription_id(invoice),
            amount=invoice.get("amount_due") or 0,
            currency=invoice.get("currency"),
            status=PaymentStatus.FAILED,
            attempt_count=attempt,
            occurred_at=from_timestamp(invoice.get("created")),
            created_at=self.clock(),
        )
        created = await self.store.create(PAYMENTS, record.id, record.model_dump(mode="json"))
        logger.info(
            "invoice_payment_failure_recorded",
            invoice_id=invoice_id,
            attempt=attempt,
            user_id=user_id,
            created=created,
        )

        return build_intent(
            f"payment_failed_{invoice_id}_{attempt}",
            EmailMessage(
                recipient=user.get("email"),
                template=NotificationTemplate.PAYMENT_FAILED,
                data={
                    "name": user.get("display_name"),
                    "amount_due": record.amount,
                    "currency": record.currency,
                    "attempt_count": attempt,
                    "next_payment_attempt": invoice.get("next_payment_attempt"),
                    "hosted_invoice_url": invoice.get("hosted_invoice_url"),
                },
            ),
        )

    async def handle_invoice_upcoming(self, event: WebhookEvent) -> list[NotificationIntent]:
        """Renewal reminder for recurring cycles inside the reminder window."""
        invoice = event.object
        if invoice.get("billing_reason") != "subscription_cycle":
            return []

        subscription_id = invoice_subscription_id(invoice)
        period_end = invoice.get("period_end") or invoice.get("next_payment_attempt")
        renews_at = from_timestamp(period_end)
        if not subscription_id or renews_at is None:
            logger.info("renewal_reminder_missing_fields", invoice_id=invoice.get("id"))
            return []

        now = self.clock()
        days = days_until(renews_at, now)
        if days is None or renews_at - now > self.renewal_window:
            return []

        _, user = await self.resolver.user_for_customer(object_id(invoice.get("customer")))
        return build_intent(
            f"renewal_{subscription_id}_{period_end}",
            EmailMessage(
                recipient=user.get("email"),
                template=NotificationTemplate.RENEWAL_REMINDER,
                data={
                    "name": user.get("display_name"),
                    "amount_due": invoice.get("amount_due"),
                    "currency": invoice.get("currency"),
                    "renews_at": renews_at.isoformat(),
                    "days_remaining": days,
                },
            ),
        )
