"""Wires the ledger, store, resolvers and state machines into a dispatcher."""

import redis.asyncio as redis

from reconciler.core.config import Settings, get_settings
from reconciler.db.base import get_session_factory
from reconciler.domain.accounts import ConnectedAccountTracker
from reconciler.domain.marketplace import MarketplaceTransactions
from reconciler.domain.notifications import NotificationGate
from reconciler.domain.payouts import PayoutTransferLedger
from reconciler.domain.resolvers import EntityResolver
from reconciler.domain.subscriptions import SubscriptionLifecycle
from reconciler.integrations.email import EmailSender, get_email_sender
from reconciler.integrations.stripe_lookup import BillingProvider, StripeBillingProvider
from reconciler.store.document_store import DocumentStore, RedisDocumentStore
from reconciler.webhooks.dispatcher import EventDispatcher, Handler
from reconciler.webhooks.events import EventType
from reconciler.webhooks.ledger import EventLedger, RedisEventLedger, SqlEventLedger


def build_handlers(
    subscriptions: SubscriptionLifecycle,
    marketplace: MarketplaceTransactions,
    accounts: ConnectedAccountTracker,
    payouts: PayoutTransferLedger,
) -> dict[EventType, Handler]:
    return {
        EventType.PAYMENT_INTENT_SUCCEEDED: marketplace.handle_payment_succeeded,
        EventType.PAYMENT_INTENT_FAILED: marketplace.handle_payment_failed,
        EventType.CHARGE_REFUNDED: marketplace.handle_charge_refunded,
        EventType.SUBSCRIPTION_CREATED: subscriptions.handle_subscription_upsert,
        EventType.SUBSCRIPTION_UPDATED: subscriptions.handle_subscription_upsert,
        EventType.SUBSCRIPTION_DELETED: subscriptions.handle_subscription_deleted,
        EventType.SUBSCRIPTION_TRIAL_WILL_END: subscriptions.handle_trial_will_end,
        EventType.INVOICE_PAYMENT_SUCCEEDED: subscriptions.handle_invoice_payment_succeeded,
        EventType.INVOICE_PAYMENT_FAILED: subscriptions.handle_invoice_payment_failed,
        EventType.INVOICE_UPCOMING: subscriptions.handle_invoice_upcoming,
        EventType.ACCOUNT_UPDATED: accounts.handle_account_updated,
        EventType.ACCOUNT_UPDATED_V2: accounts.handle_account_updated,
        EventType.ACCOUNT_AUTHORIZED: accounts.handle_account_authorized,
        EventType.ACCOUNT_DEAUTHORIZED: accounts.handle_account_deauthorized,
        EventType.CAPABILITY_UPDATED: accounts.handle_capability_updated,
        EventType.PAYOUT_CREATED: payouts.handle_payout_created,
        EventType.PAYOUT_PAID: payouts.handle_payout_paid,
        EventType.PAYOUT_FAILED: payouts.handle_payout_failed,
        EventType.TRANSFER_CREATED: payouts.handle_transfer_created,
        EventType.TRANSFER_UPDATED: payouts.handle_transfer_updated,
    }


def build_dispatcher(
    store: DocumentStore,
    ledger: EventLedger,
    sender: EmailSender,
    provider: BillingProvider | None = None,
    settings: Settings | None = None,
    clock=None,
) -> EventDispatcher:
    settings = settings or get_settings()
    resolver = EntityResolver(store, provider, settings.stripe_customer_user_metadata_key)
    handlers = build_handlers(
        SubscriptionLifecycle(
            store,
            resolver,
            provider,
            trial_reminder_window_days=settings.trial_reminder_window_days,
            renewal_reminder_window_days=settings.renewal_reminder_window_days,
            clock=clock,
        ),
        MarketplaceTransactions(store, resolver, clock=clock),
        ConnectedAccountTracker(store, resolver, provider, clock=clock),
        PayoutTransferLedger(store, clock=clock),
    )
    return EventDispatcher(
        ledger,
        NotificationGate(store, sender, clock=clock),
        handlers,
        timeout=settings.webhook_handler_timeout_seconds,
    )


def create_dispatcher(redis_client: redis.Redis, settings: Settings | None = None) -> EventDispatcher:
    """Production wiring: Redis store, configured ledger backend, Stripe, Resend."""
    settings = settings or get_settings()
    store = RedisDocumentStore(redis_client, prefix=settings.store_key_prefix)
    if settings.event_ledger_backend == "postgres":
        ledger = SqlEventLedger(get_session_factory(), claim_ttl=settings.event_claim_ttl_seconds)
    else:
        ledger = RedisEventLedger(
            redis_client,
            prefix=settings.store_key_prefix,
            claim_ttl=settings.event_claim_ttl_seconds,
        )
    return build_dispatcher(store, ledger, get_email_sender(settings), StripeBillingProvider(), settings)
