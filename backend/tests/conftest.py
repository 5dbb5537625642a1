"""Shared test fixtures for all test groups."""

from datetime import UTC, datetime
from itertools import count
from typing import Any

import pytest
from fakeredis import FakeAsyncRedis

from reconciler.core.exceptions import NotificationSendFailure
from reconciler.domain.notifications import NotificationGate
from reconciler.domain.resolvers import EntityResolver
from reconciler.schemas.records import MarketplaceTransaction
from reconciler.store.document_store import RedisDocumentStore
from reconciler.webhooks.events import WebhookEvent

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class RecordingEmailSender:
    """EmailSender that records sends and can be told to fail the next N."""

    def __init__(self):
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self.failures_left = 0

    async def send(self, recipient: str, template_id: str, template_data: dict[str, Any]) -> None:
        if self.failures_left > 0:
            self.failures_left -= 1
            raise NotificationSendFailure(recipient, template_id, "provider unavailable")
        self.sent.append((recipient, template_id, template_data))

    def templates(self) -> list[str]:
        return [template_id for _, template_id, _ in self.sent]


class FakeBillingProvider:
    """In-memory BillingProvider keyed by object id."""

    def __init__(self):
        self.customers: dict[str, dict] = {}
        self.subscriptions: dict[str, dict] = {}
        self.accounts: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []

    async def retrieve_customer(self, customer_id: str) -> dict | None:
        self.calls.append(("customer", customer_id))
        return self.customers.get(customer_id)

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        self.calls.append(("subscription", subscription_id))
        return self.subscriptions[subscription_id]

    async def retrieve_account(self, account_id: str) -> dict:
        self.calls.append(("account", account_id))
        return self.accounts[account_id]


@pytest.fixture
async def redis():
    """Create a fake Redis instance for testing."""
    fake_redis = FakeAsyncRedis(decode_responses=True)
    yield fake_redis
    await fake_redis.flushall()
    await fake_redis.aclose()


@pytest.fixture
def store(redis):
    return RedisDocumentStore(redis, prefix="test")


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def sender():
    return RecordingEmailSender()


@pytest.fixture
def provider():
    return FakeBillingProvider()


@pytest.fixture
def resolver(store, provider):
    return EntityResolver(store, provider, customer_metadata_key="user_id")


@pytest.fixture
def gate(store, sender, clock):
    return NotificationGate(store, sender, clock=clock)


@pytest.fixture
def make_event():
    """Factory for verified WebhookEvents with unique ids."""
    ids = count(1)

    def _make(
        event_type: str,
        obj: dict | None = None,
        *,
        event_id: str | None = None,
        account: str | None = None,
        related_object: dict | None = None,
    ) -> WebhookEvent:
        payload: dict[str, Any] = {
            "id": event_id or f"evt_test_{next(ids)}",
            "type": event_type,
            "livemode": False,
            "created": int(NOW.timestamp()),
        }
        if obj is not None:
            payload["data"] = {"object": obj}
        if account:
            payload["account"] = account
        if related_object:
            payload["related_object"] = related_object
        return WebhookEvent.model_validate(payload)

    return _make


@pytest.fixture
async def seeded(store):
    """A buyer, an expert with a connected account, a product and a pending sale."""
    await store.set("users", "u_buyer", {"email": "buyer@example.com", "display_name": "Bea"})
    await store.set(
        "users",
        "u_sub",
        {"email": "sub@example.com", "display_name": "Sam", "stripe_customer_id": "cus_1"},
    )
    await store.set("users", "u_seller", {"email": "seller-user@example.com"})
    await store.set(
        "experts",
        "e1",
        {
            "user_id": "u_seller",
            "contact_email": "seller@example.com",
            "status": "active",
            "stripe_account_id": "acct_1",
        },
    )
    await store.set("products", "p1", {"title": "Kyoto in 5 days", "sales_count": 0})
    transaction = MarketplaceTransaction(
        id="t1",
        product_id="p1",
        buyer_id="u_buyer",
        seller_id="e1",
        amount=2000,
        platform_fee=300,
    )
    await store.set("transactions", "t1", transaction.model_dump(mode="json"))
    return store
