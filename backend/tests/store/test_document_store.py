"""Tests for the Redis-backed document store."""

import asyncio
import json
from datetime import UTC, datetime

import pytest
from redis.exceptions import ConnectionError

from reconciler.core.exceptions import DownstreamWriteFailure
from reconciler.store.document_store import DocumentStore, RedisDocumentStore

pytestmark = pytest.mark.unit


async def test_store_satisfies_protocol(store):
    assert isinstance(store, DocumentStore)


async def test_get_missing_returns_none(store):
    assert await store.get("users", "nobody") is None


async def test_set_then_get_round_trips_datetimes_as_iso(store, redis):
    when = datetime(2026, 1, 2, 3, 4, tzinfo=UTC)
    await store.set("payments", "in_1", {"amount": 100, "occurred_at": when})

    assert await store.get("payments", "in_1") == {"amount": 100, "occurred_at": when.isoformat()}
    raw = await redis.get("test:doc:payments:in_1")
    assert json.loads(raw)["occurred_at"] == "2026-01-02T03:04:00+00:00"


async def test_create_only_inserts_once(store):
    assert await store.create("payouts", "po_1", {"status": "pending"}) is True
    assert await store.create("payouts", "po_1", {"status": "paid"}) is False

    assert (await store.get("payouts", "po_1"))["status"] == "pending"


async def test_update_patches_existing_fields_only(store):
    await store.set("experts", "e1", {"status": "active", "charges_enabled": False})

    assert await store.update("experts", "e1", {"charges_enabled": True}) is True
    assert await store.get("experts", "e1") == {"status": "active", "charges_enabled": True}


async def test_update_missing_document_is_noop(store):
    assert await store.update("experts", "ghost", {"status": "inactive"}) is False
    assert await store.get("experts", "ghost") is None


async def test_update_if_respects_guard(store):
    await store.set("transactions", "t1", {"status": "failed"})

    written = await store.update_if(
        "transactions", "t1", lambda doc: doc["status"] == "pending", {"status": "completed"}
    )

    assert written is False
    assert (await store.get("transactions", "t1"))["status"] == "failed"


async def test_increment_counts_from_missing_field(store):
    await store.set("products", "p1", {"title": "Guide"})

    assert await store.increment("products", "p1", "sales_count") == 1
    assert await store.increment("products", "p1", "sales_count") == 2
    assert await store.increment("products", "missing", "sales_count") is None


async def test_merge_map_merges_by_key_and_sets_fields(store):
    await store.set("experts", "e1", {"capabilities": {"card_payments": "active", "transfers": "pending"}})

    await store.merge_map("experts", "e1", "capabilities", {"transfers": "active"}, fields={"synced": True})

    doc = await store.get("experts", "e1")
    assert doc["capabilities"] == {"card_payments": "active", "transfers": "active"}
    assert doc["synced"] is True


async def test_find_uses_index_and_follows_field_changes(store):
    await store.set("users", "u1", {"stripe_customer_id": "cus_1"})
    await store.set("users", "u2", {"stripe_customer_id": "cus_2"})

    assert await store.find("users", "stripe_customer_id", "cus_1") == [("u1", {"stripe_customer_id": "cus_1"})]

    await store.update("users", "u1", {"stripe_customer_id": "cus_9"})

    assert await store.find("users", "stripe_customer_id", "cus_1") == []
    assert [doc_id for doc_id, _ in await store.find("users", "stripe_customer_id", "cus_9")] == ["u1"]


async def test_find_drops_cleared_field_from_index(store):
    await store.set("experts", "e1", {"stripe_account_id": "acct_1"})
    await store.update("experts", "e1", {"stripe_account_id": None})

    assert await store.find("experts", "stripe_account_id", "acct_1") == []


async def test_find_rejects_unindexed_field(store):
    with pytest.raises(ValueError, match="not indexed"):
        await store.find("users", "email", "a@example.com")


async def test_concurrent_guarded_writes_have_one_winner(store):
    """Concurrent deliveries racing the same pending->completed write: exactly one wins."""
    await store.set("transactions", "t1", {"status": "pending"})

    results = await asyncio.gather(
        *[
            store.update_if("transactions", "t1", lambda doc: doc["status"] == "pending", {"status": "completed"})
            for _ in range(5)
        ]
    )

    assert sorted(results) == [False, False, False, False, True]


async def test_redis_errors_surface_as_downstream_write_failure():
    class BrokenRedis:
        async def get(self, key):
            raise ConnectionError("connection refused")

    store = RedisDocumentStore(BrokenRedis())

    with pytest.raises(DownstreamWriteFailure):
        await store.get("users", "u1")
