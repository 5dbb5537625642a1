"""Document store: get/set/update-by-id and query-by-field over JSON documents.

No operation spans more than one document. Guarded writes (create, update_if,
increment, merge_map) run as optimistic WATCH/MULTI transactions on the single
document key, so concurrent deliveries touching the same document serialize
without a global lock.
"""

import json
from collections.abc import Callable, Mapping
from datetime import date, datetime
from typing import Any, Protocol, runtime_checkable

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError, WatchError

from reconciler.core.exceptions import DownstreamWriteFailure
from reconciler.store.collections import INDEXED_FIELDS

logger = structlog.get_logger(__name__)

Document = dict[str, Any]


@runtime_checkable
class DocumentStore(Protocol):
    """Generic document store consumed by the state machines."""

    async def get(self, collection: str, doc_id: str) -> Document | None:
        """Return the document or None."""
        ...

    async def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        """Create or fully overwrite a document."""
        ...

    async def create(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> bool:
        """Create a document only if absent. Returns True if this call created it."""
        ...

    async def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> bool:
        """Patch top-level fields of an existing document. Returns False if missing."""
        ...

    async def update_if(
        self,
        collection: str,
        doc_id: str,
        guard: Callable[[Document], bool],
        fields: Mapping[str, Any],
    ) -> bool:
        """Patch fields only if the document exists and guard(document) holds."""
        ...

    async def increment(self, collection: str, doc_id: str, field: str, amount: int = 1) -> int | None:
        """Add amount to a numeric field. Returns the new value, None if missing."""
        ...

    async def merge_map(
        self,
        collection: str,
        doc_id: str,
        field: str,
        entries: Mapping[str, Any],
        fields: Mapping[str, Any] | None = None,
    ) -> bool:
        """Merge entries key-by-key into a map field, setting any top-level fields in
        the same write. Returns False if missing."""
        ...

    async def find(self, collection: str, field: str, value: Any) -> list[tuple[str, Document]]:
        """Return (doc_id, document) pairs whose field equals value."""
        ...


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(document: Mapping[str, Any]) -> str:
    return json.dumps(document, default=_json_default, sort_keys=True)


class RedisDocumentStore:
    """DocumentStore backed by Redis string keys holding JSON documents.

    Key layout:
        {prefix}:doc:{collection}:{doc_id}          -> JSON document
        {prefix}:idx:{collection}:{field}:{value}   -> set of doc ids
    """

    MAX_WRITE_RETRIES = 10

    def __init__(
        self,
        redis: redis.Redis,
        prefix: str = "reconciler",
        indexes: Mapping[str, tuple[str, ...]] | None = None,
    ):
        self.redis = redis
        self.prefix = prefix
        self.indexes = dict(INDEXED_FIELDS if indexes is None else indexes)

    def _doc_key(self, collection: str, doc_id: str) -> str:
        return f"{self.prefix}:doc:{collection}:{doc_id}"

    def _index_key(self, collection: str, field: str, value: Any) -> str:
        return f"{self.prefix}:idx:{collection}:{field}:{value}"

    async def get(self, collection: str, doc_id: str) -> Document | None:
        try:
            raw = await self.redis.get(self._doc_key(collection, doc_id))
        except RedisError as e:
            raise DownstreamWriteFailure(f"Read failed for {collection}/{doc_id}: {e}") from e
        return json.loads(raw) if raw else None

    async def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        await self._mutate(collection, doc_id, lambda _current: dict(data))

    async def create(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> bool:
        _, written = await self._mutate(
            collection,
            doc_id,
            lambda current: dict(data) if current is None else None,
        )
        return written

    async def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> bool:
        return await self.update_if(collection, doc_id, lambda _doc: True, fields)

    async def update_if(
        self,
        collection: str,
        doc_id: str,
        guard: Callable[[Document], bool],
        fields: Mapping[str, Any],
    ) -> bool:
        def _apply(current: Document | None) -> Document | None:
            if current is None or not guard(current):
                return None
            return {**current, **fields}

        _, written = await self._mutate(collection, doc_id, _apply)
        return written

    async def increment(self, collection: str, doc_id: str, field: str, amount: int = 1) -> int | None:
        def _apply(current: Document | None) -> Document | None:
            if current is None:
                return None
            return {**current, field: int(current.get(field) or 0) + amount}

        document, written = await self._mutate(collection, doc_id, _apply)
        return document[field] if written else None

    async def merge_map(
        self,
        collection: str,
        doc_id: str,
        field: str,
        entries: Mapping[str, Any],
        fields: Mapping[str, Any] | None = None,
    ) -> bool:
        def _apply(current: Document | None) -> Document | None:
            if current is None:
                return None
            merged = dict(current.get(field) or {})
            merged.update(entries)
            return {**current, **(fields or {}), field: merged}

        _, written = await self._mutate(collection, doc_id, _apply)
        return written

    async def find(self, collection: str, field: str, value: Any) -> list[tuple[str, Document]]:
        if field not in self.indexes.get(collection, ()):
            raise ValueError(f"Field '{field}' is not indexed on collection '{collection}'")
        if value is None:
            return []

        try:
            doc_ids = sorted(await self.redis.smembers(self._index_key(collection, field, value)))
            if not doc_ids:
                return []
            raws = await self.redis.mget([self._doc_key(collection, doc_id) for doc_id in doc_ids])
        except RedisError as e:
            raise DownstreamWriteFailure(f"Query failed for {collection}.{field}: {e}") from e

        matches = []
        for doc_id, raw in zip(doc_ids, raws):
            if not raw:
                continue
            document = json.loads(raw)
            # Index entries are removed in the same transaction as the write,
            # but compare anyway so a stale member never leaks through.
            if document.get(field) == value:
                matches.append((doc_id, document))
        return matches

    async def _mutate(
        self,
        collection: str,
        doc_id: str,
        mutate: Callable[[Document | None], Document | None],
    ) -> tuple[Document | None, bool]:
        """Run mutate(current) under WATCH and write its result atomically.

        mutate returns the new document, or None to leave the key untouched.
        Returns (document, written).
        """
        key = self._doc_key(collection, doc_id)

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                for _ in range(self.MAX_WRITE_RETRIES):
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        current = json.loads(raw) if raw else None

                        updated = mutate(current)
                        if updated is None:
                            await pipe.unwatch()
                            return current, False

                        pipe.multi()
                        pipe.set(key, _dumps(updated))
                        self._queue_index_updates(pipe, collection, doc_id, current, updated)
                        await pipe.execute()
                        return updated, True
                    except WatchError:
                        logger.debug("document_write_conflict", collection=collection, doc_id=doc_id)
                        continue
        except RedisError as e:
            raise DownstreamWriteFailure(f"Write failed for {collection}/{doc_id}: {e}") from e

        raise DownstreamWriteFailure(
            f"Write to {collection}/{doc_id} lost {self.MAX_WRITE_RETRIES} optimistic retries"
        )

    def _queue_index_updates(
        self,
        pipe,
        collection: str,
        doc_id: str,
        current: Document | None,
        updated: Document,
    ) -> None:
        for field in self.indexes.get(collection, ()):
            old = (current or {}).get(field)
            new = updated.get(field)
            if old == new:
                continue
            if old is not None:
                pipe.srem(self._index_key(collection, field, old), doc_id)
            if new is not None:
                pipe.sadd(self._index_key(collection, field, new), doc_id)
