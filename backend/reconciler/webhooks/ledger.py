"""Idempotency ledger: which provider events have completed processing.

A delivery must claim the event id before dispatch. The claim is a single
atomic create-if-absent write, so two concurrent deliveries of the same event
can never both run handler logic. A claim is a lease: if the worker dies
mid-processing it expires after `claim_ttl` seconds and a redelivery may
reclaim it. `processed_at` is written only by `mark_processed`, after every
downstream effect succeeded; records are never deleted.
"""

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Protocol, runtime_checkable

import redis.asyncio as redis
import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.core.exceptions import DownstreamWriteFailure
from reconciler.db.models.webhook_event import WebhookEventRecord
from reconciler.schemas.records import EventRecord
from reconciler.webhooks.events import WebhookEvent

logger = structlog.get_logger(__name__)


class ClaimResult(str, Enum):
    CLAIMED = "claimed"  # caller owns the event and must process it
    DUPLICATE = "duplicate"  # already processed
    IN_FLIGHT = "in_flight"  # another delivery holds a live claim


@runtime_checkable
class EventLedger(Protocol):
    async def claim(self, event: WebhookEvent, now: datetime | None = None) -> ClaimResult:
        ...

    async def is_processed(self, event_id: str) -> bool:
        ...

    async def mark_processed(self, event_id: str, outcome: str = "processed", now: datetime | None = None) -> None:
        ...

    async def release(self, event_id: str, error: str | None = None) -> None:
        ...

    async def get_record(self, event_id: str) -> EventRecord | None:
        ...


class RedisEventLedger:
    """Event ledger on Redis.

    Keys:
        {prefix}:event:{id}        -> hash (provider_id, type, livemode, received_at, processed_at, ...)
        {prefix}:event:{id}:claim  -> lease string, SET NX EX claim_ttl
    """

    def __init__(self, redis: redis.Redis, prefix: str = "reconciler", claim_ttl: int = 300):
        self.redis = redis
        self.prefix = prefix
        self.claim_ttl = claim_ttl

    def _record_key(self, event_id: str) -> str:
        return f"{self.prefix}:event:{event_id}"

    def _claim_key(self, event_id: str) -> str:
        return f"{self.prefix}:event:{event_id}:claim"

    async def claim(self, event: WebhookEvent, now: datetime | None = None) -> ClaimResult:
        now = now or datetime.now(UTC)
        record_key = self._record_key(event.id)

        acquired = await self.redis.set(self._claim_key(event.id), now.isoformat(), nx=True, ex=self.claim_ttl)

        # processed_at is checked while holding the lease, so a delivery that
        # finishes between our SET and this read is still observed.
        processed_at = await self.redis.hget(record_key, "processed_at")
        if processed_at:
            if acquired:
                await self.redis.delete(self._claim_key(event.id))
            return ClaimResult.DUPLICATE
        if not acquired:
            return ClaimResult.IN_FLIGHT

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hsetnx(record_key, "received_at", now.isoformat())
            pipe.hset(
                record_key,
                mapping={
                    "provider_id": event.id,
                    "type": event.type,
                    "livemode": int(event.livemode),
                },
            )
            pipe.hincrby(record_key, "attempts", 1)
            await pipe.execute()

        return ClaimResult.CLAIMED

    async def is_processed(self, event_id: str) -> bool:
        return bool(await self.redis.hget(self._record_key(event_id), "processed_at"))

    async def mark_processed(self, event_id: str, outcome: str = "processed", now: datetime | None = None) -> None:
        now = now or datetime.now(UTC)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._record_key(event_id), mapping={"processed_at": now.isoformat(), "outcome": outcome})
            pipe.hdel(self._record_key(event_id), "last_error")
            pipe.delete(self._claim_key(event_id))
            await pipe.execute()

    async def release(self, event_id: str, error: str | None = None) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            if error:
                pipe.hset(self._record_key(event_id), "last_error", error[:1000])
            pipe.delete(self._claim_key(event_id))
            await pipe.execute()

    async def get_record(self, event_id: str) -> EventRecord | None:
        data = await self.redis.hgetall(self._record_key(event_id))
        if not data:
            return None
        return EventRecord(
            provider_id=data["provider_id"],
            type=data["type"],
            livemode=data.get("livemode") == "1",
            received_at=datetime.fromisoformat(data["received_at"]),
            processed_at=datetime.fromisoformat(data["processed_at"]) if data.get("processed_at") else None,
            attempts=int(data.get("attempts", 1)),
            outcome=data.get("outcome"),
            last_error=data.get("last_error"),
        )


class SqlEventLedger:
    """Event ledger on the `webhook_events` table.

    The primary key makes the first INSERT the claim. Later deliveries take
    over a released or stale claim with a conditional UPDATE, which only one
    of several concurrent callers can win.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], claim_ttl: int = 300):
        self.session_factory = session_factory
        self.claim_ttl = claim_ttl

    async def claim(self, event: WebhookEvent, now: datetime | None = None) -> ClaimResult:
        now = now or datetime.now(UTC)

        try:
            async with self.session_factory() as session:
                try:
                    session.add(
                        WebhookEventRecord(
                            provider_id=event.id,
                            type=event.type,
                            livemode=event.livemode,
                            received_at=now,
                            claimed_at=now,
                            attempts=1,
                        )
                    )
                    await session.commit()
                    return ClaimResult.CLAIMED
                except IntegrityError:
                    await session.rollback()

                stale_before = now - timedelta(seconds=self.claim_ttl)
                result = await session.execute(
                    update(WebhookEventRecord)
                    .where(
                        WebhookEventRecord.provider_id == event.id,
                        WebhookEventRecord.processed_at.is_(None),
                        or_(
                            WebhookEventRecord.claimed_at.is_(None),
                            WebhookEventRecord.claimed_at < stale_before,
                        ),
                    )
                    .values(claimed_at=now, attempts=WebhookEventRecord.attempts + 1)
                )
                await session.commit()
                if result.rowcount == 1:
                    return ClaimResult.CLAIMED

                row = await session.execute(
                    select(WebhookEventRecord.processed_at).where(WebhookEventRecord.provider_id == event.id)
                )
                processed_at = row.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DownstreamWriteFailure(f"Event claim failed for {event.id}: {e}") from e

        return ClaimResult.DUPLICATE if processed_at is not None else ClaimResult.IN_FLIGHT

    async def is_processed(self, event_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookEventRecord.processed_at).where(WebhookEventRecord.provider_id == event_id)
            )
            return result.scalar_one_or_none() is not None

    async def mark_processed(self, event_id: str, outcome: str = "processed", now: datetime | None = None) -> None:
        now = now or datetime.now(UTC)
        async with self.session_factory() as session:
            await session.execute(
                update(WebhookEventRecord)
                .where(WebhookEventRecord.provider_id == event_id)
                .values(processed_at=now, claimed_at=None, outcome=outcome, last_error=None)
            )
            await session.commit()

    async def release(self, event_id: str, error: str | None = None) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(WebhookEventRecord)
                .where(
                    WebhookEventRecord.provider_id == event_id,
                    WebhookEventRecord.processed_at.is_(None),
                )
                .values(claimed_at=None, last_error=error[:1000] if error else None)
            )
            await session.commit()

    async def get_record(self, event_id: str) -> EventRecord | None:
        async with self.session_factory() as session:
            row = await session.get(WebhookEventRecord, event_id)
            if row is None:
                return None
            return EventRecord(
                provider_id=row.provider_id,
                type=row.type,
                livemode=row.livemode,
                received_at=row.received_at,
                processed_at=row.processed_at,
                attempts=row.attempts,
                outcome=row.outcome,
                last_error=row.last_error,
            )
