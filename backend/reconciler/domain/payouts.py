"""Payout and transfer ledger for connected accounts."""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from reconciler.core.exceptions import MalformedPayload
from reconciler.domain.notifications import NotificationIntent
from reconciler.domain.payload import from_timestamp, object_id
from reconciler.schemas.records import PayoutRecord, PayoutStatus, TransferRecord
from reconciler.store.collections import PAYOUTS, TRANSACTIONS, TRANSFERS
from reconciler.store.document_store import Document, DocumentStore
from reconciler.webhooks.events import WebhookEvent

logger = structlog.get_logger(__name__)

# Statuses only advance; every terminal status shares the top rank.
PAYOUT_RANK = {
    PayoutStatus.PENDING: 0,
    PayoutStatus.IN_TRANSIT: 1,
    PayoutStatus.PAID: 2,
    PayoutStatus.FAILED: 2,
    PayoutStatus.CANCELED: 2,
}


def can_advance(current: Document, target: PayoutStatus) -> bool:
    try:
        status = PayoutStatus(current.get("status"))
    except ValueError:
        return True
    return PAYOUT_RANK[target] > PAYOUT_RANK[status]


def _payout_status(value: str | None) -> PayoutStatus:
    try:
        return PayoutStatus(value)
    except ValueError as e:
        raise MalformedPayload(f"Unknown payout status '{value}'") from e


def _reversals(transfer: dict[str, Any]) -> list[dict[str, Any]]:
    reversals = transfer.get("reversals") or {}
    if isinstance(reversals, dict):
        return list(reversals.get("data") or [])
    return list(reversals)


class PayoutTransferLedger:
    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] | None = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(UTC))

    async def handle_payout_created(self, event: WebhookEvent) -> list[NotificationIntent]:
        payout = event.object
        now = self.clock()
        record = PayoutRecord(
            provider_id=payout["id"],
            status=_payout_status(payout.get("status")),
            amount=payout.get("amount") or 0,
            currency=payout.get("currency"),
            destination=object_id(payout.get("destination")),
            account_id=event.account,
            arrival_date=from_timestamp(payout.get("arrival_date")),
            created_at=now,
            updated_at=now,
        )
        created = await self.store.create(PAYOUTS, record.provider_id, record.model_dump(mode="json"))
        logger.info("payout_recorded", payout_id=record.provider_id, account_id=event.account, created=created)
        return []

    async def _advance_payout(self, event: WebhookEvent, target: PayoutStatus) -> list[NotificationIntent]:
        payout = event.object
        payout_id = payout["id"]
        fields: dict[str, Any] = {"status": target.value, "updated_at": self.clock().isoformat()}
        if target is PayoutStatus.FAILED:
            fields["failure_code"] = payout.get("failure_code")
            fields["failure_message"] = payout.get("failure_message")

        if await self.store.get(PAYOUTS, payout_id) is None:
            logger.warning("payout_transition_without_record", payout_id=payout_id, target=target.value)
            return []

        written = await self.store.update_if(PAYOUTS, payout_id, lambda current: can_advance(current, target), fields)
        if written:
            logger.info("payout_transitioned", payout_id=payout_id, status=target.value)
        else:
            logger.info("payout_transition_skipped", payout_id=payout_id, target=target.value)
        return []

    async def handle_payout_paid(self, event: WebhookEvent) -> list[NotificationIntent]:
        return await self._advance_payout(event, PayoutStatus.PAID)

    async def handle_payout_failed(self, event: WebhookEvent) -> list[NotificationIntent]:
        return await self._advance_payout(event, PayoutStatus.FAILED)

    async def handle_transfer_created(self, event: WebhookEvent) -> list[NotificationIntent]:
        """Record the transfer and link it onto its marketplace transaction."""
        transfer = event.object
        now = self.clock()
        transaction_id = (transfer.get("metadata") or {}).get("transaction_id")
        record = TransferRecord(
            provider_id=transfer["id"],
            amount=transfer.get("amount") or 0,
            currency=transfer.get("currency"),
            destination=object_id(transfer.get("destination")),
            transaction_id=transaction_id,
            reversed=bool(transfer.get("reversed")),
            amount_reversed=transfer.get("amount_reversed") or 0,
            reversals=_reversals(transfer),
            created_at=now,
            updated_at=now,
        )
        created = await self.store.create(TRANSFERS, record.provider_id, record.model_dump(mode="json"))
        logger.info("transfer_recorded", transfer_id=record.provider_id, created=created)

        if transaction_id:
            linked = await self.store.update_if(
                TRANSACTIONS,
                transaction_id,
                lambda current: not current.get("transfer_id"),
                {"transfer_id": record.provider_id},
            )
            if linked:
                logger.info("transfer_linked", transfer_id=record.provider_id, transaction_id=transaction_id)
        return []

    async def handle_transfer_updated(self, event: WebhookEvent) -> list[NotificationIntent]:
        """Overwrite the reversal state verbatim from the provider."""
        transfer = event.object
        written = await self.store.update(
            TRANSFERS,
            transfer["id"],
            {
                "reversed": bool(transfer.get("reversed")),
                "amount_reversed": transfer.get("amount_reversed") or 0,
                "reversals": _reversals(transfer),
                "updated_at": self.clock().isoformat(),
            },
        )
        if not written:
            logger.warning("transfer_update_without_record", transfer_id=transfer["id"])
        return []
