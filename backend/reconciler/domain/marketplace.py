"""Marketplace transaction lifecycle driven by payment intent and charge events."""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from reconciler.core.exceptions import MissingEntityMapping
from reconciler.domain.notifications import (
    EmailMessage,
    NotificationIntent,
    NotificationTemplate,
    build_intent,
)
from reconciler.domain.payload import object_id
from reconciler.domain.resolvers import EntityResolver
from reconciler.schemas.records import TransactionStatus
from reconciler.store.collections import PRODUCTS, TRANSACTIONS
from reconciler.store.document_store import Document, DocumentStore
from reconciler.webhooks.events import WebhookEvent

logger = structlog.get_logger(__name__)

REQUIRED_METADATA = ("product_id", "buyer_id", "expert_id", "transaction_id")


def can_transition(current: Document, target: TransactionStatus) -> bool:
    status = TransactionStatus(current.get("status", TransactionStatus.PENDING.value))
    return target in MarketplaceTransactions.TRANSITIONS[status]


class MarketplaceTransactions:
    """Finalizes MarketplaceTransactions created upstream at checkout."""

    # Valid state transitions
    TRANSITIONS = {
        TransactionStatus.PENDING: [TransactionStatus.COMPLETED, TransactionStatus.FAILED],
        TransactionStatus.COMPLETED: [TransactionStatus.REFUNDED],
        TransactionStatus.FAILED: [],  # Terminal state
        TransactionStatus.REFUNDED: [],  # Terminal state
    }

    def __init__(
        self,
        store: DocumentStore,
        resolver: EntityResolver,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.resolver = resolver
        self.clock = clock or (lambda: datetime.now(UTC))

    def _metadata(self, event: WebhookEvent) -> dict[str, str] | None:
        """Marketplace metadata of the event object, or None if the object is not a sale.

        Objects carrying none of the keys (subscription invoices) are skipped
        quietly; a partial set is a data-integrity error.
        """
        metadata = event.object.get("metadata") or {}
        present = [key for key in REQUIRED_METADATA if metadata.get(key)]
        if not present:
            logger.debug("non_marketplace_payment_ignored", event_id=event.id, object_id=event.object.get("id"))
            return None
        missing = [key for key in REQUIRED_METADATA if key not in present]
        if missing:
            logger.error(
                "marketplace_metadata_incomplete",
                event_id=event.id,
                object_id=event.object.get("id"),
                missing=missing,
            )
            return None
        return {key: metadata[key] for key in REQUIRED_METADATA}

    async def _transition(
        self,
        transaction_id: str,
        target: TransactionStatus,
        fields: dict[str, Any],
    ) -> tuple[bool, Document]:
        """Guarded write of target status. Returns (won, transaction as last seen)."""
        transaction = await self.store.get(TRANSACTIONS, transaction_id)
        if transaction is None:
            raise MissingEntityMapping("transaction", transaction_id)

        won = await self.store.update_if(
            TRANSACTIONS,
            transaction_id,
            lambda current: can_transition(current, target),
            {"status": target.value, **fields},
        )
        if won:
            logger.info(
                "transaction_transitioned",
                transaction_id=transaction_id,
                from_status=transaction.get("status"),
                to_status=target.value,
            )
            return True, {**transaction, "status": target.value, **fields}

        current = await self.store.get(TRANSACTIONS, transaction_id) or transaction
        logger.info(
            "transaction_transition_skipped",
            transaction_id=transaction_id,
            status=current.get("status"),
            target=target.value,
        )
        return False, current

    async def handle_payment_succeeded(self, event: WebhookEvent) -> list[NotificationIntent]:
        metadata = self._metadata(event)
        if metadata is None:
            return []

        payment_intent = event.object
        fields: dict[str, Any] = {
            "payment_intent_id": payment_intent.get("id"),
            "completed_at": self.clock().isoformat(),
        }
        amount = payment_intent.get("amount_received") or payment_intent.get("amount")
        if amount is not None:
            fields["amount"] = amount
        if payment_intent.get("application_fee_amount") is not None:
            fields["platform_fee"] = payment_intent["application_fee_amount"]

        won, transaction = await self._transition(metadata["transaction_id"], TransactionStatus.COMPLETED, fields)

        if won:
            sales_count = await self.store.increment(PRODUCTS, metadata["product_id"], "sales_count")
            if sales_count is None:
                logger.warning("sales_counter_product_missing", product_id=metadata["product_id"])
            else:
                logger.info("sales_counter_incremented", product_id=metadata["product_id"], sales_count=sales_count)

        status = transaction.get("status")
        if status == TransactionStatus.FAILED.value:
            logger.warning("payment_succeeded_for_failed_transaction", transaction_id=metadata["transaction_id"])
        if status != TransactionStatus.COMPLETED.value:
            return []

        return await self._order_intent(metadata, transaction)

    async def _order_intent(self, metadata: dict[str, str], transaction: Document) -> list[NotificationIntent]:
        product = await self.store.get(PRODUCTS, metadata["product_id"]) or {}
        amount = transaction.get("amount", 0)
        platform_fee = transaction.get("platform_fee", 0)
        details = {
            "transaction_id": metadata["transaction_id"],
            "product_title": product.get("title"),
            "amount": amount,
            "currency": transaction.get("currency", "usd"),
        }
        buyer_email = await self.resolver.user_email(metadata["buyer_id"])
        seller_email = await self.resolver.expert_email(metadata["expert_id"])

        return build_intent(
            f"order_{metadata['transaction_id']}",
            EmailMessage(buyer_email, NotificationTemplate.ORDER_CONFIRMATION, details) if buyer_email else None,
            EmailMessage(
                seller_email,
                NotificationTemplate.NEW_SALE,
                {**details, "seller_earnings": amount - platform_fee},
            )
            if seller_email
            else None,
        )

    async def handle_payment_failed(self, event: WebhookEvent) -> list[NotificationIntent]:
        metadata = self._metadata(event)
        if metadata is None:
            return []

        error = event.object.get("last_payment_error") or {}
        await self._transition(
            metadata["transaction_id"],
            TransactionStatus.FAILED,
            {
                "failure_reason": error.get("message") or error.get("code") or "payment_failed",
                "failed_at": self.clock().isoformat(),
            },
        )
        return []

    async def handle_charge_refunded(self, event: WebhookEvent) -> list[NotificationIntent]:
        """Full refunds move a completed transaction to refunded; partial refunds are logged."""
        charge = event.object
        if not charge.get("refunded"):
            logger.info(
                "partial_refund_ignored",
                charge_id=charge.get("id"),
                amount_refunded=charge.get("amount_refunded"),
            )
            return []

        transaction_id = (charge.get("metadata") or {}).get("transaction_id")
        if not transaction_id:
            payment_intent_id = object_id(charge.get("payment_intent"))
            matches = await self.store.find(TRANSACTIONS, "payment_intent_id", payment_intent_id)
            if not matches:
                logger.debug("non_marketplace_refund_ignored", charge_id=charge.get("id"))
                return []
            transaction_id = matches[0][0]

        await self._transition(
            transaction_id,
            TransactionStatus.REFUNDED,
            {"refunded_at": self.clock().isoformat()},
        )
        return []
