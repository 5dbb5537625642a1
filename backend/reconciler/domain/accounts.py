"""Connected account and capability tracking for marketplace experts."""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from reconciler.core.exceptions import MalformedPayload
from reconciler.domain.notifications import NotificationIntent
from reconciler.domain.resolvers import EntityResolver
from reconciler.integrations.stripe_lookup import BillingProvider
from reconciler.schemas.records import ConnectedAccountStatus, ExpertStatus
from reconciler.store.collections import EXPERTS
from reconciler.store.document_store import DocumentStore
from reconciler.webhooks.events import EventType, WebhookEvent

logger = structlog.get_logger(__name__)

ACCOUNT_FLAGS = ("charges_enabled", "payouts_enabled", "details_submitted")
DEAUTHORIZED_REASON = "stripe_account_deauthorized"


def _capability_map(capabilities: Any) -> dict[str, str]:
    """v1 accounts carry {name: status}; expanded objects carry {name: {status: ...}}."""
    if not isinstance(capabilities, dict):
        return {}
    result = {}
    for name, value in capabilities.items():
        status = value.get("status") if isinstance(value, dict) else value
        if isinstance(status, str):
            result[name] = status
    return result


class ConnectedAccountTracker:
    def __init__(
        self,
        store: DocumentStore,
        resolver: EntityResolver,
        provider: BillingProvider | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.resolver = resolver
        self.provider = provider
        self.clock = clock or (lambda: datetime.now(UTC))

    async def _account_snapshot(self, event: WebhookEvent) -> dict[str, Any]:
        """Embedded account, or the current account for thin events."""
        if event.event_type is not EventType.ACCOUNT_UPDATED_V2 and event.object:
            return event.object
        if event.related_object is None:
            raise MalformedPayload(f"Thin event {event.id} has no related_object")
        if self.provider is None:
            raise MalformedPayload(f"Thin event {event.id} needs an account lookup")
        return await self.provider.retrieve_account(event.related_object.id)

    async def handle_account_updated(self, event: WebhookEvent) -> list[NotificationIntent]:
        """Merge the account flags and capabilities present in the payload (last write wins)."""
        account = await self._account_snapshot(event)
        account_id = account.get("id") or event.account
        expert_id, _ = await self.resolver.expert_for_account(account_id)

        status = ConnectedAccountStatus(
            account_id=account_id,
            capabilities=_capability_map(account.get("capabilities")),
            **{key: account[key] for key in ACCOUNT_FLAGS if key in account},
        )
        fields: dict[str, Any] = status.model_dump(exclude_unset=True, exclude={"account_id", "capabilities"})
        if "charges_enabled" in fields and "payouts_enabled" in fields:
            fields["onboarding_complete"] = bool(fields["charges_enabled"] and fields["payouts_enabled"])
        fields["account_synced_at"] = self.clock().isoformat()

        await self.store.merge_map(
            EXPERTS,
            expert_id,
            "capabilities",
            status.capabilities,
            fields=fields,
        )
        logger.info(
            "connected_account_synced",
            expert_id=expert_id,
            account_id=account_id,
            **{key: fields[key] for key in ACCOUNT_FLAGS if key in fields},
        )
        return []

    async def handle_account_authorized(self, event: WebhookEvent) -> list[NotificationIntent]:
        """Record when the platform was authorized; a deactivated expert stays inactive."""
        account_id = event.account or event.object.get("account")
        expert_id, _ = await self.resolver.expert_for_account(account_id)
        written = await self.store.update_if(
            EXPERTS,
            expert_id,
            lambda current: current.get("status") != ExpertStatus.INACTIVE.value,
            {"connect_authorized_at": self.clock().isoformat()},
        )
        logger.info("connected_account_authorized", expert_id=expert_id, account_id=account_id, recorded=written)
        return []

    async def handle_account_deauthorized(self, event: WebhookEvent) -> list[NotificationIntent]:
        """Deactivate the expert and unlink the account. Irreversible locally."""
        account_id = event.account or event.object.get("account")
        expert_id, _ = await self.resolver.expert_for_account(account_id)
        written = await self.store.update_if(
            EXPERTS,
            expert_id,
            lambda current: current.get("stripe_account_id") == account_id,
            {
                "status": ExpertStatus.INACTIVE.value,
                "stripe_account_id": None,
                "charges_enabled": False,
                "payouts_enabled": False,
                "onboarding_complete": False,
                "deactivation_reason": DEAUTHORIZED_REASON,
                "deactivated_at": self.clock().isoformat(),
            },
        )
        logger.warning("connected_account_deauthorized", expert_id=expert_id, account_id=account_id, written=written)
        return []

    async def handle_capability_updated(self, event: WebhookEvent) -> list[NotificationIntent]:
        """Patch the single named capability."""
        capability = event.object
        name = capability.get("id")
        status = capability.get("status")
        if not name or not status:
            raise MalformedPayload(f"Capability event {event.id} lacks id or status")

        account_id = capability.get("account") or event.account
        expert_id, _ = await self.resolver.expert_for_account(account_id)
        await self.store.merge_map(
            EXPERTS,
            expert_id,
            "capabilities",
            {name: status},
            fields={"account_synced_at": self.clock().isoformat()},
        )
        logger.info("capability_updated", expert_id=expert_id, capability=name, status=status)
        return []
