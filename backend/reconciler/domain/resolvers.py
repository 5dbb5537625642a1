"""Map provider identifiers to internal users and experts."""

import structlog

from reconciler.core.exceptions import MissingEntityMapping
from reconciler.integrations.stripe_lookup import BillingProvider
from reconciler.store.collections import EXPERTS, USERS
from reconciler.store.document_store import Document, DocumentStore

logger = structlog.get_logger(__name__)


class EntityResolver:
    """Resolves customer ids to users and connected account ids to experts.

    Users are matched on the stored stripe_customer_id first. When no user
    carries the customer id, the customer is fetched from the billing provider
    and its metadata[customer_metadata_key] names the internal user; the
    mapping is then backfilled so the next lookup stays local.
    """

    def __init__(
        self,
        store: DocumentStore,
        provider: BillingProvider | None = None,
        customer_metadata_key: str = "user_id",
    ):
        self.store = store
        self.provider = provider
        self.customer_metadata_key = customer_metadata_key

    async def user_for_customer(self, customer_id: str | None) -> tuple[str, Document]:
        if not customer_id:
            raise MissingEntityMapping("user", customer_id)

        matches = await self.store.find(USERS, "stripe_customer_id", customer_id)
        if matches:
            if len(matches) > 1:
                logger.warning("customer_mapped_to_multiple_users", customer_id=customer_id, count=len(matches))
            return matches[0]

        user_id = await self._user_id_from_customer_metadata(customer_id)
        if user_id:
            user = await self.store.get(USERS, user_id)
            if user is not None:
                await self.store.update_if(
                    USERS,
                    user_id,
                    lambda current: not current.get("stripe_customer_id"),
                    {"stripe_customer_id": customer_id},
                )
                logger.info("customer_mapping_backfilled", customer_id=customer_id, user_id=user_id)
                return user_id, user

        raise MissingEntityMapping("user", customer_id)

    async def _user_id_from_customer_metadata(self, customer_id: str) -> str | None:
        if self.provider is None:
            return None
        customer = await self.provider.retrieve_customer(customer_id)
        if not customer:
            return None
        return (customer.get("metadata") or {}).get(self.customer_metadata_key) or None

    async def expert_for_account(self, account_id: str | None) -> tuple[str, Document]:
        if not account_id:
            raise MissingEntityMapping("expert", account_id)

        matches = await self.store.find(EXPERTS, "stripe_account_id", account_id)
        if not matches:
            raise MissingEntityMapping("expert", account_id)
        if len(matches) > 1:
            logger.warning("account_mapped_to_multiple_experts", account_id=account_id, count=len(matches))
        return matches[0]

    async def user_email(self, user_id: str | None) -> str | None:
        if not user_id:
            return None
        user = await self.store.get(USERS, user_id)
        return (user or {}).get("email")

    async def expert_email(self, expert_id: str | None) -> str | None:
        """Contact email of an expert, falling back to the owning user's email."""
        if not expert_id:
            return None
        expert = await self.store.get(EXPERTS, expert_id)
        if expert is None:
            return None
        return expert.get("contact_email") or await self.user_email(expert.get("user_id"))
