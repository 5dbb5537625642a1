"""Billing provider lookups for events whose payload is partial.

Thin (v2) events and subscription events without line items carry only an
id; the current object is fetched through the async Stripe SDK.
"""

from typing import Any, Protocol, runtime_checkable

import stripe
import structlog

from reconciler.core.config import get_settings
from reconciler.core.exceptions import ProviderLookupError

logger = structlog.get_logger(__name__)


@runtime_checkable
class BillingProvider(Protocol):
    async def retrieve_customer(self, customer_id: str) -> dict[str, Any] | None:
        """Return the customer, or None if it does not exist or was deleted."""
        ...

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        ...

    async def retrieve_account(self, account_id: str) -> dict[str, Any]:
        ...


def _get_stripe() -> None:
    """Configure the stripe module with the secret key."""
    settings = get_settings()
    stripe.api_key = settings.stripe_secret_key


def _to_dict(obj: Any) -> dict[str, Any]:
    return obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)


class StripeBillingProvider:
    async def retrieve_customer(self, customer_id: str) -> dict[str, Any] | None:
        _get_stripe()
        try:
            customer = await stripe.Customer.retrieve_async(customer_id)
        except stripe.InvalidRequestError as e:
            if e.http_status == 404:
                return None
            raise ProviderLookupError(f"Customer lookup failed for {customer_id}: {e}") from e
        except stripe.StripeError as e:
            raise ProviderLookupError(f"Customer lookup failed for {customer_id}: {e}") from e

        customer = _to_dict(customer)
        if customer.get("deleted"):
            logger.info("stripe_customer_deleted", customer_id=customer_id)
            return None
        return customer

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        _get_stripe()
        try:
            subscription = await stripe.Subscription.retrieve_async(subscription_id)
        except stripe.StripeError as e:
            raise ProviderLookupError(f"Subscription lookup failed for {subscription_id}: {e}") from e
        return _to_dict(subscription)

    async def retrieve_account(self, account_id: str) -> dict[str, Any]:
        _get_stripe()
        try:
            account = await stripe.Account.retrieve_async(account_id)
        except stripe.StripeError as e:
            raise ProviderLookupError(f"Account lookup failed for {account_id}: {e}") from e
        return _to_dict(account)
