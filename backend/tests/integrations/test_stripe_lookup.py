"""Tests for billing provider lookups through the async Stripe SDK."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import stripe

from reconciler.core.exceptions import ProviderLookupError
from reconciler.integrations.stripe_lookup import BillingProvider, StripeBillingProvider

pytestmark = pytest.mark.unit


def _stripe_object(data: dict) -> MagicMock:
    obj = MagicMock()
    obj.to_dict.return_value = data
    return obj


@pytest.fixture
def provider():
    with patch("reconciler.integrations.stripe_lookup._get_stripe"):
        yield StripeBillingProvider()


def test_satisfies_protocol():
    assert isinstance(StripeBillingProvider(), BillingProvider)


async def test_retrieve_customer_returns_dict(provider):
    customer = _stripe_object({"id": "cus_1", "metadata": {"user_id": "u1"}})

    with patch("stripe.Customer.retrieve_async", new_callable=AsyncMock, return_value=customer) as mock_retrieve:
        result = await provider.retrieve_customer("cus_1")

    mock_retrieve.assert_awaited_once_with("cus_1")
    assert result["metadata"]["user_id"] == "u1"


async def test_deleted_customer_is_none(provider):
    customer = _stripe_object({"id": "cus_1", "deleted": True})

    with patch("stripe.Customer.retrieve_async", new_callable=AsyncMock, return_value=customer):
        assert await provider.retrieve_customer("cus_1") is None


async def test_missing_customer_is_none(provider):
    error = stripe.InvalidRequestError("No such customer: 'cus_x'", param="id", http_status=404)

    with patch("stripe.Customer.retrieve_async", new_callable=AsyncMock, side_effect=error):
        assert await provider.retrieve_customer("cus_x") is None


async def test_customer_lookup_outage_raises(provider):
    error = stripe.APIConnectionError("Network error")

    with patch("stripe.Customer.retrieve_async", new_callable=AsyncMock, side_effect=error):
        with pytest.raises(ProviderLookupError):
            await provider.retrieve_customer("cus_1")


async def test_retrieve_account_wraps_errors(provider):
    error = stripe.PermissionError("No access to account", http_status=403)

    with patch("stripe.Account.retrieve_async", new_callable=AsyncMock, side_effect=error):
        with pytest.raises(ProviderLookupError):
            await provider.retrieve_account("acct_1")


async def test_retrieve_subscription_returns_dict(provider):
    subscription = _stripe_object({"id": "sub_1", "status": "active"})

    with patch("stripe.Subscription.retrieve_async", new_callable=AsyncMock, return_value=subscription):
        assert (await provider.retrieve_subscription("sub_1"))["status"] == "active"
