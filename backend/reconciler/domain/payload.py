"""Helpers for reading provider objects, which may be ids or expanded dicts."""

from datetime import UTC, datetime
from typing import Any


def object_id(value: Any) -> str | None:
    """Return the id of a reference that may be a plain id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return None


def from_timestamp(value: int | float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


def invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    """Subscription id of an invoice across API versions."""
    subscription = object_id(invoice.get("subscription"))
    if subscription:
        return subscription
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return object_id(details.get("subscription"))


def subscription_plan_id(subscription: dict[str, Any]) -> str | None:
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        first = items[0]
        price = first.get("price") or first.get("plan") or {}
        return price.get("id")
    return (subscription.get("plan") or {}).get("id")


def subscription_period(subscription: dict[str, Any]) -> tuple[int | None, int | None]:
    """(current_period_start, current_period_end); newer API versions carry them on items."""
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return start, end
