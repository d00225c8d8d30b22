"""
Read-only accessors for Stripe object payloads.

Stripe moved several fields between API versions (``current_period_end`` onto
subscription items, ``invoice.subscription`` under ``invoice.parent``), so
every lookup here tries the newer location as well as the older one and
returns ``None`` rather than raising on missing data.
"""

from typing import Any, Dict, Optional


def _get(obj, *path, default=None):
    current = obj
    for key in path:
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, (list, tuple)) and isinstance(key, int):
            current = current[key] if -len(current) <= key < len(current) else None
        else:
            return default
        if current is None:
            return default
    return current


def object_id(value) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    return _get(subscription, "items", "data", 0) or {}


def subscription_price_id(subscription: Dict[str, Any]) -> Optional[str]:
    return object_id(_get(first_item(subscription), "price"))


def subscription_item_id(subscription: Dict[str, Any]) -> Optional[str]:
    return first_item(subscription).get("id")


def subscription_recurring(subscription: Dict[str, Any]) -> Dict[str, Any]:
    item = first_item(subscription)
    return _get(item, "price", "recurring") or _get(item, "plan") or {}


def subscription_metadata(subscription: Dict[str, Any]) -> Dict[str, Any]:
    return subscription.get("metadata") or {}


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    return object_id(
        invoice.get("subscription")
        or _get(invoice, "parent", "subscription_details", "subscription")
        or _get(invoice, "lines", "data", 0, "subscription")
    )


def invoice_price_id(invoice: Dict[str, Any]) -> Optional[str]:
    line = _get(invoice, "lines", "data", 0) or {}
    return object_id(
        _get(line, "price")
        or _get(line, "pricing", "price_details", "price")
        or _get(line, "plan")
    )


def invoice_metadata(invoice: Dict[str, Any]) -> Dict[str, Any]:
    return (
        _get(invoice, "parent", "subscription_details", "metadata")
        or _get(invoice, "subscription_details", "metadata")
        or {}
    )
