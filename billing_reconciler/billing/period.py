import logging
from datetime import datetime
from typing import Any, Dict, Optional

from dateutil.relativedelta import relativedelta

from . import payloads
from .domain import PeriodEnd
from ..utils.timeutils import from_timestamp

logger = logging.getLogger(__name__)


INTERVAL_UNITS = {
    "day": lambda n: relativedelta(days=n),
    "week": lambda n: relativedelta(weeks=n),
    "month": lambda n: relativedelta(months=n),
    "year": lambda n: relativedelta(years=n),
}
DEFAULT_INTERVAL = "month"


def estimate_period_end(now: datetime, interval: Optional[str] = None, interval_count=None) -> PeriodEnd:
    """Compute ``now + interval_count * interval``; defaults to one month."""
    unit = INTERVAL_UNITS.get((interval or "").lower())
    if unit is None:
        unit = INTERVAL_UNITS[DEFAULT_INTERVAL]
    try:
        count = int(interval_count) if interval_count else 1
    except (TypeError, ValueError):
        count = 1
    if count < 1:
        count = 1
    return PeriodEnd(now + unit(count), estimated=True)


def current_period_end(subscription: Dict[str, Any], now: datetime) -> PeriodEnd:
    """
    Derive the period end for a subscription payload.

    When cancellation is scheduled and the provider sent ``cancel_at``, that is
    the effective end of access. Otherwise the provider's
    ``current_period_end`` (on the subscription, or on its first item for newer
    API versions) is authoritative. Missing both, the end is estimated from
    the item's billing interval.
    """
    if subscription.get("cancel_at_period_end"):
        cancel_at = from_timestamp(subscription.get("cancel_at"))
        if cancel_at is not None:
            return PeriodEnd(cancel_at)

    explicit = from_timestamp(subscription.get("current_period_end")) or from_timestamp(
        payloads.first_item(subscription).get("current_period_end")
    )
    if explicit is not None:
        return PeriodEnd(explicit)

    recurring = payloads.subscription_recurring(subscription)
    estimate = estimate_period_end(now, recurring.get("interval"), recurring.get("interval_count"))
    logger.warning(
        "Subscription payload has no period end, using estimate",
        extra={
            "subscription_id": subscription.get("id"),
            "interval": recurring.get("interval") or DEFAULT_INTERVAL,
            "estimated_period_end": estimate.at.isoformat(),
        },
    )
    return estimate


def invoice_period_end(invoice: Dict[str, Any]) -> Optional[PeriodEnd]:
    """Period end carried by an invoice, if any. Invoice values are authoritative."""
    line_end = payloads._get(invoice, "lines", "data", 0, "period", "end")
    at = from_timestamp(line_end) or from_timestamp(invoice.get("period_end"))
    if at is None:
        return None
    return PeriodEnd(at)
