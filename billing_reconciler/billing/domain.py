"""
Core billing value types shared by the reconciliation components.

Everything in here is plain data: no database, no Stripe, no Flask. The state
machine, plan resolver and period calculator operate on these types so they
can be exercised without an application context.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class PlanTier(str, Enum):
    FREE = "free"
    TIER1 = "tier1"
    TIER2 = "tier2"
    TIER3 = "tier3"

    @property
    def rank(self) -> int:
        return _PLAN_RANK[self]

    @property
    def is_paid(self) -> bool:
        return self is not PlanTier.FREE


_PLAN_RANK = {
    PlanTier.FREE: 0,
    PlanTier.TIER1: 1,
    PlanTier.TIER2: 2,
    PlanTier.TIER3: 3,
}

PAID_TIERS = (PlanTier.TIER1, PlanTier.TIER2, PlanTier.TIER3)


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


# Statuses that grant paid access.
ENTITLED_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class ResolutionSource(str, Enum):
    METADATA = "metadata"
    PRICE_TABLE = "price_table"
    HEURISTIC = "heuristic"
    DEFAULT = "default"


@dataclass(frozen=True)
class PlanResolution:
    tier: PlanTier
    source: ResolutionSource
    price_id: Optional[str] = None

    @property
    def uncertain(self) -> bool:
        return self.source is ResolutionSource.DEFAULT


@dataclass(frozen=True)
class PeriodEnd:
    """A period end plus whether it came from the provider or was computed."""

    at: datetime
    estimated: bool = False


@dataclass(frozen=True)
class Billing:
    """Display-only billing details. Never used for authorization."""

    amount: Optional[int] = None
    currency: Optional[str] = None
    interval: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionState:
    """Snapshot of one account's subscription record."""

    account_id: str
    plan: PlanTier = PlanTier.FREE
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None
    period_end_estimated: bool = False
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    ended_subscription_id: Optional[str] = None
    trial_end: Optional[datetime] = None
    billing: Billing = field(default_factory=Billing)
    last_applied_event_id: Optional[str] = None
    last_event_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_entitled(self) -> bool:
        return self.plan.is_paid and self.status in ENTITLED_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "plan": self.plan.value,
            "status": self.status.value,
            "cancel_at_period_end": self.cancel_at_period_end,
            "current_period_end": (
                self.current_period_end.isoformat() if self.current_period_end else None
            ),
            "trial_end": self.trial_end.isoformat() if self.trial_end else None,
            "billing": {
                "amount": self.billing.amount,
                "currency": self.billing.currency,
                "interval": self.billing.interval,
            },
        }


@dataclass(frozen=True)
class ExternalEvent:
    """A verified (or knowingly unverified) provider event."""

    event_id: str
    type: str
    payload: Dict[str, Any]
    created: datetime
    received_at: datetime
    verified: bool = True


@dataclass
class TransitionResult:
    state: SubscriptionState
    changed: bool = False
    skipped: Optional[str] = None
    anomalies: List[str] = field(default_factory=list)
