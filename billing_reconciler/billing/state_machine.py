import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .domain import (
    Billing,
    PeriodEnd,
    PlanResolution,
    PlanTier,
    SubscriptionState,
    SubscriptionStatus,
    TransitionResult,
)
from .period import estimate_period_end
from ..errors import InvalidTransition

logger = logging.getLogger(__name__)


class TransitionKind(str, Enum):
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    CUSTOMER_DELETED = "customer_deleted"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CHECKOUT_COMPLETED = "checkout_completed"
    TRIAL_WILL_END = "trial_will_end"
    PLAN_CHANGED = "plan_changed"
    USER_CANCEL = "user_cancel"
    USER_RESUME = "user_resume"
    SWEEP_EXPIRE = "sweep_expire"


# Stripe subscription status -> local status. None means terminal.
PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": None,
    "incomplete_expired": None,
}

LIVE_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
)

_SUBSCRIPTION_OBJECT_KINDS = (
    TransitionKind.SUBSCRIPTION_CREATED,
    TransitionKind.SUBSCRIPTION_UPDATED,
    TransitionKind.PLAN_CHANGED,
)

_TERMINAL_KINDS = (TransitionKind.SUBSCRIPTION_DELETED, TransitionKind.CUSTOMER_DELETED)

# Checkout carries no plan or status facts, so it does not order later events.
_UNSTAMPED_KINDS = (TransitionKind.CHECKOUT_COMPLETED,)


def map_provider_status(status: Optional[str]) -> Optional[SubscriptionStatus]:
    """Map a Stripe status; unknown values degrade to past_due."""
    key = (status or "").lower()
    if key in PROVIDER_STATUS_MAP:
        return PROVIDER_STATUS_MAP[key]
    logger.warning("Unknown provider subscription status", extra={"provider_status": status})
    return SubscriptionStatus.PAST_DUE


def is_terminal_status(status: Optional[str]) -> bool:
    key = (status or "").lower()
    return key in PROVIDER_STATUS_MAP and PROVIDER_STATUS_MAP[key] is None


@dataclass(frozen=True)
class Transition:
    """
    One requested change to a subscription record.

    ``occurred_at`` is the provider's timestamp for webhook-driven transitions
    and the current time for forced ones (pull, user actions, sweep). Forced
    transitions never move ``last_event_at``.
    """

    kind: TransitionKind
    occurred_at: datetime
    event_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    plan: Optional[PlanResolution] = None
    provider_status: Optional[str] = None
    period_end: Optional[PeriodEnd] = None
    cancel_at_period_end: Optional[bool] = None
    trial_end: Optional[datetime] = None
    billing: Optional[Billing] = None
    forced: bool = False


class SubscriptionStateMachine:
    """
    Authoritative subscription state machine.

    This class is the ONLY place where a subscription record changes plan or
    status. It is pure: it takes a snapshot and a transition and returns the
    next snapshot. Persisting the result is the coordinator's job.
    """

    # ============ VALIDATION ============

    @staticmethod
    def check_allowed(state: SubscriptionState, kind: TransitionKind) -> None:
        """
        Raise InvalidTransition for user actions that make no sense in the
        current state. Called before contacting the provider as well.
        """
        if kind is TransitionKind.USER_CANCEL:
            if not state.provider_subscription_id or state.status not in LIVE_STATUSES:
                raise InvalidTransition("There is no active subscription to cancel")

        elif kind is TransitionKind.USER_RESUME:
            if not state.provider_subscription_id:
                raise InvalidTransition("There is no subscription to resume")
            if not state.cancel_at_period_end:
                raise InvalidTransition("Subscription is not scheduled for cancellation")

        elif kind is TransitionKind.PLAN_CHANGED:
            if not state.provider_subscription_id or state.status not in LIVE_STATUSES:
                raise InvalidTransition("There is no active subscription to change")

    # ============ APPLY ============

    def apply(self, state: SubscriptionState, transition: Transition, now: datetime) -> TransitionResult:
        kind = transition.kind

        if kind is TransitionKind.USER_CANCEL:
            self.check_allowed(state, kind)

        if (
            transition.subscription_id
            and transition.subscription_id == state.ended_subscription_id
        ):
            return self._skip(state, transition, "subscription_already_ended")

        if self._is_stale(state, transition):
            return self._skip(state, transition, "stale")

        anomalies: List[str] = []

        if kind in _SUBSCRIPTION_OBJECT_KINDS:
            if is_terminal_status(transition.provider_status):
                new_state = self._end(state, transition, anomalies)
            else:
                new_state = self._sync_subscription(state, transition, anomalies)
        elif kind is TransitionKind.SUBSCRIPTION_DELETED:
            new_state = self._end(state, transition, anomalies)
        elif kind is TransitionKind.CUSTOMER_DELETED:
            new_state = self._customer_deleted(state, transition, anomalies)
        elif kind is TransitionKind.PAYMENT_SUCCEEDED:
            new_state = self._payment_succeeded(state, transition)
        elif kind is TransitionKind.PAYMENT_FAILED:
            new_state = self._payment_failed(state, transition)
        elif kind is TransitionKind.CHECKOUT_COMPLETED:
            new_state = self._checkout_completed(state, transition, anomalies)
        elif kind is TransitionKind.TRIAL_WILL_END:
            new_state = self._trial_will_end(state, transition)
        elif kind is TransitionKind.USER_CANCEL:
            new_state = self._user_cancel(state, transition, now, anomalies)
        elif kind is TransitionKind.USER_RESUME:
            new_state = self._user_resume(state, transition)
        elif kind is TransitionKind.SWEEP_EXPIRE:
            new_state = self._sweep(state, transition, now, anomalies)
        else:
            raise InvalidTransition(f"Unsupported transition {kind}")

        if isinstance(new_state, str):
            return self._skip(state, transition, new_state)

        new_state = self._repair(new_state, now, anomalies)
        new_state = self._stamp(state, new_state, transition)

        changed = new_state != state
        for anomaly in anomalies:
            logger.warning(
                "Subscription state anomaly",
                extra={
                    "account_id": state.account_id,
                    "anomaly": anomaly,
                    "transition": kind.value,
                    "event_id": transition.event_id,
                },
            )
        return TransitionResult(state=new_state, changed=changed, anomalies=anomalies)

    # ============ ORDERING ============

    @staticmethod
    def _is_stale(state: SubscriptionState, transition: Transition) -> bool:
        if transition.forced or state.last_event_at is None:
            return False
        if transition.kind in _TERMINAL_KINDS:
            # Deletion is absorbing and wins over any earlier-stamped state.
            return False
        return transition.occurred_at < state.last_event_at

    @staticmethod
    def _skip(state: SubscriptionState, transition: Transition, reason: str) -> TransitionResult:
        logger.info(
            "Transition skipped",
            extra={
                "account_id": state.account_id,
                "transition": transition.kind.value,
                "event_id": transition.event_id,
                "reason": reason,
            },
        )
        return TransitionResult(state=state, changed=False, skipped=reason)

    @staticmethod
    def _stamp(old: SubscriptionState, new: SubscriptionState, transition: Transition) -> SubscriptionState:
        stamped_at = old.last_event_at
        if not transition.forced and transition.kind not in _UNSTAMPED_KINDS:
            if stamped_at is None or transition.occurred_at > stamped_at:
                stamped_at = transition.occurred_at
        return replace(
            new,
            last_event_at=stamped_at,
            last_applied_event_id=transition.event_id or old.last_applied_event_id,
        )

    # ============ PERIOD MERGE ============

    @staticmethod
    def _period_fields(state: SubscriptionState, subscription_id: Optional[str], period_end: Optional[PeriodEnd]) -> dict:
        """
        An estimate never replaces an authoritative value for the same
        subscription; an authoritative value always replaces an estimate.
        """
        if period_end is None:
            return {}
        same_subscription = (
            subscription_id is None or subscription_id == state.provider_subscription_id
        )
        has_authoritative = state.current_period_end is not None and not state.period_end_estimated
        if period_end.estimated and same_subscription and has_authoritative:
            return {}
        return {
            "current_period_end": period_end.at,
            "period_end_estimated": period_end.estimated,
        }

    # ============ TRANSITIONS ============

    def _sync_subscription(self, state, transition: Transition, anomalies: List[str]):
        if (
            state.provider_subscription_id
            and transition.subscription_id
            and transition.subscription_id != state.provider_subscription_id
        ):
            anomalies.append("subscription_replaced")

        status = map_provider_status(transition.provider_status)
        plan = transition.plan.tier if transition.plan is not None else state.plan
        if transition.plan is not None and transition.plan.uncertain:
            anomalies.append("plan_resolution_uncertain")

        if state.provider_subscription_id != transition.subscription_id:
            # New subscription: nothing on file is authoritative for it.
            base = replace(state, current_period_end=None, period_end_estimated=False)
        else:
            base = state

        return replace(
            base,
            plan=plan,
            status=status,
            provider_subscription_id=transition.subscription_id or state.provider_subscription_id,
            provider_customer_id=transition.customer_id or state.provider_customer_id,
            cancel_at_period_end=bool(transition.cancel_at_period_end),
            trial_end=transition.trial_end,
            billing=transition.billing or state.billing,
            **self._period_fields(base, transition.subscription_id, transition.period_end),
        )

    @staticmethod
    def _end(state, transition: Transition, anomalies: List[str]):
        if (
            state.provider_subscription_id
            and transition.subscription_id
            and transition.subscription_id != state.provider_subscription_id
        ):
            return "different_subscription_on_file"

        return replace(
            state,
            plan=PlanTier.FREE,
            status=SubscriptionStatus.INACTIVE,
            cancel_at_period_end=False,
            current_period_end=None,
            period_end_estimated=False,
            provider_subscription_id=None,
            ended_subscription_id=(
                transition.subscription_id
                or state.provider_subscription_id
                or state.ended_subscription_id
            ),
            trial_end=None,
        )

    def _customer_deleted(self, state, transition: Transition, anomalies: List[str]):
        if state.provider_customer_id != transition.customer_id:
            return "different_customer_on_file"
        return replace(self._end(state, transition, anomalies), provider_customer_id=None)

    def _payment_succeeded(self, state, transition: Transition):
        if not self._on_file(state, transition):
            return "subscription_not_on_file"

        plan = state.plan
        if plan is PlanTier.FREE and transition.plan is not None:
            plan = transition.plan.tier

        return replace(
            state,
            plan=plan,
            status=SubscriptionStatus.ACTIVE,
            **self._period_fields(state, transition.subscription_id, transition.period_end),
        )

    def _payment_failed(self, state, transition: Transition):
        if not self._on_file(state, transition):
            return "subscription_not_on_file"
        if state.status not in LIVE_STATUSES:
            return "subscription_not_live"
        # Grace period: plan and period end stay as they are.
        return replace(state, status=SubscriptionStatus.PAST_DUE)

    @staticmethod
    def _checkout_completed(state, transition: Transition, anomalies: List[str]):
        if not transition.subscription_id:
            return replace(
                state,
                provider_customer_id=transition.customer_id or state.provider_customer_id,
            )

        if state.provider_subscription_id == transition.subscription_id:
            return replace(
                state,
                provider_customer_id=transition.customer_id or state.provider_customer_id,
            )

        if state.provider_subscription_id and state.status in LIVE_STATUSES:
            anomalies.append("checkout_replaced_live_subscription")

        # Plan and status are filled in by the pull that follows checkout.
        return replace(
            state,
            plan=PlanTier.FREE,
            status=SubscriptionStatus.INACTIVE,
            cancel_at_period_end=False,
            current_period_end=None,
            period_end_estimated=False,
            provider_subscription_id=transition.subscription_id,
            provider_customer_id=transition.customer_id or state.provider_customer_id,
        )

    def _trial_will_end(self, state, transition: Transition):
        if not self._on_file(state, transition):
            return "subscription_not_on_file"
        if transition.trial_end is None:
            return "no_trial_end"
        return replace(state, trial_end=transition.trial_end)

    def _user_cancel(self, state, transition: Transition, now: datetime, anomalies: List[str]):
        if state.cancel_at_period_end:
            return "already_scheduled"

        fields = self._period_fields(state, transition.subscription_id, transition.period_end)
        new_state = replace(state, cancel_at_period_end=True, **fields)
        if new_state.current_period_end is None:
            estimate = estimate_period_end(now, state.billing.interval)
            anomalies.append("period_end_estimated_on_cancel")
            new_state = replace(
                new_state,
                current_period_end=estimate.at,
                period_end_estimated=True,
            )
        return new_state

    def _user_resume(self, state, transition: Transition):
        if not state.cancel_at_period_end:
            # The provider event for this resume landed first.
            return "already_resumed"
        return replace(
            state,
            cancel_at_period_end=False,
            **self._period_fields(state, transition.subscription_id, transition.period_end),
        )

    def _sweep(self, state, transition: Transition, now: datetime, anomalies: List[str]):
        if not (
            state.cancel_at_period_end
            and state.current_period_end is not None
            and state.current_period_end < now
        ):
            return "not_lapsed"
        return self._end(state, transition, anomalies)

    @staticmethod
    def _on_file(state, transition: Transition) -> bool:
        return bool(
            state.provider_subscription_id
            and transition.subscription_id == state.provider_subscription_id
        )

    # ============ INVARIANTS ============

    @staticmethod
    def _repair(state: SubscriptionState, now: datetime, anomalies: List[str]) -> SubscriptionState:
        """Fix invariant violations, always toward less access."""
        if state.provider_subscription_id is None and state.plan is not PlanTier.FREE:
            anomalies.append("paid_plan_without_subscription")
            state = replace(state, plan=PlanTier.FREE, status=SubscriptionStatus.INACTIVE)

        if state.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING) and state.plan is PlanTier.FREE:
            anomalies.append("entitled_status_on_free_plan")
            state = replace(state, status=SubscriptionStatus.INACTIVE)

        if state.cancel_at_period_end and state.current_period_end is None:
            anomalies.append("cancellation_without_period_end")
            state = replace(state, current_period_end=now, period_end_estimated=True)

        return state
