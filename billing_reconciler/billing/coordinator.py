"""
Reconciliation coordinator.

Every change to a subscription record goes through here:

* webhooks:   verify -> ledger check -> build transition -> state machine ->
              CAS write + ledger insert in one transaction
* pull:       retrieve the subscription from Stripe and force a reconciling write
* sweep:      expire records whose scheduled cancellation date has passed
* user actions: validate locally, call Stripe, then apply the confirmed result
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import sentry_sdk

from . import payloads
from .domain import (
    Billing,
    ExternalEvent,
    PlanResolution,
    PlanTier,
    SubscriptionState,
    TransitionResult,
)
from .period import current_period_end, invoice_period_end
from .plan_resolver import PlanResolver
from .state_machine import (
    LIVE_STATUSES,
    SubscriptionStateMachine,
    Transition,
    TransitionKind,
)
from ..errors import (
    AccountNotFound,
    ActionNotCompleted,
    ConcurrentUpdate,
    EventAlreadyApplied,
    InvalidTransition,
    PlanNotAvailable,
    ProviderError,
    ProviderUnavailable,
    SubscriptionNotFound,
    TransientError,
    VerificationError,
)
from ..observability.metrics import ReconcilerMetrics
from ..utils.locks import exclusive
from ..utils.timeutils import from_timestamp, utcnow

logger = logging.getLogger(__name__)


SWEEP_LOCK_KEY = "billing:sweep"

EVENT_TRANSITIONS = {
    "customer.subscription.created": TransitionKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": TransitionKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": TransitionKind.SUBSCRIPTION_DELETED,
    "customer.subscription.trial_will_end": TransitionKind.TRIAL_WILL_END,
    "invoice.payment_succeeded": TransitionKind.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": TransitionKind.PAYMENT_FAILED,
    "checkout.session.completed": TransitionKind.CHECKOUT_COMPLETED,
    "customer.deleted": TransitionKind.CUSTOMER_DELETED,
}

_INVOICE_KINDS = (TransitionKind.PAYMENT_SUCCEEDED, TransitionKind.PAYMENT_FAILED)


@dataclass(frozen=True)
class WebhookAck:
    """What the transport should answer. Only verification failures are non-2xx."""

    outcome: str
    http_status: int = 200
    event_id: Optional[str] = None
    event_type: Optional[str] = None


@dataclass(frozen=True)
class SweepReport:
    checked: int
    expired: List[str]
    failed: List[str]


class ReconciliationCoordinator:
    def __init__(
        self,
        store,
        ledger,
        verifier,
        resolver: PlanResolver,
        provider=None,
        metrics: Optional[ReconcilerMetrics] = None,
        state_machine: Optional[SubscriptionStateMachine] = None,
        lock_client=None,
        max_cas_retries: int = 3,
        pull_max_retries: int = 2,
        pull_retry_delay: float = 0.5,
        sweep_lock_ttl: int = 300,
        frontend_url: str = "http://localhost:3000",
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.ledger = ledger
        self.verifier = verifier
        self.resolver = resolver
        self.provider = provider
        self.metrics = metrics or ReconcilerMetrics(enabled=False)
        self.state_machine = state_machine or SubscriptionStateMachine()
        self.lock_client = lock_client
        self.max_cas_retries = max_cas_retries
        self.pull_max_retries = pull_max_retries
        self.pull_retry_delay = pull_retry_delay
        self.sweep_lock_ttl = sweep_lock_ttl
        self.frontend_url = frontend_url.rstrip("/")
        self.clock = clock
        self.sleep = sleep

    # ==================== WEBHOOKS ====================

    def handle_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookAck:
        try:
            event = self.verifier.verify(raw_body, signature_header)
        except VerificationError as e:
            logger.warning(
                "Webhook rejected",
                extra={"reason": e.code, "detail": e.message},
            )
            self.metrics.record_webhook("unknown", "rejected")
            return WebhookAck(outcome="rejected", http_status=400)

        log_context = {
            "event_id": event.event_id,
            "event_type": event.type,
            "verified": event.verified,
        }

        if self.ledger.has_been_applied(event.event_id):
            logger.info("Duplicate webhook delivery ignored", extra=log_context)
            self.metrics.record_webhook(event.type, "duplicate")
            return WebhookAck("duplicate", 200, event.event_id, event.type)

        try:
            outcome = self._process_event(event)
        except EventAlreadyApplied:
            self.store.rollback()
            logger.info("Concurrent delivery already applied this event", extra=log_context)
            outcome = "duplicate"
        except Exception as e:
            # Answer 200 anyway: provider retries cannot fix a persistent failure,
            # the next event or the pull/sweep path will reconcile.
            self.store.rollback()
            logger.error(
                "Webhook processing failed",
                exc_info=True,
                extra={**log_context, "error_type": type(e).__name__},
            )
            sentry_sdk.capture_exception(e)
            outcome = "failed"

        logger.info("Webhook handled", extra={**log_context, "outcome": outcome})
        self.metrics.record_webhook(event.type, outcome)
        return WebhookAck(outcome, 200, event.event_id, event.type)

    def _process_event(self, event: ExternalEvent) -> str:
        kind = EVENT_TRANSITIONS.get(event.type)
        if kind is None:
            self._record_only(event, None)
            return "ignored"

        if kind is TransitionKind.CHECKOUT_COMPLETED:
            return self._process_checkout(event)

        account_id, provision = self._find_account(kind, event.payload)
        if account_id is None:
            logger.warning(
                "Webhook matches no account",
                extra={
                    "event_id": event.event_id,
                    "event_type": event.type,
                    "customer_id": payloads.object_id(event.payload.get("customer")),
                },
            )
            self._record_only(event, None)
            return "unmatched"

        transition = self._transition_for_event(kind, event)
        result = self._apply(account_id, transition, event=event, provision=provision)
        return self._outcome(result)

    def _process_checkout(self, event: ExternalEvent) -> str:
        session = event.payload
        if session.get("mode") not in (None, "subscription"):
            self._record_only(event, None)
            return "ignored"

        metadata = session.get("metadata") or {}
        customer_id = payloads.object_id(session.get("customer"))
        subscription_id = payloads.object_id(session.get("subscription"))

        account_id = metadata.get("account_id") or session.get("client_reference_id")
        if not account_id:
            state = self.store.find_by_customer(customer_id)
            account_id = state.account_id if state else None
        if not account_id:
            logger.warning(
                "Checkout session names no known account",
                extra={"event_id": event.event_id, "customer_id": customer_id},
            )
            self._record_only(event, None)
            return "unmatched"

        transition = Transition(
            kind=TransitionKind.CHECKOUT_COMPLETED,
            occurred_at=event.created,
            event_id=event.event_id,
            subscription_id=subscription_id,
            customer_id=customer_id,
        )
        result = self._apply(account_id, transition, event=event, provision=True)

        if subscription_id:
            # Checkout can race subscription.created; pull so either order converges.
            try:
                self.pull(account_id, plan_hint=metadata.get("plan"))
            except (TransientError, ProviderError) as e:
                logger.warning(
                    "Pull after checkout failed, later events will reconcile",
                    extra={"account_id": account_id, "error_type": type(e).__name__},
                )
        return self._outcome(result)

    def _record_only(self, event: ExternalEvent, account_id: Optional[str]) -> None:
        self.ledger.mark_applied(event.event_id, account_id, event.type, event.verified)
        self.store.commit()

    @staticmethod
    def _outcome(result: TransitionResult) -> str:
        if result.skipped == "stale":
            return "stale"
        if result.skipped:
            return "skipped"
        return "processed"

    def _find_account(self, kind: TransitionKind, obj: Dict) -> Tuple[Optional[str], bool]:
        """Return (account_id, provision_if_missing)."""
        if kind is TransitionKind.CUSTOMER_DELETED:
            state = self.store.find_by_customer(obj.get("id"))
            return (state.account_id if state else None), False

        if kind in _INVOICE_KINDS:
            subscription_id = payloads.invoice_subscription_id(obj)
            metadata = payloads.invoice_metadata(obj)
        else:
            subscription_id = obj.get("id")
            metadata = payloads.subscription_metadata(obj)

        state = self.store.find_by_subscription(subscription_id)
        if state is None:
            state = self.store.find_by_customer(payloads.object_id(obj.get("customer")))
        if state is not None:
            return state.account_id, False

        account_id = metadata.get("account_id")
        if account_id:
            return str(account_id), True
        return None, False

    # ==================== TRANSITION BUILDING ====================

    def _resolve_plan(self, price_id: Optional[str], hint=None) -> PlanResolution:
        resolution = self.resolver.resolve(price_id, hint)
        self.metrics.record_resolution(resolution.source.value)
        return resolution

    @staticmethod
    def _billing(subscription: Dict) -> Optional[Billing]:
        item = payloads.first_item(subscription)
        price = item.get("price") if isinstance(item.get("price"), dict) else {}
        recurring = payloads.subscription_recurring(subscription)
        amount = price.get("unit_amount")
        if amount is None:
            amount = (item.get("plan") or {}).get("amount")
        currency = subscription.get("currency") or price.get("currency")
        interval = recurring.get("interval")
        if amount is None and currency is None and interval is None:
            return None
        return Billing(amount=amount, currency=currency, interval=interval)

    def _subscription_transition(
        self,
        subscription: Dict,
        kind: TransitionKind,
        occurred_at: datetime,
        event_id: Optional[str] = None,
        forced: bool = False,
        plan_hint=None,
    ) -> Transition:
        now = self.clock()
        metadata = payloads.subscription_metadata(subscription)
        return Transition(
            kind=kind,
            occurred_at=occurred_at,
            event_id=event_id,
            subscription_id=subscription.get("id"),
            customer_id=payloads.object_id(subscription.get("customer")),
            plan=self._resolve_plan(
                payloads.subscription_price_id(subscription),
                metadata.get("plan") or plan_hint,
            ),
            provider_status=subscription.get("status"),
            period_end=current_period_end(subscription, now),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
            trial_end=from_timestamp(subscription.get("trial_end")),
            billing=self._billing(subscription),
            forced=forced,
        )

    def _transition_for_event(self, kind: TransitionKind, event: ExternalEvent) -> Transition:
        obj = event.payload

        if kind in (TransitionKind.SUBSCRIPTION_CREATED, TransitionKind.SUBSCRIPTION_UPDATED):
            return self._subscription_transition(obj, kind, event.created, event.event_id)

        if kind is TransitionKind.SUBSCRIPTION_DELETED:
            return Transition(
                kind=kind,
                occurred_at=event.created,
                event_id=event.event_id,
                subscription_id=obj.get("id"),
                customer_id=payloads.object_id(obj.get("customer")),
            )

        if kind is TransitionKind.CUSTOMER_DELETED:
            return Transition(
                kind=kind,
                occurred_at=event.created,
                event_id=event.event_id,
                customer_id=obj.get("id"),
            )

        if kind is TransitionKind.TRIAL_WILL_END:
            return Transition(
                kind=kind,
                occurred_at=event.created,
                event_id=event.event_id,
                subscription_id=obj.get("id"),
                trial_end=from_timestamp(obj.get("trial_end")),
            )

        # Invoice events
        plan = None
        if kind is TransitionKind.PAYMENT_SUCCEEDED:
            plan = self._resolve_plan(
                payloads.invoice_price_id(obj),
                payloads.invoice_metadata(obj).get("plan"),
            )
        return Transition(
            kind=kind,
            occurred_at=event.created,
            event_id=event.event_id,
            subscription_id=payloads.invoice_subscription_id(obj),
            customer_id=payloads.object_id(obj.get("customer")),
            plan=plan,
            period_end=invoice_period_end(obj) if kind is TransitionKind.PAYMENT_SUCCEEDED else None,
        )

    # ==================== APPLY (CAS) ====================

    def _apply(
        self,
        account_id: str,
        transition: Transition,
        event: Optional[ExternalEvent] = None,
        provision: bool = False,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Read, transition, compare-and-swap, ledger insert, commit.

        A lost CAS race re-reads and re-applies, up to max_cas_retries times.
        """
        for attempt in range(self.max_cas_retries + 1):
            state = self.store.get_or_create(account_id) if provision else self.store.get(account_id)
            if state is None:
                raise AccountNotFound(f"No subscription record for account {account_id}")

            result = self.state_machine.apply(state, transition, now or self.clock())
            try:
                if result.changed:
                    result.state = self.store.put(account_id, result.state, state.version)
                if event is not None:
                    self.ledger.mark_applied(event.event_id, account_id, event.type, event.verified)
                self.store.commit()
            except ConcurrentUpdate:
                self.store.rollback()
                if attempt >= self.max_cas_retries:
                    raise
                logger.info(
                    "Retrying transition after concurrent update",
                    extra={"account_id": account_id, "attempt": attempt + 1},
                )
                continue

            self.metrics.record_transition(
                transition.kind.value,
                result.skipped or ("applied" if result.changed else "unchanged"),
                result.anomalies,
            )
            return result

        raise ConcurrentUpdate(f"Subscription record for {account_id} changed concurrently")

    # ==================== PULL ====================

    def _require_provider(self):
        if self.provider is None:
            raise ProviderUnavailable("Billing provider is not configured")
        return self.provider

    def _retrieve_with_retry(self, subscription_id: str) -> Dict:
        provider = self._require_provider()
        delay = self.pull_retry_delay
        for attempt in range(self.pull_max_retries + 1):
            try:
                subscription = provider.retrieve_subscription(subscription_id)
                self.metrics.record_provider_call("retrieve_subscription", "ok")
                return subscription
            except ProviderUnavailable:
                self.metrics.record_provider_call("retrieve_subscription", "unavailable")
                if attempt >= self.pull_max_retries:
                    raise
                logger.warning(
                    f"Stripe unavailable during pull (attempt {attempt + 1}/{self.pull_max_retries + 1}), retrying",
                    extra={"subscription_id": subscription_id, "retry_delay": delay},
                )
                self.sleep(delay)
                delay *= 2
        raise ProviderUnavailable("Billing provider could not be reached")

    def get_state(self, account_id: str) -> SubscriptionState:
        state = self.store.get_or_create(account_id)
        self.store.commit()
        return state

    def pull(self, account_id: str, plan_hint=None) -> SubscriptionState:
        """Read current truth from Stripe and force it onto the local record."""
        state = self.get_state(account_id)
        subscription_id = state.provider_subscription_id
        if not subscription_id:
            return state

        now = self.clock()
        try:
            subscription = self._retrieve_with_retry(subscription_id)
        except SubscriptionNotFound:
            logger.warning(
                "Subscription no longer exists at Stripe, resetting record",
                extra={"account_id": account_id, "subscription_id": subscription_id},
            )
            transition = Transition(
                kind=TransitionKind.SUBSCRIPTION_DELETED,
                occurred_at=now,
                subscription_id=subscription_id,
                forced=True,
            )
        else:
            transition = self._subscription_transition(
                subscription,
                TransitionKind.SUBSCRIPTION_UPDATED,
                occurred_at=now,
                forced=True,
                plan_hint=plan_hint,
            )

        return self._apply(account_id, transition).state

    def reconcile_all(self) -> Dict[str, int]:
        """Pull every record that references a Stripe subscription."""
        summary = {"checked": 0, "failed": 0}
        for account_id in self.store.find_reconcilable():
            summary["checked"] += 1
            try:
                self.pull(account_id)
            except (TransientError, ProviderError):
                summary["failed"] += 1
                self.store.rollback()
                logger.warning(
                    "Reconcile failed for account",
                    exc_info=True,
                    extra={"account_id": account_id},
                )
        logger.info("Reconcile pass finished", extra=summary)
        return summary

    # ==================== SWEEP ====================

    def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Expire every record whose scheduled cancellation has passed. One sweep at a time."""
        now = now or self.clock()
        with exclusive(self.lock_client, SWEEP_LOCK_KEY, self.sweep_lock_ttl) as keep_alive:
            lapsed = self.store.find_lapsed(now)
            expired, failed = [], []
            for account_id in lapsed:
                keep_alive()
                transition = Transition(
                    kind=TransitionKind.SWEEP_EXPIRE,
                    occurred_at=now,
                    forced=True,
                )
                try:
                    result = self._apply(account_id, transition, now=now)
                except TransientError:
                    self.store.rollback()
                    failed.append(account_id)
                    logger.warning(
                        "Sweep could not expire account",
                        exc_info=True,
                        extra={"account_id": account_id},
                    )
                    continue
                if result.changed:
                    expired.append(account_id)

        self.metrics.record_sweep_expiration(len(expired))
        logger.info(
            "Subscription sweep finished",
            extra={"checked": len(lapsed), "expired": len(expired), "failed": len(failed)},
        )
        return SweepReport(checked=len(lapsed), expired=expired, failed=failed)

    # ==================== USER ACTIONS ====================

    def _provider_action(self, operation: str, call: Callable):
        """Run a Stripe mutation; a timeout leaves the local record untouched."""
        provider = self._require_provider()
        try:
            response = call(provider)
        except ProviderUnavailable as e:
            self.metrics.record_provider_call(operation, "unavailable")
            raise ActionNotCompleted(
                "The billing provider did not confirm the change, please try again"
            ) from e
        self.metrics.record_provider_call(operation, "ok")
        return response

    def _subscription_gone(self, account_id: str) -> InvalidTransition:
        """Reconcile a subscription Stripe no longer knows and build the error for the caller."""
        self.pull(account_id)
        return InvalidTransition("The subscription no longer exists")

    def create_checkout(
        self,
        account_id: str,
        plan,
        customer_email: Optional[str] = None,
        coupon: Optional[str] = None,
    ) -> Dict[str, str]:
        tier = self.resolver.parse_hint(plan)
        if tier is None:
            raise PlanNotAvailable(f"Unknown plan {plan!r}")
        price_id = self.resolver.price_for(tier)
        if not price_id:
            raise PlanNotAvailable(f"Plan {tier.value} has no configured price")

        state = self.get_state(account_id)
        if state.provider_subscription_id and state.status in LIVE_STATUSES:
            raise InvalidTransition("Account already has a subscription, use upgrade or downgrade")

        metadata = {"account_id": account_id, "plan": tier.value}

        session = self._provider_action(
            "create_checkout_session",
            lambda provider: provider.create_checkout_session(
                customer_id=state.provider_customer_id,
                price_id=price_id,
                success_url=f"{self.frontend_url}/settings?subscription=success",
                cancel_url=f"{self.frontend_url}/settings?subscription=canceled",
                metadata=metadata,
                customer_email=customer_email,
                coupon=coupon.strip() if coupon and coupon.strip() else None,
            ),
        )
        logger.info(
            "Checkout session created",
            extra={"account_id": account_id, "plan": tier.value, "session_id": session.get("id")},
        )
        return {"session_id": session.get("id"), "url": session.get("url")}

    def create_portal(self, account_id: str) -> Dict[str, str]:
        state = self.get_state(account_id)
        if not state.provider_customer_id:
            raise InvalidTransition("Account has no billing profile yet")
        session = self._provider_action(
            "create_portal_session",
            lambda provider: provider.create_portal_session(
                state.provider_customer_id, f"{self.frontend_url}/settings"
            ),
        )
        return {"url": session.get("url")}

    def cancel(self, account_id: str) -> SubscriptionState:
        """Schedule cancellation at period end."""
        state = self.get_state(account_id)
        self.state_machine.check_allowed(state, TransitionKind.USER_CANCEL)
        if state.cancel_at_period_end:
            return state

        subscription_id = state.provider_subscription_id
        try:
            subscription = self._provider_action(
                "update_subscription",
                lambda provider: provider.update_subscription(
                    subscription_id, {"cancel_at_period_end": True}
                ),
            )
        except SubscriptionNotFound as e:
            raise self._subscription_gone(account_id) from e

        now = self.clock()
        transition = Transition(
            kind=TransitionKind.USER_CANCEL,
            occurred_at=now,
            subscription_id=subscription_id,
            period_end=current_period_end(subscription, now) if subscription else None,
            forced=True,
        )
        return self._apply(account_id, transition).state

    def resume(self, account_id: str) -> SubscriptionState:
        """
        Undo a scheduled cancellation.

        Once Stripe confirms, a record the resulting webhook already resumed
        is returned as is.
        """
        state = self.get_state(account_id)
        self.state_machine.check_allowed(state, TransitionKind.USER_RESUME)

        subscription_id = state.provider_subscription_id
        try:
            subscription = self._provider_action(
                "update_subscription",
                lambda provider: provider.update_subscription(
                    subscription_id, {"cancel_at_period_end": False}
                ),
            )
        except SubscriptionNotFound as e:
            raise self._subscription_gone(account_id) from e

        now = self.clock()
        transition = Transition(
            kind=TransitionKind.USER_RESUME,
            occurred_at=now,
            subscription_id=subscription_id,
            period_end=current_period_end(subscription, now) if subscription else None,
            forced=True,
        )
        return self._apply(account_id, transition).state

    def change_plan(self, account_id: str, plan, direction: str) -> SubscriptionState:
        """
        Move a live subscription to another tier.

        Upgrades prorate immediately; downgrades take effect without proration.
        Downgrading to free schedules cancellation instead.
        """
        if direction not in ("upgrade", "downgrade"):
            raise InvalidTransition(f"Unknown plan change {direction!r}")

        target = self.resolver.parse_hint(plan)
        if target is None and str(plan).strip().lower() == PlanTier.FREE.value:
            target = PlanTier.FREE
        if target is None:
            raise PlanNotAvailable(f"Unknown plan {plan!r}")

        if target is PlanTier.FREE:
            if direction == "upgrade":
                raise InvalidTransition("Cannot upgrade to the free plan")
            return self.cancel(account_id)

        state = self.get_state(account_id)
        self.state_machine.check_allowed(state, TransitionKind.PLAN_CHANGED)
        if direction == "upgrade" and target.rank <= state.plan.rank:
            raise InvalidTransition("Invalid upgrade path, use downgrade for lower plans")
        if direction == "downgrade" and target.rank >= state.plan.rank:
            raise InvalidTransition("Invalid downgrade path")

        price_id = self.resolver.price_for(target)
        if not price_id:
            raise PlanNotAvailable(f"Plan {target.value} has no configured price")

        subscription_id = state.provider_subscription_id
        try:
            current = self._provider_action(
                "retrieve_subscription",
                lambda provider: provider.retrieve_subscription(subscription_id),
            )
            item_id = payloads.subscription_item_id(current)
            if not item_id:
                raise ActionNotCompleted("Subscription has no billable item")
            updated = self._provider_action(
                "update_subscription",
                lambda provider: provider.update_subscription(
                    subscription_id,
                    {
                        "items": [{"id": item_id, "price": price_id}],
                        "proration_behavior": "create_prorations" if direction == "upgrade" else "none",
                        "metadata": {"plan": target.value, "account_id": account_id},
                    },
                ),
            )
        except SubscriptionNotFound as e:
            raise self._subscription_gone(account_id) from e

        logger.info(
            "Subscription plan changed",
            extra={
                "account_id": account_id,
                "from_plan": state.plan.value,
                "to_plan": target.value,
                "direction": direction,
            },
        )
        transition = self._subscription_transition(
            updated,
            TransitionKind.PLAN_CHANGED,
            occurred_at=self.clock(),
            forced=True,
            plan_hint=target.value,
        )
        return self._apply(account_id, transition).state
