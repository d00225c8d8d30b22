from datetime import timedelta
from unittest.mock import patch

import pytest

from billing_reconciler.billing.domain import PlanTier, SubscriptionStatus
from billing_reconciler.errors import ConcurrentUpdate, ProviderUnavailable

from stripe_fakes import NOW, checkout_session, event, invoice, sign, encode, subscription, ts

PERIOD_END = NOW + timedelta(days=30)


def activate(deliver, account_id, created=NOW, **kwargs):
    kwargs.setdefault("period_end", PERIOD_END)
    sub = subscription(metadata={"account_id": account_id}, **kwargs)
    return deliver(event("customer.subscription.created", sub, created=created))


def webhook_count(coordinator, event_type, outcome):
    return coordinator.metrics.registry.get_sample_value(
        "billing_webhook_events_total", {"event_type": event_type, "outcome": outcome}
    )


# ============ DELIVERY OUTCOMES ============

def test_subscription_created_provisions_account_from_metadata(coordinator, deliver, account_id):
    ack = activate(deliver, account_id)

    state = coordinator.get_state(account_id)
    assert ack.outcome == "processed"
    assert ack.http_status == 200
    assert state.plan is PlanTier.TIER2
    assert state.status is SubscriptionStatus.ACTIVE
    assert state.current_period_end == PERIOD_END
    assert state.billing.amount == 1900
    assert state.billing.interval == "month"
    assert webhook_count(coordinator, "customer.subscription.created", "processed") == 1


def test_bad_signature_is_rejected_without_touching_state(coordinator, ledger):
    evt = event("customer.subscription.created", subscription())
    payload = encode(evt)

    ack = coordinator.handle_webhook(payload.encode(), sign(payload, secret="whsec_wrong"))

    assert ack.outcome == "rejected"
    assert ack.http_status == 400
    assert not ledger.has_been_applied(evt["id"])


def test_unhandled_event_type_is_acknowledged(deliver, ledger):
    evt = event("customer.created", {"id": "cus_999"})

    ack = deliver(evt)

    assert ack.outcome == "ignored"
    assert ledger.has_been_applied(evt["id"])


def test_event_for_unknown_customer_is_unmatched(coordinator, deliver, ledger):
    evt = event("customer.subscription.updated", subscription(subscription_id="sub_x", customer_id="cus_x"))

    ack = deliver(evt)

    assert ack.outcome == "unmatched"
    assert ledger.has_been_applied(evt["id"])
    assert coordinator.store.find_by_customer("cus_x") is None


def test_processing_failure_is_acknowledged_and_left_retryable(coordinator, deliver, ledger, account_id):
    evt = event("customer.subscription.created", subscription(metadata={"account_id": account_id}))

    with patch.object(coordinator.state_machine, "apply", side_effect=RuntimeError("boom")):
        ack = deliver(evt)

    assert ack.outcome == "failed"
    assert ack.http_status == 200
    assert not ledger.has_been_applied(evt["id"])
    assert deliver(evt).outcome == "processed"


# ============ IDEMPOTENCY ============

def test_duplicate_delivery_is_applied_once(coordinator, deliver, account_id):
    evt = event("customer.subscription.created", subscription(metadata={"account_id": account_id}))

    first = deliver(evt)
    version = coordinator.get_state(account_id).version
    second = deliver(evt)

    assert first.outcome == "processed"
    assert second.outcome == "duplicate"
    assert coordinator.get_state(account_id).version == version


def test_racing_duplicate_loses_on_ledger_insert(coordinator, deliver, ledger, account_id):
    evt = event("customer.subscription.created", subscription(metadata={"account_id": account_id}))
    deliver(evt)
    version = coordinator.get_state(account_id).version

    # Second delivery passed the pre-check before the first one committed
    with patch.object(ledger, "has_been_applied", return_value=False):
        ack = deliver(evt)

    assert ack.outcome == "duplicate"
    assert coordinator.get_state(account_id).version == version


def test_racing_payment_events_do_not_double_apply(coordinator, deliver, ledger, account_id):
    activate(deliver, account_id)
    failed = event("invoice.payment_failed", invoice(), created=NOW + timedelta(seconds=5))
    deliver(failed)
    assert coordinator.get_state(account_id).status is SubscriptionStatus.PAST_DUE

    with patch.object(ledger, "has_been_applied", return_value=False):
        assert deliver(failed).outcome == "duplicate"


# ============ ORDERING ============

def test_older_event_arriving_late_is_stale(coordinator, deliver, account_id):
    activate(deliver, account_id, created=NOW + timedelta(seconds=10))
    late = event(
        "customer.subscription.updated",
        subscription(status="past_due", period_end=PERIOD_END),
        created=NOW + timedelta(seconds=5),
    )

    ack = deliver(late)

    assert ack.outcome == "stale"
    assert coordinator.get_state(account_id).status is SubscriptionStatus.ACTIVE


def test_deletion_wins_regardless_of_order(coordinator, deliver, account_id):
    activate(deliver, account_id, created=NOW)
    deleted = event("customer.subscription.deleted", subscription(status="canceled"),
                    created=NOW - timedelta(minutes=1))
    late_update = event("customer.subscription.updated", subscription(period_end=PERIOD_END),
                        created=NOW + timedelta(minutes=1))

    assert deliver(deleted).outcome == "processed"
    assert deliver(late_update).outcome in ("skipped", "unmatched")

    state = coordinator.get_state(account_id)
    assert state.plan is PlanTier.FREE
    assert state.status is SubscriptionStatus.INACTIVE
    assert state.current_period_end is None


def test_lost_cas_race_is_retried(coordinator, deliver, store, account_id, monkeypatch):
    real_put = store.put
    lost = []

    def flaky_put(*args, **kwargs):
        if not lost:
            lost.append(True)
            raise ConcurrentUpdate("lost race")
        return real_put(*args, **kwargs)

    monkeypatch.setattr(store, "put", flaky_put)

    assert activate(deliver, account_id).outcome == "processed"
    assert lost
    assert coordinator.get_state(account_id).plan is PlanTier.TIER2


def test_exhausted_cas_retries_fail_the_delivery(coordinator, deliver, store, ledger, account_id, monkeypatch):
    evt = event("customer.subscription.created", subscription(metadata={"account_id": account_id}))
    def always_busy(*args, **kwargs):
        raise ConcurrentUpdate("busy")

    monkeypatch.setattr(store, "put", always_busy)

    ack = deliver(evt)

    assert ack.outcome == "failed"
    assert not ledger.has_been_applied(evt["id"])


# ============ PAYMENTS ============

def test_payment_failure_keeps_plan_and_period(coordinator, deliver, account_id):
    activate(deliver, account_id)

    deliver(event("invoice.payment_failed", invoice(), created=NOW + timedelta(seconds=1)))

    state = coordinator.get_state(account_id)
    assert state.status is SubscriptionStatus.PAST_DUE
    assert state.plan is PlanTier.TIER2
    assert state.current_period_end == PERIOD_END
    assert not state.is_entitled


def test_payment_success_restores_access_and_extends_period(coordinator, deliver, account_id):
    activate(deliver, account_id, status="past_due")
    next_end = PERIOD_END + timedelta(days=30)

    deliver(event("invoice.payment_succeeded", invoice(period_end=next_end), created=NOW + timedelta(seconds=1)))

    state = coordinator.get_state(account_id)
    assert state.status is SubscriptionStatus.ACTIVE
    assert state.current_period_end == next_end


def test_invoice_for_new_style_payload_is_matched(coordinator, deliver, account_id):
    activate(deliver, account_id)
    obj = invoice()
    del obj["subscription"]
    obj["lines"]["data"][0].pop("subscription")
    obj["parent"] = {"subscription_details": {"subscription": "sub_123", "metadata": {}}}

    ack = deliver(event("invoice.payment_failed", obj, created=NOW + timedelta(seconds=1)))

    assert ack.outcome == "processed"
    assert coordinator.get_state(account_id).status is SubscriptionStatus.PAST_DUE


def test_customer_deletion_resets_account(coordinator, deliver, account_id):
    activate(deliver, account_id)

    ack = deliver(event("customer.deleted", {"id": "cus_123", "object": "customer"},
                        created=NOW + timedelta(seconds=1)))

    state = coordinator.get_state(account_id)
    assert ack.outcome == "processed"
    assert state.plan is PlanTier.FREE
    assert state.status is SubscriptionStatus.INACTIVE
    assert state.provider_customer_id is None
    assert state.ended_subscription_id == "sub_123"


def test_customer_deletion_for_unknown_customer_is_unmatched(deliver, ledger):
    evt = event("customer.deleted", {"id": "cus_nobody", "object": "customer"})

    assert deliver(evt).outcome == "unmatched"
    assert ledger.has_been_applied(evt["id"])


# ============ PULL ============

def test_pull_estimate_never_overwrites_authoritative_period(coordinator, deliver, fake_stripe, account_id):
    activate(deliver, account_id)
    fake_stripe.add(subscription(metadata={"account_id": account_id}))

    state = coordinator.pull(account_id)

    assert state.current_period_end == PERIOD_END
    assert not state.period_end_estimated


def test_pull_applies_provider_truth_over_newer_events(coordinator, deliver, fake_stripe, account_id):
    activate(deliver, account_id, created=NOW + timedelta(hours=1))
    fake_stripe.add(subscription(status="past_due", period_end=PERIOD_END))

    state = coordinator.pull(account_id)

    assert state.status is SubscriptionStatus.PAST_DUE
    assert state.last_event_at == NOW + timedelta(hours=1)


def test_event_in_the_same_second_as_a_pull_is_applied(coordinator, deliver, fake_stripe, clock, account_id):
    activate(deliver, account_id)
    fake_stripe.add(subscription(period_end=PERIOD_END))
    clock.now = NOW + timedelta(seconds=5, microseconds=400000)
    coordinator.pull(account_id)

    ack = deliver(event("invoice.payment_failed", invoice(), created=NOW + timedelta(seconds=5)))

    assert ack.outcome == "processed"
    assert coordinator.get_state(account_id).status is SubscriptionStatus.PAST_DUE


def test_pull_resets_record_when_subscription_is_gone(coordinator, deliver, account_id):
    activate(deliver, account_id)

    state = coordinator.pull(account_id)

    assert state.plan is PlanTier.FREE
    assert state.provider_subscription_id is None
    assert state.ended_subscription_id == "sub_123"


def test_pull_without_subscription_is_a_read(coordinator, fake_stripe, account_id):
    state = coordinator.pull(account_id)

    assert state.plan is PlanTier.FREE
    assert fake_stripe.calls == []


def test_pull_retries_then_surfaces_unavailability(coordinator, deliver, fake_stripe, account_id):
    activate(deliver, account_id)
    fake_stripe.unavailable = True

    with pytest.raises(ProviderUnavailable):
        coordinator.pull(account_id)

    assert fake_stripe.operations().count("retrieve_subscription") == coordinator.pull_max_retries + 1
    assert coordinator.get_state(account_id).plan is PlanTier.TIER2


def test_reconcile_all_counts_failures(coordinator, deliver, fake_stripe):
    activate(deliver, "acct_a", subscription_id="sub_a", customer_id="cus_a")
    activate(deliver, "acct_b", subscription_id="sub_b", customer_id="cus_b")
    fake_stripe.add(subscription(subscription_id="sub_a", customer_id="cus_a", status="past_due",
                                 period_end=PERIOD_END))

    summary = coordinator.reconcile_all()

    assert summary == {"checked": 2, "failed": 0}
    assert coordinator.get_state("acct_a").status is SubscriptionStatus.PAST_DUE
    assert coordinator.get_state("acct_b").plan is PlanTier.FREE


# ============ CHECKOUT ============

def test_checkout_followed_by_pull_activates_account(coordinator, deliver, fake_stripe, account_id):
    fake_stripe.add(subscription(price_id="price_unlisted", period_end=None))

    ack = deliver(event("checkout.session.completed", checkout_session(account_id=account_id, plan="tier2")))

    state = coordinator.get_state(account_id)
    assert ack.outcome == "processed"
    assert state.plan is PlanTier.TIER2
    assert state.status is SubscriptionStatus.ACTIVE
    assert state.provider_customer_id == "cus_123"
    assert state.current_period_end == NOW.replace(month=4)
    assert state.period_end_estimated


def test_checkout_survives_failed_pull(coordinator, deliver, fake_stripe, account_id):
    fake_stripe.unavailable = True

    ack = deliver(event("checkout.session.completed", checkout_session(account_id=account_id)))

    state = coordinator.get_state(account_id)
    assert ack.outcome == "processed"
    assert state.provider_subscription_id == "sub_123"
    assert state.plan is PlanTier.FREE


def test_subscription_created_after_checkout_is_applied_though_older(coordinator, deliver, fake_stripe, account_id):
    fake_stripe.unavailable = True
    deliver(event("checkout.session.completed", checkout_session(account_id=account_id), created=NOW))

    sub = subscription(metadata={"account_id": account_id}, period_end=PERIOD_END)
    ack = deliver(event("customer.subscription.created", sub, created=NOW - timedelta(seconds=1)))

    state = coordinator.get_state(account_id)
    assert ack.outcome == "processed"
    assert state.plan is PlanTier.TIER2
    assert state.status is SubscriptionStatus.ACTIVE


def test_subscription_created_before_checkout_converges(coordinator, deliver, fake_stripe, account_id):
    sub = subscription(metadata={"account_id": account_id, "plan": "tier2"}, period_end=PERIOD_END)
    fake_stripe.add(sub)

    deliver(event("customer.subscription.created", sub, created=NOW))
    deliver(event("checkout.session.completed", checkout_session(account_id=account_id),
                  created=NOW - timedelta(seconds=2)))

    state = coordinator.get_state(account_id)
    assert state.plan is PlanTier.TIER2
    assert state.status is SubscriptionStatus.ACTIVE
    assert state.current_period_end == PERIOD_END


def test_payment_checkout_is_ignored(deliver, account_id):
    session = checkout_session(account_id=account_id)
    session["mode"] = "payment"

    assert deliver(event("checkout.session.completed", session)).outcome == "ignored"


# ============ END TO END ============

def test_full_lifecycle(coordinator, deliver, fake_stripe, clock, account_id):
    fake_stripe.add(subscription(period_end=None))

    deliver(event("checkout.session.completed", checkout_session(account_id=account_id, plan="tier2")))
    state = coordinator.get_state(account_id)
    assert (state.plan, state.status) == (PlanTier.TIER2, SubscriptionStatus.ACTIVE)
    assert state.period_end_estimated

    fake_stripe.subscriptions["sub_123"]["current_period_end"] = ts(PERIOD_END)
    deliver(event("customer.subscription.updated", subscription(period_end=PERIOD_END),
                  created=NOW + timedelta(seconds=60)))
    state = coordinator.get_state(account_id)
    assert state.current_period_end == PERIOD_END
    assert not state.period_end_estimated

    deliver(event("invoice.payment_failed", invoice(), created=NOW + timedelta(seconds=120)))
    state = coordinator.get_state(account_id)
    assert (state.plan, state.status) == (PlanTier.TIER2, SubscriptionStatus.PAST_DUE)

    state = coordinator.cancel(account_id)
    assert state.cancel_at_period_end
    assert state.current_period_end == PERIOD_END

    clock.now = PERIOD_END + timedelta(seconds=1)
    report = coordinator.run_sweep()

    state = coordinator.get_state(account_id)
    assert report.expired == [account_id]
    assert state.plan is PlanTier.FREE
    assert state.status is SubscriptionStatus.INACTIVE
    assert state.cancel_at_period_end is False
    assert state.current_period_end is None
