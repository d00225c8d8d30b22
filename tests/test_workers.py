import importlib
import sys
from datetime import timedelta
from unittest.mock import MagicMock, patch

from billing_reconciler.billing.domain import PlanTier
from billing_reconciler.utils.locks import local_lock
from billing_reconciler.workers.celery_app import celery
from billing_reconciler.workers.tasks import (
    expire_lapsed_subscriptions,
    reconcile_account,
    reconcile_subscriptions,
)

from stripe_fakes import NOW, encode, event, sign, subscription


def deliver_via_route(client, evt):
    payload = encode(evt)
    return client.post("/webhooks/stripe", data=payload, headers={"Stripe-Signature": sign(payload)})


def test_beat_schedule_runs_daily_sweep_and_hourly_reconcile():
    schedule = celery.conf.beat_schedule

    sweep = schedule["expire-lapsed-subscriptions-daily"]
    assert sweep["task"] == expire_lapsed_subscriptions.name
    assert sweep["schedule"].hour == {0}
    assert sweep["schedule"].minute == {0}
    assert schedule["reconcile-subscriptions-hourly"]["task"] == reconcile_subscriptions.name


def test_expire_task_reports_summary(app):
    result = expire_lapsed_subscriptions.run()

    assert result == {"status": "success", "checked": 0, "expired": 0, "failed": 0}


def test_expire_task_skips_when_sweep_already_running(app):
    with local_lock("billing:sweep"):
        result = expire_lapsed_subscriptions.run()

    assert result == {"status": "skipped"}


def test_reconcile_task_pulls_linked_accounts(app, client, fake_stripe, account_id):
    sub = subscription(metadata={"account_id": account_id}, period_end=NOW + timedelta(days=30))
    deliver_via_route(client, event("customer.subscription.created", sub))

    result = reconcile_subscriptions.run()

    assert result == {"status": "success", "checked": 1, "failed": 0}


def test_reconcile_account_task_returns_state(app, fake_stripe, account_id):
    with patch("billing_reconciler.workers.tasks.build_coordinator") as build:
        build.return_value.pull.return_value.to_dict.return_value = {"plan": PlanTier.FREE.value}
        result = reconcile_account.run(account_id)

    build.return_value.pull.assert_called_once_with(account_id)
    assert result == {"plan": "free"}


def test_worker_entrypoint_installs_worker_logging_after_app(monkeypatch):
    monkeypatch.delitem(sys.modules, "billing_reconciler.workers.worker", raising=False)
    order = MagicMock()

    with patch("dotenv.load_dotenv"), \
            patch("billing_reconciler.create_app") as create_app, \
            patch("billing_reconciler.logging_config.configure_logging_for_non_flask") as configure_logging, \
            patch("billing_reconciler.workers.celery_app.init_celery") as init_celery:
        order.attach_mock(create_app, "create_app")
        order.attach_mock(configure_logging, "configure_logging")
        order.attach_mock(init_celery, "init_celery")
        importlib.import_module("billing_reconciler.workers.worker")

    assert [name for name, _, _ in order.mock_calls] == ["create_app", "configure_logging", "init_celery"]
    init_celery.assert_called_once_with(create_app.return_value)
