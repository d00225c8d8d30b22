from datetime import timedelta

import pytest
from faker import Faker
from flask_jwt_extended import create_access_token

from billing_reconciler import create_app
from billing_reconciler.billing.coordinator import ReconciliationCoordinator
from billing_reconciler.billing.ledger import IdempotencyLedger
from billing_reconciler.billing.plan_resolver import PlanResolver
from billing_reconciler.billing.store import SubscriptionStore
from billing_reconciler.billing.verifier import EventVerifier
from billing_reconciler.config import TestingConfig
from billing_reconciler.extensions import db

from stripe_fakes import NOW, WEBHOOK_SECRET, FakeBillingClient, encode, sign

# Initialize Faker for generating test data
fake = Faker()


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "integration: end-to-end flows through the HTTP surface"
    )


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def app():
    """Fresh app and in-memory database per test"""
    app = create_app(TestingConfig)
    app.extensions["billing_provider"] = FakeBillingClient()

    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def fake_stripe(app):
    return app.extensions["billing_provider"]


@pytest.fixture()
def clock():
    return FrozenClock(NOW)


@pytest.fixture()
def store(app):
    return SubscriptionStore(db.session)


@pytest.fixture()
def ledger(app):
    return IdempotencyLedger(db.session)


@pytest.fixture()
def coordinator(app, store, ledger, fake_stripe, clock):
    return ReconciliationCoordinator(
        store=store,
        ledger=ledger,
        verifier=EventVerifier(WEBHOOK_SECRET),
        resolver=PlanResolver.from_config(app.config),
        provider=fake_stripe,
        metrics=app.extensions["reconciler_metrics"],
        pull_retry_delay=0,
        clock=clock,
        sleep=lambda seconds: None,
    )


@pytest.fixture()
def deliver(coordinator):
    """Sign and hand a webhook event to the coordinator, as the route would."""

    def _deliver(evt):
        payload = encode(evt)
        return coordinator.handle_webhook(payload.encode("utf-8"), sign(payload))

    return _deliver


@pytest.fixture()
def account_id():
    return f"acct_{fake.uuid4()[:8]}"


@pytest.fixture()
def auth_headers(app, account_id):
    token = create_access_token(identity=account_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def admin_headers(app):
    return {"X-Admin-Secret": app.config["ADMIN_SECRET"]}
