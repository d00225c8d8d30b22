from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import redis

from billing_reconciler.errors import SweepAlreadyRunning
from billing_reconciler.utils.locks import exclusive, local_lock, redis_lock

from stripe_fakes import NOW, event, subscription


def test_local_lock_is_exclusive_per_key():
    with local_lock("jobs:a"):
        with pytest.raises(SweepAlreadyRunning):
            with local_lock("jobs:a"):
                pass
        with local_lock("jobs:b"):
            pass

    with local_lock("jobs:a"):
        pass


def test_redis_lock_acquires_without_blocking_and_releases():
    client = MagicMock()
    lock = client.lock.return_value
    lock.acquire.return_value = True

    with redis_lock(client, "billing:sweep", ttl=60):
        pass

    client.lock.assert_called_once_with("billing:sweep", timeout=60)
    lock.acquire.assert_called_once_with(blocking=False)
    lock.release.assert_called_once()


def test_redis_lock_held_elsewhere():
    client = MagicMock()
    client.lock.return_value.acquire.return_value = False

    with pytest.raises(SweepAlreadyRunning):
        with redis_lock(client, "billing:sweep"):
            pass


def test_redis_lock_expired_before_release_is_tolerated():
    client = MagicMock()
    lock = client.lock.return_value
    lock.acquire.return_value = True
    lock.release.side_effect = redis.exceptions.LockError("expired")

    with redis_lock(client, "billing:sweep"):
        pass


def test_exclusive_prefers_redis_when_available():
    client = MagicMock()
    client.lock.return_value.acquire.return_value = True

    with exclusive(client, "billing:sweep"):
        pass
    with exclusive(None, "billing:sweep"):
        pass

    client.lock.assert_called_once()


def test_redis_lock_keep_alive_resets_ttl():
    client = MagicMock()
    lock = client.lock.return_value
    lock.acquire.return_value = True

    with redis_lock(client, "billing:sweep", ttl=60) as keep_alive:
        keep_alive()
        keep_alive()

    assert lock.extend.call_count == 2
    lock.extend.assert_called_with(60, replace_ttl=True)


def test_redis_lock_lost_mid_run_stops_the_holder():
    client = MagicMock()
    lock = client.lock.return_value
    lock.acquire.return_value = True
    lock.extend.side_effect = redis.exceptions.LockNotOwnedError("not owned")

    with pytest.raises(SweepAlreadyRunning):
        with redis_lock(client, "billing:sweep") as keep_alive:
            keep_alive()


def test_sweep_keeps_its_lock_alive_per_account(coordinator, deliver, fake_stripe):
    client = MagicMock()
    lock = client.lock.return_value
    lock.acquire.return_value = True
    coordinator.lock_client = client
    period_end = NOW + timedelta(days=30)
    for account_id in ("acct_a", "acct_b"):
        sub = subscription(
            subscription_id=f"sub_{account_id}",
            customer_id=f"cus_{account_id}",
            metadata={"account_id": account_id},
            period_end=period_end,
            cancel_at_period_end=True,
        )
        deliver(event("customer.subscription.created", sub))

    report = coordinator.run_sweep(now=period_end + timedelta(seconds=1))

    assert sorted(report.expired) == ["acct_a", "acct_b"]
    assert lock.extend.call_count == 2
    lock.release.assert_called_once()
