from unittest.mock import MagicMock

import pytest
import stripe

from billing_reconciler.billing.provider import StripeBillingClient
from billing_reconciler.errors import ProviderError, ProviderUnavailable, SubscriptionNotFound


@pytest.fixture
def stripe_client():
    return MagicMock(spec_set=["v1"])


@pytest.fixture
def billing(stripe_client):
    return StripeBillingClient(client=stripe_client)


def test_requires_api_key_without_injected_client():
    with pytest.raises(ProviderError):
        StripeBillingClient(api_key=None)


def test_from_config_builds_stripe_client():
    billing = StripeBillingClient.from_config({"STRIPE_SECRET_KEY": "sk_test_123", "STRIPE_TIMEOUT": 5})

    assert isinstance(billing.client, stripe.StripeClient)


def test_retrieve_returns_plain_dict(billing, stripe_client):
    stripe_client.v1.subscriptions.retrieve.return_value = {"id": "sub_1", "status": "active"}

    result = billing.retrieve_subscription("sub_1")

    stripe_client.v1.subscriptions.retrieve.assert_called_once_with("sub_1")
    assert result == {"id": "sub_1", "status": "active"}


def test_retrieve_converts_stripe_objects(billing, stripe_client):
    obj = MagicMock()
    obj.to_dict.return_value = {"id": "sub_1"}
    stripe_client.v1.subscriptions.retrieve.return_value = obj

    assert billing.retrieve_subscription("sub_1") == {"id": "sub_1"}


def test_missing_resource_maps_to_subscription_not_found(billing, stripe_client):
    stripe_client.v1.subscriptions.retrieve.side_effect = stripe.InvalidRequestError(
        "No such subscription: 'sub_1'", "id", code="resource_missing"
    )

    with pytest.raises(SubscriptionNotFound):
        billing.retrieve_subscription("sub_1")


def test_other_invalid_requests_map_to_provider_error(billing, stripe_client):
    stripe_client.v1.subscriptions.update.side_effect = stripe.InvalidRequestError(
        "Invalid price", "items", code="parameter_invalid"
    )

    with pytest.raises(ProviderError) as excinfo:
        billing.update_subscription("sub_1", {"items": []})

    assert not isinstance(excinfo.value, SubscriptionNotFound)


@pytest.mark.parametrize(
    "error",
    [
        stripe.APIConnectionError("connection reset"),
        stripe.RateLimitError("slow down"),
        stripe.APIError("server error"),
    ],
)
def test_transport_failures_map_to_provider_unavailable(billing, stripe_client, error):
    stripe_client.v1.subscriptions.retrieve.side_effect = error

    with pytest.raises(ProviderUnavailable):
        billing.retrieve_subscription("sub_1")


def test_authentication_failure_maps_to_provider_error(billing, stripe_client):
    stripe_client.v1.subscriptions.retrieve.side_effect = stripe.AuthenticationError("bad key")

    with pytest.raises(ProviderError):
        billing.retrieve_subscription("sub_1")


def test_checkout_session_params(billing, stripe_client):
    stripe_client.v1.checkout.sessions.create.return_value = {"id": "cs_1", "url": "https://x"}

    billing.create_checkout_session(
        customer_id=None,
        price_id="price_1",
        success_url="https://app/ok",
        cancel_url="https://app/cancel",
        metadata={"account_id": "acct_1", "plan": "tier1"},
        customer_email="a@example.com",
    )

    params = stripe_client.v1.checkout.sessions.create.call_args.kwargs["params"]
    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": "price_1", "quantity": 1}]
    assert params["subscription_data"] == {"metadata": {"account_id": "acct_1", "plan": "tier1"}}
    assert params["customer_email"] == "a@example.com"
    assert params["allow_promotion_codes"] is True
    assert "customer" not in params


def test_checkout_session_with_coupon_and_customer(billing, stripe_client):
    stripe_client.v1.checkout.sessions.create.return_value = {"id": "cs_1"}

    billing.create_checkout_session("cus_1", "price_1", "https://ok", "https://no", {}, coupon="LAUNCH20")

    params = stripe_client.v1.checkout.sessions.create.call_args.kwargs["params"]
    assert params["customer"] == "cus_1"
    assert params["discounts"] == [{"coupon": "LAUNCH20"}]
    assert "allow_promotion_codes" not in params


def test_portal_session_params(billing, stripe_client):
    stripe_client.v1.billing_portal.sessions.create.return_value = {"url": "https://portal"}

    result = billing.create_portal_session("cus_1", "https://app/settings")

    stripe_client.v1.billing_portal.sessions.create.assert_called_once_with(
        params={"customer": "cus_1", "return_url": "https://app/settings"}
    )
    assert result == {"url": "https://portal"}


def test_update_and_cancel_pass_through(billing, stripe_client):
    stripe_client.v1.subscriptions.update.return_value = {"id": "sub_1", "cancel_at_period_end": True}
    stripe_client.v1.subscriptions.cancel.return_value = {"id": "sub_1", "status": "canceled"}

    assert billing.update_subscription("sub_1", {"cancel_at_period_end": True})["cancel_at_period_end"]
    assert billing.cancel_subscription("sub_1")["status"] == "canceled"
    stripe_client.v1.subscriptions.update.assert_called_once_with(
        "sub_1", params={"cancel_at_period_end": True}
    )
