"""
Stripe client wrapper.

The client is built explicitly from configuration and handed to whoever needs
it; nothing here touches the ``stripe.api_key`` module global. Results come
back as plain dicts so the rest of the engine never depends on StripeObject.
Stripe errors are translated into the engine's error taxonomy at this seam.
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

import sentry_sdk
import stripe

from ..errors import (
    ProviderError,
    ProviderUnavailable,
    SubscriptionNotFound,
)

logger = logging.getLogger(__name__)


def _plain(obj) -> Dict[str, Any]:
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


@contextmanager
def provider_call(operation: str, **context):
    """
    Wrap one Stripe request with timing, structured logs and error mapping.

    Example:
        with provider_call("retrieve_subscription", subscription_id=sub_id):
            ...
    """
    started = time.perf_counter()
    sentry_sdk.add_breadcrumb(category="stripe", message=operation, data=context)

    try:
        yield
    except stripe.InvalidRequestError as e:
        duration = time.perf_counter() - started
        if getattr(e, "code", None) == "resource_missing":
            logger.info(
                f"Stripe resource missing: {operation}",
                extra={"operation": operation, "duration_seconds": duration, **context},
            )
            raise SubscriptionNotFound(str(e)) from e
        logger.error(
            f"Stripe rejected request: {operation}",
            extra={"operation": operation, "stripe_error": str(e), **context},
        )
        raise ProviderError(str(e)) from e
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
        duration = time.perf_counter() - started
        logger.warning(
            f"Stripe unavailable: {operation}",
            extra={
                "operation": operation,
                "duration_seconds": duration,
                "error_type": type(e).__name__,
                "stripe_error": str(e),
                **context,
            },
        )
        raise ProviderUnavailable(str(e)) from e
    except stripe.StripeError as e:
        logger.error(
            f"Stripe operation failed: {operation}",
            exc_info=True,
            extra={"operation": operation, "error_type": type(e).__name__, **context},
        )
        raise ProviderError(str(e)) from e
    else:
        logger.info(
            f"Completed Stripe operation: {operation}",
            extra={
                "operation": operation,
                "duration_seconds": time.perf_counter() - started,
                **context,
            },
        )


class StripeBillingClient:
    """Thin, explicitly constructed handle over ``stripe.StripeClient``."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: int = 30,
        max_network_retries: int = 2,
        client: Optional[stripe.StripeClient] = None,
    ):
        if client is None:
            if not api_key:
                raise ProviderError("STRIPE_SECRET_KEY is not configured")
            client = stripe.StripeClient(
                api_key,
                max_network_retries=max_network_retries,
                http_client=stripe.RequestsClient(timeout=timeout),
            )
        self.client = client

    @classmethod
    def from_config(cls, config) -> "StripeBillingClient":
        return cls(
            api_key=config.get("STRIPE_SECRET_KEY"),
            timeout=config.get("STRIPE_TIMEOUT", 30),
            max_network_retries=config.get("STRIPE_MAX_RETRIES", 2),
        )

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        with provider_call("retrieve_subscription", subscription_id=subscription_id):
            subscription = self.client.v1.subscriptions.retrieve(subscription_id)
        return _plain(subscription)

    def create_checkout_session(
        self,
        customer_id: Optional[str],
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        customer_email: Optional[str] = None,
        coupon: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        # Stripe rejects allow_promotion_codes together with discounts
        if coupon:
            params["discounts"] = [{"coupon": coupon}]
        else:
            params["allow_promotion_codes"] = True
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email

        with provider_call("create_checkout_session", price_id=price_id, customer_id=customer_id):
            session = self.client.v1.checkout.sessions.create(params=params)
        return _plain(session)

    def create_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        with provider_call("create_portal_session", customer_id=customer_id):
            session = self.client.v1.billing_portal.sessions.create(
                params={"customer": customer_id, "return_url": return_url}
            )
        return _plain(session)

    def update_subscription(self, subscription_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        with provider_call(
            "update_subscription",
            subscription_id=subscription_id,
            fields=sorted(patch.keys()),
        ):
            subscription = self.client.v1.subscriptions.update(subscription_id, params=patch)
        return _plain(subscription)

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Cancel immediately. Scheduled cancellation goes through ``update_subscription``."""
        with provider_call("cancel_subscription", subscription_id=subscription_id):
            subscription = self.client.v1.subscriptions.cancel(subscription_id)
        return _plain(subscription)
