"""
Billing provider boundary.

All calls into the Stripe SDK go through StripeBillingProvider so that SDK
failures surface as ExternalProviderError and nothing above this layer has to
know about stripe exception types.
"""

import logging
import time
from contextlib import contextmanager
from typing import Any

import sentry_sdk
import stripe
from flask import current_app

from entitlements.errors import ExternalProviderError, InvalidWebhookSignature
from entitlements.utils.time import from_unix, utcnow

logger = logging.getLogger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")


@contextmanager
def stripe_operation_context(operation_name: str, **context_vars):
    """
    Wrap a Stripe call with structured logging and error translation.

    Example:
        with stripe_operation_context("pause_subscription", user_id=user.id):
            stripe.Subscription.modify(...)
    """
    start = time.monotonic()
    sentry_sdk.set_tag("stripe_operation", operation_name)

    try:
        yield
    except stripe.StripeError as e:
        logger.error(
            f"Stripe operation failed: {operation_name}",
            exc_info=True,
            extra={
                "operation": operation_name,
                "duration_seconds": round(time.monotonic() - start, 3),
                "error_type": type(e).__name__,
                **context_vars,
            },
        )
        sentry_sdk.capture_exception(e)
        raise ExternalProviderError(
            f"Billing provider call '{operation_name}' failed: {e.user_message or e}",
            operation=operation_name,
        ) from e
    else:
        logger.info(
            f"Completed Stripe operation: {operation_name}",
            extra={
                "operation": operation_name,
                "duration_seconds": round(time.monotonic() - start, 3),
                **context_vars,
            },
        )


def subscription_period_end(subscription) -> Any:
    """
    current_period_end as a naive UTC datetime. Newer API versions carry it
    on the subscription items instead of the subscription.
    """
    value = subscription.get("current_period_end")
    if value is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            value = items[0].get("current_period_end")
    return from_unix(value)


def subscription_price_id(subscription) -> str | None:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id")


class StripeBillingProvider:
    """Thin wrapper over the Stripe SDK used by the entitlement engine."""

    provider_name = "stripe"

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def _opts(self) -> dict:
        return {"api_key": self.api_key} if self.api_key else {}

    # ---- subscriptions ----

    def find_active_subscription(self, customer_id: str):
        with stripe_operation_context("list_active_subscriptions", customer_id=customer_id):
            result = stripe.Subscription.list(
                customer=customer_id, status="active", limit=1, **self._opts()
            )
        data = result.get("data") or []
        return data[0] if data else None

    def list_subscriptions(self, customer_id: str) -> list:
        with stripe_operation_context("list_subscriptions", customer_id=customer_id):
            result = stripe.Subscription.list(
                customer=customer_id, status="all", limit=100, **self._opts()
            )
        return list(result.get("data") or [])

    def retrieve_subscription(self, subscription_id: str):
        with stripe_operation_context("retrieve_subscription", subscription_id=subscription_id):
            return stripe.Subscription.retrieve(subscription_id, **self._opts())

    def pause_subscription(self, subscription_id: str, *, user_id: str, reason: str):
        """Suspend collection; the subscription itself stays active."""
        with stripe_operation_context(
            "pause_subscription", subscription_id=subscription_id, user_id=user_id
        ):
            return stripe.Subscription.modify(
                subscription_id,
                pause_collection={"behavior": "mark_uncollectible"},
                metadata={
                    "paused_for": reason,
                    "paused_at": utcnow().isoformat(),
                    "userId": user_id,
                },
                **self._opts(),
            )

    def resume_subscription(self, subscription_id: str, *, user_id: str):
        """Lift a collection pause. Returns the subscription's period end."""
        with stripe_operation_context(
            "resume_subscription", subscription_id=subscription_id, user_id=user_id
        ):
            subscription = stripe.Subscription.modify(
                subscription_id,
                pause_collection="",
                metadata={
                    "paused_for": "",
                    "resumed_at": utcnow().isoformat(),
                    "userId": user_id,
                },
                **self._opts(),
            )
        return subscription_period_end(subscription)

    # ---- customers ----

    def list_customers_by_email(self, email: str) -> list:
        with stripe_operation_context("list_customers_by_email"):
            result = stripe.Customer.list(email=email, limit=100, **self._opts())
        return list(result.get("data") or [])

    def mark_customer_merged(self, customer_id: str, canonical_id: str):
        with stripe_operation_context(
            "mark_customer_merged", customer_id=customer_id, canonical_id=canonical_id
        ):
            return stripe.Customer.modify(
                customer_id,
                metadata={
                    "merged_into": canonical_id,
                    "merged_at": utcnow().isoformat(),
                    "status": "merged_duplicate",
                },
                **self._opts(),
            )

    # ---- webhooks ----

    def construct_event(self, payload: bytes, signature: str | None):
        if not self.webhook_secret:
            raise InvalidWebhookSignature("Webhook secret is not configured")
        if not signature:
            raise InvalidWebhookSignature("Missing Stripe-Signature header")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            raise InvalidWebhookSignature("Invalid webhook payload") from e
        except stripe.SignatureVerificationError as e:
            raise InvalidWebhookSignature() from e


def get_billing_provider() -> StripeBillingProvider:
    return StripeBillingProvider(
        api_key=current_app.config.get("STRIPE_SECRET_KEY"),
        webhook_secret=current_app.config.get("STRIPE_WEBHOOK_SECRET"),
    )
