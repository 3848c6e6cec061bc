"""Stripe API access used to complete partial webhook payloads."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import stripe

from ..domain.errors import ProviderUnavailable
from ..domain.models import SubscriptionDetails

logger = logging.getLogger(__name__)


class StripeService:
    """Retrieves authoritative subscription details from Stripe."""

    def __init__(self, secret_key: Optional[str]) -> None:
        self._configured = bool(secret_key)
        if secret_key:
            stripe.api_key = secret_key

    def is_configured(self) -> bool:
        return self._configured

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionDetails:
        if not self._configured:
            raise ProviderUnavailable("Stripe not configured. Please set STRIPE_SECRET_KEY.")

        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.InvalidRequestError as exc:
            logger.error("Stripe rejected subscription lookup %s: %s", subscription_id, exc)
            raise ProviderUnavailable(f"Invalid request: {exc}") from exc
        except stripe.StripeError as exc:
            logger.error("Failed to retrieve subscription %s: %s", subscription_id, exc)
            raise ProviderUnavailable(f"Failed to retrieve subscription: {exc}") from exc

        return self._to_details(subscription)

    @staticmethod
    def _to_details(subscription: Any) -> SubscriptionDetails:
        items = subscription["items"]["data"] if subscription.get("items") else []
        first_item = items[0] if items else None

        plan_id = None
        period_end = subscription.get("current_period_end")
        if first_item is not None:
            price = first_item.get("price") or first_item.get("plan")
            plan_id = price["id"] if price else None
            if period_end is None:
                period_end = first_item.get("current_period_end")

        customer = subscription.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")

        return SubscriptionDetails(
            subscription_id=subscription["id"],
            customer_id=customer,
            plan_id=plan_id,
            current_period_end=(
                datetime.fromtimestamp(period_end, tz=timezone.utc)
                if isinstance(period_end, int)
                else None
            ),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
            status=subscription.get("status"),
            metadata=dict(subscription.get("metadata") or {}),
        )
