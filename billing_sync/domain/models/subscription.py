"""Subscription domain model linking users to Stripe subscriptions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class SubscriptionStatus(str, Enum):
    """Status derived from a stored record; never persisted verbatim."""

    NONE = "none"
    ACTIVE = "active"
    CANCELING = "canceling"
    EXPIRED = "expired"


@dataclass(slots=True)
class SubscriptionRecord:
    """
    Local copy of a user's Stripe subscription.

    Attributes:
        user_id: Owning user, primary key
        provider_subscription_id: Stripe subscription ID, secondary unique key
        plan_id: Stripe price ID of the active plan
        current_period_end: End of the paid period (UTC)
        cancel_at_period_end: Whether the subscription ends instead of renewing
        created_at: Record creation timestamp
        updated_at: Last accepted write timestamp
    """

    user_id: str
    provider_subscription_id: str
    plan_id: str
    current_period_end: datetime
    cancel_at_period_end: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def status(self, now: Optional[datetime] = None) -> SubscriptionStatus:
        now = now or datetime.now(timezone.utc)
        if self.current_period_end <= now:
            return SubscriptionStatus.EXPIRED
        if self.cancel_at_period_end:
            return SubscriptionStatus.CANCELING
        return SubscriptionStatus.ACTIVE

    def same_state(self, other: Optional["SubscriptionRecord"]) -> bool:
        """Compare the reconciled fields, ignoring bookkeeping timestamps."""
        if other is None:
            return False
        return (
            self.user_id == other.user_id
            and self.provider_subscription_id == other.provider_subscription_id
            and self.plan_id == other.plan_id
            and self.current_period_end == other.current_period_end
            and self.cancel_at_period_end == other.cancel_at_period_end
        )


@dataclass(slots=True)
class SubscriptionFields:
    """Field set written by the reconciler; ``None`` leaves a column untouched."""

    provider_subscription_id: Optional[str] = None
    plan_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None


@dataclass(slots=True)
class StoreWriteResult:
    """Pre- and post-image of a guarded write, read inside the same transaction."""

    before: Optional[SubscriptionRecord]
    after: Optional[SubscriptionRecord]
    stale_period_end: bool = False

    @property
    def matched(self) -> bool:
        return self.before is not None or self.after is not None

    @property
    def changed(self) -> bool:
        if self.before is None or self.after is None:
            return self.before is not self.after
        return not self.before.same_state(self.after)


# Stripe statuses after which a subscription can never become active again.
TERMINAL_PROVIDER_STATUSES = frozenset({"canceled", "incomplete_expired"})


@dataclass(slots=True)
class SubscriptionDetails:
    """Authoritative subscription snapshot fetched from Stripe."""

    subscription_id: str
    customer_id: Optional[str]
    plan_id: Optional[str]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool = False
    status: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def is_terminated(self) -> bool:
        return self.status in TERMINAL_PROVIDER_STATUSES
