"""Stripe event shapes as they move through the reconciliation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"


class ChangeKind(str, Enum):
    """Value of the ``status`` tag pushed to live clients."""

    CREATED = "created"
    UPDATED = "updated"
    CANCELED = "canceled"
    DELETED = "deleted"


@dataclass(slots=True)
class VerifiedEvent:
    """An event whose signature matched; ``data_object`` is ``data.object``."""

    id: str
    type: str
    data_object: Dict[str, Any]
    created: Optional[int] = None
    livemode: bool = False


@dataclass(slots=True)
class InboundEvent:
    """
    Typed payload extracted from a recognized event.

    Attributes:
        kind: Recognized event kind
        provider_event_id: Stripe event ID, used for dedup logging
        customer_ref: Stripe customer ID
        subscription_ref: Stripe subscription ID
        plan_ref: Stripe price ID when the payload carries one
        period_end: Current period end when the payload carries one
        cancel_flag: ``cancel_at_period_end`` when the payload carries one
        user_ref: Local user ID (checkout ``client_reference_id``/metadata)
    """

    kind: EventKind
    provider_event_id: str
    customer_ref: Optional[str]
    subscription_ref: Optional[str]
    plan_ref: Optional[str] = None
    period_end: Optional[datetime] = None
    cancel_flag: Optional[bool] = None
    user_ref: Optional[str] = None


@dataclass(slots=True)
class Ignored:
    """Classifier result for events this service does not act on."""

    provider_event_id: str
    event_type: str
    reason: str = "unhandled event type"


@dataclass(slots=True)
class ReconcileOutcome:
    """What a single reconciliation did; ``notification`` is ``None`` when suppressed."""

    event_id: str
    kind: Optional[EventKind]
    action: str
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    notification: Optional[ChangeKind] = None
    stale_period_end: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "kind": self.kind.value if self.kind else None,
            "action": self.action,
            "user_id": self.user_id,
            "subscription_id": self.subscription_id,
            "notification": self.notification.value if self.notification else None,
            "stale_period_end": self.stale_period_end,
        }
