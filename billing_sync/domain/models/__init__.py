"""Domain models for the billing sync service."""

from .events import (
    ChangeKind,
    EventKind,
    Ignored,
    InboundEvent,
    ReconcileOutcome,
    VerifiedEvent,
)
from .subscription import (
    StoreWriteResult,
    SubscriptionDetails,
    SubscriptionFields,
    SubscriptionRecord,
    SubscriptionStatus,
)

__all__ = [
    "ChangeKind",
    "EventKind",
    "Ignored",
    "InboundEvent",
    "ReconcileOutcome",
    "StoreWriteResult",
    "SubscriptionDetails",
    "SubscriptionFields",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "VerifiedEvent",
]
