from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from ..models import StoreWriteResult, SubscriptionFields, SubscriptionRecord


class SubscriptionStore(Protocol):
    """Durable one-record-per-user subscription storage.

    Mutations are atomic with respect to the period-end guard: a write never
    moves ``current_period_end`` backwards for the same Stripe subscription.
    """

    def upsert_by_user(self, user_id: str, fields: SubscriptionFields) -> StoreWriteResult:
        ...

    def update_by_provider_subscription_id(
        self, provider_subscription_id: str, fields: SubscriptionFields
    ) -> StoreWriteResult:
        ...

    def delete_by_provider_subscription_id(self, provider_subscription_id: str) -> StoreWriteResult:
        ...

    def find_by_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        ...

    def find_by_provider_subscription_id(
        self, provider_subscription_id: str
    ) -> Optional[SubscriptionRecord]:
        ...


class CustomerDirectory(Protocol):
    """Read side of the user registry owned by the auth collaborator."""

    def user_exists(self, user_id: str) -> bool:
        ...

    def find_user_by_customer(self, customer_id: str) -> Optional[str]:
        ...

    def link_customer(self, user_id: str, customer_id: str) -> None:
        ...


class ProcessedEventLog(Protocol):
    """Record of handled Stripe event IDs, kept for duplicate-delivery logging."""

    def record_event(self, event_id: str, kind: str, outcome: str, received_at: datetime) -> bool:
        ...

    def get_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        ...


class PersistenceGateway(
    SubscriptionStore,
    CustomerDirectory,
    ProcessedEventLog,
    Protocol,
):
    """Composite gateway combining every persistence concern used by the app."""

    pass
