from __future__ import annotations

from typing import Any, Dict, Protocol

from ..models import SubscriptionDetails


class SubscriptionDetailsProvider(Protocol):
    """Fetches the full subscription when an event payload is partial."""

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionDetails:
        ...


class ChangeNotifier(Protocol):
    """Fire-and-forget push to every live connection of a user."""

    def notify(self, user_id: str, payload: Dict[str, Any]) -> None:
        ...
