from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from ...domain.models import SubscriptionStatus
from ...domain.ports.persistence import SubscriptionStore


class SubscriptionQueryService:
    """Read-only view of a user's reconciled subscription."""

    UNKNOWN_PLAN = "Unknown Plan"

    def __init__(self, store: SubscriptionStore, plan_names: Optional[Mapping[str, str]] = None) -> None:
        self._store = store
        self._plan_names = dict(plan_names or {})

    def get_subscription(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        record = self._store.find_by_user(user_id)
        if record is None:
            return {"status": SubscriptionStatus.NONE.value, "subscription": None}
        return {
            "status": record.status(now).value,
            "subscription": {
                "provider_subscription_id": record.provider_subscription_id,
                "plan_id": record.plan_id,
                "plan_name": self._plan_names.get(record.plan_id, self.UNKNOWN_PLAN),
                "current_period_end": record.current_period_end,
                "cancel_at_period_end": record.cancel_at_period_end,
                "updated_at": record.updated_at,
            },
        }
