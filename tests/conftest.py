from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from billing_sync.domain.models import SubscriptionDetails
from billing_sync.infrastructure.persistence.sqlite import SQLitePersistence

WEBHOOK_SECRET = "whsec_test_secret"
BASE_TIME = datetime.now(timezone.utc).replace(microsecond=0)


def run_async(coro):
    return asyncio.run(coro)


def future(days: int) -> datetime:
    """Whole-second UTC timestamp ``days`` from now (the store keeps seconds)."""
    return BASE_TIME + timedelta(days=days)


def epoch(value: datetime) -> int:
    return int(value.timestamp())


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def event_body(event_type: str, data_object: Dict[str, Any], event_id: str = "evt_1") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "livemode": False,
            "data": {"object": data_object},
        }
    ).encode("utf-8")


def subscription_object(
    subscription_id: str = "sub_1",
    *,
    customer: str = "cus_1",
    price: str = "price_basic",
    period_end: Optional[int] = None,
    cancel_at_period_end: bool = False,
) -> Dict[str, Any]:
    obj: Dict[str, Any] = {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {"object": "list", "data": [{"price": {"id": price}}]},
    }
    if period_end is not None:
        obj["current_period_end"] = period_end
    return obj


class FakeNotifier:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def notify(self, user_id: str, payload: Dict[str, Any]) -> None:
        self.calls.append((user_id, payload))


class FakeDetailsProvider:
    def __init__(self) -> None:
        self.subscriptions: Dict[str, SubscriptionDetails] = {}
        self.calls: List[str] = []

    def add(
        self,
        subscription_id: str,
        plan_id: str,
        period_end: datetime,
        customer_id: str = "cus_1",
        status: str = "active",
    ) -> None:
        self.subscriptions[subscription_id] = SubscriptionDetails(
            subscription_id=subscription_id,
            customer_id=customer_id,
            plan_id=plan_id,
            current_period_end=period_end,
            status=status,
        )

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionDetails:
        self.calls.append(subscription_id)
        return self.subscriptions[subscription_id]


@pytest.fixture
def persistence(tmp_path: Path):
    store = SQLitePersistence(tmp_path / "billing.db")
    yield store
    store.close()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def details() -> FakeDetailsProvider:
    return FakeDetailsProvider()
