from __future__ import annotations

import time
from typing import Optional

import pytest

from billing_sync.domain.errors import MalformedEvent, StoreUnavailable, UserNotFound
from billing_sync.domain.models import ChangeKind, EventKind, InboundEvent
from billing_sync.services.reconciler import Reconciler

from conftest import FakeDetailsProvider, FakeNotifier, future, run_async

E1 = future(30)
E2 = future(60)


def checkout(event_id: str = "evt_checkout", user_ref: Optional[str] = None, customer: str = "cus_1"):
    return InboundEvent(
        kind=EventKind.CHECKOUT_COMPLETED,
        provider_event_id=event_id,
        customer_ref=customer,
        subscription_ref="sub_1",
        user_ref=user_ref,
    )


def updated(event_id: str, period_end=E1, cancel: Optional[bool] = False, plan: Optional[str] = "p1"):
    return InboundEvent(
        kind=EventKind.SUBSCRIPTION_UPDATED,
        provider_event_id=event_id,
        customer_ref="cus_1",
        subscription_ref="sub_1",
        plan_ref=plan,
        period_end=period_end,
        cancel_flag=cancel,
    )


def deleted(event_id: str = "evt_deleted"):
    return InboundEvent(
        kind=EventKind.SUBSCRIPTION_DELETED,
        provider_event_id=event_id,
        customer_ref="cus_1",
        subscription_ref="sub_1",
        period_end=E1,
    )


def invoice_paid(event_id: str = "evt_invoice", period_end=None, plan=None):
    return InboundEvent(
        kind=EventKind.INVOICE_PAYMENT_SUCCEEDED,
        provider_event_id=event_id,
        customer_ref="cus_1",
        subscription_ref="sub_1",
        plan_ref=plan,
        period_end=period_end,
    )


@pytest.fixture
def reconciler(persistence, details: FakeDetailsProvider, notifier: FakeNotifier) -> Reconciler:
    persistence.create_user("u1", stripe_customer_id="cus_1")
    details.add("sub_1", "p1", E1)
    return Reconciler(persistence, details, notifier, store_timeout=2.0, provider_timeout=2.0)


def test_checkout_creates_record_and_notifies(reconciler, persistence, notifier) -> None:
    outcome = run_async(reconciler.reconcile(checkout()))

    record = persistence.find_by_user("u1")
    assert record.provider_subscription_id == "sub_1"
    assert record.plan_id == "p1"
    assert record.current_period_end == E1
    assert record.cancel_at_period_end is False
    assert outcome.action == "created"
    assert notifier.calls == [("u1", {"status": "created"})]


def test_cancel_scheduling_keeps_period_end(reconciler, persistence, notifier) -> None:
    run_async(reconciler.reconcile(checkout()))

    outcome = run_async(reconciler.reconcile(updated("evt_cancel", period_end=E1, cancel=True)))

    record = persistence.find_by_user("u1")
    assert record.cancel_at_period_end is True
    assert record.current_period_end == E1
    assert outcome.notification is ChangeKind.CANCELED
    assert notifier.calls[-1] == ("u1", {"status": "canceled"})


def test_reapplying_update_is_idempotent(reconciler, persistence) -> None:
    run_async(reconciler.reconcile(checkout()))
    event = updated("evt_renew", period_end=E2, plan="p2")

    run_async(reconciler.reconcile(event))
    once = persistence.find_by_user("u1")
    run_async(reconciler.reconcile(event))
    twice = persistence.find_by_user("u1")

    assert once.same_state(twice)
    assert twice.current_period_end == E2
    assert twice.plan_id == "p2"


def test_redelivery_re_emits_but_duplicate_state_stays_silent(reconciler, notifier) -> None:
    run_async(reconciler.reconcile(checkout()))
    event = updated("evt_renew", period_end=E2, plan="p2")

    run_async(reconciler.reconcile(event))
    run_async(reconciler.reconcile(event))
    outcome = run_async(reconciler.reconcile(updated("evt_other", period_end=E2, plan="p2")))

    statuses = [payload["status"] for _, payload in notifier.calls]
    assert statuses == ["created", "updated", "updated"]
    assert outcome.action == "unchanged"
    assert outcome.notification is None


@pytest.mark.parametrize("order", [("t1", "t2"), ("t2", "t1")])
def test_out_of_order_updates_converge_on_latest_period_end(reconciler, persistence, order) -> None:
    run_async(reconciler.reconcile(checkout()))
    events = {
        "t1": updated("evt_t1", period_end=future(31), plan="p1"),
        "t2": updated("evt_t2", period_end=future(61), plan="p2"),
    }

    for name in order:
        run_async(reconciler.reconcile(events[name]))

    record = persistence.find_by_user("u1")
    assert record.current_period_end == future(61)
    assert record.plan_id == "p2"


def test_stale_update_still_applies_cancel_flag(reconciler, persistence) -> None:
    run_async(reconciler.reconcile(checkout()))
    run_async(reconciler.reconcile(updated("evt_t2", period_end=E2)))

    outcome = run_async(reconciler.reconcile(updated("evt_t1", period_end=future(45), cancel=True)))

    record = persistence.find_by_user("u1")
    assert record.current_period_end == E2
    assert record.cancel_at_period_end is True
    assert outcome.stale_period_end is True


def test_update_without_period_end_is_handled(reconciler, persistence) -> None:
    run_async(reconciler.reconcile(checkout()))

    outcome = run_async(reconciler.reconcile(updated("evt_plan", period_end=None, plan="p3")))

    record = persistence.find_by_user("u1")
    assert record.plan_id == "p3"
    assert record.current_period_end == E1
    assert outcome.notification is ChangeKind.UPDATED


def test_update_for_unknown_subscription_is_noop(reconciler, persistence, notifier) -> None:
    outcome = run_async(reconciler.reconcile(updated("evt_orphan")))

    assert outcome.action == "no_record"
    assert persistence.find_by_user("u1") is None
    assert notifier.calls == []


def test_deletion_is_final(reconciler, persistence, details, notifier) -> None:
    run_async(reconciler.reconcile(checkout()))

    run_async(reconciler.reconcile(deleted()))
    outcome = run_async(reconciler.reconcile(invoice_paid(period_end=E2, plan="p1")))

    assert persistence.find_by_user("u1") is None
    assert outcome.action == "no_record"
    assert notifier.calls[-1] == ("u1", {"status": "deleted"})
    assert details.calls == ["sub_1"]


def test_invoice_renewal_is_silent(reconciler, persistence, details, notifier) -> None:
    run_async(reconciler.reconcile(checkout()))
    details.add("sub_1", "p1", E2)

    outcome = run_async(reconciler.reconcile(invoice_paid()))

    assert outcome.action == "renewed"
    assert persistence.find_by_user("u1").current_period_end == E2
    assert [payload["status"] for _, payload in notifier.calls] == ["created"]


def test_update_without_cancel_flag_keeps_scheduled_cancellation(reconciler, persistence) -> None:
    run_async(reconciler.reconcile(checkout()))
    run_async(reconciler.reconcile(updated("evt_cancel", period_end=E1, cancel=True)))

    run_async(reconciler.reconcile(updated("evt_plan", period_end=E1, cancel=None, plan="p3")))

    record = persistence.find_by_user("u1")
    assert record.plan_id == "p3"
    assert record.cancel_at_period_end is True


def test_proration_invoice_keeps_upgraded_plan(reconciler, persistence, details, notifier) -> None:
    run_async(reconciler.reconcile(checkout()))
    run_async(reconciler.reconcile(updated("evt_upgrade", period_end=E1, plan="p2")))
    details.add("sub_1", "p2", E1)

    # The first invoice line is the unused-time credit on the previous price.
    outcome = run_async(reconciler.reconcile(invoice_paid(period_end=E1, plan="p1")))

    record = persistence.find_by_user("u1")
    assert record.plan_id == "p2"
    assert record.current_period_end == E1
    assert outcome.action == "unchanged"
    assert details.calls == ["sub_1", "sub_1"]
    assert [payload["status"] for _, payload in notifier.calls] == ["created", "updated"]


def test_redelivered_checkout_after_deletion_stays_deleted(reconciler, persistence, details, notifier) -> None:
    run_async(reconciler.reconcile(checkout()))
    run_async(reconciler.reconcile(deleted()))
    details.add("sub_1", "p1", E1, status="canceled")

    outcome = run_async(reconciler.reconcile(checkout()))

    assert outcome.action == "terminated"
    assert outcome.notification is None
    assert persistence.find_by_user("u1") is None
    assert [payload["status"] for _, payload in notifier.calls] == ["created", "deleted"]


def test_invoice_for_ended_subscription_leaves_record_alone(reconciler, persistence, details) -> None:
    run_async(reconciler.reconcile(checkout()))
    details.add("sub_1", "p1", E2, status="incomplete_expired")

    outcome = run_async(reconciler.reconcile(invoice_paid(period_end=E2, plan="p1")))

    assert outcome.action == "terminated"
    assert persistence.find_by_user("u1").current_period_end == E1


def test_checkout_resolves_user_from_reference_and_links_customer(persistence, details, notifier) -> None:
    persistence.create_user("u7")
    details.add("sub_1", "p1", E1)
    reconciler = Reconciler(persistence, details, notifier)

    run_async(reconciler.reconcile(checkout(user_ref="u7", customer="cus_7")))

    assert persistence.find_by_user("u7").provider_subscription_id == "sub_1"
    assert persistence.find_user_by_customer("cus_7") == "u7"


def test_checkout_for_unknown_customer_fails(reconciler, persistence, notifier) -> None:
    with pytest.raises(UserNotFound):
        run_async(reconciler.reconcile(checkout(customer="cus_unknown")))

    assert persistence.find_by_user("u1") is None
    assert notifier.calls == []


def test_checkout_without_plan_details_is_malformed(persistence, notifier) -> None:
    persistence.create_user("u1", stripe_customer_id="cus_1")
    details = FakeDetailsProvider()
    details.add("sub_1", None, E1)
    reconciler = Reconciler(persistence, details, notifier)

    with pytest.raises(MalformedEvent):
        run_async(reconciler.reconcile(checkout()))


class SlowStore:
    """Delegates to the real store but stalls every guarded update."""

    def __init__(self, inner, delay: float) -> None:
        self._inner = inner
        self._delay = delay

    def __getattr__(self, name):
        return getattr(self._inner, name)

    def update_by_provider_subscription_id(self, *args):
        time.sleep(self._delay)
        return self._inner.update_by_provider_subscription_id(*args)


def test_store_timeout_surfaces_as_transient_failure(persistence, details, notifier) -> None:
    persistence.create_user("u1", stripe_customer_id="cus_1")
    details.add("sub_1", "p1", E1)
    reconciler = Reconciler(SlowStore(persistence, 0.5), details, notifier, store_timeout=0.05)
    run_async(reconciler.reconcile(checkout()))

    with pytest.raises(StoreUnavailable) as excinfo:
        run_async(reconciler.reconcile(updated("evt_slow", period_end=E2)))

    assert excinfo.value.retryable
    assert [payload["status"] for _, payload in notifier.calls] == ["created"]
