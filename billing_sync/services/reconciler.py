"""Subscription state machine driven by classified Stripe events."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

from ..domain.errors import (
    BillingSyncError,
    MalformedEvent,
    ProviderUnavailable,
    StoreUnavailable,
    UserNotFound,
)
from ..domain.models import (
    ChangeKind,
    EventKind,
    InboundEvent,
    ReconcileOutcome,
    StoreWriteResult,
    SubscriptionDetails,
    SubscriptionFields,
)
from ..domain.ports.collaborators import ChangeNotifier, SubscriptionDetailsProvider
from ..domain.ports.persistence import PersistenceGateway

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Reconciler:
    """Applies one event to the subscription store and emits the change signal.

    Every step is safe to re-run from scratch: writes go through the store's
    guarded operations, so a redelivered or reordered event converges on the
    same record. Failures are raised, never retried here; Stripe redelivers.
    """

    def __init__(
        self,
        persistence: PersistenceGateway,
        details_provider: SubscriptionDetailsProvider,
        notifier: ChangeNotifier,
        *,
        store_timeout: float = 5.0,
        provider_timeout: float = 10.0,
    ) -> None:
        self._persistence = persistence
        self._details_provider = details_provider
        self._notifier = notifier
        self._store_timeout = store_timeout
        self._provider_timeout = provider_timeout
        self._handlers: Dict[EventKind, Callable[[InboundEvent], Awaitable[ReconcileOutcome]]] = {
            EventKind.CHECKOUT_COMPLETED: self._checkout_completed,
            EventKind.SUBSCRIPTION_UPDATED: self._subscription_updated,
            EventKind.SUBSCRIPTION_DELETED: self._subscription_deleted,
            EventKind.INVOICE_PAYMENT_SUCCEEDED: self._invoice_paid,
        }

    async def reconcile(self, event: InboundEvent) -> ReconcileOutcome:
        redelivered = await self._store(self._persistence.get_event, event.provider_event_id) is not None
        outcome = await self._handlers[event.kind](event)

        # A previous attempt may have committed without reaching the client,
        # so redeliveries always re-emit; fresh no-op events stay silent.
        if outcome.notification is not None and outcome.user_id is not None:
            if outcome.details.get("changed") or redelivered:
                self._notifier.notify(outcome.user_id, {"status": outcome.notification.value})
            else:
                outcome.notification = None

        if outcome.stale_period_end:
            logger.warning(
                "Stale period end in event %s for subscription %s; kept stored period end.",
                event.provider_event_id,
                event.subscription_ref,
            )
        logger.info(
            "Reconciled event %s (%s) for subscription %s: %s%s",
            event.provider_event_id,
            event.kind.value,
            event.subscription_ref,
            outcome.action,
            " [redelivery]" if redelivered else "",
        )
        await self._record(event, outcome)
        return outcome

    # Transitions ------------------------------------------------------------
    async def _checkout_completed(self, event: InboundEvent) -> ReconcileOutcome:
        subscription_id = self._require_subscription(event)
        user_id = await self._resolve_user(event)
        details = await self._retrieve(subscription_id)
        if details.is_terminated:
            # A late checkout redelivery must not resurrect an ended subscription.
            return self._terminated(event, details, user_id)
        plan_id, period_end = self._complete(event, details)

        result = await self._store(
            self._persistence.upsert_by_user,
            user_id,
            SubscriptionFields(
                provider_subscription_id=subscription_id,
                plan_id=plan_id,
                current_period_end=period_end,
                cancel_at_period_end=False,
            ),
        )
        if result.before is None:
            action = "created"
        else:
            action = "updated" if result.changed else "unchanged"
        return self._outcome(event, action, user_id, result, ChangeKind.CREATED)

    async def _subscription_updated(self, event: InboundEvent) -> ReconcileOutcome:
        subscription_id = self._require_subscription(event)
        if event.cancel_flag:
            fields = SubscriptionFields(
                cancel_at_period_end=True,
                current_period_end=event.period_end,
            )
            change = ChangeKind.CANCELED
        else:
            fields = SubscriptionFields(
                plan_id=event.plan_ref,
                current_period_end=event.period_end,
                cancel_at_period_end=event.cancel_flag,
            )
            change = ChangeKind.UPDATED

        result = await self._store(
            self._persistence.update_by_provider_subscription_id, subscription_id, fields
        )
        if not result.matched:
            return self._outcome(event, "no_record", None, result, None)
        action = "updated" if result.changed else "unchanged"
        return self._outcome(event, action, result.before.user_id, result, change)

    async def _subscription_deleted(self, event: InboundEvent) -> ReconcileOutcome:
        subscription_id = self._require_subscription(event)
        result = await self._store(
            self._persistence.delete_by_provider_subscription_id, subscription_id
        )
        if result.before is None:
            return self._outcome(event, "no_record", None, result, None)
        return self._outcome(event, "deleted", result.before.user_id, result, ChangeKind.DELETED)

    async def _invoice_paid(self, event: InboundEvent) -> ReconcileOutcome:
        subscription_id = self._require_subscription(event)
        existing = await self._store(
            self._persistence.find_by_provider_subscription_id, subscription_id
        )
        if existing is None:
            # Terminated or never created here; renewals never re-create a record.
            return self._outcome(event, "no_record", None, StoreWriteResult(None, None), None)

        details = await self._retrieve(subscription_id)
        if details.is_terminated:
            return self._terminated(event, details, existing.user_id)
        plan_id, period_end = self._complete(event, details)
        result = await self._store(
            self._persistence.update_by_provider_subscription_id,
            subscription_id,
            SubscriptionFields(plan_id=plan_id, current_period_end=period_end),
        )
        if not result.matched:
            return self._outcome(event, "no_record", None, result, None)
        action = "renewed" if result.changed else "unchanged"
        return self._outcome(event, action, existing.user_id, result, None)

    # Helpers ----------------------------------------------------------------
    async def _resolve_user(self, event: InboundEvent) -> str:
        directory = self._persistence
        if event.user_ref and await self._store(directory.user_exists, event.user_ref):
            await self._remember_customer(event.user_ref, event.customer_ref)
            return event.user_ref

        if event.subscription_ref:
            record = await self._store(
                self._persistence.find_by_provider_subscription_id, event.subscription_ref
            )
            if record is not None:
                return record.user_id

        if event.customer_ref:
            user_id = await self._store(directory.find_user_by_customer, event.customer_ref)
            if user_id is not None:
                return user_id

        raise UserNotFound(
            f"User not found for customer ID: {event.customer_ref}",
            event_id=event.provider_event_id,
        )

    async def _remember_customer(self, user_id: str, customer_id: Optional[str]) -> None:
        if not customer_id:
            return
        owner = await self._store(self._persistence.find_user_by_customer, customer_id)
        if owner is None:
            await self._store(self._persistence.link_customer, user_id, customer_id)

    async def _retrieve(self, subscription_id: str) -> SubscriptionDetails:
        return await self._bounded(
            self._details_provider.retrieve_subscription,
            subscription_id,
            timeout=self._provider_timeout,
            error=ProviderUnavailable,
            what="Subscription lookup",
        )

    @staticmethod
    def _complete(event: InboundEvent, details: SubscriptionDetails) -> Tuple[str, datetime]:
        """Plan and period end as Stripe holds them, the payload filling any gaps."""
        plan_id = details.plan_id or event.plan_ref
        period_end = details.current_period_end or event.period_end
        if plan_id is None or period_end is None:
            raise MalformedEvent(
                f"Subscription {details.subscription_id} has no price or period end",
                event_id=event.provider_event_id,
            )
        return plan_id, period_end

    def _terminated(
        self, event: InboundEvent, details: SubscriptionDetails, user_id: Optional[str]
    ) -> ReconcileOutcome:
        logger.info(
            "Subscription %s is %s at Stripe; event %s leaves the store untouched.",
            details.subscription_id,
            details.status,
            event.provider_event_id,
        )
        return self._outcome(event, "terminated", user_id, StoreWriteResult(None, None), None)

    @staticmethod
    def _require_subscription(event: InboundEvent) -> str:
        if not event.subscription_ref:
            raise MalformedEvent("Event has no subscription ID", event_id=event.provider_event_id)
        return event.subscription_ref

    @staticmethod
    def _outcome(
        event: InboundEvent,
        action: str,
        user_id: Optional[str],
        result: StoreWriteResult,
        change: Optional[ChangeKind],
    ) -> ReconcileOutcome:
        return ReconcileOutcome(
            event_id=event.provider_event_id,
            kind=event.kind,
            action=action,
            user_id=user_id,
            subscription_id=event.subscription_ref,
            notification=change,
            stale_period_end=result.stale_period_end,
            details={"changed": result.changed},
        )

    async def _record(self, event: InboundEvent, outcome: ReconcileOutcome) -> None:
        try:
            await self._store(
                self._persistence.record_event,
                event.provider_event_id,
                event.kind.value,
                outcome.action,
                datetime.now(timezone.utc),
            )
        except BillingSyncError as exc:
            # The record only feeds redelivery logging; the reconciled state is already durable.
            logger.warning("Could not record event %s: %s", event.provider_event_id, exc)

    async def _store(self, func: Callable[..., T], *args: Any) -> T:
        return await self._bounded(
            func,
            *args,
            timeout=self._store_timeout,
            error=StoreUnavailable,
            what="Subscription store call",
        )

    @staticmethod
    async def _bounded(
        func: Callable[..., T],
        *args: Any,
        timeout: float,
        error: Type[BillingSyncError],
        what: str,
    ) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise error(f"{what} timed out after {timeout}s") from exc
