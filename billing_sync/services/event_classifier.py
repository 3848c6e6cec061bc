"""Decode verified Stripe events into the typed payloads the reconciler consumes."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, StrictBool, StrictInt, ValidationError, field_validator

from ..domain.errors import MalformedEvent
from ..domain.models import EventKind, Ignored, InboundEvent, VerifiedEvent

logger = logging.getLogger(__name__)


def _reference_id(value: Any) -> Any:
    """Expandable Stripe fields arrive either as an ID or as the embedded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _PriceRef(_StripeObject):
    id: str


class _Period(_StripeObject):
    end: Optional[StrictInt] = None


class _LineItem(_StripeObject):
    type: Optional[str] = None
    proration: Optional[StrictBool] = None
    price: Optional[_PriceRef] = None
    plan: Optional[_PriceRef] = None
    current_period_end: Optional[StrictInt] = None
    period: Optional[_Period] = None


class _LineItemList(_StripeObject):
    data: List[_LineItem] = []


class CheckoutSessionObject(_StripeObject):
    id: Optional[str] = None
    mode: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None
    client_reference_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    reduce_references = field_validator("customer", "subscription", mode="before")(_reference_id)


class SubscriptionObject(_StripeObject):
    id: str
    customer: Optional[str] = None
    items: Optional[_LineItemList] = None
    current_period_end: Optional[StrictInt] = None
    cancel_at_period_end: Optional[StrictBool] = None

    reduce_references = field_validator("customer", mode="before")(_reference_id)


class _InvoiceSubscriptionDetails(_StripeObject):
    subscription: Optional[str] = None

    reduce_references = field_validator("subscription", mode="before")(_reference_id)


class _InvoiceParent(_StripeObject):
    subscription_details: Optional[_InvoiceSubscriptionDetails] = None


class InvoiceObject(_StripeObject):
    id: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None
    parent: Optional[_InvoiceParent] = None
    lines: Optional[_LineItemList] = None

    reduce_references = field_validator("customer", "subscription", mode="before")(_reference_id)

    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None


def _first_item(items: Optional[_LineItemList]) -> Optional[_LineItem]:
    if items is None or not items.data:
        return None
    return items.data[0]


def _subscription_line(lines: Optional[_LineItemList]) -> Optional[_LineItem]:
    """The recurring line of an invoice; proration credits carry the previous price."""
    if lines is None:
        return None
    for line in lines.data:
        if not line.proration and line.type in (None, "subscription"):
            return line
    return None


def _plan_of(item: Optional[_LineItem]) -> Optional[str]:
    if item is None:
        return None
    if item.price is not None:
        return item.price.id
    if item.plan is not None:
        return item.plan.id
    return None


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class EventClassifier:
    """Maps a verified event onto the closed set of kinds the reconciler handles.

    Unknown event types come back as :class:`Ignored`; a recognized type whose
    payload cannot support reconciliation raises :class:`MalformedEvent`.
    """

    def __init__(self) -> None:
        self._decoders: Dict[EventKind, Callable[[VerifiedEvent], Union[InboundEvent, Ignored]]] = {
            EventKind.CHECKOUT_COMPLETED: self._checkout_completed,
            EventKind.SUBSCRIPTION_UPDATED: self._subscription_changed,
            EventKind.SUBSCRIPTION_DELETED: self._subscription_changed,
            EventKind.INVOICE_PAYMENT_SUCCEEDED: self._invoice_paid,
        }

    def classify(self, event: VerifiedEvent) -> Union[InboundEvent, Ignored]:
        try:
            kind = EventKind(event.type)
        except ValueError:
            return Ignored(provider_event_id=event.id, event_type=event.type)

        try:
            return self._decoders[kind](event)
        except ValidationError as exc:
            logger.warning("Malformed %s payload in event %s: %s", event.type, event.id, exc)
            raise MalformedEvent(
                f"Malformed {event.type} payload: {exc.error_count()} invalid field(s)",
                event_id=event.id,
            ) from exc

    def _checkout_completed(self, event: VerifiedEvent) -> InboundEvent:
        session = CheckoutSessionObject.model_validate(event.data_object)
        if not session.subscription or not session.customer:
            raise MalformedEvent(
                "checkout.session.completed event is missing subscription or customer ID",
                event_id=event.id,
            )
        metadata = session.metadata or {}
        user_ref = session.client_reference_id or metadata.get("user_id")
        return InboundEvent(
            kind=EventKind.CHECKOUT_COMPLETED,
            provider_event_id=event.id,
            customer_ref=session.customer,
            subscription_ref=session.subscription,
            user_ref=str(user_ref) if user_ref else None,
        )

    def _subscription_changed(self, event: VerifiedEvent) -> InboundEvent:
        subscription = SubscriptionObject.model_validate(event.data_object)
        item = _first_item(subscription.items)
        period_end = subscription.current_period_end
        if period_end is None and item is not None:
            period_end = item.current_period_end
        return InboundEvent(
            kind=EventKind(event.type),
            provider_event_id=event.id,
            customer_ref=subscription.customer,
            subscription_ref=subscription.id,
            plan_ref=_plan_of(item),
            period_end=_timestamp(period_end),
            cancel_flag=subscription.cancel_at_period_end,
        )

    def _invoice_paid(self, event: VerifiedEvent) -> Union[InboundEvent, Ignored]:
        invoice = InvoiceObject.model_validate(event.data_object)
        subscription_id = invoice.subscription_id()
        if not subscription_id:
            logger.info(
                "Invoice %s paid for a one-time charge; no subscription to update", invoice.id
            )
            return Ignored(
                provider_event_id=event.id,
                event_type=event.type,
                reason="invoice without subscription",
            )
        line = _subscription_line(invoice.lines)
        period_end = line.period.end if line is not None and line.period is not None else None
        return InboundEvent(
            kind=EventKind.INVOICE_PAYMENT_SUCCEEDED,
            provider_event_id=event.id,
            customer_ref=invoice.customer,
            subscription_ref=subscription_id,
            plan_ref=_plan_of(line),
            period_end=_timestamp(period_end),
        )
