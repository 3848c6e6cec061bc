"""Stripe webhook signature verification."""

from __future__ import annotations

import json
import logging
from typing import Optional

import stripe

from ..domain.errors import MalformedEvent, SignatureInvalid
from ..domain.models import VerifiedEvent

logger = logging.getLogger(__name__)


class EventVerifier:
    """Authenticates raw webhook bodies against the endpoint signing secret.

    Stripe signs ``"{timestamp}.{raw body}"`` with HMAC-SHA256, so the body is
    checked byte-for-byte before any JSON parsing happens.
    """

    def __init__(self, webhook_secret: str, tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE) -> None:
        if not webhook_secret:
            raise ValueError("Webhook secret must not be empty")
        self._secret = webhook_secret
        self._tolerance = tolerance

    def verify(self, raw_body: bytes, signature_header: Optional[str]) -> VerifiedEvent:
        if not signature_header:
            raise SignatureInvalid("Missing Stripe-Signature header")

        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureInvalid("Payload is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature_header, self._secret, self._tolerance
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Rejected webhook with invalid signature: %s", exc)
            raise SignatureInvalid("Invalid signature") from exc

        return self._parse(payload)

    @staticmethod
    def _parse(payload: str) -> VerifiedEvent:
        try:
            body = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise MalformedEvent("Payload is not valid JSON") from exc

        if not isinstance(body, dict):
            raise MalformedEvent("Payload is not an event object")

        event_id = body.get("id")
        event_type = body.get("type")
        data = body.get("data")
        data_object = data.get("object") if isinstance(data, dict) else None
        if not isinstance(event_id, str) or not isinstance(event_type, str):
            raise MalformedEvent("Event is missing id or type")
        if not isinstance(data_object, dict):
            raise MalformedEvent("Event is missing data.object", event_id=event_id)

        created = body.get("created")
        return VerifiedEvent(
            id=event_id,
            type=event_type,
            data_object=data_object,
            created=created if isinstance(created, int) else None,
            livemode=bool(body.get("livemode", False)),
        )
