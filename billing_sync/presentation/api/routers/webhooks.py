"""Stripe webhook endpoint."""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from ....core.dependencies import get_event_classifier, get_event_verifier, get_reconciler
from ....domain.errors import BillingSyncError
from ....domain.models import Ignored
from ....services.event_classifier import EventClassifier
from ....services.event_verifier import EventVerifier
from ....services.reconciler import Reconciler

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])

logger = logging.getLogger(__name__)


@router.post("/stripe", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    verifier: EventVerifier = Depends(get_event_verifier),
    classifier: EventClassifier = Depends(get_event_classifier),
    reconciler: Reconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    """Verify, classify and reconcile a single Stripe event."""
    # Signatures cover the exact bytes, so the body must not be parsed first.
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = verifier.verify(payload, signature)
        classified = classifier.classify(event)
        if isinstance(classified, Ignored):
            logger.debug(
                "Ignoring event %s (%s): %s",
                classified.provider_event_id,
                classified.event_type,
                classified.reason,
            )
            return {
                "received": True,
                "outcome": {"event_id": classified.provider_event_id, "action": "ignored"},
            }
        outcome = await reconciler.reconcile(classified)
    except BillingSyncError as exc:
        log = logger.error if exc.retryable else logger.warning
        log("Webhook event %s rejected: %s", exc.event_id or "<unknown>", exc.message)
        raise HTTPException(status_code=exc.status_code, detail=f"Webhook Error: {exc.message}") from exc

    return {"received": True, "outcome": outcome.as_dict()}
