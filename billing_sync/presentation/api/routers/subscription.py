"""Authoritative subscription read used by clients after a change signal."""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ....application.services.subscription_query_service import SubscriptionQueryService
from ....core.dependencies import get_subscription_query_service
from ...api.dependencies import require_user_id

router = APIRouter(prefix="/api/billing", tags=["Billing"])


@router.get("/subscription")
async def get_subscription(
    user_id: str = Depends(require_user_id),
    query_service: SubscriptionQueryService = Depends(get_subscription_query_service),
) -> Dict[str, Any]:
    """Get the current user's reconciled subscription."""
    return query_service.get_subscription(user_id)
