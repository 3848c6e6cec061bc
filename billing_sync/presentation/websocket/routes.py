import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from ...core.container import ApplicationContainer
from ...services.subscription_notifier import SubscriptionNotifier

router = APIRouter()

logger = logging.getLogger(__name__)


@router.websocket("/ws/subscriptions")
async def websocket_subscriptions(websocket: WebSocket, user_id: str = Query(...)) -> None:
    container: ApplicationContainer = getattr(websocket.app.state, "container", None)  # type: ignore[attr-defined]
    if not container:
        logger.error("Application container not initialised for websocket connection.")
        await websocket.close(code=1011)
        return

    if not container.persistence.user_exists(user_id):
        await websocket.close(code=1008)
        return

    notifier: SubscriptionNotifier = container.notifier

    await notifier.subscribe(user_id, websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await notifier.unsubscribe(user_id, websocket)
    except Exception:
        await notifier.unsubscribe(user_id, websocket)
        logger.exception("Unexpected WebSocket error")
