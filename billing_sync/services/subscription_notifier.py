import asyncio
import logging
from typing import Any, Dict, List, Set

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


class SubscriptionNotifier:
    """Per-user WebSocket rooms receiving subscription change signals.

    ``notify`` only schedules delivery; the reconciliation write path never
    waits on a socket.
    """

    def __init__(self, send_timeout: float = 2.0) -> None:
        self._rooms: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()
        self._send_timeout = send_timeout
        self._pending: Set["asyncio.Task[None]"] = set()

    async def subscribe(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._rooms.setdefault(user_id, set()).add(websocket)
            size = len(self._rooms[user_id])
        logger.debug("WebSocket joined room %s. Room size: %s", user_id, size)

    async def unsubscribe(self, user_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._discard(user_id, websocket)
        logger.debug("WebSocket left room %s.", user_id)

    def connection_count(self, user_id: str) -> int:
        return len(self._rooms.get(user_id, ()))

    def notify(self, user_id: str, payload: Dict[str, Any]) -> None:
        if not self._rooms.get(user_id):
            logger.debug("No live connections for user %s; dropping notification.", user_id)
            return
        message = {"type": "subscription_changed", "data": jsonable_encoder(payload)}
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; dropping notification for user %s.", user_id)
            return
        task = loop.create_task(self._deliver(user_id, message), name=f"notify-{user_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        async with self._lock:
            self._rooms.clear()

    async def _deliver(self, user_id: str, message: Dict[str, Any]) -> None:
        async with self._lock:
            connections = list(self._rooms.get(user_id, ()))

        remove: List[WebSocket] = []
        for websocket in connections:
            try:
                await asyncio.wait_for(websocket.send_json(message), timeout=self._send_timeout)
            except Exception:
                logger.exception("Failed to push subscription change to user %s; removing connection.", user_id)
                remove.append(websocket)

        if remove:
            async with self._lock:
                for websocket in remove:
                    self._discard(user_id, websocket)

    def _discard(self, user_id: str, websocket: WebSocket) -> None:
        room = self._rooms.get(user_id)
        if room is None:
            return
        room.discard(websocket)
        if not room:
            del self._rooms[user_id]
