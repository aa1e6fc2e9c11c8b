# order_service/ws_manager.py
import logging
from typing import Dict, Optional
from fastapi import WebSocket

logger = logging.getLogger("order-service.ws")


class ConnectionManager:
    """
    WebSocket fan-out for order events. A client either follows one order
    (`/ws/orders?order_id=...`) or, with no filter, receives every event.
    """

    def __init__(self):
        self.subscriptions: Dict[WebSocket, Optional[str]] = {}

    @property
    def active_connections(self):
        return list(self.subscriptions)

    async def connect(self, websocket: WebSocket, order_id: Optional[str] = None):
        await websocket.accept()
        self.subscriptions[websocket] = order_id
        logger.info(
            f"[WS] Client connected to {order_id or 'all orders'} ({len(self.subscriptions)} active)"
        )

    def disconnect(self, websocket: WebSocket):
        self.subscriptions.pop(websocket, None)
        logger.info(f"[WS] Client disconnected ({len(self.subscriptions)} active)")

    def _wants(self, order_filter: Optional[str], message: dict) -> bool:
        if order_filter is None:
            return True
        return message.get("data", {}).get("order_id") == order_filter

    async def broadcast(self, message: dict) -> int:
        """Send an event envelope to every matching client; returns how many got it."""
        dead = []
        sent = 0
        for ws, order_filter in list(self.subscriptions.items()):
            if not self._wants(order_filter, message):
                continue
            try:
                await ws.send_json(message)
                sent += 1
            except Exception:
                dead.append(ws)

        for ws in dead:
            self.disconnect(ws)
        return sent
