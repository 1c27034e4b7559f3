from __future__ import annotations

import asyncio
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from starlette.websockets import WebSocket

from xlama.core.diagnostics.trade_debug_log import TradeLogEntry
from xlama.core.structures.orders import OrderStatusEvent
from xlama.logging.logger import get_logger

log = get_logger(__name__)


class WsManager:
    """
    Connected WebSocket clients and the wallet each one follows.

    Order events are delivered only to the sockets following the order's wallet; debug-log
    updates go to every client. `attach_current_loop()` must run on the server loop before
    `broadcast_json_threadsafe` can schedule anything.
    """

    def __init__(self) -> None:
        self._clients: Dict[WebSocket, Optional[str]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def attach_current_loop(self) -> None:
        self._loop = asyncio.get_running_loop()
        log.debug("[WS][MANAGER] Attached to loop %s", self._loop)

    def connect(self, ws: WebSocket, user_address: Optional[str] = None) -> None:
        self._clients[ws] = user_address
        log.debug("[WS][MANAGER] Connected (total=%d)", len(self._clients))

    def follow(self, ws: WebSocket, user_address: Optional[str]) -> None:
        if ws in self._clients:
            self._clients[ws] = user_address
            log.debug("[WS][MANAGER] Client follows wallet %s", user_address)

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.pop(ws, None)
        log.debug("[WS][MANAGER] Disconnected (total=%d)", len(self._clients))

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @staticmethod
    def to_json_compatible(data: Any) -> Any:
        return jsonable_encoder(data, custom_encoder={Enum: lambda e: e.value, Decimal: str})

    async def broadcast_json(self, data: Any, user_address: Optional[str] = None) -> None:
        """Send to every client, or only to the clients following `user_address`."""
        payload = self.to_json_compatible(data)
        stale: List[WebSocket] = []
        for ws, followed in list(self._clients.items()):
            if user_address is not None and followed != user_address:
                continue
            try:
                await ws.send_json(payload)
            except Exception as exc:
                stale.append(ws)
                log.debug("[WS][MANAGER] Send failed, dropping client: %r", exc)
        for dead in stale:
            self.disconnect(dead)

    def broadcast_json_threadsafe(self, data: Any, user_address: Optional[str] = None) -> None:
        if self._loop is None or self._loop.is_closed():
            log.debug("[WS][MANAGER] Broadcast skipped: no loop attached")
            return
        payload = self.to_json_compatible(data)
        asyncio.run_coroutine_threadsafe(self.broadcast_json(payload, user_address), self._loop)

    def publish_order_event(self, event: OrderStatusEvent) -> None:
        self.broadcast_json_threadsafe(event.to_payload(), user_address=event.user_address)

    def publish_trade_logs(self, entries: List[TradeLogEntry]) -> None:
        # Subscribers receive the whole log; clients only need the newest entry
        if entries:
            self.broadcast_json_threadsafe({"type": "debug_log", "payload": entries[0].to_dict()})


ws_manager = WsManager()
