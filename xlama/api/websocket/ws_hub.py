from __future__ import annotations

from typing import Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError

from xlama.api.models import WebsocketInboundMessage
from xlama.api.services import ExchangeServices
from xlama.api.websocket.ws_manager import ws_manager
from xlama.logging.logger import get_logger
from xlama.persistence.serializers import serialize_dca_order, serialize_limit_order

router = APIRouter()
log = get_logger(__name__)


def _init_payload(services: ExchangeServices, user_address: Optional[str]) -> Dict[str, object]:
    payload: Dict[str, object] = {
        "user_address": user_address,
        "debug_logs": [entry.to_dict() for entry in services.trade_log.get_logs()],
    }
    if user_address:
        payload["limit_orders"] = [serialize_limit_order(o) for o in services.store.list_limit_orders(user_address)]
        payload["dca_orders"] = [serialize_dca_order(o) for o in services.store.list_dca_orders(user_address)]
    return payload


async def _send_init(ws: WebSocket, services: ExchangeServices, user_address: Optional[str]) -> None:
    await ws.send_json({"type": "init", "payload": jsonable_encoder(_init_payload(services, user_address))})
    log.info("[WS][INIT] Snapshot sent for wallet=%s", user_address)


@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket) -> None:
    """
    Streams order status events for the followed wallet and debug-log updates.

    The wallet is taken from the `address` query parameter or a `follow` message.
    """
    services: ExchangeServices = ws.app.state.services
    user_address = ws.query_params.get("address") or None

    await ws.accept()
    ws_manager.connect(ws, user_address)
    log.info("[WS][CONNECT] Client connected wallet=%s", user_address)

    try:
        await _send_init(ws, services, user_address)
        while True:
            raw_message = await ws.receive_json()
            try:
                inbound = WebsocketInboundMessage.model_validate(raw_message)
            except ValidationError as exc:
                log.debug("[WS][RECV] Invalid message schema: %s", exc)
                await ws.send_json({"type": "error", "payload": "Invalid message schema"})
                continue

            if inbound.type == "ping":
                await ws.send_json({"type": "pong"})
            elif inbound.type == "follow":
                user_address = inbound.user_address or None
                ws_manager.follow(ws, user_address)
                await _send_init(ws, services, user_address)
            elif inbound.type == "refresh":
                await _send_init(ws, services, user_address)
            else:
                log.debug("[WS][RECV] Unknown message type: %s", inbound.type)
                await ws.send_json({"type": "error", "payload": f"Unknown message type {inbound.type}"})

    except WebSocketDisconnect:
        log.info("[WS][DISCONNECT] Client disconnected.")
    finally:
        ws_manager.disconnect(ws)
