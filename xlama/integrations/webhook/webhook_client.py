from __future__ import annotations

import hashlib
import hmac
import json
from typing import Dict, Optional

import httpx

from xlama.configuration.config import settings
from xlama.core.structures.structures import SwapCompletedEvent
from xlama.logging.logger import get_logger

log = get_logger(__name__)

SWAP_COMPLETED_EVENT = "swap.completed"
SIGNATURE_HEADER = "X-Xlama-Signature"


def _signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class SwapWebhookClient:
    """
    Posts swap completion events to the configured sync endpoint.

    Delivery is fire-once: deduplication by transaction hash is done by the caller. When no
    URL is configured, events are only logged.
    """

    def __init__(self, url: Optional[str] = None, secret: Optional[str] = None,
                 http_client: Optional[httpx.AsyncClient] = None) -> None:
        self.url = (url if url is not None else settings.SWAP_WEBHOOK_URL).strip()
        self.secret = secret if secret is not None else settings.SWAP_WEBHOOK_SECRET
        self._http_client = http_client
        self._owns_client = http_client is None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0))
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def notify_swap_completed(self, event: SwapCompletedEvent) -> None:
        if not self.url:
            log.debug("[WEBHOOK][SKIP] No webhook URL configured (tx=%s).", event.tx_hash)
            return

        body = json.dumps({"event": SWAP_COMPLETED_EVENT, "data": event.to_payload()}).encode("utf-8")
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if self.secret:
            headers[SIGNATURE_HEADER] = _signature(self.secret, body)

        try:
            response = await self._client().post(self.url, content=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            log.warning("[WEBHOOK][FAIL] tx=%s status=%s", event.tx_hash, exc.response.status_code)
            raise
        except httpx.RequestError as exc:
            log.warning("[WEBHOOK][FAIL] tx=%s error=%s", event.tx_hash, str(exc))
            raise
        log.info("[WEBHOOK][SENT] %s tx=%s", SWAP_COMPLETED_EVENT, event.tx_hash)
