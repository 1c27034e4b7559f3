from __future__ import annotations

from typing import List, Mapping, Optional

import httpx

from xlama.configuration.config import settings
from xlama.core.utils.dict_utils import JSON
from xlama.integrations.hyperliquid.hyperliquid_structures import (
    HyperliquidAccountState,
    HyperliquidAsset,
    HyperliquidMarket,
)
from xlama.logging.logger import get_logger

log = get_logger(__name__)


class HyperliquidClient:
    """Read-only client for the Hyperliquid perpetuals `/info` endpoint."""

    def __init__(self, base_url: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = (base_url or settings.HYPERLIQUID_BASE_URL).rstrip("/")
        self._http_client = http_client
        self._owns_client = http_client is None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(12.0, connect=6.0))
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _post_info(self, request_type: str, **payload: object) -> JSON:
        url = f"{self.base_url}/info"
        try:
            response = await self._client().post(url, json={"type": request_type, **payload})
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            log.warning("[HYPERLIQUID][%s] HTTP error status=%s", request_type, exc.response.status_code)
            raise
        except httpx.RequestError as exc:
            log.warning("[HYPERLIQUID][%s] Request error: %s", request_type, str(exc))
            raise

    async def get_assets(self) -> List[HyperliquidAsset]:
        data = await self._post_info("meta")
        universe = data.get("universe") if isinstance(data, Mapping) else None
        if not isinstance(universe, list):
            return []
        return [HyperliquidAsset.from_json(row) for row in universe if isinstance(row, Mapping)]

    async def get_all_mids(self) -> List[HyperliquidMarket]:
        data = await self._post_info("allMids")
        if not isinstance(data, Mapping):
            return []
        return [HyperliquidMarket(coin=coin, mid_px=str(mid), mark_px=str(mid)) for coin, mid in data.items()]

    async def get_account_state(self, address: str) -> Optional[HyperliquidAccountState]:
        data = await self._post_info("clearinghouseState", user=address)
        if not isinstance(data, Mapping):
            return None
        return HyperliquidAccountState.from_json(data)

    async def get_open_orders(self, address: str) -> List[Mapping[str, JSON]]:
        data = await self._post_info("openOrders", user=address)
        return [row for row in data if isinstance(row, Mapping)] if isinstance(data, list) else []

    async def get_trade_history(self, address: str) -> List[Mapping[str, JSON]]:
        data = await self._post_info("userFills", user=address)
        return [row for row in data if isinstance(row, Mapping)] if isinstance(data, list) else []
