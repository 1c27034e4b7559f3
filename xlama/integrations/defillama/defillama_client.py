from __future__ import annotations

from typing import Dict, Iterable, List, Optional

import httpx

from xlama.core.utils.dict_utils import JSON, _read_path, _to_optional_float
from xlama.integrations.defillama.defillama_constants import (
    COINGECKO_PREFIX,
    CURRENT_PRICES_ENDPOINT,
    HISTORICAL_PRICES_ENDPOINT,
    HTTP_TIMEOUT_SECONDS,
    TICKER_TO_COINGECKO_ID,
)
from xlama.logging.logger import get_logger

log = get_logger(__name__)


def resolve_coingecko_id(ticker: str) -> Optional[str]:
    return TICKER_TO_COINGECKO_ID.get((ticker or "").strip().lower())


def coin_key(coingecko_id: str) -> str:
    return f"{COINGECKO_PREFIX}{coingecko_id}"


def _extract_prices(payload: JSON, coingecko_ids: Iterable[str]) -> Dict[str, float]:
    """Read `coins["coingecko:<id>"].price` for each id; missing or non-positive prices are skipped."""
    prices: Dict[str, float] = {}
    for coingecko_id in coingecko_ids:
        price = _to_optional_float(_read_path(payload, ("coins", coin_key(coingecko_id), "price")))
        if price is not None and price > 0:
            prices[coingecko_id] = price
    return prices


class DefiLlamaClient:
    """
    Client for the DefiLlama coins API (fallback price oracle).

    Prices are addressed by CoinGecko id; several ids are fetched in a single request by
    comma-joining their `coingecko:<id>` keys.
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self._http_client = http_client
        self._owns_client = http_client is None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _get_json(self, url: str) -> JSON:
        try:
            response = await self._client().get(url)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            log.warning("DefiLlama GET fails: url=%s status=%s", url, exc.response.status_code)
            raise
        except httpx.RequestError as exc:
            log.warning("DefiLlama GET request error: url=%s error=%s", url, str(exc))
            raise

    async def get_current_prices(self, coingecko_ids: List[str]) -> Dict[str, float]:
        unique_ids = list(dict.fromkeys(coingecko_ids))
        if not unique_ids:
            return {}
        coins = ",".join(coin_key(coingecko_id) for coingecko_id in unique_ids)
        payload = await self._get_json(f"{CURRENT_PRICES_ENDPOINT}/{coins}")
        prices = _extract_prices(payload, unique_ids)
        log.debug("[DEFILLAMA][PRICES][CURRENT] requested=%d received=%d", len(unique_ids), len(prices))
        return prices

    async def get_historical_prices(self, timestamp: int, coingecko_ids: List[str]) -> Dict[str, float]:
        unique_ids = list(dict.fromkeys(coingecko_ids))
        if not unique_ids:
            return {}
        coins = ",".join(coin_key(coingecko_id) for coingecko_id in unique_ids)
        payload = await self._get_json(f"{HISTORICAL_PRICES_ENDPOINT}/{int(timestamp)}/{coins}")
        return _extract_prices(payload, unique_ids)
