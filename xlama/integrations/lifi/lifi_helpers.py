from __future__ import annotations

from typing import Dict, Mapping, Optional, cast

import httpx

from xlama.configuration.config import settings
from xlama.core.structures.structures import EVM_NATIVE_TOKEN_PLACEHOLDER, EVM_NATIVE_TOKEN_ZERO_ADDRESS
from xlama.logging.logger import get_logger

log = get_logger(__name__)

# LI.FI chain ids keyed by aggregator chain index
CHAIN_INDEX_TO_LIFI_ID: Dict[str, int] = {
    "1": 1,
    "56": 56,
    "137": 137,
    "42161": 42161,
    "10": 10,
    "8453": 8453,
    "43114": 43114,
    "250": 250,
    "100": 100,
    "324": 324,
    "59144": 59144,
    "534352": 534352,
    "5000": 5000,
    "81457": 81457,
    "196": 196,
    "1101": 1101,
    "169": 169,
    "501": 1151111081099710,
}

LIFI_ID_TO_CHAIN_INDEX: Dict[int, str] = {lifi_id: index for index, lifi_id in CHAIN_INDEX_TO_LIFI_ID.items()}


def _build_lifi_headers() -> Dict[str, str]:
    """
    Construct LI.FI HTTP headers, optionally including an API key if configured.
    """
    headers: Dict[str, str] = {}
    api_key = settings.LIFI_API_KEY
    if isinstance(api_key, str) and api_key.strip():
        headers["x-lifi-api-key"] = api_key.strip()
    return headers


def _normalize_token_address(address: str) -> str:
    """LI.FI expects the zero address for EVM native tokens."""
    if address.strip().lower() == EVM_NATIVE_TOKEN_PLACEHOLDER:
        return EVM_NATIVE_TOKEN_ZERO_ADDRESS
    return address


def resolve_lifi_chain_id(chain_index: str) -> Optional[int]:
    lifi_id = CHAIN_INDEX_TO_LIFI_ID.get(str(chain_index))
    if lifi_id is None:
        log.debug("[LI.FI][CHAIN][RESOLVE] Unsupported chain index '%s'", chain_index)
    return lifi_id


async def _http_get_json(client: httpx.AsyncClient, url: str, params: Mapping[str, object]) -> Dict[str, object]:
    """
    Perform a GET request and return parsed JSON.

    Raises:
        httpx.HTTPStatusError on non-2xx responses.
        httpx.RequestError on connection/timeout errors.
    """
    try:
        response = await client.get(url, params=params, headers=_build_lifi_headers())
        response.raise_for_status()
        return cast(Dict[str, object], response.json())
    except httpx.HTTPStatusError as exc:
        log.warning(
            "LI.FI GET fails: url=%s status=%s body=%s",
            url,
            exc.response.status_code,
            exc.response.text[:300],
        )
        raise
    except httpx.RequestError as exc:
        log.warning("LI.FI GET request error: url=%s error=%s", url, str(exc))
        raise


async def _http_post_json(client: httpx.AsyncClient, url: str, body: Mapping[str, object]) -> Dict[str, object]:
    try:
        response = await client.post(url, json=body, headers=_build_lifi_headers())
        response.raise_for_status()
        return cast(Dict[str, object], response.json())
    except httpx.HTTPStatusError as exc:
        log.warning(
            "LI.FI POST fails: url=%s status=%s body=%s",
            url,
            exc.response.status_code,
            exc.response.text[:300],
        )
        raise
    except httpx.RequestError as exc:
        log.warning("LI.FI POST request error: url=%s error=%s", url, str(exc))
        raise
