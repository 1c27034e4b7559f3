from __future__ import annotations

from typing import Dict, List, Mapping, Optional

import httpx

from xlama.configuration.config import settings
from xlama.core.structures.structures import (
    ApprovalTransaction,
    BridgeRoute,
    BridgeTransferState,
    BridgeTransferStatus,
    Quote,
    SwapTransaction,
    Token,
)
from xlama.core.utils.amount_utils import is_positive_amount
from xlama.core.utils.dict_utils import JSON
from xlama.integrations.okx.okx_helpers import _build_okx_headers, _build_request_path, _unwrap_envelope
from xlama.integrations.okx.okx_structures import OkxSupportedChain, OkxTokenPrice, bridge_route_from_okx_json
from xlama.logging.logger import get_logger

log = get_logger(__name__)

AGGREGATOR_PATH = "/api/v6/dex/aggregator"
MARKET_PATH = "/api/v6/dex/market"
CROSS_CHAIN_PATH = "/api/v6/dex/cross-chain"
DEFAULT_SLIPPAGE = "0.5"


def _valid_slippage(slippage: Optional[float | str]) -> str:
    """Slippage percent as sent to the API; missing or non-positive values use the default."""
    if slippage is None:
        return DEFAULT_SLIPPAGE
    text = str(slippage).strip()
    return text if is_positive_amount(text) else DEFAULT_SLIPPAGE


class OkxDexClient:
    """
    Signed client for the OKX DEX aggregator, market and cross-chain APIs.

    Every request is signed (HMAC-SHA256 over timestamp, method, path with query, body). An
    HTTP client can be injected; otherwise one is created lazily and closed by `aclose()`.
    """

    def __init__(self, base_url: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = (base_url or settings.OKX_BASE_URL).rstrip("/")
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

    async def _get(self, path: str, params: Optional[Mapping[str, object]] = None) -> List[Mapping[str, JSON]]:
        request_path = _build_request_path(path, params)
        headers = _build_okx_headers("GET", request_path)
        url = f"{self.base_url}{request_path}"
        try:
            response = await self._client().get(url, headers=headers)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            log.warning(
                "OKX GET fails: path=%s status=%s body=%s",
                path,
                exc.response.status_code,
                exc.response.text[:300],
            )
            raise
        except httpx.RequestError as exc:
            log.warning("OKX GET request error: path=%s error=%s", path, str(exc))
            raise
        return _unwrap_envelope(payload, path)

    def _with_referrer(self, params: Dict[str, object]) -> Dict[str, object]:
        if settings.OKX_REFERRER_WALLET_ADDRESS:
            params["feePercent"] = settings.OKX_COMMISSION_FEE_PERCENT
            params["toTokenReferrerWalletAddress"] = settings.OKX_REFERRER_WALLET_ADDRESS
        return params

    async def get_supported_chains(self) -> List[OkxSupportedChain]:
        rows = await self._get(f"{AGGREGATOR_PATH}/supported/chain")
        return [OkxSupportedChain.from_json(row) for row in rows]

    async def get_tokens(self, chain_index: str) -> List[Token]:
        rows = await self._get(f"{AGGREGATOR_PATH}/all-tokens", {"chainIndex": chain_index})
        tokens = [Token.from_okx_json(row, chain_index) for row in rows]
        log.debug("[OKX][TOKENS] chain=%s count=%d", chain_index, len(tokens))
        return tokens

    async def get_quote(
            self,
            chain_index: str,
            from_token_address: str,
            to_token_address: str,
            amount: str,
            slippage: Optional[float | str] = None,
    ) -> Quote:
        valid_slippage = _valid_slippage(slippage)
        params = self._with_referrer({
            "chainIndex": chain_index,
            "fromTokenAddress": from_token_address,
            "toTokenAddress": to_token_address,
            "amount": amount,
            "slippagePercent": valid_slippage,
            "slippage": valid_slippage,
        })
        log.debug("[OKX][QUOTE][REQUEST] chain=%s from=%s to=%s amount=%s slippage=%s",
                  chain_index, from_token_address, to_token_address, amount, valid_slippage)
        rows = await self._get(f"{AGGREGATOR_PATH}/quote", params)
        if not rows:
            raise ValueError("No route found for this token pair")
        quote = Quote.from_okx_json(rows[0], chain_index)
        log.info("[OKX][QUOTE][RECEIVE] chain=%s out=%s impact=%s", chain_index, quote.to_amount,
                 quote.price_impact_percent)
        return quote

    async def get_swap_transaction(
            self,
            chain_index: str,
            from_token_address: str,
            to_token_address: str,
            amount: str,
            user_wallet_address: str,
            slippage: Optional[float | str] = None,
    ) -> SwapTransaction:
        valid_slippage = _valid_slippage(slippage)
        params = self._with_referrer({
            "chainIndex": chain_index,
            "fromTokenAddress": from_token_address,
            "toTokenAddress": to_token_address,
            "amount": amount,
            "slippagePercent": valid_slippage,
            "slippage": valid_slippage,
            "userWalletAddress": user_wallet_address,
        })
        rows = await self._get(f"{AGGREGATOR_PATH}/swap", params)
        if not rows:
            raise ValueError("No swap data returned for this token pair")
        swap = SwapTransaction.from_okx_json(rows[0], chain_index)
        log.info("[OKX][SWAP][RECEIVE] chain=%s to=%s value=%s", chain_index, swap.to, swap.value)
        return swap

    async def get_approval_transaction(self, chain_index: str, token_address: str,
                                       approve_amount: str = "") -> ApprovalTransaction:
        rows = await self._get(
            f"{AGGREGATOR_PATH}/approve-transaction",
            {"chainIndex": chain_index, "tokenContractAddress": token_address, "approveAmount": approve_amount},
        )
        if not rows:
            raise ValueError("No approval data returned for this token")
        return ApprovalTransaction.from_okx_json(rows[0], token_address)

    async def get_token_price(self, chain_index: str, token_address: str) -> Optional[float]:
        rows = await self._get(f"{MARKET_PATH}/price",
                               {"chainIndex": chain_index, "tokenContractAddress": token_address})
        if not rows:
            return None
        price = OkxTokenPrice.from_json(rows[0]).price
        return price if price is not None and price > 0 else None

    async def get_cross_chain_quote(
            self,
            from_chain_index: str,
            to_chain_index: str,
            from_token_address: str,
            to_token_address: str,
            amount: str,
            slippage: Optional[float | str] = None,
            user_wallet_address: Optional[str] = None,
    ) -> BridgeRoute:
        valid_slippage = _valid_slippage(slippage)
        params: Dict[str, object] = {
            "fromChainIndex": from_chain_index,
            "toChainIndex": to_chain_index,
            "fromTokenAddress": from_token_address,
            "toTokenAddress": to_token_address,
            "amount": amount,
            "slippagePercent": valid_slippage,
            "slippage": valid_slippage,
        }
        if user_wallet_address:
            params["userWalletAddress"] = user_wallet_address
        rows = await self._get(f"{CROSS_CHAIN_PATH}/quote", params)
        if not rows:
            raise ValueError("No route found for this cross-chain swap")
        return bridge_route_from_okx_json(rows[0], from_chain_index, to_chain_index)

    async def get_cross_chain_swap(
            self,
            from_chain_index: str,
            to_chain_index: str,
            from_token_address: str,
            to_token_address: str,
            amount: str,
            user_wallet_address: str,
            slippage: Optional[float | str] = None,
            receive_address: Optional[str] = None,
    ) -> SwapTransaction:
        valid_slippage = _valid_slippage(slippage)
        rows = await self._get(
            f"{CROSS_CHAIN_PATH}/swap",
            {
                "fromChainIndex": from_chain_index,
                "toChainIndex": to_chain_index,
                "fromTokenAddress": from_token_address,
                "toTokenAddress": to_token_address,
                "amount": amount,
                "slippagePercent": valid_slippage,
                "slippage": valid_slippage,
                "userWalletAddress": user_wallet_address,
                "receiveAddress": receive_address or user_wallet_address,
            },
        )
        if not rows:
            raise ValueError("No swap data returned for this cross-chain route")
        return SwapTransaction.from_okx_json(rows[0], from_chain_index)

    async def get_cross_chain_status(self, tx_hash: str, chain_index: str) -> BridgeTransferStatus:
        """Status of a cross-chain order by its source transaction hash."""
        rows = await self._get(f"{CROSS_CHAIN_PATH}/status", {"hash": tx_hash, "chainIndex": chain_index})
        if not rows:
            return BridgeTransferStatus(state=BridgeTransferState.NOT_FOUND)
        return BridgeTransferStatus.from_okx_json(rows[0])


class OkxPriceSource:
    """Primary price source: OKX market price for a chain and token address."""

    def __init__(self, client: OkxDexClient) -> None:
        self.client = client

    async def get_price(self, chain_index: str, token_address: str) -> Optional[float]:
        return await self.client.get_token_price(chain_index, token_address)


class OkxBridgeSource:
    """OKX cross-chain routes behind the interface the LI.FI client exposes, so both can be fanned out."""

    provider_name = "okx"

    def __init__(self, client: OkxDexClient) -> None:
        self.client = client

    async def get_cross_chain_quote(
            self,
            from_chain_index: str,
            to_chain_index: str,
            from_token_address: str,
            to_token_address: str,
            from_amount: str,
            from_address: str,
            to_address: Optional[str] = None,
            slippage_percent: Optional[float] = None,
    ) -> BridgeRoute:
        return await self.client.get_cross_chain_quote(
            from_chain_index,
            to_chain_index,
            from_token_address,
            to_token_address,
            from_amount,
            slippage=slippage_percent,
            user_wallet_address=from_address,
        )

    async def get_step_transaction(self, route: BridgeRoute, from_address: Optional[str] = None,
                                   slippage_percent: Optional[float] = None) -> SwapTransaction:
        if not from_address:
            raise ValueError("A sender address is required for a cross-chain swap")
        return await self.client.get_cross_chain_swap(
            route.from_chain_index,
            route.to_chain_index,
            route.from_token.address,
            route.to_token.address,
            route.from_amount,
            from_address,
            slippage=slippage_percent,
        )

    async def get_bridge_approval(self, route: BridgeRoute, bridge_tx: SwapTransaction) -> ApprovalTransaction:
        return await self.client.get_approval_transaction(route.from_chain_index, route.from_token.address,
                                                          route.from_amount)

    async def get_status(self, tx_hash: str, from_chain_index: str, to_chain_index: str,
                         bridge: Optional[str] = None) -> BridgeTransferStatus:
        return await self.client.get_cross_chain_status(tx_hash, from_chain_index)
