from __future__ import annotations

import re
from typing import Dict, Mapping, Optional

import httpx

from xlama.configuration.config import settings
from xlama.core.errors.error_taxonomy import ErrorKind, ExchangeError
from xlama.core.onchain.evm_signer import encode_approve_call
from xlama.core.structures.structures import (
    ApprovalTransaction,
    BridgeRoute,
    BridgeTransferState,
    BridgeTransferStatus,
    SwapTransaction,
)
from xlama.core.utils.dict_utils import _read_path, _read_str, _to_int_or_zero
from xlama.integrations.lifi.lifi_helpers import (
    _http_get_json,
    _http_post_json,
    _normalize_token_address,
    resolve_lifi_chain_id,
)
from xlama.integrations.lifi.lifi_structures import bridge_route_from_lifi_json
from xlama.logging.logger import get_logger

log = get_logger(__name__)

DEFAULT_SLIPPAGE_FRACTION = 0.01

_MINIMUM_PATTERNS = (
    re.compile(r"minimum[:\s]+([0-9.]+)", re.IGNORECASE),
    re.compile(r"at least[:\s]+([0-9.]+)", re.IGNORECASE),
    re.compile(r"min[:\s]+([0-9.]+)", re.IGNORECASE),
)


class LifiQuoteError(ExchangeError):
    """Quote failure reported by LI.FI; `minimum_amount` is set when the message names one."""

    def __init__(self, message: str, kind: ErrorKind, minimum_amount: Optional[str] = None) -> None:
        super().__init__(message, kind=kind)
        self.minimum_amount = minimum_amount


def map_lifi_quote_error(raw_message: str) -> LifiQuoteError:
    if "No available quotes" in raw_message or "NO_POSSIBLE_ROUTE" in raw_message:
        return LifiQuoteError("No route available for this swap. Try different tokens or chains.", ErrorKind.NO_ROUTE)
    if "AMOUNT_TOO_LOW" in raw_message or "amount too low" in raw_message or "minimum" in raw_message:
        minimum: Optional[str] = None
        for pattern in _MINIMUM_PATTERNS:
            match = pattern.search(raw_message)
            if match:
                minimum = match.group(1)
                break
        message = "Amount is below the minimum for this bridge"
        if minimum:
            message = f"{message}. Minimum: {minimum}"
        return LifiQuoteError(message, ErrorKind.AMOUNT_TOO_LOW, minimum_amount=minimum)
    if "INSUFFICIENT_LIQUIDITY" in raw_message:
        return LifiQuoteError("Insufficient liquidity for this route", ErrorKind.INSUFFICIENT_LIQUIDITY)
    if "not supported" in raw_message or "Unsupported chain" in raw_message:
        return LifiQuoteError("This chain is not yet supported for bridging.", ErrorKind.UNSUPPORTED)
    return LifiQuoteError("Unable to get quote. Please try again.", ErrorKind.UNKNOWN)


class LifiClient:
    """LI.FI REST client for cross-chain quotes, step transactions and transfer status."""

    provider_name = "lifi"

    def __init__(self, base_url: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = (base_url or settings.LIFI_BASE_URL).rstrip("/")
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
        """
        Quote a bridge transfer through `/v1/quote`.

        Raises:
            LifiQuoteError: unsupported chain or a quote error reported by LI.FI (4xx).
            httpx.HTTPStatusError / httpx.RequestError: transport level failures (5xx, network).
        """
        from_chain_id = resolve_lifi_chain_id(from_chain_index)
        to_chain_id = resolve_lifi_chain_id(to_chain_index)
        if from_chain_id is None or to_chain_id is None:
            raise LifiQuoteError("This chain is not yet supported for bridging.", ErrorKind.UNSUPPORTED)

        slippage = slippage_percent / 100.0 if slippage_percent else DEFAULT_SLIPPAGE_FRACTION
        params: Dict[str, object] = {
            "fromChain": from_chain_id,
            "toChain": to_chain_id,
            "fromToken": _normalize_token_address(from_token_address),
            "toToken": _normalize_token_address(to_token_address),
            "fromAmount": from_amount,
            "fromAddress": from_address,
            "toAddress": to_address or from_address,
            "slippage": slippage,
            "integrator": settings.LIFI_INTEGRATOR,
        }
        if settings.LIFI_PLATFORM_FEE > 0:
            params["fee"] = settings.LIFI_PLATFORM_FEE

        log.debug(
            "[LI.FI][QUOTE][REQUEST] from_chain=%s to_chain=%s amount=%s slippage=%.4f",
            from_chain_id,
            to_chain_id,
            from_amount,
            slippage,
        )
        try:
            payload = await _http_get_json(self._client(), f"{self.base_url}/v1/quote", params)
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            if 400 <= status_code < 500 and status_code != 429:
                raise map_lifi_quote_error(exc.response.text) from exc
            raise

        route = bridge_route_from_lifi_json(payload, from_chain_index, to_chain_index)
        log.info("[LI.FI][QUOTE][RECEIVE] tool=%s to_amount=%s duration=%ss", route.tool, route.to_amount,
                 route.estimated_duration_seconds)
        return route

    async def get_step_transaction(self, route: BridgeRoute, from_address: Optional[str] = None,
                                   slippage_percent: Optional[float] = None) -> SwapTransaction:
        """
        Executable transaction for a quoted step; quotes usually embed it already.

        The sender and slippage were fixed when the route was quoted, so `from_address` and
        `slippage_percent` are not sent again.
        """
        request: Optional[Mapping[str, object]] = route.transaction_request
        if request is None:
            payload = await _http_post_json(self._client(), f"{self.base_url}/v1/advanced/stepTransaction",
                                            dict(route.raw))
            node = _read_path(payload, ("transactionRequest",))
            request = node if isinstance(node, Mapping) else None
        if request is None:
            raise ExchangeError("No transaction request in step", kind=ErrorKind.NO_ROUTE)

        gas_limit = _to_int_or_zero(_read_path(request, ("gasLimit",)))
        gas_price = _to_int_or_zero(_read_path(request, ("gasPrice",)))
        return SwapTransaction(
            chain_index=route.from_chain_index,
            from_address=_read_str(request, ("from",)),
            to=_read_str(request, ("to",)),
            data=_read_str(request, ("data",), "0x"),
            value=_to_int_or_zero(_read_path(request, ("value",))),
            gas_limit=gas_limit or None,
            gas_price=gas_price or None,
            min_receive_amount=route.to_amount_min,
        )

    async def get_bridge_approval(self, route: BridgeRoute, bridge_tx: SwapTransaction) -> ApprovalTransaction:
        """ERC-20 approval of the quoted amount for `estimate.approvalAddress` (the step target otherwise)."""
        spender = _read_str(route.raw, ("estimate", "approvalAddress")) or bridge_tx.to
        return ApprovalTransaction(
            token_address=route.from_token.address,
            spender=spender,
            data=encode_approve_call(spender, int(route.from_amount)),
            gas_limit=None,
            gas_price=None,
        )

    async def get_status(self, tx_hash: str, from_chain_index: str, to_chain_index: str,
                         bridge: Optional[str] = None) -> BridgeTransferStatus:
        """
        Transfer status. A transfer LI.FI has not indexed yet (400/404) is NOT_FOUND so callers
        keep polling; transport failures and 5xx responses propagate.
        """
        params: Dict[str, object] = {
            "txHash": tx_hash,
            "fromChain": resolve_lifi_chain_id(from_chain_index) or from_chain_index,
            "toChain": resolve_lifi_chain_id(to_chain_index) or to_chain_index,
        }
        if bridge:
            params["bridge"] = bridge
        try:
            payload = await _http_get_json(self._client(), f"{self.base_url}/v1/status", params)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code not in (400, 404):
                raise
            log.debug("[LI.FI][STATUS] tx=%s not indexed yet", tx_hash)
            return BridgeTransferStatus(state=BridgeTransferState.NOT_FOUND)
        return BridgeTransferStatus.from_lifi_json(payload)
