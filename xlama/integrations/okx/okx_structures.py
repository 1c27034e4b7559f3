from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from xlama.core.structures.structures import BridgeRoute, BridgeStep, Token
from xlama.core.utils.dict_utils import JSON, _read_list, _read_path, _read_str, _to_int_or_zero, _to_optional_float


@dataclass(frozen=True)
class OkxSupportedChain:
    chain_index: str
    name: str
    approve_address: str

    @staticmethod
    def from_json(payload: Mapping[str, JSON]) -> "OkxSupportedChain":
        return OkxSupportedChain(
            chain_index=_read_str(payload, ("chainIndex",)) or _read_str(payload, ("chainId",)),
            name=_read_str(payload, ("chainName",)),
            approve_address=_read_str(payload, ("dexTokenApproveAddress",)),
        )


@dataclass(frozen=True)
class OkxTokenPrice:
    chain_index: str
    token_address: str
    price: Optional[float]
    time: int

    @staticmethod
    def from_json(payload: Mapping[str, JSON]) -> "OkxTokenPrice":
        return OkxTokenPrice(
            chain_index=_read_str(payload, ("chainIndex",)),
            token_address=_read_str(payload, ("tokenContractAddress",)),
            price=_to_optional_float(_read_path(payload, ("price",))),
            time=_to_int_or_zero(_read_path(payload, ("time",))),
        )


def bridge_route_from_okx_json(payload: Mapping[str, JSON], from_chain_index: str, to_chain_index: str) -> BridgeRoute:
    """Cross-chain quote row: best router first, bridge name from the router or the root."""
    router_rows = _read_list(payload, ("routerList",))
    first_router = router_rows[0] if router_rows else {}
    bridge_name = (
            _read_str(first_router, ("router", "bridgeName"))
            or _read_str(payload, ("bridgeName",))
            or _read_str(first_router, ("router",))
    )
    from_token_json = _read_path(payload, ("fromToken",))
    to_token_json = _read_path(payload, ("toToken",))
    to_amount = _read_str(first_router, ("toTokenAmount",)) or _read_str(payload, ("toTokenAmount",), "0")
    steps = tuple(
        BridgeStep(
            type="swap",
            tool=_read_str(row, ("dexName",)),
            tool_name=_read_str(row, ("dexName",)),
            logo_url="",
        )
        for row in _read_list(first_router, ("fromDexRouterList",)) + _read_list(first_router, ("toDexRouterList",))
    )
    return BridgeRoute(
        provider="okx",
        tool=bridge_name,
        from_chain_index=_read_str(payload, ("fromChainIndex",)) or from_chain_index,
        to_chain_index=_read_str(payload, ("toChainIndex",)) or to_chain_index,
        from_token=Token.from_okx_json(from_token_json if isinstance(from_token_json, Mapping) else {},
                                       from_chain_index),
        to_token=Token.from_okx_json(to_token_json if isinstance(to_token_json, Mapping) else {}, to_chain_index),
        from_amount=_read_str(payload, ("fromTokenAmount",), "0"),
        to_amount=to_amount,
        to_amount_min=_read_str(first_router, ("minimumReceived",)) or to_amount,
        gas_cost_usd=0.0,
        fee_cost_usd=0.0,
        estimated_duration_seconds=_to_int_or_zero(
            _read_path(first_router, ("estimateTime",)) or _read_path(payload, ("estimatedTime",))
        ),
        steps=steps,
        transaction_request=None,
        raw=payload,
    )
