from __future__ import annotations

from typing import Mapping

from xlama.core.structures.structures import BridgeRoute, BridgeStep, Token
from xlama.core.utils.dict_utils import (
    JSON,
    _read_list,
    _read_optional_str,
    _read_path,
    _read_str,
    _to_float_or_zero,
    _to_int_or_zero,
    _to_optional_float,
)
from xlama.integrations.lifi.lifi_helpers import LIFI_ID_TO_CHAIN_INDEX


def _token_from_lifi_json(payload: object, chain_index: str) -> Token:
    return Token(
        address=_read_str(payload, ("address",)),
        symbol=_read_str(payload, ("symbol",)),
        name=_read_str(payload, ("name",)),
        decimals=_to_int_or_zero(_read_path(payload, ("decimals",))),
        chain_index=chain_index,
        logo_url=_read_optional_str(payload, ("logoURI",)),
        unit_price=_to_optional_float(_read_path(payload, ("priceUSD",))),
    )


def _chain_index_from_lifi_id(value: object, fallback: str) -> str:
    lifi_id = _to_int_or_zero(value)
    return LIFI_ID_TO_CHAIN_INDEX.get(lifi_id, fallback)


def bridge_route_from_lifi_json(payload: Mapping[str, JSON], from_chain_index: str, to_chain_index: str) -> BridgeRoute:
    """Parse a `/v1/quote` step. Gas costs are summed over `estimate.gasCosts[].amountUSD`."""
    from_index = _chain_index_from_lifi_id(_read_path(payload, ("action", "fromChainId")), from_chain_index)
    to_index = _chain_index_from_lifi_id(_read_path(payload, ("action", "toChainId")), to_chain_index)
    gas_cost_usd = sum(_to_float_or_zero(_read_path(cost, ("amountUSD",)))
                       for cost in _read_list(payload, ("estimate", "gasCosts")))
    fee_cost_usd = sum(_to_float_or_zero(_read_path(cost, ("amountUSD",)))
                       for cost in _read_list(payload, ("estimate", "feeCosts")))
    steps = tuple(
        BridgeStep(
            type=_read_str(step, ("type",)),
            tool=_read_str(step, ("tool",)),
            tool_name=_read_str(step, ("toolDetails", "name")) or _read_str(step, ("tool",)),
            logo_url=_read_str(step, ("toolDetails", "logoURI")),
        )
        for step in _read_list(payload, ("includedSteps",))
    )
    transaction_request = _read_path(payload, ("transactionRequest",))
    return BridgeRoute(
        provider="lifi",
        tool=_read_str(payload, ("toolDetails", "name")) or _read_str(payload, ("tool",)),
        from_chain_index=from_index,
        to_chain_index=to_index,
        from_token=_token_from_lifi_json(_read_path(payload, ("action", "fromToken")), from_index),
        to_token=_token_from_lifi_json(_read_path(payload, ("action", "toToken")), to_index),
        from_amount=_read_str(payload, ("action", "fromAmount"), "0"),
        to_amount=_read_str(payload, ("estimate", "toAmount"), "0"),
        to_amount_min=_read_str(payload, ("estimate", "toAmountMin"), "0"),
        gas_cost_usd=round(gas_cost_usd, 2),
        fee_cost_usd=round(fee_cost_usd, 2),
        estimated_duration_seconds=_to_int_or_zero(_read_path(payload, ("estimate", "executionDuration"))),
        steps=steps,
        transaction_request=transaction_request if isinstance(transaction_request, Mapping) else None,
        raw=payload,
    )
