from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from xlama.core.utils.dict_utils import (
    JSON,
    _read_list,
    _read_optional_str,
    _read_path,
    _read_str,
    _to_int_or_zero,
)


@dataclass(frozen=True)
class HyperliquidAsset:
    coin: str
    sz_decimals: int
    max_leverage: int

    @staticmethod
    def from_json(payload: Mapping[str, JSON]) -> "HyperliquidAsset":
        return HyperliquidAsset(
            coin=_read_str(payload, ("name",)) or _read_str(payload, ("coin",)),
            sz_decimals=_to_int_or_zero(_read_path(payload, ("szDecimals",))),
            max_leverage=_to_int_or_zero(_read_path(payload, ("maxLeverage",))),
        )


@dataclass(frozen=True)
class HyperliquidMarket:
    coin: str
    mid_px: str
    mark_px: str


@dataclass(frozen=True)
class HyperliquidPosition:
    coin: str
    szi: str
    leverage: int
    entry_px: str
    position_value: str
    unrealized_pnl: str
    return_on_equity: str
    liquidation_px: Optional[str]
    margin_used: str

    @staticmethod
    def from_json(payload: object) -> "HyperliquidPosition":
        leverage = _to_int_or_zero(_read_path(payload, ("position", "leverage", "value")))
        return HyperliquidPosition(
            coin=_read_str(payload, ("position", "coin")),
            szi=_read_str(payload, ("position", "szi"), "0"),
            leverage=leverage or 1,
            entry_px=_read_str(payload, ("position", "entryPx"), "0"),
            position_value=_read_str(payload, ("position", "positionValue"), "0"),
            unrealized_pnl=_read_str(payload, ("position", "unrealizedPnl"), "0"),
            return_on_equity=_read_str(payload, ("position", "returnOnEquity"), "0"),
            liquidation_px=_read_optional_str(payload, ("position", "liquidationPx")),
            margin_used=_read_str(payload, ("position", "marginUsed"), "0"),
        )


@dataclass(frozen=True)
class HyperliquidMarginSummary:
    account_value: str
    total_margin_used: str
    total_ntl_pos: str
    total_raw_usd: str


@dataclass(frozen=True)
class HyperliquidAccountState:
    margin_summary: HyperliquidMarginSummary
    positions: Tuple[HyperliquidPosition, ...]

    @staticmethod
    def from_json(payload: Mapping[str, JSON]) -> "HyperliquidAccountState":
        return HyperliquidAccountState(
            margin_summary=HyperliquidMarginSummary(
                account_value=_read_str(payload, ("marginSummary", "accountValue"), "0"),
                total_margin_used=_read_str(payload, ("marginSummary", "totalMarginUsed"), "0"),
                total_ntl_pos=_read_str(payload, ("marginSummary", "totalNtlPos"), "0"),
                total_raw_usd=_read_str(payload, ("marginSummary", "totalRawUsd"), "0"),
            ),
            positions=tuple(HyperliquidPosition.from_json(row) for row in _read_list(payload, ("assetPositions",))),
        )
