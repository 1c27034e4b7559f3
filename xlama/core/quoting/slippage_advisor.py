from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from xlama.core.structures.structures import Quote

MAX_AUTO_SLIPPAGE_PERCENT = 10.0


class PriceImpactLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EXTREME = "extreme"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SlippageAdvice:
    slippage: float
    impact_level: PriceImpactLevel
    price_impact_percent: Optional[float]
    is_auto: bool


def recommend_slippage(price_impact_percent: float) -> float:
    """
    Slippage tolerance (percent) for a given absolute price impact (percent).

    Monotonically non-decreasing in the impact and capped at 10%.
    """
    impact = abs(price_impact_percent)
    if impact <= 0.1:
        slippage = 0.3
    elif impact <= 0.5:
        slippage = 0.5
    elif impact <= 1.0:
        slippage = 1.0
    elif impact <= 3.0:
        slippage = min(impact + 0.5, 3.0)
    elif impact <= 5.0:
        slippage = min(impact + 1.0, 5.0)
    else:
        slippage = min(impact + 2.0, MAX_AUTO_SLIPPAGE_PERCENT)
    return round(slippage, 1)


def classify_price_impact(price_impact_percent: Optional[float]) -> PriceImpactLevel:
    if price_impact_percent is None:
        return PriceImpactLevel.UNKNOWN
    impact = abs(price_impact_percent)
    if impact <= 0.5:
        return PriceImpactLevel.LOW
    if impact <= 2.0:
        return PriceImpactLevel.MEDIUM
    if impact <= 5.0:
        return PriceImpactLevel.HIGH
    return PriceImpactLevel.EXTREME


class SlippageAdvisor:
    """Chooses the slippage tolerance for a quote, either user-set or derived from price impact."""

    def __init__(self, default_slippage_percent: float = 0.5) -> None:
        self.default_slippage_percent = default_slippage_percent

    def advise(self, quote: Optional[Quote], auto_mode: bool, manual_slippage: float) -> SlippageAdvice:
        impact = quote.price_impact_percent if quote is not None else None
        level = classify_price_impact(impact)
        if not auto_mode:
            return SlippageAdvice(
                slippage=manual_slippage,
                impact_level=level,
                price_impact_percent=impact,
                is_auto=False,
            )
        # No impact reported: keep the default tolerance
        slippage = recommend_slippage(impact) if impact is not None else self.default_slippage_percent
        return SlippageAdvice(slippage=slippage, impact_level=level, price_impact_percent=impact, is_auto=True)
