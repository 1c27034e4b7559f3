from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from xlama.core.structures.structures import BridgeRoute, Quote, decimal_or_zero
from xlama.core.utils.amount_utils import from_smallest_unit
from xlama.logging.logger import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class RouteCandidate:
    """
    One executable alternative for the same trade.

    `output_amount` and `fee_amount` are expressed in the destination token (human units) so
    candidates from different providers can be compared directly.
    """
    provider: str
    output_amount: Decimal
    fee_amount: Decimal
    estimated_gas: int
    label: str
    payload: Optional[object] = field(default=None, compare=False)

    @property
    def net_output(self) -> Decimal:
        return self.output_amount - self.fee_amount


@dataclass(frozen=True)
class RankedRoutes:
    best: Optional[RouteCandidate]
    ranked: Tuple[RouteCandidate, ...]


def parse_amount(value: object) -> Decimal:
    """Provider numbers as Decimal; missing or malformed values count as zero."""
    return decimal_or_zero(value)


def rank(candidates: Iterable[RouteCandidate]) -> RankedRoutes:
    """Best net output first; ties go to the lower gas estimate. Input order breaks remaining ties."""
    ordered = sorted(candidates, key=lambda candidate: (-candidate.net_output, candidate.estimated_gas))
    return RankedRoutes(best=ordered[0] if ordered else None, ranked=tuple(ordered))


def _usd_to_destination_units(amount_usd: float, unit_price: Optional[float]) -> Decimal:
    if not amount_usd or unit_price is None or unit_price <= 0:
        return Decimal(0)
    return Decimal(str(amount_usd)) / Decimal(str(unit_price))


def candidates_from_okx_quote(quote: Quote) -> List[RouteCandidate]:
    """The aggregated route itself plus each venue of its compare list."""
    unit_price = quote.to_token.unit_price
    candidates: List[RouteCandidate] = [
        RouteCandidate(
            provider=quote.provider,
            output_amount=parse_amount(from_smallest_unit(quote.to_amount, quote.to_token.decimals)),
            fee_amount=_usd_to_destination_units(quote.trade_fee_usd, unit_price),
            estimated_gas=quote.estimated_gas,
            label="aggregated",
            payload=quote,
        )
    ]
    for comparison in quote.comparisons:
        candidates.append(
            RouteCandidate(
                provider=quote.provider,
                output_amount=parse_amount(comparison.receive_amount),
                fee_amount=_usd_to_destination_units(comparison.trade_fee_usd, unit_price),
                estimated_gas=quote.estimated_gas,
                label=comparison.dex_name,
                payload=comparison,
            )
        )
    return candidates


def candidates_from_bridge_routes(routes: Sequence[BridgeRoute]) -> List[RouteCandidate]:
    candidates: List[RouteCandidate] = []
    for route in routes:
        costs_usd = route.gas_cost_usd + route.fee_cost_usd
        candidates.append(
            RouteCandidate(
                provider=route.provider,
                output_amount=parse_amount(from_smallest_unit(route.to_amount, route.to_token.decimals)),
                fee_amount=_usd_to_destination_units(costs_usd, route.to_token.unit_price),
                estimated_gas=0,
                label=route.tool,
                payload=route,
            )
        )
    return candidates


class RouteComparator:
    """Ranks provider routes for a trade by net output."""

    def compare_quote(self, quote: Optional[Quote]) -> RankedRoutes:
        if quote is None:
            return RankedRoutes(best=None, ranked=())
        ranked = rank(candidates_from_okx_quote(quote))
        if ranked.best is not None:
            log.debug(
                "[ROUTES][RANK] chain=%s candidates=%d best=%s net=%s",
                quote.chain_index,
                len(ranked.ranked),
                ranked.best.label,
                ranked.best.net_output,
            )
        return ranked

    def compare_bridge_routes(self, routes: Sequence[BridgeRoute]) -> RankedRoutes:
        return rank(candidates_from_bridge_routes(routes))

