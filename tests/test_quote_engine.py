from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from xlama.core.chains.chain_registry import get_chain_by_index
from xlama.core.errors.error_taxonomy import ErrorKind, ProviderError
from xlama.core.quoting.quote_engine import PLACEHOLDER_WALLET_ADDRESS, QuoteEngine
from xlama.core.quoting.slippage_advisor import PriceImpactLevel
from xlama.core.retry.retryable_request import RetryPolicy
from xlama.core.structures.structures import BridgeRoute, DexComparison, Quote, QuoteRequest, Token

ETHEREUM = get_chain_by_index("1")
BASE = get_chain_by_index("8453")
ETH = Token(address="0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee", symbol="ETH", name="Ether", decimals=18,
            chain_index="1")
USDC = Token(address="0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48", symbol="USDC", name="USD Coin", decimals=6,
             chain_index="1")


def _request(amount: str, **overrides) -> QuoteRequest:
    values = dict(chain=ETHEREUM, from_token=ETH, to_token=USDC, amount=amount, slippage_percent=0.5)
    values.update(overrides)
    return QuoteRequest(**values)


def _quote(to_amount: str, impact=0.3, comparisons=()) -> Quote:
    return Quote(
        chain_index="1",
        from_token=ETH,
        to_token=Token(address=USDC.address, symbol="USDC", name="USD Coin", decimals=6, chain_index="1",
                       unit_price=1.0),
        from_amount="1000000000000000000",
        to_amount=to_amount,
        estimated_gas=120000,
        price_impact_percent=impact,
        trade_fee_usd=1.5,
        comparisons=comparisons,
    )


def _bridge_route(provider: str, to_amount: str, tool: str = "stargate") -> BridgeRoute:
    return BridgeRoute(
        provider=provider,
        tool=tool,
        from_chain_index="1",
        to_chain_index="8453",
        from_token=ETH,
        to_token=Token(address="0x833589fcd6edb6e08f4c7c32d4f71b54bda02913", symbol="USDC", name="USD Coin",
                       decimals=6, chain_index="8453"),
        from_amount="1000000000000000000",
        to_amount=to_amount,
        to_amount_min=to_amount,
        gas_cost_usd=3.0,
        fee_cost_usd=1.0,
        estimated_duration_seconds=120,
    )


def _bridge_source(name: str, route) -> MagicMock:
    bridge = MagicMock()
    bridge.provider_name = name
    bridge.get_cross_chain_quote = AsyncMock(return_value=route)
    return bridge


class SlowFirstProvider:
    """Answers the first amount only once released; that late answer ignores cancellation."""

    def __init__(self, slow_amount: str) -> None:
        self.slow_amount = slow_amount
        self.release = asyncio.Event()
        self.calls = []

    async def get_quote(self, chain_index, from_token_address, to_token_address, amount, slippage=None):
        self.calls.append(amount)
        if amount == self.slow_amount:
            try:
                await self.release.wait()
            except asyncio.CancelledError:
                pass
            return _quote("1000000")
        return _quote("2000000000")


class TestQuoteEngine:
    @pytest.mark.asyncio
    async def test_newer_request_wins_over_late_response(self):
        provider = SlowFirstProvider(slow_amount="1000000000000000")
        engine = QuoteEngine(provider, debounce_seconds=0)
        applied = []
        engine.subscribe(applied.append)

        first = asyncio.create_task(engine.request(_request("0.001")))
        while not provider.calls:
            await asyncio.sleep(0)
        second = await engine.request(_request("1"))
        provider.release.set()
        first_state = await first

        assert first_state.superseded
        assert not second.superseded
        assert second.result.formatted_output_amount == "2000"
        assert [state.result.formatted_output_amount for state in applied] == ["2000"]
        assert engine.current(second.key).result.formatted_output_amount == "2000"

    @pytest.mark.asyncio
    async def test_debounce_collapses_rapid_requests(self):
        provider = MagicMock()
        provider.get_quote = AsyncMock(return_value=_quote("3000000000"))
        engine = QuoteEngine(provider, debounce_seconds=0.05)

        states = await asyncio.gather(
            engine.request(_request("0.5")),
            engine.request(_request("0.75")),
            engine.request(_request("1")),
        )

        assert [state.superseded for state in states] == [True, True, False]
        provider.get_quote.assert_awaited_once()
        assert provider.get_quote.await_args.args[3] == "1000000000000000000"

    @pytest.mark.asyncio
    async def test_result_figures(self):
        comparisons = (DexComparison(dex_name="Uniswap V3", dex_logo="", trade_fee_usd=2.0, receive_amount="2995"),)
        provider = MagicMock()
        provider.get_quote = AsyncMock(return_value=_quote("3000000000", impact=2.0, comparisons=comparisons))
        price_feed = MagicMock()
        price_feed.get_price = AsyncMock(return_value=3000.0)
        engine = QuoteEngine(provider, price_feed=price_feed, debounce_seconds=0)

        state = await engine.request(_request("1", auto_slippage=True))
        result = state.result

        assert result.exchange_rate == Decimal("3000")
        assert result.input_usd == pytest.approx(3000.0)
        assert result.output_usd == pytest.approx(3000.0)
        assert result.slippage.slippage == 2.5
        assert result.slippage.impact_level is PriceImpactLevel.MEDIUM
        assert [candidate.label for candidate in result.routes.ranked] == ["aggregated", "Uniswap V3"]
        price_feed.get_price.assert_awaited_once_with("ETH", chain_index="1", token_address=ETH.address)

    @pytest.mark.asyncio
    async def test_grouped_amount_feeds_rate_and_usd_values(self):
        provider = MagicMock()
        provider.get_quote = AsyncMock(return_value=_quote("3000000000"))
        price_feed = MagicMock()
        price_feed.get_price = AsyncMock(return_value=3.0)
        engine = QuoteEngine(provider, price_feed=price_feed, debounce_seconds=0)

        state = await engine.request(_request("1,000"))
        result = state.result

        assert provider.get_quote.await_args.args[3] == "1" + "0" * 21
        assert result.exchange_rate == Decimal("3")
        assert result.input_usd == pytest.approx(3000.0)
        assert result.output_usd == pytest.approx(3000.0)

    @pytest.mark.asyncio
    async def test_unquotable_request_resets_state(self):
        provider = MagicMock()
        provider.get_quote = AsyncMock()
        engine = QuoteEngine(provider, debounce_seconds=0)

        state = await engine.request(_request("0"))

        assert state.is_idle
        provider.get_quote.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_failure_is_classified(self):
        provider = MagicMock()
        provider.get_quote = AsyncMock(side_effect=ProviderError("okx", "Rate limited", code="50011",
                                                                 kind=ErrorKind.RATE_LIMITED))
        engine = QuoteEngine(provider, debounce_seconds=0, retry_policy=RetryPolicy(max_retries=3, delay_ms=0))

        state = await engine.request(_request("1"))

        assert state.result is None
        assert state.error_kind is ErrorKind.RATE_LIMITED
        assert state.error == "Too many requests. Please wait a moment and try again."
        provider.get_quote.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fetch_now_bypasses_applied_state(self):
        provider = MagicMock()
        provider.get_quote = AsyncMock(return_value=_quote("3000000000"))
        engine = QuoteEngine(provider, debounce_seconds=10)

        state = await engine.fetch_now(_request("1"))

        assert state.result.formatted_output_amount == "3000"
        assert engine.current(state.key) is None

    @pytest.mark.asyncio
    async def test_bridge_quote_uses_placeholder_sender(self):
        route = _bridge_route("lifi", "2990000000")
        bridge = _bridge_source("lifi", route)
        engine = QuoteEngine(MagicMock(), bridge_providers=[bridge], debounce_seconds=0)

        state = await engine.request_bridge(_request("1", to_chain=BASE))

        assert state.result.bridge_route is route
        assert state.result.formatted_output_amount == "2990"
        assert bridge.get_cross_chain_quote.await_args.args[5] == PLACEHOLDER_WALLET_ADDRESS

    @pytest.mark.asyncio
    async def test_bridge_to_same_chain_is_idle(self):
        bridge = _bridge_source("lifi", _bridge_route("lifi", "1"))
        engine = QuoteEngine(MagicMock(), bridge_providers=[bridge], debounce_seconds=0)

        state = await engine.request_bridge(_request("1", to_chain=ETHEREUM))

        assert state.is_idle
        bridge.get_cross_chain_quote.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bridge_providers_are_asked_together_and_the_best_route_wins(self):
        lifi_route = _bridge_route("lifi", "2990000000")
        okx_route = _bridge_route("okx", "2995000000", tool="Wormhole")
        started = []
        both_started = asyncio.Event()

        def _concurrent(route):
            async def _quote(*args, **kwargs):
                started.append(route.provider)
                if len(started) == 2:
                    both_started.set()
                await asyncio.wait_for(both_started.wait(), timeout=1)
                return route
            return _quote

        lifi = _bridge_source("lifi", lifi_route)
        lifi.get_cross_chain_quote.side_effect = _concurrent(lifi_route)
        okx = _bridge_source("okx", okx_route)
        okx.get_cross_chain_quote.side_effect = _concurrent(okx_route)
        engine = QuoteEngine(MagicMock(), bridge_providers=[lifi, okx], debounce_seconds=0)

        state = await engine.request_bridge(_request("1", to_chain=BASE))

        assert sorted(started) == ["lifi", "okx"]
        assert state.result.bridge_route is okx_route
        assert state.result.formatted_output_amount == "2995"
        assert [candidate.provider for candidate in state.result.routes.ranked] == ["okx", "lifi"]

    @pytest.mark.asyncio
    async def test_failed_bridge_provider_is_skipped(self):
        route = _bridge_route("okx", "2980000000")
        lifi = _bridge_source("lifi", None)
        lifi.get_cross_chain_quote.side_effect = ProviderError("lifi", "No available quotes", kind=ErrorKind.NO_ROUTE)
        engine = QuoteEngine(MagicMock(), bridge_providers=[lifi, _bridge_source("okx", route)], debounce_seconds=0)

        state = await engine.request_bridge(_request("1", to_chain=BASE))

        assert state.error is None
        assert state.result.bridge_route is route

    @pytest.mark.asyncio
    async def test_all_bridge_providers_failing_reports_the_first_error(self):
        lifi = _bridge_source("lifi", None)
        lifi.get_cross_chain_quote.side_effect = ProviderError("lifi", "No available quotes", kind=ErrorKind.NO_ROUTE)
        okx = _bridge_source("okx", None)
        okx.get_cross_chain_quote.side_effect = ValueError("No route found for this cross-chain swap")
        engine = QuoteEngine(MagicMock(), bridge_providers=[lifi, okx], debounce_seconds=0)

        state = await engine.request_bridge(_request("1", to_chain=BASE))

        assert state.result is None
        assert state.error_kind is ErrorKind.NO_ROUTE

    @pytest.mark.asyncio
    async def test_bridge_without_providers_is_unsupported(self):
        engine = QuoteEngine(MagicMock(), debounce_seconds=0)
        req = _request("1", to_chain=BASE)

        state = await engine.request_bridge(req)
        immediate = await engine.fetch_bridge_now(req)

        assert state.error_kind is ErrorKind.UNSUPPORTED
        assert state.error == "Cross-chain quotes are not available"
        assert engine.current(req.key) is state
        assert immediate.error_kind is ErrorKind.UNSUPPORTED

    @pytest.mark.asyncio
    async def test_fetch_bridge_now_leaves_state_untouched(self):
        route = _bridge_route("lifi", "2990000000")
        engine = QuoteEngine(MagicMock(), bridge_providers=[_bridge_source("lifi", route)], debounce_seconds=10)

        state = await engine.fetch_bridge_now(_request("1", to_chain=BASE, user_address="0xabc"))

        assert state.result.bridge_route is route
        assert engine.current(state.key) is None

    @pytest.mark.asyncio
    async def test_close_cancels_pending_requests(self):
        provider = MagicMock()
        provider.get_quote = AsyncMock(return_value=_quote("3000000000"))
        engine = QuoteEngine(provider, debounce_seconds=10)

        pending = asyncio.create_task(engine.request(_request("1")))
        await asyncio.sleep(0)
        await engine.close()

        assert (await pending).superseded
        provider.get_quote.assert_not_awaited()
