from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from xlama.core.diagnostics.trade_debug_log import TradeDebugLog
from xlama.core.errors.error_taxonomy import ErrorKind, ExchangeError, classify_error
from xlama.core.pricing.price_feed_aggregator import PriceFeedAggregator
from xlama.core.quoting.route_comparator import RankedRoutes, RouteComparator
from xlama.core.quoting.slippage_advisor import SlippageAdvice, SlippageAdvisor
from xlama.core.retry.retryable_request import RetryPolicy, with_retry
from xlama.core.structures.structures import BridgeRoute, Quote, QuoteRequest, Token, decimal_or_zero
from xlama.core.utils.amount_utils import _to_plain_decimal_string, from_smallest_unit, to_smallest_unit
from xlama.logging.logger import get_logger

log = get_logger(__name__)

# Stand-in sender for bridge quotes requested before a wallet is connected
PLACEHOLDER_WALLET_ADDRESS = "0x0000000000000000000000000000000000000001"


class SwapQuoteProvider(Protocol):
    async def get_quote(
            self,
            chain_index: str,
            from_token_address: str,
            to_token_address: str,
            amount: str,
            slippage: Optional[float | str] = None,
    ) -> Quote:
        ...


class BridgeQuoteProvider(Protocol):
    provider_name: str

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
        ...


@dataclass(frozen=True)
class QuoteResult:
    """
    Applied quote with its derived figures.

    Attributes:
        formatted_output_amount: Output in human units of the destination token.
        exchange_rate: Output per unit of input; None when the input is zero.
        issued_generation: Generation token of the request that produced this result.
    """
    request: QuoteRequest
    quote: Optional[Quote]
    formatted_output_amount: str
    exchange_rate: Optional[Decimal]
    routes: RankedRoutes
    slippage: SlippageAdvice
    issued_generation: int
    bridge_route: Optional[BridgeRoute] = None
    input_usd: Optional[float] = None
    output_usd: Optional[float] = None


@dataclass(frozen=True)
class QuoteState:
    """Outcome of one quote request. An idle state has neither result nor error."""
    key: str
    result: Optional[QuoteResult] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    superseded: bool = False
    generation: int = 0

    @property
    def quote(self) -> Optional[Quote]:
        return self.result.quote if self.result is not None else None

    @property
    def is_idle(self) -> bool:
        return self.result is None and self.error is None


QuoteStateSubscriber = Callable[[QuoteState], None]
_Fetcher = Callable[[QuoteRequest, int], Awaitable[QuoteState]]


class QuoteEngine:
    """
    Debounced, cancellable quote fetching.

    Each logical key (chain + token pair) has at most one live request. A new request for a
    key cancels the pending task of the previous one and invalidates its generation token;
    results are applied only when their generation is still current, so a late response can
    never overwrite a newer one.

    Cross-chain requests fan out to every bridge provider at once; failed providers are
    skipped and the remaining routes are ranked together.
    """

    def __init__(
            self,
            provider: SwapQuoteProvider,
            *,
            bridge_providers: Sequence[BridgeQuoteProvider] = (),
            price_feed: Optional[PriceFeedAggregator] = None,
            trade_log: Optional[TradeDebugLog] = None,
            debounce_seconds: float = 0.5,
            advisor: Optional[SlippageAdvisor] = None,
            comparator: Optional[RouteComparator] = None,
            retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.provider = provider
        self.bridge_providers = list(bridge_providers)
        self.price_feed = price_feed
        self.trade_log = trade_log
        self.debounce_seconds = max(0.0, debounce_seconds)
        self.advisor = advisor or SlippageAdvisor()
        self.comparator = comparator or RouteComparator()
        self.retry_policy = retry_policy or RetryPolicy(max_retries=0)
        self._generations: Dict[str, int] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._states: Dict[str, QuoteState] = {}
        self._subscribers: List[QuoteStateSubscriber] = []

    async def request(self, req: QuoteRequest) -> QuoteState:
        """Debounced same-chain quote; returns the applied state or a superseded marker."""
        return await self._schedule(req, self._fetch_swap)

    async def request_bridge(self, req: QuoteRequest) -> QuoteState:
        """Debounced cross-chain quote; source and destination chains must differ."""
        if not req.is_quotable or not _is_cross_chain(req):
            return self._reset(req.key)
        if not self.bridge_providers:
            return self._apply(self._unsupported_bridge(req, self._supersede(req.key)))
        return await self._schedule(req, self._fetch_bridge)

    async def fetch_now(self, req: QuoteRequest) -> QuoteState:
        """One immediate fetch that bypasses debouncing and leaves the applied state untouched."""
        if not req.is_quotable:
            return QuoteState(key=req.key)
        return await self._fetch_swap(req, 0)

    async def fetch_bridge_now(self, req: QuoteRequest) -> QuoteState:
        """Immediate cross-chain counterpart of `fetch_now`."""
        if not req.is_quotable or not _is_cross_chain(req):
            return QuoteState(key=req.key)
        if not self.bridge_providers:
            return self._unsupported_bridge(req, 0)
        return await self._fetch_bridge(req, 0)

    def current(self, key: str) -> Optional[QuoteState]:
        return self._states.get(key)

    def subscribe(self, callback: QuoteStateSubscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        for key in list(self._tasks):
            self._supersede(key)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        log.debug("[QUOTE][ENGINE][CLOSE] cancelled=%d", len(tasks))

    def _supersede(self, key: str) -> int:
        """Invalidate the current generation of `key`, cancel its task and return the new token."""
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation
        previous = self._tasks.pop(key, None)
        if previous is not None and not previous.done():
            previous.cancel()
            log.debug("[QUOTE][ENGINE][CANCEL] key=%s superseded by generation=%d", key, generation)
        return generation

    def _reset(self, key: str) -> QuoteState:
        generation = self._supersede(key)
        return self._apply(QuoteState(key=key, generation=generation))

    async def _schedule(self, req: QuoteRequest, fetcher: _Fetcher) -> QuoteState:
        key = req.key
        if not req.is_quotable:
            return self._reset(key)

        generation = self._supersede(key)
        task = asyncio.create_task(self._run(req, generation, fetcher))
        self._tasks[key] = task
        task.add_done_callback(lambda done, k=key: self._forget(k, done))
        try:
            return await task
        except asyncio.CancelledError:
            if self._generations.get(key) != generation:
                return QuoteState(key=key, superseded=True, generation=generation)
            raise

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            self._tasks.pop(key, None)

    async def _run(self, req: QuoteRequest, generation: int, fetcher: _Fetcher) -> QuoteState:
        if self.debounce_seconds > 0:
            await asyncio.sleep(self.debounce_seconds)
        state = await fetcher(req, generation)
        return self._apply(state)

    def _apply(self, state: QuoteState) -> QuoteState:
        if self._generations.get(state.key, 0) != state.generation:
            log.debug("[QUOTE][ENGINE][STALE] key=%s generation=%d dropped", state.key, state.generation)
            return replace(state, superseded=True)

        self._states[state.key] = state
        if state.result is not None:
            log.info("[QUOTE][ENGINE][APPLY] key=%s out=%s", state.key, state.result.formatted_output_amount)
        for callback in list(self._subscribers):
            try:
                callback(state)
            except Exception:
                log.exception("[QUOTE][ENGINE] subscriber failed for key=%s", state.key)
        return state

    async def _fetch_swap(self, req: QuoteRequest, generation: int) -> QuoteState:
        chain, from_token, to_token = req.chain, req.from_token, req.to_token
        human_amount = _to_plain_decimal_string(req.amount) or "0"
        raw_amount = to_smallest_unit(human_amount, from_token.decimals)
        chain_type = chain.family.value
        if self.trade_log is not None:
            self.trade_log.log_quote(chain_type, chain.chain_index, from_token.symbol, to_token.symbol, human_amount,
                                     req.slippage_percent)
        try:
            quote = await with_retry(
                lambda: self.provider.get_quote(
                    chain.chain_index,
                    from_token.address,
                    to_token.address,
                    raw_amount,
                    req.slippage_percent,
                ),
                self.retry_policy,
                label="quote",
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._failed(req, generation, exc)

        output = from_smallest_unit(quote.to_amount, to_token.decimals)
        result = QuoteResult(
            request=req,
            quote=quote,
            formatted_output_amount=output,
            exchange_rate=_exchange_rate(human_amount, output),
            routes=self.comparator.compare_quote(quote),
            slippage=self.advisor.advise(quote, req.auto_slippage, req.slippage_percent),
            issued_generation=generation,
            input_usd=await self._usd_value(quote.from_token, from_token, human_amount),
            output_usd=await self._usd_value(quote.to_token, to_token, output),
        )
        if self.trade_log is not None:
            self.trade_log.log_quote_result(
                chain_type,
                chain.chain_index,
                True,
                {
                    "toAmount": quote.to_amount,
                    "priceImpact": quote.price_impact_percent,
                    "routes": len(result.routes.ranked),
                },
            )
        return QuoteState(key=req.key, result=result, generation=generation)

    async def _fetch_bridge(self, req: QuoteRequest, generation: int) -> QuoteState:
        """Ask every bridge provider concurrently and keep the route with the best net output."""
        chain, to_chain, from_token, to_token = req.chain, req.to_chain, req.from_token, req.to_token
        human_amount = _to_plain_decimal_string(req.amount) or "0"
        raw_amount = to_smallest_unit(human_amount, from_token.decimals)
        chain_type = chain.family.value
        from_address = req.user_address or PLACEHOLDER_WALLET_ADDRESS
        if self.trade_log is not None:
            self.trade_log.log_quote(chain_type, chain.chain_index, from_token.symbol, to_token.symbol, human_amount,
                                     req.slippage_percent)

        def _quote(bridge: BridgeQuoteProvider) -> Awaitable[BridgeRoute]:
            return with_retry(
                lambda: bridge.get_cross_chain_quote(
                    chain.chain_index,
                    to_chain.chain_index,
                    from_token.address,
                    to_token.address,
                    raw_amount,
                    from_address,
                    slippage_percent=req.slippage_percent,
                ),
                self.retry_policy,
                label=f"bridge-quote:{bridge.provider_name}",
            )

        outcomes = await asyncio.gather(*(_quote(bridge) for bridge in self.bridge_providers),
                                        return_exceptions=True)
        routes: List[BridgeRoute] = []
        errors: List[Exception] = []
        for bridge, outcome in zip(self.bridge_providers, outcomes):
            if isinstance(outcome, Exception):
                log.debug("[QUOTE][BRIDGE][%s] no route: %s", bridge.provider_name.upper(), outcome)
                errors.append(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                routes.append(outcome)
        if not routes:
            return self._failed(req, generation, errors[0])

        ranked = self.comparator.compare_bridge_routes(routes)
        route = ranked.best.payload
        output = from_smallest_unit(route.to_amount, to_token.decimals)
        result = QuoteResult(
            request=req,
            quote=None,
            formatted_output_amount=output,
            exchange_rate=_exchange_rate(human_amount, output),
            routes=ranked,
            slippage=self.advisor.advise(None, req.auto_slippage, req.slippage_percent),
            issued_generation=generation,
            bridge_route=route,
            input_usd=await self._usd_value(route.from_token, from_token, human_amount),
            output_usd=await self._usd_value(route.to_token, to_token, output),
        )
        if self.trade_log is not None:
            self.trade_log.log_quote_result(
                chain_type,
                chain.chain_index,
                True,
                {
                    "toAmount": route.to_amount,
                    "provider": route.provider,
                    "tool": route.tool,
                    "toChain": to_chain.chain_index,
                    "routes": len(ranked.ranked),
                },
            )
        return QuoteState(key=req.key, result=result, generation=generation)

    def _unsupported_bridge(self, req: QuoteRequest, generation: int) -> QuoteState:
        return self._failed(req, generation,
                            ExchangeError("Cross-chain quotes are not available", kind=ErrorKind.UNSUPPORTED))

    def _failed(self, req: QuoteRequest, generation: int, error: Exception) -> QuoteState:
        classification = classify_error(error, req.chain.family)
        log.warning("[QUOTE][ENGINE][FAIL] key=%s kind=%s error=%s", req.key, classification.kind.value, error)
        if self.trade_log is not None:
            self.trade_log.log_quote_result(req.chain.family.value, req.chain.chain_index, False,
                                            error=classification.user_message)
        return QuoteState(
            key=req.key,
            error=classification.user_message,
            error_kind=classification.kind,
            generation=generation,
        )

    async def _usd_value(self, quoted: Token, requested: Token, human_amount: str) -> Optional[float]:
        price = quoted.unit_price
        if price is None and self.price_feed is not None:
            price = await self.price_feed.get_price(
                requested.symbol,
                chain_index=requested.chain_index,
                token_address=requested.address,
            )
        if price is None:
            return None
        return float(decimal_or_zero(human_amount) * Decimal(str(price)))


def _exchange_rate(input_amount: str, output_amount: str) -> Optional[Decimal]:
    amount_in = decimal_or_zero(input_amount)
    if amount_in <= 0:
        return None
    return decimal_or_zero(output_amount) / amount_in


def _is_cross_chain(req: QuoteRequest) -> bool:
    return req.chain is not None and req.to_chain is not None and req.to_chain.chain_index != req.chain.chain_index
