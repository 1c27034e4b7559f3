from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from xlama.configuration.config import settings
from xlama.core.retry.retryable_request import RetryPolicy, with_retry
from xlama.core.structures.structures import TokenPricePoint
from xlama.core.utils.date_utils import utc_now
from xlama.integrations.defillama.defillama_client import DefiLlamaClient, coin_key, resolve_coingecko_id
from xlama.logging.logger import get_logger

log = get_logger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class TokenPriceSource(Protocol):
    async def get_price(self, chain_index: str, token_address: str) -> Optional[float]:
        ...


class PriceFeedAggregator:
    """
    USD prices from a primary per-token source with a ticker-based fallback oracle.

    Prices are cached by canonical id (`okx:<chain>:<address>` or `coingecko:<id>`) and expire
    by age only. Concurrent lookups of the same id share one in-flight request. Every source
    call goes through `with_retry`, so a transient network error is retried before the lookup
    falls through to the fallback or yields None.
    """

    def __init__(
            self,
            primary: Optional[TokenPriceSource] = None,
            fallback: Optional[DefiLlamaClient] = None,
            ttl_seconds: float = 60.0,
            clock: Callable[[], float] = time.monotonic,
            retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback if fallback is not None else DefiLlamaClient()
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.retry_policy = retry_policy or RetryPolicy()
        self._cache: Dict[str, Tuple[float, float]] = {}
        self._inflight: Dict[str, asyncio.Future] = {}

    def _cached(self, key: str) -> Optional[float]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        price, stored_at = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            self._cache.pop(key, None)
            return None
        return price

    def _store(self, key: str, price: float) -> None:
        self._cache[key] = (price, self._clock())

    def clear_cache(self) -> None:
        self._cache.clear()

    async def _coalesce(self, key: str, loader: Callable[[], Awaitable[Optional[float]]]) -> Optional[float]:
        cached = self._cached(key)
        if cached is not None:
            return cached

        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        price: Optional[float] = None
        try:
            price = await loader()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("[PRICE][FETCH][FAIL] key=%s error=%s", key, exc)
        finally:
            self._inflight.pop(key, None)
            if price is not None:
                self._store(key, price)
            if not future.done():
                future.set_result(price)
        return price

    async def _fallback_single(self, coingecko_id: str) -> Optional[float]:
        prices = await with_retry(lambda: self.fallback.get_current_prices([coingecko_id]), self.retry_policy,
                                  label="price-fallback")
        return prices.get(coingecko_id)

    async def get_price(
            self,
            ticker: str,
            *,
            chain_index: Optional[str] = None,
            token_address: Optional[str] = None,
    ) -> Optional[float]:
        """
        USD price of a token.

        The primary source is tried first when the token identity (chain + address) is known;
        on a missing or failed result the fallback oracle is asked by ticker. Unmapped tickers
        yield None.
        """
        if self.primary is not None and chain_index and token_address:
            primary = self.primary
            key = f"okx:{chain_index}:{token_address.lower()}"
            price = await self._coalesce(
                key,
                lambda: with_retry(lambda: primary.get_price(chain_index, token_address), self.retry_policy,
                                   label="price-primary"),
            )
            if price is not None:
                return price
            log.debug("[PRICE][PRIMARY][MISS] ticker=%s chain=%s; using fallback oracle.", ticker, chain_index)

        coingecko_id = resolve_coingecko_id(ticker)
        if coingecko_id is None:
            return None
        return await self._coalesce(coin_key(coingecko_id), lambda: self._fallback_single(coingecko_id))

    async def get_prices(self, tickers: List[str]) -> Dict[str, Optional[float]]:
        """Prices for many tickers with a single batched fallback request for uncached ids."""
        ids_by_ticker: Dict[str, Optional[str]] = {ticker: resolve_coingecko_id(ticker) for ticker in tickers}
        prices_by_id: Dict[str, Optional[float]] = {}
        waiting: Dict[str, asyncio.Future] = {}
        missing: List[str] = []

        for coingecko_id in dict.fromkeys(cid for cid in ids_by_ticker.values() if cid):
            key = coin_key(coingecko_id)
            cached = self._cached(key)
            if cached is not None:
                prices_by_id[coingecko_id] = cached
            elif key in self._inflight:
                waiting[coingecko_id] = self._inflight[key]
            else:
                missing.append(coingecko_id)

        if missing:
            prices_by_id.update(await self._fetch_batch(missing))
        for coingecko_id, pending in waiting.items():
            prices_by_id[coingecko_id] = await asyncio.shield(pending)

        return {ticker: prices_by_id.get(cid) if cid else None for ticker, cid in ids_by_ticker.items()}

    async def _fetch_batch(self, coingecko_ids: List[str]) -> Dict[str, Optional[float]]:
        loop = asyncio.get_running_loop()
        futures: Dict[str, asyncio.Future] = {}
        for coingecko_id in coingecko_ids:
            future = loop.create_future()
            futures[coingecko_id] = future
            self._inflight[coin_key(coingecko_id)] = future

        fetched: Dict[str, float] = {}
        try:
            fetched = await with_retry(lambda: self.fallback.get_current_prices(coingecko_ids), self.retry_policy,
                                       label="price-batch")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("[PRICE][BATCH][FAIL] ids=%d error=%s", len(coingecko_ids), exc)
        finally:
            for coingecko_id, future in futures.items():
                key = coin_key(coingecko_id)
                self._inflight.pop(key, None)
                price = fetched.get(coingecko_id)
                if price is not None:
                    self._store(key, price)
                if not future.done():
                    future.set_result(price)

        log.debug("[PRICE][BATCH] requested=%d received=%d", len(coingecko_ids), len(fetched))
        return {coingecko_id: fetched.get(coingecko_id) for coingecko_id in coingecko_ids}

    async def get_historical_price(self, ticker: str, timestamp: int) -> Optional[float]:
        coingecko_id = resolve_coingecko_id(ticker)
        if coingecko_id is None:
            return None
        try:
            prices = await with_retry(lambda: self.fallback.get_historical_prices(timestamp, [coingecko_id]),
                                      self.retry_policy, label="price-historical")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("[PRICE][HISTORICAL][FAIL] ticker=%s ts=%s error=%s", ticker, timestamp, exc)
            return None
        return prices.get(coingecko_id)

    async def get_prices_with_change(self, tickers: List[str]) -> Dict[str, TokenPricePoint]:
        """Current price and 24h change in percent; tickers without a current price are left out."""
        ids_by_ticker = {ticker: resolve_coingecko_id(ticker) for ticker in tickers}
        coingecko_ids = list(dict.fromkeys(cid for cid in ids_by_ticker.values() if cid))
        if not coingecko_ids:
            return {}

        day_ago = int(utc_now().timestamp()) - SECONDS_PER_DAY
        current, historical = await asyncio.gather(
            self.get_prices(tickers),
            with_retry(lambda: self.fallback.get_historical_prices(day_ago, coingecko_ids), self.retry_policy,
                       label="price-historical"),
            return_exceptions=True,
        )
        if isinstance(current, BaseException):
            log.warning("[PRICE][CHANGE][FAIL] current prices unavailable: %s", current)
            return {}
        if isinstance(historical, BaseException):
            log.debug("[PRICE][CHANGE] historical prices unavailable: %s", historical)
            historical = {}

        result: Dict[str, TokenPricePoint] = {}
        for ticker, coingecko_id in ids_by_ticker.items():
            price = current.get(ticker)
            if coingecko_id is None or not price:
                continue
            then = historical.get(coingecko_id)
            change = (price - then) / then * 100.0 if then and then > 0 else None
            result[ticker] = TokenPricePoint(price=price, change_24h=change)
        return result


def build_default_price_feed(primary: Optional[TokenPriceSource] = None) -> PriceFeedAggregator:
    return PriceFeedAggregator(
        primary=primary,
        fallback=DefiLlamaClient(),
        ttl_seconds=settings.PRICE_CACHE_TTL_SECONDS,
        retry_policy=RetryPolicy.from_settings(),
    )
