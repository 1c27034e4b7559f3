from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, List, Tuple

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

import xlama.persistence.models  # noqa: F401
from xlama.core.structures.orders import DCAFrequency, DCAOrder, LimitOrder, OrderCondition
from xlama.persistence.db import Base, build_session_factory
from xlama.persistence.order_store import SqlOrderStore

WALLET = "0x1111111111111111111111111111111111111111"
WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"
USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"


class MutableClock:
    """Test clock; advance it explicitly."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def recording_client(
        responder: Callable[[httpx.Request], httpx.Response],
) -> Tuple[httpx.AsyncClient, List[httpx.Request]]:
    """AsyncClient answering through `responder`; every request is kept for inspection."""
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return responder(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), requests


@pytest.fixture
def session_factory() -> Iterator:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield build_session_factory(engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def order_store(session_factory) -> SqlOrderStore:
    return SqlOrderStore(session_factory)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc))


def make_limit_order(**overrides) -> LimitOrder:
    values = dict(
        id="limit-1",
        user_address=WALLET,
        chain_index="1",
        from_token_address=WETH,
        from_token_symbol="WETH",
        to_token_address=USDC,
        to_token_symbol="USDC",
        to_token_decimals=6,
        amount="0.5",
        target_price=100.0,
        condition=OrderCondition.ABOVE,
        created_at=datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc),
    )
    values.update(overrides)
    return LimitOrder(**values)


def make_dca_order(**overrides) -> DCAOrder:
    values = dict(
        id="dca-1",
        user_address=WALLET,
        chain_index="1",
        from_token_address=USDC,
        from_token_symbol="USDC",
        from_token_decimals=6,
        to_token_address=WETH,
        to_token_symbol="WETH",
        amount_per_interval="10",
        frequency=DCAFrequency.DAILY,
        start_date=datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc),
        created_at=datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc),
    )
    values.update(overrides)
    return DCAOrder(**values)
