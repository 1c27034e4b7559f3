from __future__ import annotations

from typing import Iterator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from conftest import USDC, WALLET, WETH, make_limit_order
from xlama.api.app import create_app
from xlama.api.services import ExchangeServices
from xlama.core.diagnostics.trade_debug_log import TradeDebugLog
from xlama.core.errors.error_taxonomy import ErrorKind
from xlama.core.execution.swap_execution_coordinator import SwapOutcome, SwapStatus, SwapStep
from xlama.core.orders.order_lifecycle_manager import OrderLifecycleManager
from xlama.core.quoting.quote_engine import QuoteState
from xlama.core.structures.structures import ChainFamily, DexTransactionRecord, Token, TokenPricePoint
from xlama.integrations.hyperliquid.hyperliquid_structures import HyperliquidAsset, HyperliquidMarket
from xlama.integrations.okx.okx_structures import OkxSupportedChain
from xlama.persistence.dao.transactions import SqlTransactionHistory

ETH = {"address": WETH, "symbol": "WETH", "decimals": 18}
USD = {"address": USDC, "symbol": "USDC", "decimals": 6}


@pytest.fixture
def services(order_store, session_factory) -> ExchangeServices:
    trade_log = TradeDebugLog(max_logs=10)
    price_feed = MagicMock()
    price_feed.get_prices_with_change = AsyncMock(return_value={"ETH": TokenPricePoint(price=3000.0, change_24h=2.5)})
    price_feed.get_historical_price = AsyncMock(return_value=2800.0)
    quote_engine = MagicMock()
    quote_engine.request = AsyncMock(return_value=QuoteState(key="k", superseded=True))
    quote_engine.request_bridge = AsyncMock(
        return_value=QuoteState(key="b", error="No route available", error_kind=ErrorKind.NO_ROUTE))
    okx = MagicMock()
    okx.get_tokens = AsyncMock(return_value=[
        Token(address=USDC, symbol="USDC", name="USD Coin", decimals=6, chain_index="1"),
    ])
    okx.get_supported_chains = AsyncMock(return_value=[
        OkxSupportedChain(chain_index="1", name="Ethereum", approve_address="0xapprove"),
    ])
    return ExchangeServices(
        store=order_store,
        transactions=SqlTransactionHistory(session_factory),
        trade_log=trade_log,
        price_feed=price_feed,
        quote_engine=quote_engine,
        order_manager=OrderLifecycleManager(order_store, AsyncMock(), trade_log=trade_log),
        okx=okx,
    )


@pytest.fixture
def client(services) -> Iterator[TestClient]:
    with TestClient(create_app(services=services, start_order_engine=False)) as test_client:
        yield test_client


def _limit_body(**overrides):
    body = {
        "user_address": WALLET,
        "chain_index": "1",
        "from_token": ETH,
        "to_token": USD,
        "amount": "0.5",
        "target_price": 3200,
        "condition": "above",
    }
    body.update(overrides)
    return body


def _dca_body(**overrides):
    body = {
        "user_address": WALLET,
        "chain_index": "1",
        "from_token": USD,
        "to_token": ETH,
        "amount_per_interval": "25",
        "frequency": "weekly",
        "total_intervals": 4,
    }
    body.update(overrides)
    return body


class TestHealthAndChains:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["components"]["order_engine"] == {"running": False}
        assert body["components"]["signers"] == []

    def test_chains_flag_the_primary(self, client):
        body = client.get("/api/chains").json()
        primary = [chain for chain in body["chains"] if chain["is_primary"]]
        assert [chain["chain_index"] for chain in primary] == [body["primary"]]
        assert body["chains"][0]["family"] == "evm"

    def test_chain_id_lookup(self, client):
        assert client.get("/api/chains", params={"chain_id": 1}).json()["chains"][0]["chain_index"] == "1"
        assert client.get("/api/chains", params={"chain_id": 987654321}).status_code == 404

    def test_aggregator_chains_and_tokens(self, client):
        chains = client.get("/api/chains/aggregator").json()["chains"]
        tokens = client.get("/api/tokens", params={"chain_index": "1"}).json()["tokens"]
        assert chains[0]["approve_address"] == "0xapprove"
        assert tokens == [{"address": USDC, "symbol": "USDC", "name": "USD Coin", "decimals": 6,
                           "logo_url": None}]

    def test_tokens_for_unknown_chain(self, client):
        assert client.get("/api/tokens", params={"chain_index": "424242"}).status_code == 400


class TestQuotesAndPrices:
    def test_superseded_quote(self, client, services):
        response = client.post("/api/quote", json={"chain_index": "1", "from_token": ETH, "to_token": USD,
                                                   "amount": "1"})
        assert response.status_code == 200
        assert response.json()["superseded"] is True
        assert response.json()["quote"] is None
        services.quote_engine.request.assert_awaited_once()

    def test_cross_chain_quote_goes_to_the_bridge(self, client, services):
        response = client.post("/api/quote", json={"chain_index": "1", "to_chain_index": "137", "from_token": USD,
                                                   "to_token": USD, "amount": "100"})
        body = response.json()
        assert body["error_kind"] == "no_route"
        assert body["error"] == "No route available"
        services.quote_engine.request_bridge.assert_awaited_once()
        request = services.quote_engine.request_bridge.await_args.args[0]
        assert request.to_chain.chain_index == "137"

    def test_unsupported_chain_is_rejected(self, client):
        response = client.post("/api/quote", json={"chain_index": "424242", "from_token": ETH, "to_token": USD,
                                                   "amount": "1"})
        assert response.status_code == 400

    def test_prices(self, client, services):
        body = client.get("/api/prices", params={"tickers": "ETH, ,BTC"}).json()
        assert body == {"prices": {"ETH": {"price": 3000.0, "change_24h": 2.5}}}
        services.price_feed.get_prices_with_change.assert_awaited_once_with(["ETH", "BTC"])

    def test_historical_price(self, client):
        body = client.get("/api/prices/historical", params={"ticker": "ETH", "timestamp": 1700000000}).json()
        assert body == {"ticker": "ETH", "timestamp": 1700000000, "price": 2800.0}


SERVER_SIGNER = "0x2222222222222222222222222222222222222222"


def _bridge_body(**overrides):
    body = {"chain_index": "1", "to_chain_index": "137", "from_token": USD, "to_token": USD, "amount": "100",
            "slippage_percent": 1.0, "user_address": WALLET}
    body.update(overrides)
    return body


class TestBridgeExecution:
    @staticmethod
    def _enable(services, state):
        signer = MagicMock()
        signer.address = SERVER_SIGNER
        services.signers = {ChainFamily.EVM: signer}
        services.quote_engine.fetch_bridge_now = AsyncMock(return_value=state)
        services.coordinator = MagicMock()
        services.coordinator.execute_bridge = AsyncMock(return_value=SwapOutcome(
            status=SwapStatus.COMPLETED,
            tx_hash="0xsource",
            step_history=(SwapStep.QUOTED, SwapStep.SUBMITTED, SwapStep.CONFIRMING, SwapStep.COMPLETED),
            amount_out="99.5",
        ))

    def test_best_route_is_executed_with_the_server_signer(self, client, services):
        route = MagicMock(provider="okx", tool="Stargate")
        self._enable(services, QuoteState(key="b", result=MagicMock(bridge_route=route)))

        response = client.post("/api/bridge/execute", json=_bridge_body())

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["tx_hash"] == "0xsource"
        assert body["provider"] == "okx"
        assert body["tool"] == "Stargate"
        assert body["amount_out"] == "99.5"
        assert body["steps"] == ["quoted", "submitted", "confirming", "completed"]
        request = services.quote_engine.fetch_bridge_now.await_args.args[0]
        assert request.user_address == SERVER_SIGNER
        assert request.to_chain.chain_index == "137"
        services.coordinator.execute_bridge.assert_awaited_once_with(route, user_address=SERVER_SIGNER,
                                                                     slippage_percent=1.0)

    def test_quote_failures_are_not_executed(self, client, services):
        self._enable(services, QuoteState(key="b", error="No route available", error_kind=ErrorKind.NO_ROUTE))

        no_route = client.post("/api/bridge/execute", json=_bridge_body())
        services.quote_engine.fetch_bridge_now.return_value = QuoteState(
            key="b", error="Cross-chain quotes are not available", error_kind=ErrorKind.UNSUPPORTED)
        unsupported = client.post("/api/bridge/execute", json=_bridge_body())

        assert no_route.status_code == 502
        assert no_route.json()["detail"] == "No route available"
        assert unsupported.status_code == 503
        services.coordinator.execute_bridge.assert_not_awaited()

    def test_unavailable_without_coordinator_or_signer(self, client, services):
        assert client.post("/api/bridge/execute", json=_bridge_body()).status_code == 503

        self._enable(services, QuoteState(key="b"))
        services.signers = {}
        assert client.post("/api/bridge/execute", json=_bridge_body()).status_code == 503

    def test_request_validation(self, client):
        assert client.post("/api/bridge/execute", json=_bridge_body(to_chain_index="1")).status_code == 400
        body = _bridge_body()
        del body["to_chain_index"]
        assert client.post("/api/bridge/execute", json=body).status_code == 422


class TestLimitOrders:
    def test_create_list_and_cancel(self, client):
        created = client.post("/api/orders/limit", json=_limit_body())
        assert created.status_code == 201
        order = created.json()["order"]
        assert order["status"] == "active"
        assert order["condition"] == "above"

        listed = client.get("/api/orders/limit", params={"user_address": WALLET}).json()["orders"]
        assert [row["id"] for row in listed] == [order["id"]]

        cancelled = client.post(f"/api/orders/limit/{order['id']}/cancel", json={"user_address": WALLET})
        assert cancelled.json()["order"]["status"] == "cancelled"

        again = client.post(f"/api/orders/limit/{order['id']}/cancel", json={"user_address": WALLET})
        assert again.status_code == 409

    def test_cancel_by_another_wallet_is_not_found(self, client):
        order = client.post("/api/orders/limit", json=_limit_body()).json()["order"]
        response = client.post(f"/api/orders/limit/{order['id']}/cancel",
                               json={"user_address": "0x9999999999999999999999999999999999999999"})
        assert response.status_code == 404

    def test_invalid_amount_is_rejected(self, client):
        assert client.post("/api/orders/limit", json=_limit_body(amount="0")).status_code == 400

    def test_schema_validation(self, client):
        assert client.post("/api/orders/limit", json=_limit_body(target_price=-1)).status_code == 422
        assert client.post("/api/orders/limit", json=_limit_body(condition="sideways")).status_code == 422


class TestDCAOrders:
    def test_pause_resume_cancel(self, client):
        order = client.post("/api/orders/dca", json=_dca_body()).json()["order"]
        assert order["frequency"] == "weekly"
        path = f"/api/orders/dca/{order['id']}"

        assert client.post(f"{path}/pause", json={"user_address": WALLET}).json()["order"]["status"] == "paused"
        assert client.post(f"{path}/pause", json={"user_address": WALLET}).status_code == 409
        assert client.post(f"{path}/resume", json={"user_address": WALLET}).json()["order"]["status"] == "active"
        assert client.post(f"{path}/cancel", json={"user_address": WALLET}).json()["order"]["status"] == "cancelled"

    def test_unknown_order(self, client):
        assert client.post("/api/orders/dca/missing/pause", json={"user_address": WALLET}).status_code == 404

    def test_end_before_start_is_rejected(self, client):
        body = _dca_body(start_date="2024-03-10T00:00:00Z", end_date="2024-03-01T00:00:00Z")
        assert client.post("/api/orders/dca", json=body).status_code == 400

    def test_csv_export(self, client):
        client.post("/api/orders/limit", json=_limit_body())
        client.post("/api/orders/dca", json=_dca_body())

        response = client.get("/api/orders/export.csv", params={"user_address": WALLET})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "orders.csv" in response.headers["content-disposition"]
        assert len(response.text.strip().splitlines()) == 3


class TestHistoryAndDebug:
    def test_transactions(self, client, services):
        services.transactions.record_transaction(DexTransactionRecord(
            tx_hash="0xabc", user_address=WALLET, chain_index="1", chain_name="Ethereum",
            from_token_symbol="WETH", from_token_address=WETH, from_token_amount="0.5",
            to_token_symbol="USDC", to_token_address=USDC, to_token_amount="1500", status="success",
        ))

        rows = client.get("/api/transactions", params={"user_address": WALLET}).json()["transactions"]

        assert [row["tx_hash"] for row in rows] == ["0xabc"]

    def test_debug_report_and_clear(self, client, services):
        services.trade_log.info("evm", "quote", "Quote requested")

        report = client.get("/api/debug/report").json()
        assert report["logsCount"] == 1

        assert client.delete("/api/debug/logs").json() == {"ok": True}
        assert client.get("/api/debug/report").json()["logsCount"] == 0


class TestPerps:
    def test_unavailable_without_client(self, client):
        assert client.get("/api/perps/markets").status_code == 503
        assert client.get(f"/api/perps/account/{WALLET}").status_code == 503

    def test_markets_and_assets(self, client, services):
        hyperliquid = MagicMock()
        hyperliquid.get_all_mids = AsyncMock(return_value=[HyperliquidMarket(coin="BTC", mid_px="60000",
                                                                             mark_px="60000")])
        hyperliquid.get_assets = AsyncMock(return_value=[HyperliquidAsset(coin="BTC", sz_decimals=5,
                                                                          max_leverage=50)])
        hyperliquid.get_trade_history = AsyncMock(return_value=[{"coin": "BTC", "px": "60000"}])
        services.hyperliquid = hyperliquid

        assert client.get("/api/perps/markets").json() == {
            "markets": [{"coin": "BTC", "mid_px": "60000", "mark_px": "60000"}]}
        assert client.get("/api/perps/assets").json()["assets"][0]["max_leverage"] == 50
        assert client.get(f"/api/perps/account/{WALLET}/trades").json() == {"trades": [{"coin": "BTC",
                                                                                       "px": "60000"}]}


class TestWebsocket:
    def test_init_snapshot_and_ping(self, client, services):
        services.store.add_limit_order(make_limit_order())

        with client.websocket_connect(f"/ws?address={WALLET}") as ws:
            init = ws.receive_json()
            assert init["type"] == "init"
            assert init["payload"]["user_address"] == WALLET
            assert len(init["payload"]["limit_orders"]) == 1
            assert init["payload"]["dca_orders"] == []

            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_follow_and_bad_messages(self, client):
        with client.websocket_connect("/ws") as ws:
            assert "limit_orders" not in ws.receive_json()["payload"]

            ws.send_json({"type": "follow", "user_address": WALLET})
            assert ws.receive_json()["payload"]["user_address"] == WALLET

            ws.send_json({"user_address": WALLET})
            assert ws.receive_json() == {"type": "error", "payload": "Invalid message schema"}

            ws.send_json({"type": "dance"})
            assert ws.receive_json()["type"] == "error"
