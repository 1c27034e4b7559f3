from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import Response

from xlama.api.models import BridgeExecuteBody, DCAOrderBody, LimitOrderBody, OrderActionBody, QuoteBody, TokenRef
from xlama.api.services import ExchangeServices
from xlama.core.chains.chain_registry import (
    get_chain_by_chain_id,
    get_chain_by_index,
    get_evm_chains,
    get_non_evm_chains,
    get_primary_chain,
)
from xlama.core.errors.error_taxonomy import ErrorKind, InvalidOrderTransition
from xlama.core.execution.swap_execution_coordinator import SwapOutcome
from xlama.core.orders.order_lifecycle_manager import OrderNotFound
from xlama.core.quoting.quote_engine import QuoteState
from xlama.core.structures.orders import DCAOrder, LimitOrder
from xlama.core.structures.structures import Chain, QuoteRequest, Token
from xlama.core.utils.amount_utils import calculate_min_received, from_smallest_unit, percent_to_bps
from xlama.core.utils.date_utils import ensure_utc, utc_now
from xlama.logging.logger import get_logger
from xlama.persistence.serializers import orders_to_csv, serialize_dca_order, serialize_limit_order

router = APIRouter()
log = get_logger(__name__)


def get_services(request: Request) -> ExchangeServices:
    return request.app.state.services


def _chain_or_400(chain_index: str) -> Chain:
    chain = get_chain_by_index(chain_index)
    if chain is None:
        raise HTTPException(status_code=400, detail=f"Unsupported chain {chain_index}")
    return chain


def _serialize_chain(chain: Chain) -> Dict[str, Any]:
    return {
        "chain_index": chain.chain_index,
        "chain_id": chain.chain_id,
        "name": chain.name,
        "short_name": chain.short_name,
        "family": chain.family.value,
        "native_symbol": chain.native_symbol,
        "native_decimals": chain.native_decimals,
        "explorer_url": chain.explorer_url,
        "is_primary": chain.is_primary,
    }


def _token(ref: TokenRef, chain_index: str) -> Token:
    return Token(address=ref.address, symbol=ref.symbol, name=ref.name or ref.symbol, decimals=ref.decimals,
                 chain_index=chain_index)


def _serialize_quote_state(state: QuoteState) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "key": state.key,
        "superseded": state.superseded,
        "error": state.error,
        "error_kind": state.error_kind.value if state.error_kind else None,
        "quote": None,
    }
    result = state.result
    if result is None:
        return payload

    best = result.routes.best
    if result.bridge_route is not None:
        min_received = from_smallest_unit(result.bridge_route.to_amount_min, result.bridge_route.to_token.decimals)
    elif result.quote is not None:
        raw_min = calculate_min_received(result.quote.to_amount, percent_to_bps(result.slippage.slippage))
        min_received = from_smallest_unit(raw_min, result.quote.to_token.decimals)
    else:
        min_received = None
    payload["quote"] = {
        "provider": best.provider if best else None,
        "from_amount": result.request.amount,
        "to_amount": result.formatted_output_amount,
        "min_received": min_received,
        "exchange_rate": str(result.exchange_rate) if result.exchange_rate is not None else None,
        "price_impact_percent": result.slippage.price_impact_percent,
        "impact_level": result.slippage.impact_level.value,
        "slippage": result.slippage.slippage,
        "auto_slippage": result.slippage.is_auto,
        "input_usd": result.input_usd,
        "output_usd": result.output_usd,
        "estimated_gas": result.quote.estimated_gas if result.quote else None,
        "estimated_duration_seconds": (
            result.bridge_route.estimated_duration_seconds if result.bridge_route else None
        ),
        "routes": [
            {
                "provider": candidate.provider,
                "label": candidate.label,
                "output_amount": str(candidate.output_amount),
                "fee_amount": str(candidate.fee_amount),
                "estimated_gas": candidate.estimated_gas,
            }
            for candidate in result.routes.ranked
        ],
    }
    return payload


@router.get("/api/health", tags=["health"])  # type: ignore[misc]
async def get_health(services: ExchangeServices = Depends(get_services)) -> Dict[str, Any]:
    """
    Report service health and basic component status.

    Returns:
        Database connectivity, order engine state and the chain families with a configured signer.
    """
    database_ok = False
    try:
        services.store.ping()
        database_ok = True
    except Exception:
        log.exception("[HTTP][HEALTH] Database connectivity check failed")

    return {
        "status": "ok" if database_ok else "degraded",
        "timestamp": utc_now().isoformat(),
        "components": {
            "database": {"ok": database_ok},
            "order_engine": {"running": services.order_manager.running},
            "signers": sorted(family.value for family in services.signers),
        },
    }


@router.get("/api/chains", tags=["chains"])  # type: ignore[misc]
async def get_chains(
        chain_id: Optional[int] = Query(None, description="Resolve a single EVM chain id"),
) -> Dict[str, Any]:
    """Supported chains, EVM first, with the primary chain flagged."""
    if chain_id is not None:
        chain = get_chain_by_chain_id(chain_id)
        if chain is None:
            raise HTTPException(status_code=404, detail=f"Unknown chain id {chain_id}")
        return {"chains": [_serialize_chain(chain)]}
    primary = get_primary_chain()
    return {
        "primary": primary.chain_index,
        "chains": [_serialize_chain(chain) for chain in get_evm_chains() + get_non_evm_chains()],
    }


@router.get("/api/chains/aggregator", tags=["chains"])  # type: ignore[misc]
async def get_aggregator_chains(services: ExchangeServices = Depends(get_services)) -> Dict[str, Any]:
    if services.okx is None:
        raise HTTPException(status_code=503, detail="Aggregator unavailable")
    chains = await services.okx.get_supported_chains()
    return {"chains": jsonable_encoder(chains)}


@router.get("/api/tokens", tags=["chains"])  # type: ignore[misc]
async def get_tokens(
        chain_index: str = Query(..., min_length=1),
        services: ExchangeServices = Depends(get_services),
) -> Dict[str, Any]:
    """Tradeable tokens listed by the aggregator for one chain."""
    chain = _chain_or_400(chain_index)
    if services.okx is None:
        raise HTTPException(status_code=503, detail="Aggregator unavailable")
    tokens = await services.okx.get_tokens(chain.chain_index)
    return {
        "tokens": [
            {
                "address": token.address,
                "symbol": token.symbol,
                "name": token.name,
                "decimals": token.decimals,
                "logo_url": token.logo_url,
            }
            for token in tokens
        ]
    }


@router.post("/api/quote", tags=["quotes"])  # type: ignore[misc]
async def post_quote(body: QuoteBody, services: ExchangeServices = Depends(get_services)) -> Dict[str, Any]:
    """
    Quote a same-chain swap, or a bridge when `to_chain_index` names another chain.

    Requests for the same wallet and pair supersede each other; a superseded call answers with
    `superseded: true` and no quote.
    """
    chain = _chain_or_400(body.chain_index)
    to_chain = _chain_or_400(body.to_chain_index) if body.to_chain_index else None
    request = QuoteRequest(
        chain=chain,
        from_token=_token(body.from_token, chain.chain_index),
        to_token=_token(body.to_token, to_chain.chain_index if to_chain else chain.chain_index),
        amount=body.amount,
        slippage_percent=body.slippage_percent,
        auto_slippage=body.auto_slippage,
        user_address=body.user_address,
        to_chain=to_chain,
    )
    if to_chain is not None and to_chain.chain_index != chain.chain_index:
        state = await services.quote_engine.request_bridge(request)
    else:
        state = await services.quote_engine.request(request)
    log.info("[HTTP][QUOTE] key=%s superseded=%s error=%s", state.key, state.superseded, state.error_kind)
    return _serialize_quote_state(state)


def _serialize_outcome(outcome: SwapOutcome) -> Dict[str, Any]:
    return {
        "status": outcome.status.value,
        "tx_hash": outcome.tx_hash,
        "error_kind": outcome.error_kind.value if outcome.error_kind else None,
        "error": outcome.error_message,
        "steps": [step.value for step in outcome.step_history],
        "amount_out": outcome.amount_out,
        "explorer_url": outcome.event.explorer_url if outcome.event else None,
    }


@router.post("/api/bridge/execute", tags=["quotes"])  # type: ignore[misc]
async def execute_bridge(body: BridgeExecuteBody, services: ExchangeServices = Depends(get_services)) -> Dict[str, Any]:
    """
    Quote a bridge across every provider and execute the best route.

    The transfer is signed by the server-side signer of the source chain, so `user_address`
    in the body is ignored. Execution failures are reported in the payload with their error
    kind; a missing quote answers 502 (or 503 when no bridge provider is available).
    """
    chain = _chain_or_400(body.chain_index)
    to_chain = _chain_or_400(body.to_chain_index)
    if to_chain.chain_index == chain.chain_index:
        raise HTTPException(status_code=400, detail="Source and destination chains must differ")
    if services.coordinator is None:
        raise HTTPException(status_code=503, detail="Bridge execution unavailable")
    signer = services.signers.get(chain.family)
    if signer is None:
        raise HTTPException(status_code=503, detail=f"No signer available for {chain.name}")

    request = QuoteRequest(
        chain=chain,
        from_token=_token(body.from_token, chain.chain_index),
        to_token=_token(body.to_token, to_chain.chain_index),
        amount=body.amount,
        slippage_percent=body.slippage_percent,
        auto_slippage=body.auto_slippage,
        user_address=signer.address,
        to_chain=to_chain,
    )
    state = await services.quote_engine.fetch_bridge_now(request)
    route = state.result.bridge_route if state.result is not None else None
    if route is None:
        status_code = 503 if state.error_kind is ErrorKind.UNSUPPORTED else 502
        raise HTTPException(status_code=status_code, detail=state.error or "No bridge route available")

    outcome = await services.coordinator.execute_bridge(route, user_address=signer.address,
                                                        slippage_percent=body.slippage_percent)
    log.info("[HTTP][BRIDGE] provider=%s tool=%s status=%s tx=%s", route.provider, route.tool,
             outcome.status.value, outcome.tx_hash)
    payload = _serialize_outcome(outcome)
    payload["provider"] = route.provider
    payload["tool"] = route.tool
    return payload


@router.get("/api/prices", tags=["prices"])  # type: ignore[misc]
async def get_prices(
        tickers: str = Query(..., description="Comma-separated tickers, e.g. ETH,BTC,SOL"),
        services: ExchangeServices = Depends(get_services),
) -> Dict[str, Any]:
    symbols = [ticker.strip() for ticker in tickers.split(",") if ticker.strip()]
    points = await services.price_feed.get_prices_with_change(symbols)
    return {
        "prices": {
            ticker: {"price": point.price, "change_24h": point.change_24h}
            for ticker, point in points.items()
        }
    }


@router.get("/api/prices/historical", tags=["prices"])  # type: ignore[misc]
async def get_historical_price(
        ticker: str = Query(..., min_length=1),
        timestamp: int = Query(..., ge=0, description="Unix seconds"),
        services: ExchangeServices = Depends(get_services),
) -> Dict[str, Any]:
    price = await services.price_feed.get_historical_price(ticker, timestamp)
    return {"ticker": ticker, "timestamp": timestamp, "price": price}


@router.get("/api/orders/limit", tags=["orders"])  # type: ignore[misc]
async def list_limit_orders(
        user_address: str = Query(..., min_length=1),
        services: ExchangeServices = Depends(get_services),
) -> Dict[str, List[Dict[str, object]]]:
    orders = services.store.list_limit_orders(user_address)
    return {"orders": [serialize_limit_order(order) for order in orders]}


@router.post("/api/orders/limit", tags=["orders"], status_code=201)  # type: ignore[misc]
async def create_limit_order(
        body: LimitOrderBody,
        services: ExchangeServices = Depends(get_services),
) -> Dict[str, Dict[str, object]]:
    chain = _chain_or_400(body.chain_index)
    order = LimitOrder(
        id=str(uuid.uuid4()),
        user_address=body.user_address,
        chain_index=chain.chain_index,
        from_token_address=body.from_token.address,
        from_token_symbol=body.from_token.symbol,
        from_token_decimals=body.from_token.decimals,
        to_token_address=body.to_token.address,
        to_token_symbol=body.to_token.symbol,
        to_token_decimals=body.to_token.decimals,
        amount=body.amount,
        target_price=body.target_price,
        condition=body.condition,
        take_profit_price=body.take_profit_price,
        stop_loss_price=body.stop_loss_price,
        slippage=body.slippage,
        expires_at=ensure_utc(body.expires_at),
    )
    try:
        created = services.order_manager.create_limit_order(order)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"order": serialize_limit_order(created)}


@router.post("/api/orders/limit/{order_id}/cancel", tags=["orders"])  # type: ignore[misc]
async def cancel_limit_order(
        order_id: str,
        body: OrderActionBody,
        services: ExchangeServices = Depends(get_services),
) -> Dict[str, Dict[str, object]]:
    try:
        order = await services.order_manager.cancel_limit_order(order_id, body.user_address)
    except OrderNotFound as exc:
        raise HTTPException(status_code=404, detail=f"Limit order {order_id} not found") from exc
    except InvalidOrderTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"order": serialize_limit_order(order)}


@router.get("/api/orders/dca", tags=["orders"])  # type: ignore[misc]
async def list_dca_orders(
        user_address: str = Query(..., min_length=1),
        services: ExchangeServices = Depends(get_services),
) -> Dict[str, List[Dict[str, object]]]:
    orders = services.store.list_dca_orders(user_address)
    return {"orders": [serialize_dca_order(order) for order in orders]}


@router.post("/api/orders/dca", tags=["orders"], status_code=201)  # type: ignore[misc]
async def create_dca_order(
        body: DCAOrderBody,
        services: ExchangeServices = Depends(get_services),
) -> Dict[str, Dict[str, object]]:
    chain = _chain_or_400(body.chain_index)
    order = DCAOrder(
        id=str(uuid.uuid4()),
        user_address=body.user_address,
        chain_index=chain.chain_index,
        from_token_address=body.from_token.address,
        from_token_symbol=body.from_token.symbol,
        from_token_decimals=body.from_token.decimals,
        to_token_address=body.to_token.address,
        to_token_symbol=body.to_token.symbol,
        to_token_decimals=body.to_token.decimals,
        amount_per_interval=body.amount_per_interval,
        frequency=body.frequency,
        execution_hour=body.execution_hour,
        start_date=ensure_utc(body.start_date) or utc_now(),
        end_date=ensure_utc(body.end_date),
        total_intervals=body.total_intervals,
        slippage=body.slippage,
    )
    try:
        created = services.order_manager.create_dca_order(order)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"order": serialize_dca_order(created)}


async def _dca_action(action, order_id: str, user_address: str) -> Dict[str, Dict[str, object]]:
    try:
        order = await action(order_id, user_address)
    except OrderNotFound as exc:
        raise HTTPException(status_code=404, detail=f"DCA order {order_id} not found") from exc
    except InvalidOrderTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"order": serialize_dca_order(order)}


@router.post("/api/orders/dca/{order_id}/pause", tags=["orders"])  # type: ignore[misc]
async def pause_dca_order(order_id: str, body: OrderActionBody,
                          services: ExchangeServices = Depends(get_services)) -> Dict[str, Dict[str, object]]:
    return await _dca_action(services.order_manager.pause_dca_order, order_id, body.user_address)


@router.post("/api/orders/dca/{order_id}/resume", tags=["orders"])  # type: ignore[misc]
async def resume_dca_order(order_id: str, body: OrderActionBody,
                           services: ExchangeServices = Depends(get_services)) -> Dict[str, Dict[str, object]]:
    return await _dca_action(services.order_manager.resume_dca_order, order_id, body.user_address)


@router.post("/api/orders/dca/{order_id}/cancel", tags=["orders"])  # type: ignore[misc]
async def cancel_dca_order(order_id: str, body: OrderActionBody,
                           services: ExchangeServices = Depends(get_services)) -> Dict[str, Dict[str, object]]:
    return await _dca_action(services.order_manager.cancel_dca_order, order_id, body.user_address)


@router.get("/api/orders/export.csv", tags=["orders"])  # type: ignore[misc]
async def export_orders_csv(
        user_address: str = Query(..., min_length=1),
        services: ExchangeServices = Depends(get_services),
) -> Response:
    content = orders_to_csv(services.store.list_limit_orders(user_address),
                            services.store.list_dca_orders(user_address))
    log.info("[HTTP][ORDERS][EXPORT] wallet=%s", user_address)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="orders.csv"'},
    )


@router.get("/api/transactions", tags=["transactions"])  # type: ignore[misc]
async def list_transactions(
        user_address: str = Query(..., min_length=1),
        limit: int = Query(100, ge=1, le=1000),
        services: ExchangeServices = Depends(get_services),
) -> Dict[str, List[Dict[str, object]]]:
    return {"transactions": services.transactions.list_transactions(user_address, limit)}


@router.get("/api/debug/report", tags=["debug"])  # type: ignore[misc]
async def get_debug_report(services: ExchangeServices = Depends(get_services)) -> Dict[str, object]:
    return services.trade_log.export_report()


@router.delete("/api/debug/logs", tags=["debug"])  # type: ignore[misc]
async def clear_debug_logs(services: ExchangeServices = Depends(get_services)) -> Dict[str, bool]:
    services.trade_log.clear_logs()
    log.info("[HTTP][DEBUG][CLEAR] Trade debug log cleared")
    return {"ok": True}


@router.get("/api/perps/markets", tags=["perps"])  # type: ignore[misc]
async def get_perp_markets(services: ExchangeServices = Depends(get_services)) -> Dict[str, List[Dict[str, str]]]:
    if services.hyperliquid is None:
        raise HTTPException(status_code=503, detail="Perpetuals data unavailable")
    markets = await services.hyperliquid.get_all_mids()
    return {"markets": [{"coin": m.coin, "mid_px": m.mid_px, "mark_px": m.mark_px} for m in markets]}


@router.get("/api/perps/account/{address}", tags=["perps"])  # type: ignore[misc]
async def get_perp_account(address: str, services: ExchangeServices = Depends(get_services)) -> Dict[str, object]:
    if services.hyperliquid is None:
        raise HTTPException(status_code=503, detail="Perpetuals data unavailable")
    state = await services.hyperliquid.get_account_state(address)
    open_orders = await services.hyperliquid.get_open_orders(address)
    return {"account": jsonable_encoder(state), "open_orders": open_orders}


@router.get("/api/perps/assets", tags=["perps"])  # type: ignore[misc]
async def get_perp_assets(services: ExchangeServices = Depends(get_services)) -> Dict[str, object]:
    if services.hyperliquid is None:
        raise HTTPException(status_code=503, detail="Perpetuals data unavailable")
    return {"assets": jsonable_encoder(await services.hyperliquid.get_assets())}


@router.get("/api/perps/account/{address}/trades", tags=["perps"])  # type: ignore[misc]
async def get_perp_trades(address: str, services: ExchangeServices = Depends(get_services)) -> Dict[str, object]:
    if services.hyperliquid is None:
        raise HTTPException(status_code=503, detail="Perpetuals data unavailable")
    return {"trades": await services.hyperliquid.get_trade_history(address)}
