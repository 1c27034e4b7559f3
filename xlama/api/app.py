from __future__ import annotations

from typing import Callable, List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from xlama.api.http.http_api import router as http_router
from xlama.api.services import ExchangeServices, build_default_services
from xlama.api.websocket.ws_hub import router as ws_router
from xlama.api.websocket.ws_manager import ws_manager
from xlama.configuration.config import settings
from xlama.logging.logger import get_logger
from xlama.persistence.db import init_db

log = get_logger(__name__)


def _parse_allowed_origins(env_value: str) -> List[str]:
    """Parse a comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in env_value.split(",") if origin.strip()]


def create_app(services: Optional[ExchangeServices] = None, start_order_engine: Optional[bool] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Pre-built components; the production wiring from Settings is used when omitted,
            and the default database schema is created at startup.
        start_order_engine: Run the order lifecycle loops; defaults to ORDER_ENGINE_ENABLE.

    Returns:
        FastAPI: Configured Xlama API application.
    """
    owns_services = services is None
    app = FastAPI(title="Xlama API")
    app.state.services = services if services is not None else build_default_services()
    run_engine = settings.ORDER_ENGINE_ENABLE if start_order_engine is None else start_order_engine
    unsubscribers: List[Callable[[], None]] = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_parse_allowed_origins(settings.CORS_ORIGINS),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def on_startup() -> None:
        """Create tables, bind the WebSocket manager to the loop, wire event fan-out and start the engine."""
        active: ExchangeServices = app.state.services
        if owns_services:
            init_db()
        ws_manager.attach_current_loop()
        unsubscribers.append(active.order_manager.subscribe(ws_manager.publish_order_event))
        unsubscribers.append(active.trade_log.subscribe(ws_manager.publish_trade_logs))
        if run_engine:
            active.order_manager.start()
        log.info("[APP][STARTUP] Xlama started (order_engine=%s).", run_engine)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        active: ExchangeServices = app.state.services
        while unsubscribers:
            unsubscribers.pop()()
        await active.order_manager.stop()
        if owns_services:
            await active.aclose()
        log.info("[APP][SHUTDOWN] Xlama stopped.")

    app.include_router(ws_router)
    app.include_router(http_router)

    return app
