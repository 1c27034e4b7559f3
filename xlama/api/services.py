from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

from xlama.configuration.config import settings
from xlama.core.diagnostics.trade_debug_log import TradeDebugLog, build_default_trade_debug_log
from xlama.core.execution.order_executor import SwapOrderExecutor
from xlama.core.execution.swap_execution_coordinator import ConfirmationPolicy, SwapExecutionCoordinator
from xlama.core.onchain.evm_signer import build_default_evm_signer
from xlama.core.onchain.signer_protocol import ChainSigner
from xlama.core.onchain.solana_signer import build_default_solana_signer
from xlama.core.orders.order_lifecycle_manager import OrderLifecycleManager, build_default_order_manager
from xlama.core.pricing.price_feed_aggregator import PriceFeedAggregator, build_default_price_feed
from xlama.core.quoting.quote_engine import QuoteEngine
from xlama.core.retry.retryable_request import RetryPolicy
from xlama.core.structures.structures import ChainFamily
from xlama.integrations.hyperliquid.hyperliquid_client import HyperliquidClient
from xlama.integrations.lifi.lifi_client import LifiClient
from xlama.integrations.okx.okx_client import OkxBridgeSource, OkxDexClient, OkxPriceSource
from xlama.integrations.webhook.webhook_client import SwapWebhookClient
from xlama.logging.logger import get_logger
from xlama.persistence.dao.transactions import SqlTransactionHistory
from xlama.persistence.order_store import SqlOrderStore

log = get_logger(__name__)


@dataclass
class ExchangeServices:
    """Long-lived components shared by the HTTP routes, the WebSocket hub and the order engine."""
    store: SqlOrderStore
    transactions: SqlTransactionHistory
    trade_log: TradeDebugLog
    price_feed: PriceFeedAggregator
    quote_engine: QuoteEngine
    order_manager: OrderLifecycleManager
    coordinator: Optional[SwapExecutionCoordinator] = None
    okx: Optional[OkxDexClient] = None
    lifi: Optional[LifiClient] = None
    hyperliquid: Optional[HyperliquidClient] = None
    webhook: Optional[SwapWebhookClient] = None
    signers: Dict[ChainFamily, ChainSigner] = field(default_factory=dict)

    async def aclose(self) -> None:
        await self.quote_engine.close()
        for client in (self.okx, self.lifi, self.hyperliquid, self.webhook, self.price_feed.fallback):
            if client is not None:
                await client.aclose()


def _build_signers() -> Dict[ChainFamily, ChainSigner]:
    """Server-side signers for the families with configured keys."""
    signers: Dict[ChainFamily, ChainSigner] = {}
    if settings.EVM_MNEMONIC:
        signers[ChainFamily.EVM] = build_default_evm_signer()
    if settings.SOLANA_SECRET_KEY_BASE58:
        signers[ChainFamily.SOLANA] = build_default_solana_signer()
    if not signers:
        log.warning("[SERVICES][SIGNERS] No signer keys configured; order executions will fail as unsupported.")
    return signers


def build_default_services() -> ExchangeServices:
    """Wire the production components from Settings."""
    okx = OkxDexClient()
    lifi = LifiClient()
    webhook = SwapWebhookClient()
    trade_log = build_default_trade_debug_log()
    price_feed = build_default_price_feed(primary=OkxPriceSource(okx))
    store = SqlOrderStore()
    transactions = SqlTransactionHistory()
    signers = _build_signers()
    retry_policy = RetryPolicy.from_settings()
    okx_bridge = OkxBridgeSource(okx)

    quote_engine = QuoteEngine(
        okx,
        bridge_providers=[lifi, okx_bridge],
        price_feed=price_feed,
        trade_log=trade_log,
        debounce_seconds=settings.QUOTE_DEBOUNCE_MS / 1000.0,
        retry_policy=retry_policy,
    )
    coordinator = SwapExecutionCoordinator(
        okx,
        signers,
        sink=webhook if webhook.url else None,
        history=transactions,
        trade_log=trade_log,
        price_feed=price_feed,
        bridge_providers={bridge.provider_name: bridge for bridge in (lifi, okx_bridge)},
        confirmation=ConfirmationPolicy.from_settings(),
        retry_policy=retry_policy,
    )
    order_manager = build_default_order_manager(
        store,
        SwapOrderExecutor(coordinator),
        trade_log=trade_log,
        price_source=price_feed.primary,
    )
    return ExchangeServices(
        store=store,
        transactions=transactions,
        trade_log=trade_log,
        price_feed=price_feed,
        quote_engine=quote_engine,
        order_manager=order_manager,
        coordinator=coordinator,
        okx=okx,
        lifi=lifi,
        hyperliquid=HyperliquidClient(),
        webhook=webhook,
        signers=signers,
    )
