from __future__ import annotations

import os
from pathlib import Path


def _as_bool(value: str | None, default: bool = False) -> bool:
    """Parse a truthy/falsey string into a boolean."""
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


class Settings:
    # API
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173")

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", str(Path(__file__).resolve().parents[2] / "data" / "xlama.db"))

    # Debug / logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "WARNING").upper()
    LOG_LEVEL_XLAMA: str = os.getenv("LOG_LEVEL_XLAMA", "DEBUG").upper()
    LOG_LEVEL_LIB_HTTPX: str = os.getenv("LOG_LEVEL_LIB_HTTPX", "WARNING").upper()
    LOG_LEVEL_LIB_HTTPCORE: str = os.getenv("LOG_LEVEL_LIB_HTTPCORE", "WARNING").upper()
    LOG_LEVEL_LIB_ASYNCIO: str = os.getenv("LOG_LEVEL_LIB_ASYNCIO", "WARNING").upper()
    LOG_LEVEL_LIB_WEB3: str = os.getenv("LOG_LEVEL_LIB_WEB3", "WARNING").upper()
    LOG_LEVEL_LIB_WEBSOCKETS: str = os.getenv("LOG_LEVEL_LIB_WEBSOCKETS", "WARNING").upper()
    NO_COLOR: bool = _as_bool(os.getenv("NO_COLOR"), False)
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "console").strip().lower()

    # OKX DEX aggregator / market API
    OKX_BASE_URL: str = os.getenv("OKX_BASE_URL", "https://web3.okx.com")
    OKX_API_KEY: str = os.getenv("OKX_API_KEY", "")
    OKX_SECRET_KEY: str = os.getenv("OKX_SECRET_KEY", "")
    OKX_API_PASSPHRASE: str = os.getenv("OKX_API_PASSPHRASE", "")
    OKX_PROJECT_ID: str = os.getenv("OKX_PROJECT_ID", "")
    OKX_REFERRER_WALLET_ADDRESS: str = os.getenv("OKX_REFERRER_WALLET_ADDRESS", "")
    OKX_COMMISSION_FEE_PERCENT: str = os.getenv("OKX_COMMISSION_FEE_PERCENT", "1.5")

    # LI.FI bridge
    LIFI_BASE_URL: str = os.getenv("LIFI_BASE_URL", "https://li.quest")
    LIFI_API_KEY: str = os.getenv("LIFI_API_KEY", "")
    LIFI_INTEGRATOR: str = os.getenv("LIFI_INTEGRATOR", "Xlama")
    LIFI_PLATFORM_FEE: float = float(os.getenv("LIFI_PLATFORM_FEE", "0.015"))

    # Price oracle fallback
    DEFILLAMA_BASE_URL: str = os.getenv("DEFILLAMA_BASE_URL", "https://coins.llama.fi")
    PRICE_CACHE_TTL_SECONDS: float = float(os.getenv("PRICE_CACHE_TTL_SECONDS", "60"))

    # Perpetuals (read-only)
    HYPERLIQUID_BASE_URL: str = os.getenv("HYPERLIQUID_BASE_URL", "https://api.hyperliquid.xyz")

    # Swap completion webhook
    SWAP_WEBHOOK_URL: str = os.getenv("SWAP_WEBHOOK_URL", "")
    SWAP_WEBHOOK_SECRET: str = os.getenv("SWAP_WEBHOOK_SECRET", "")

    # Retry / backoff
    RETRY_MAX_RETRIES: int = int(os.getenv("RETRY_MAX_RETRIES", "3"))
    RETRY_DELAY_MS: float = float(os.getenv("RETRY_DELAY_MS", "1000"))
    RETRY_BACKOFF_MULTIPLIER: float = float(os.getenv("RETRY_BACKOFF_MULTIPLIER", "2"))

    # Quoting
    QUOTE_DEBOUNCE_MS: int = int(os.getenv("QUOTE_DEBOUNCE_MS", "500"))
    DEFAULT_SLIPPAGE_PERCENT: float = float(os.getenv("DEFAULT_SLIPPAGE_PERCENT", "0.5"))

    # Confirmation polling
    CONFIRMATION_MAX_ATTEMPTS: int = int(os.getenv("CONFIRMATION_MAX_ATTEMPTS", "60"))
    CONFIRMATION_POLL_INTERVAL_SECONDS: float = float(os.getenv("CONFIRMATION_POLL_INTERVAL_SECONDS", "2"))
    CONFIRMATION_BACKOFF_MULTIPLIER: float = float(os.getenv("CONFIRMATION_BACKOFF_MULTIPLIER", "1.0"))
    BRIDGE_STATUS_MAX_ATTEMPTS: int = int(os.getenv("BRIDGE_STATUS_MAX_ATTEMPTS", "180"))

    # Orders
    ORDER_ENGINE_ENABLE: bool = _as_bool(os.getenv("ORDER_ENGINE_ENABLE"), True)
    ORDER_EVALUATION_INTERVAL_SECONDS: float = float(os.getenv("ORDER_EVALUATION_INTERVAL_SECONDS", "60"))
    LIMIT_ORDER_TRIGGER_WINDOW_HOURS: float = float(os.getenv("LIMIT_ORDER_TRIGGER_WINDOW_HOURS", "24"))
    LIMIT_ORDER_MAX_EXECUTION_ATTEMPTS: int = int(os.getenv("LIMIT_ORDER_MAX_EXECUTION_ATTEMPTS", "3"))
    DCA_DEFAULT_EXECUTION_HOUR: int = int(os.getenv("DCA_DEFAULT_EXECUTION_HOUR", "9"))

    # Trade debug log
    TRADE_DEBUG_ENABLED: bool = _as_bool(os.getenv("TRADE_DEBUG_ENABLED"), True)
    TRADE_DEBUG_MAX_LOGS: int = int(os.getenv("TRADE_DEBUG_MAX_LOGS", "100"))
    TRADE_DEBUG_STORAGE_PATH: str = os.getenv("TRADE_DEBUG_STORAGE_PATH", "")

    # Signers (server-side order execution)
    EVM_RPC_URL: str = os.getenv("EVM_RPC_URL", "")
    EVM_MNEMONIC: str = os.getenv("EVM_MNEMONIC", "")
    EVM_DERIVATION_INDEX: int = int(os.getenv("EVM_DERIVATION_INDEX", "0"))
    SOLANA_RPC_URL: str = os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com")
    SOLANA_SECRET_KEY_BASE58: str = os.getenv("SOLANA_SECRET_KEY_BASE58", "")


settings = Settings()
