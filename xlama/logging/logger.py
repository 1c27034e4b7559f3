from __future__ import annotations

import json
import logging
import re
import sys
import time
from typing import Dict, List, Optional

from xlama.configuration.config import settings

APP_NAMESPACE = "xlama"

_RESET = "\033[0m"
_DIM = "\033[2m"
_TAG_COLOR = "\033[36m"
_LEVEL_COLORS: Dict[int, str] = {
    logging.DEBUG: "\033[2m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
_LEVEL_CODES: Dict[int, str] = {
    logging.DEBUG: "DBG",
    logging.INFO: "INF",
    logging.WARNING: "WRN",
    logging.ERROR: "ERR",
    logging.CRITICAL: "CRT",
}

# Leading "[ORDERS][LIMIT][EXECUTED]" style tag of a message
_TAG_PATTERN = re.compile(r"^((?:\[[^\]\s]+\])+)\s*")
REDACTED = "***"


def _level_from_str(value: str) -> int:
    level = logging.getLevelName((value or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def _canonical_name(name: str) -> str:
    """Module names outside the package are nested under 'xlama.*'."""
    if name == APP_NAMESPACE or name.startswith(APP_NAMESPACE + "."):
        return name
    return f"{APP_NAMESPACE}.{name}"


def split_tag(message: str) -> tuple[str, str]:
    """Split a message into its bracketed tag and the remaining text."""
    match = _TAG_PATTERN.match(message)
    if match is None:
        return "", message
    return match.group(1), message[match.end():]


def _utc_timestamp(record: logging.LogRecord) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)) + f".{int(record.msecs):03d}Z"


class SecretRedactionFilter(logging.Filter):
    """
    Replaces configured secrets (API secrets, webhook secret, wallet keys) in rendered messages.

    The message is rendered once here so formatters and other handlers see the redacted text.
    """

    def __init__(self, secrets: Optional[List[str]] = None) -> None:
        super().__init__()
        values = secrets if secrets is not None else _configured_secrets()
        # Longest first so a secret containing another one is fully masked
        self.secrets = sorted({value for value in values if value and len(value) >= 6}, key=len, reverse=True)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in self.secrets:
            redacted = redacted.replace(secret, REDACTED)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def _configured_secrets() -> List[str]:
    return [
        settings.OKX_SECRET_KEY,
        settings.OKX_API_PASSPHRASE,
        settings.LIFI_API_KEY,
        settings.SWAP_WEBHOOK_SECRET,
        settings.EVM_MNEMONIC,
        settings.SOLANA_SECRET_KEY_BASE58,
    ]


class ConsoleFormatter(logging.Formatter):
    """
    One line per record, UTC timestamps, with the bracketed tag highlighted:

      2026-03-02T01:36:22.123Z INF xlama.core.orders.order_lifecycle_manager [ORDERS][LIMIT][EXECUTED] order=…
    """

    def __init__(self, use_color: bool = True) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        timestamp = _utc_timestamp(record)
        code = _LEVEL_CODES.get(record.levelno, record.levelname[:3])
        tag, text = split_tag(record.getMessage())

        if self.use_color:
            color = _LEVEL_COLORS.get(record.levelno, "")
            tag_part = f"{_TAG_COLOR}{tag}{_RESET} " if tag else ""
            line = f"{_DIM}{timestamp}{_RESET} {color}{code}{_RESET} {_DIM}{record.name}{_RESET} {tag_part}{text}"
        else:
            tag_part = f"{tag} " if tag else ""
            line = f"{timestamp} {code} {record.name} {tag_part}{text}"

        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class JsonFormatter(logging.Formatter):
    """JSON lines for log shippers; the bracketed tag gets its own field."""

    def format(self, record: logging.LogRecord) -> str:
        tag, text = split_tag(record.getMessage())
        payload: Dict[str, object] = {
            "timestamp": _utc_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "tag": tag or None,
            "message": text,
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _install_handler(root: logging.Logger) -> None:
    """A single stderr handler owned by the application; re-running init only refreshes it."""
    for handler in root.handlers:
        if getattr(handler, "_xlama_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stderr)
    handler._xlama_handler = True
    handler.setLevel(logging.NOTSET)
    if settings.LOG_FORMAT == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(ConsoleFormatter(use_color=sys.stderr.isatty() and not settings.NO_COLOR))
    handler.addFilter(SecretRedactionFilter())
    root.addHandler(handler)


def init_logging() -> None:
    """
    Configure the root logger: application records under 'xlama' at LOG_LEVEL_XLAMA,
    library chatter tamed, and uvicorn routed through the same handler.
    """
    root = logging.getLogger()
    root.setLevel(_level_from_str(settings.LOG_LEVEL))
    _install_handler(root)

    logging.getLogger(APP_NAMESPACE).setLevel(_level_from_str(settings.LOG_LEVEL_XLAMA))

    library_levels = {
        "httpx": settings.LOG_LEVEL_LIB_HTTPX,
        "httpcore": settings.LOG_LEVEL_LIB_HTTPCORE,
        "asyncio": settings.LOG_LEVEL_LIB_ASYNCIO,
        "web3": settings.LOG_LEVEL_LIB_WEB3,
        "websockets": settings.LOG_LEVEL_LIB_WEBSOCKETS,
        "uvicorn.protocols.websockets": settings.LOG_LEVEL_LIB_WEBSOCKETS,
    }
    for name, level in library_levels.items():
        logging.getLogger(name).setLevel(_level_from_str(level))

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Logger in the 'xlama.*' namespace."""
    return logging.getLogger(_canonical_name(name or APP_NAMESPACE))
