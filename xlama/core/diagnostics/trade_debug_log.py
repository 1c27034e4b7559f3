from __future__ import annotations

import json
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Deque, Dict, List, Mapping, Optional

from xlama.configuration.config import settings
from xlama.logging.logger import get_logger

log = get_logger(__name__)

LEVEL_INFO = "info"
LEVEL_WARN = "warn"
LEVEL_ERROR = "error"
CHAIN_TYPE_ALL = "all"
ALL_FILTER = "all"


@dataclass(frozen=True)
class TradeLogEntry:
    id: str
    timestamp: int
    level: str
    chain_type: str
    action: str
    message: str
    chain_index: Optional[str] = None
    data: Optional[Mapping[str, object]] = field(default=None)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "level": self.level,
            "chainType": self.chain_type,
            "chainIndex": self.chain_index,
            "action": self.action,
            "message": self.message,
            "data": dict(self.data) if self.data is not None else None,
        }

    @staticmethod
    def from_dict(payload: Mapping[str, object]) -> "TradeLogEntry":
        data = payload.get("data")
        return TradeLogEntry(
            id=str(payload.get("id") or uuid.uuid4().hex),
            timestamp=int(payload.get("timestamp") or 0),
            level=str(payload.get("level") or LEVEL_INFO),
            chain_type=str(payload.get("chainType") or CHAIN_TYPE_ALL),
            chain_index=str(payload["chainIndex"]) if payload.get("chainIndex") is not None else None,
            action=str(payload.get("action") or ""),
            message=str(payload.get("message") or ""),
            data=data if isinstance(data, Mapping) else None,
        )


TradeLogSubscriber = Callable[[List[TradeLogEntry]], None]


class TradeDebugLog:
    """
    Bounded in-memory log of trade diagnostics (quotes, swaps, failures).

    Entries are kept in a ring buffer: once `max_logs` is reached the oldest entry is
    evicted. Append and eviction happen under one lock. Each entry is mirrored to the
    application logger. Subscribers receive the full log (most recent first) on
    subscription and after every change.
    """

    def __init__(
            self,
            max_logs: int = 100,
            enabled: bool = True,
            storage_path: Optional[Path] = None,
            clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_logs = max(1, int(max_logs))
        self.enabled = enabled
        self.storage_path = storage_path
        self._clock = clock
        self._entries: Deque[TradeLogEntry] = deque(maxlen=self.max_logs)
        self._subscribers: List[TradeLogSubscriber] = []
        self._lock = threading.Lock()
        self._load()

    def log(
            self,
            level: str,
            chain_type: str,
            action: str,
            message: str,
            data: Optional[Mapping[str, object]] = None,
            chain_index: Optional[str] = None,
    ) -> Optional[TradeLogEntry]:
        if not self.enabled:
            return None

        entry = TradeLogEntry(
            id=uuid.uuid4().hex,
            timestamp=int(self._clock() * 1000),
            level=level,
            chain_type=chain_type,
            chain_index=chain_index,
            action=action,
            message=message,
            data=dict(data) if data is not None else None,
        )
        with self._lock:
            self._entries.append(entry)
            snapshot = self._snapshot_locked()

        self._mirror(entry)
        self._save(snapshot)
        self._notify(snapshot)
        return entry

    def info(self, chain_type: str, action: str, message: str, data: Optional[Mapping[str, object]] = None,
             chain_index: Optional[str] = None) -> Optional[TradeLogEntry]:
        return self.log(LEVEL_INFO, chain_type, action, message, data, chain_index)

    def warn(self, chain_type: str, action: str, message: str, data: Optional[Mapping[str, object]] = None,
             chain_index: Optional[str] = None) -> Optional[TradeLogEntry]:
        return self.log(LEVEL_WARN, chain_type, action, message, data, chain_index)

    def error(self, chain_type: str, action: str, message: str, data: Optional[Mapping[str, object]] = None,
              chain_index: Optional[str] = None) -> Optional[TradeLogEntry]:
        return self.log(LEVEL_ERROR, chain_type, action, message, data, chain_index)

    def log_quote(self, chain_type: str, chain_index: str, from_token: str, to_token: str, amount: str,
                  slippage: Optional[float] = None) -> Optional[TradeLogEntry]:
        return self.info(
            chain_type,
            "quote-request",
            f"Requesting quote: {amount} {from_token} -> {to_token}",
            {"fromToken": from_token, "toToken": to_token, "amount": amount, "slippage": slippage},
            chain_index,
        )

    def log_quote_result(self, chain_type: str, chain_index: str, success: bool,
                         data: Optional[Mapping[str, object]] = None,
                         error: Optional[str] = None) -> Optional[TradeLogEntry]:
        if not success:
            return self.error(chain_type, "quote-failed", f"Quote failed: {error or 'Unknown error'}",
                              {"error": error, **dict(data or {})}, chain_index)
        return self.info(chain_type, "quote-result", "Quote received", data, chain_index)

    def log_swap_start(self, chain_type: str, chain_index: str, from_token: str, to_token: str, amount: str,
                       user_address: Optional[str] = None) -> Optional[TradeLogEntry]:
        return self.info(
            chain_type,
            "swap-start",
            f"Starting swap: {amount} {from_token} -> {to_token}",
            {"fromToken": from_token, "toToken": to_token, "amount": amount, "userAddress": user_address},
            chain_index,
        )

    def log_swap_result(self, chain_type: str, chain_index: str, success: bool, tx_hash: Optional[str] = None,
                        error: Optional[str] = None,
                        data: Optional[Mapping[str, object]] = None) -> Optional[TradeLogEntry]:
        if not success:
            return self.error(chain_type, "swap-failed", f"Swap failed: {error or 'Unknown error'}",
                              {"error": error, "txHash": tx_hash, **dict(data or {})}, chain_index)
        short_hash = f"{tx_hash[:12]}..." if tx_hash else "n/a"
        return self.info(chain_type, "swap-success", f"Swap successful! TX: {short_hash}",
                         {"txHash": tx_hash, **dict(data or {})}, chain_index)

    def get_logs(self, chain_type: Optional[str] = None, level: Optional[str] = None) -> List[TradeLogEntry]:
        """Entries, most recent first. `None` or "all" disables a filter."""
        with self._lock:
            entries = list(reversed(self._entries))
        if chain_type and chain_type != ALL_FILTER:
            entries = [entry for entry in entries if entry.chain_type == chain_type]
        if level and level != ALL_FILTER:
            entries = [entry for entry in entries if entry.level == level]
        return entries

    def clear_logs(self) -> None:
        with self._lock:
            self._entries.clear()
            snapshot = self._snapshot_locked()
        self._save(snapshot)
        self._notify(snapshot)
        log.info("[TRADE][DEBUG][CLEAR] Trade debug log cleared.")

    def subscribe(self, callback: TradeLogSubscriber) -> Callable[[], None]:
        """Register `callback`, call it immediately with the current log and return an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)
            snapshot = self._snapshot_locked()
        self._safe_call(callback, snapshot)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def export_report(self) -> Dict[str, object]:
        logs = self.get_logs()
        return {
            "timestamp": datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
            "logsCount": len(logs),
            "errorCount": sum(1 for entry in logs if entry.level == LEVEL_ERROR),
            "logs": [entry.to_dict() for entry in logs],
        }

    def export_json(self) -> str:
        return json.dumps(self.export_report(), indent=2)

    def enable(self) -> None:
        self.enabled = True

    def disable(self) -> None:
        self.enabled = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _snapshot_locked(self) -> List[TradeLogEntry]:
        return list(reversed(self._entries))

    def _notify(self, snapshot: List[TradeLogEntry]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            self._safe_call(callback, snapshot)

    @staticmethod
    def _safe_call(callback: TradeLogSubscriber, snapshot: List[TradeLogEntry]) -> None:
        try:
            callback(list(snapshot))
        except Exception:
            log.exception("[TRADE][DEBUG][SUBSCRIBER] Subscriber failed; keeping the log intact.")

    @staticmethod
    def _mirror(entry: TradeLogEntry) -> None:
        if entry.level == LEVEL_ERROR:
            log.error("[TRADE][%s][%s] %s", entry.chain_type.upper(), entry.action, entry.message)
        elif entry.level == LEVEL_WARN:
            log.warning("[TRADE][%s][%s] %s", entry.chain_type.upper(), entry.action, entry.message)
        else:
            log.debug("[TRADE][%s][%s] %s", entry.chain_type.upper(), entry.action, entry.message)

    def _load(self) -> None:
        if self.storage_path is None or not self.storage_path.exists():
            return
        try:
            rows = json.loads(self.storage_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warning("[TRADE][DEBUG][LOAD] Unable to read %s: %s", self.storage_path, exc)
            return
        if not isinstance(rows, list):
            return
        # Stored most recent first
        for row in reversed(rows):
            if isinstance(row, Mapping):
                self._entries.append(TradeLogEntry.from_dict(row))
        log.debug("[TRADE][DEBUG][LOAD] Restored %d entries from %s", len(self._entries), self.storage_path)

    def _save(self, snapshot: List[TradeLogEntry]) -> None:
        if self.storage_path is None:
            return
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            self.storage_path.write_text(json.dumps([entry.to_dict() for entry in snapshot]), encoding="utf-8")
        except OSError as exc:
            log.warning("[TRADE][DEBUG][SAVE] Unable to persist %s: %s", self.storage_path, exc)


def build_default_trade_debug_log() -> TradeDebugLog:
    storage = settings.TRADE_DEBUG_STORAGE_PATH.strip()
    return TradeDebugLog(
        max_logs=settings.TRADE_DEBUG_MAX_LOGS,
        enabled=settings.TRADE_DEBUG_ENABLED,
        storage_path=Path(storage) if storage else None,
    )
