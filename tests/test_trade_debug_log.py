from __future__ import annotations

import json
from unittest.mock import MagicMock

from xlama.core.diagnostics.trade_debug_log import TradeDebugLog


def _clock():
    return 1_700_000_000.0


class TestTradeDebugLog:
    def test_ring_buffer_evicts_oldest(self):
        trade_log = TradeDebugLog(max_logs=3, clock=_clock)
        for index in range(5):
            trade_log.info("evm", "step", f"message {index}")

        messages = [entry.message for entry in trade_log.get_logs()]
        assert messages == ["message 4", "message 3", "message 2"]
        assert len(trade_log) == 3

    def test_filters(self):
        trade_log = TradeDebugLog(clock=_clock)
        trade_log.info("evm", "a", "evm info")
        trade_log.error("solana", "b", "solana error")
        trade_log.warn("evm", "c", "evm warn")

        assert [e.message for e in trade_log.get_logs(chain_type="evm")] == ["evm warn", "evm info"]
        assert [e.message for e in trade_log.get_logs(level="error")] == ["solana error"]
        assert len(trade_log.get_logs(chain_type="all", level="all")) == 3

    def test_disabled_log_records_nothing(self):
        trade_log = TradeDebugLog(enabled=False, clock=_clock)
        assert trade_log.info("evm", "a", "ignored") is None
        trade_log.enable()
        trade_log.info("evm", "a", "kept")
        assert len(trade_log) == 1

    def test_subscribers_receive_snapshots_and_failures_are_contained(self):
        trade_log = TradeDebugLog(clock=_clock)
        failing = MagicMock(side_effect=RuntimeError("subscriber down"))
        healthy = MagicMock()
        trade_log.subscribe(failing)
        unsubscribe = trade_log.subscribe(healthy)

        trade_log.info("evm", "a", "first")

        assert healthy.call_count == 2
        assert healthy.call_args.args[0][0].message == "first"

        unsubscribe()
        trade_log.info("evm", "a", "second")
        assert healthy.call_count == 2
        assert len(trade_log) == 2

    def test_export_report(self):
        trade_log = TradeDebugLog(clock=_clock)
        trade_log.log_swap_start("evm", "1", "ETH", "USDC", "1")
        trade_log.log_swap_result("evm", "1", False, error="Transaction failed")

        report = trade_log.export_report()
        assert report["logsCount"] == 2
        assert report["errorCount"] == 1
        assert report["timestamp"].startswith("2023-11-14T22:13:20")
        assert report["logs"][0]["action"] == "swap-failed"
        assert json.loads(trade_log.export_json())["logsCount"] == 2

    def test_clear_logs(self):
        trade_log = TradeDebugLog(clock=_clock)
        trade_log.info("evm", "a", "x")
        trade_log.clear_logs()
        assert trade_log.get_logs() == []

    def test_persists_and_reloads(self, tmp_path):
        storage = tmp_path / "trade-log.json"
        first = TradeDebugLog(storage_path=storage, clock=_clock)
        first.info("evm", "a", "older")
        first.error("evm", "b", "newer")

        restored = TradeDebugLog(storage_path=storage, clock=_clock)
        assert [entry.message for entry in restored.get_logs()] == ["newer", "older"]
