from __future__ import annotations

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from xlama.configuration.config import settings
from xlama.core.chains.chain_registry import get_chain_by_index
from xlama.core.errors.error_taxonomy import TIMEOUT_MESSAGE, ErrorKind
from xlama.core.execution.order_executor import SwapOrderExecutor
from xlama.core.execution.swap_execution_coordinator import (
    ConfirmationPolicy,
    SwapExecutionCoordinator,
    SwapOutcome,
    SwapRequest,
    SwapStatus,
    SwapStep,
)
from xlama.core.retry.retryable_request import RetryPolicy
from xlama.core.structures.orders import DCAFrequency, DCAOrder
from xlama.core.structures.structures import (
    ApprovalTransaction,
    BridgeRoute,
    BridgeTransferState,
    BridgeTransferStatus,
    ChainFamily,
    SwapTransaction,
    Token,
)

ETHEREUM = get_chain_by_index("1")
SOLANA = get_chain_by_index("501")
ETH = Token(address="0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee", symbol="ETH", name="Ether", decimals=18,
            chain_index="1", unit_price=3000.0)
USDC = Token(address="0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48", symbol="USDC", name="USD Coin", decimals=6,
             chain_index="1", unit_price=1.0)
SIGNER_ADDRESS = "0x2222222222222222222222222222222222222222"
POLYGON_USDC = Token(address="0x3c499c542cef5e3811e1192ce70d8cc03d5c3359", symbol="USDC", name="USD Coin",
                     decimals=6, chain_index="137")


class FakeSigner:
    def __init__(self, family=ChainFamily.EVM, statuses=None, allowance=0, address=SIGNER_ADDRESS):
        self.family = family
        self._address = address
        self.statuses = list(statuses or [True, True])
        self.allowance = allowance
        self.sent = []
        self.get_allowance_calls = 0

    @property
    def address(self):
        return self._address

    async def sign_and_send(self, payload):
        self.sent.append(payload)
        return f"0xHASH{len(self.sent)}"

    async def sign_message(self, message):
        return "0xsig"

    async def get_transaction_status(self, tx_hash):
        return self.statuses.pop(0) if self.statuses else None

    async def get_transaction_fee(self, tx_hash):
        return 21_000 * 10 ** 9

    async def get_allowance(self, token_address, owner, spender):
        self.get_allowance_calls += 1
        return self.allowance


def _swap_tx(chain_index="1", min_receive="2900000000"):
    return SwapTransaction(chain_index=chain_index, from_address=SIGNER_ADDRESS, to="0xrouter", data="0xdeadbeef",
                           value=0, gas_limit=None, gas_price=None, min_receive_amount=min_receive)


def _provider(swap_tx=None):
    provider = MagicMock()
    provider.get_swap_transaction = AsyncMock(return_value=swap_tx or _swap_tx())
    provider.get_approval_transaction = AsyncMock(return_value=ApprovalTransaction(
        token_address=USDC.address, spender="0xspender", data="0x095ea7b3", gas_limit=None, gas_price=None))
    return provider


def _coordinator(provider, signer, **kwargs):
    kwargs.setdefault("confirmation", ConfirmationPolicy(max_attempts=3, interval_seconds=0))
    kwargs.setdefault("retry_policy", RetryPolicy(max_retries=0))
    kwargs.setdefault("sleep", AsyncMock())
    return SwapExecutionCoordinator(provider, {signer.family: signer}, **kwargs)


class CancellingSigner(FakeSigner):
    """Sets the cancel event on its first receipt poll; the receipt stays pending."""

    def __init__(self, cancel_event, **kwargs):
        super().__init__(**kwargs)
        self.cancel_event = cancel_event

    async def get_transaction_status(self, tx_hash):
        self.cancel_event.set()
        return None


def _bridge_route(provider="lifi", from_token=ETH, from_amount="1000000000000000000"):
    return BridgeRoute(provider=provider, tool="stargate", from_chain_index="1", to_chain_index="137",
                       from_token=from_token, to_token=POLYGON_USDC, from_amount=from_amount, to_amount="2990000000",
                       to_amount_min="2980000000", gas_cost_usd=1.0, fee_cost_usd=0.5, estimated_duration_seconds=120)


def _status(state, amount=None):
    receiving_hash = "0xdest" if state is BridgeTransferState.DONE else None
    return BridgeTransferStatus(state=state, receiving_tx_hash=receiving_hash, receiving_amount=amount)


def _bridge(statuses, name="lifi"):
    bridge = MagicMock()
    bridge.provider_name = name
    bridge.get_step_transaction = AsyncMock(return_value=_swap_tx())
    bridge.get_bridge_approval = AsyncMock(return_value=ApprovalTransaction(
        token_address=USDC.address, spender="0xrouter", data="0x095ea7b3", gas_limit=None, gas_price=None))
    bridge.get_status = AsyncMock(side_effect=list(statuses))
    return bridge


class TestSwapExecutionCoordinator:
    @pytest.mark.asyncio
    async def test_native_swap_completes_and_notifies_once(self):
        signer = FakeSigner(statuses=[None, True])
        sink = MagicMock()
        sink.notify_swap_completed = AsyncMock()
        history = MagicMock()
        coordinator = _coordinator(_provider(), signer, sink=sink, history=history)

        outcome = await coordinator.execute(SwapRequest(chain=ETHEREUM, from_token=ETH, to_token=USDC, amount="1"))

        assert outcome.succeeded
        assert outcome.tx_hash == "0xHASH1"
        assert outcome.step_history == (SwapStep.QUOTED, SwapStep.SUBMITTED, SwapStep.CONFIRMING,
                                        SwapStep.COMPLETED)
        assert outcome.amount_out == "2900"
        assert outcome.event.wallet_address == SIGNER_ADDRESS
        assert outcome.event.token_in_usd == pytest.approx(3000.0)
        assert outcome.event.gas_fee == "0.000021"
        assert outcome.event.explorer_url == "https://etherscan.io/tx/0xHASH1"
        sink.notify_swap_completed.assert_awaited_once()
        record = history.record_transaction.call_args.args[0]
        assert record.status == "success"
        assert record.to_token_amount == "2900"

        assert await coordinator.notify_completed(outcome.event) is False
        sink.notify_swap_completed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_duplicate_hash_is_case_insensitive_for_evm(self):
        sink = MagicMock()
        sink.notify_swap_completed = AsyncMock()
        coordinator = _coordinator(_provider(), FakeSigner(), sink=sink)
        outcome = await coordinator.execute(SwapRequest(chain=ETHEREUM, from_token=ETH, to_token=USDC, amount="1"))

        lowered = replace(outcome.event, tx_hash=outcome.tx_hash.lower())
        assert await coordinator.notify_completed(lowered) is False
        assert sink.notify_swap_completed.await_count == 1

    @pytest.mark.asyncio
    async def test_erc20_swap_approves_first_when_allowance_is_short(self):
        signer = FakeSigner(allowance=0)
        provider = _provider()
        coordinator = _coordinator(provider, signer)

        outcome = await coordinator.execute(SwapRequest(chain=ETHEREUM, from_token=USDC, to_token=ETH,
                                                        amount="100"))

        assert outcome.succeeded
        assert SwapStep.APPROVING in outcome.step_history
        assert isinstance(signer.sent[0], ApprovalTransaction)
        assert isinstance(signer.sent[1], SwapTransaction)
        provider.get_approval_transaction.assert_awaited_once_with("1", USDC.address, "100000000")

    @pytest.mark.asyncio
    async def test_sufficient_allowance_skips_approval(self):
        signer = FakeSigner(allowance=10 ** 12)
        coordinator = _coordinator(_provider(), signer)

        outcome = await coordinator.execute(SwapRequest(chain=ETHEREUM, from_token=USDC, to_token=ETH,
                                                        amount="100"))

        assert outcome.succeeded
        assert SwapStep.APPROVING not in outcome.step_history
        assert len(signer.sent) == 1

    @pytest.mark.asyncio
    async def test_solana_swap_has_no_allowance_step(self):
        signer = FakeSigner(family=ChainFamily.SOLANA, address="9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM")
        token_in = Token(address="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v", symbol="USDC", name="USD Coin",
                         decimals=6, chain_index="501")
        token_out = Token(address="11111111111111111111111111111111", symbol="SOL", name="Solana", decimals=9,
                          chain_index="501")
        coordinator = _coordinator(_provider(_swap_tx("501", "500000000")), signer)

        outcome = await coordinator.execute(SwapRequest(chain=SOLANA, from_token=token_in, to_token=token_out,
                                                        amount="50"))

        assert outcome.succeeded
        assert outcome.amount_out == "0.5"
        assert signer.get_allowance_calls == 0
        assert SwapStep.APPROVING not in outcome.step_history

    @pytest.mark.asyncio
    async def test_failed_on_chain(self):
        sink = MagicMock()
        sink.notify_swap_completed = AsyncMock()
        coordinator = _coordinator(_provider(), FakeSigner(statuses=[False]), sink=sink)

        outcome = await coordinator.execute(SwapRequest(chain=ETHEREUM, from_token=ETH, to_token=USDC, amount="1"))

        assert outcome.status is SwapStatus.FAILED
        assert outcome.error_kind is ErrorKind.CHAIN_EXECUTION
        assert outcome.error_message == "Transaction failed"
        assert outcome.tx_hash == "0xHASH1"
        assert outcome.step_history[-1] is SwapStep.FAILED
        sink.notify_swap_completed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_confirmation_timeout(self):
        sleep = AsyncMock()
        coordinator = _coordinator(_provider(), FakeSigner(statuses=[]), sleep=sleep)

        outcome = await coordinator.execute(SwapRequest(chain=ETHEREUM, from_token=ETH, to_token=USDC, amount="1"))

        assert outcome.error_kind is ErrorKind.TIMEOUT
        assert outcome.error_message == TIMEOUT_MESSAGE
        assert sleep.await_count == 3

    @pytest.mark.asyncio
    async def test_provider_error_is_classified_not_raised(self):
        provider = _provider()
        provider.get_swap_transaction.side_effect = Exception("insufficient funds for gas * price + value")
        coordinator = _coordinator(provider, FakeSigner())

        outcome = await coordinator.execute(SwapRequest(chain=ETHEREUM, from_token=ETH, to_token=USDC, amount="1"))

        assert outcome.status is SwapStatus.FAILED
        assert outcome.error_kind is ErrorKind.INSUFFICIENT_FUNDS
        assert outcome.tx_hash is None

    @pytest.mark.asyncio
    async def test_missing_signer(self):
        coordinator = _coordinator(_provider(), FakeSigner(family=ChainFamily.SOLANA))

        outcome = await coordinator.execute(SwapRequest(chain=ETHEREUM, from_token=ETH, to_token=USDC, amount="1"))

        assert outcome.error_kind is ErrorKind.UNSUPPORTED

    @pytest.mark.asyncio
    async def test_cancelled_before_submission(self):
        signer = FakeSigner()
        coordinator = _coordinator(_provider(), signer)
        cancel = asyncio.Event()
        cancel.set()

        outcome = await coordinator.execute(SwapRequest(chain=ETHEREUM, from_token=ETH, to_token=USDC, amount="1"),
                                            cancel_event=cancel)

        assert outcome.status is SwapStatus.CANCELLED
        assert signer.sent == []

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_fail_the_swap(self):
        sink = MagicMock()
        sink.notify_swap_completed = AsyncMock(side_effect=RuntimeError("webhook down"))
        coordinator = _coordinator(_provider(), FakeSigner(), sink=sink)

        outcome = await coordinator.execute(SwapRequest(chain=ETHEREUM, from_token=ETH, to_token=USDC, amount="1"))

        assert outcome.succeeded

    @pytest.mark.asyncio
    async def test_transient_sink_failure_is_retried(self):
        sink = MagicMock()
        sink.notify_swap_completed = AsyncMock(side_effect=[httpx.ConnectError("connection reset"), None])
        coordinator = _coordinator(_provider(), FakeSigner(), sink=sink,
                                   retry_policy=RetryPolicy(max_retries=2, delay_ms=0))

        outcome = await coordinator.execute(SwapRequest(chain=ETHEREUM, from_token=ETH, to_token=USDC, amount="1"))

        assert outcome.succeeded
        assert sink.notify_swap_completed.await_count == 2

    @pytest.mark.asyncio
    async def test_notified_hashes_keep_only_the_most_recent(self):
        sink = MagicMock()
        sink.notify_swap_completed = AsyncMock()
        coordinator = _coordinator(_provider(), FakeSigner(), sink=sink, notified_capacity=2)
        outcome = await coordinator.execute(SwapRequest(chain=ETHEREUM, from_token=ETH, to_token=USDC, amount="1"))

        assert await coordinator.notify_completed(replace(outcome.event, tx_hash="0xa")) is True
        assert await coordinator.notify_completed(replace(outcome.event, tx_hash="0xb")) is True
        assert await coordinator.notify_completed(outcome.event) is True
        assert await coordinator.notify_completed(replace(outcome.event, tx_hash="0xb")) is False
        assert await coordinator.notify_completed(replace(outcome.event, tx_hash="0xa")) is True

    @pytest.mark.asyncio
    async def test_cancelled_while_waiting_for_confirmation(self):
        cancel = asyncio.Event()
        signer = CancellingSigner(cancel)
        sink = MagicMock()
        sink.notify_swap_completed = AsyncMock()
        history = MagicMock()
        coordinator = _coordinator(_provider(), signer, sink=sink, history=history)

        outcome = await coordinator.execute(SwapRequest(chain=ETHEREUM, from_token=ETH, to_token=USDC, amount="1"),
                                            cancel_event=cancel)

        assert outcome.status is SwapStatus.CANCELLED
        assert outcome.tx_hash == "0xHASH1"
        assert SwapStep.COMPLETED not in outcome.step_history
        sink.notify_swap_completed.assert_not_awaited()
        history.record_transaction.assert_not_called()


class TestBridgeExecution:
    @pytest.mark.asyncio
    async def test_completes_when_destination_leg_is_done(self):
        lifi = _bridge([_status(BridgeTransferState.PENDING), _status(BridgeTransferState.DONE, "2985000000")])
        okx = _bridge([], name="okx")
        sink = MagicMock()
        sink.notify_swap_completed = AsyncMock()
        history = MagicMock()
        coordinator = _coordinator(_provider(), FakeSigner(statuses=[True]), sink=sink, history=history,
                                   bridge_providers={"lifi": lifi, "okx": okx})
        route = _bridge_route()

        outcome = await coordinator.execute_bridge(route)

        assert outcome.succeeded
        assert outcome.tx_hash == "0xHASH1"
        assert outcome.amount_out == "2985"
        assert outcome.step_history == (SwapStep.QUOTED, SwapStep.SUBMITTED, SwapStep.CONFIRMING,
                                        SwapStep.COMPLETED)
        lifi.get_step_transaction.assert_awaited_once_with(route, SIGNER_ADDRESS, 0.5)
        assert lifi.get_status.await_count == 2
        assert lifi.get_status.await_args.args == ("0xHASH1", "1", "137", "stargate")
        okx.get_step_transaction.assert_not_awaited()
        sink.notify_swap_completed.assert_awaited_once()
        assert history.record_transaction.call_args.args[0].type == "bridge"

    @pytest.mark.asyncio
    async def test_route_is_executed_by_its_quoting_provider(self):
        lifi = _bridge([])
        okx = _bridge([_status(BridgeTransferState.DONE)], name="okx")
        coordinator = _coordinator(_provider(), FakeSigner(statuses=[True]),
                                   bridge_providers={"lifi": lifi, "okx": okx})

        outcome = await coordinator.execute_bridge(_bridge_route(provider="okx"))

        assert outcome.succeeded
        assert outcome.amount_out == "2990"
        okx.get_step_transaction.assert_awaited_once()
        lifi.get_step_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transient_status_error_is_retried(self):
        bridge = _bridge([httpx.ConnectError("connection reset"), _status(BridgeTransferState.DONE, "2985000000")])
        coordinator = _coordinator(_provider(), FakeSigner(statuses=[True]), bridge_providers={"lifi": bridge},
                                   retry_policy=RetryPolicy(max_retries=3, delay_ms=0))

        outcome = await coordinator.execute_bridge(_bridge_route())

        assert outcome.status is SwapStatus.COMPLETED
        assert bridge.get_status.await_count == 2

    @pytest.mark.asyncio
    async def test_status_error_outlasting_retries_counts_as_pending(self):
        bridge = _bridge([httpx.ReadTimeout("slow"), _status(BridgeTransferState.DONE)])
        coordinator = _coordinator(_provider(), FakeSigner(statuses=[True]), bridge_providers={"lifi": bridge})

        outcome = await coordinator.execute_bridge(_bridge_route())

        assert outcome.status is SwapStatus.COMPLETED
        assert bridge.get_status.await_count == 2

    @pytest.mark.asyncio
    async def test_non_transient_status_error_fails_the_bridge(self):
        bridge = _bridge([RuntimeError("boom")])
        coordinator = _coordinator(_provider(), FakeSigner(statuses=[True]), bridge_providers={"lifi": bridge})

        outcome = await coordinator.execute_bridge(_bridge_route())

        assert outcome.status is SwapStatus.FAILED
        assert outcome.tx_hash == "0xHASH1"
        assert bridge.get_status.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_destination_leg(self):
        sink = MagicMock()
        sink.notify_swap_completed = AsyncMock()
        bridge = _bridge([_status(BridgeTransferState.FAILED)])
        coordinator = _coordinator(_provider(), FakeSigner(statuses=[True]), sink=sink,
                                   bridge_providers={"lifi": bridge})

        outcome = await coordinator.execute_bridge(_bridge_route())

        assert outcome.status is SwapStatus.FAILED
        assert outcome.error_kind is ErrorKind.CHAIN_EXECUTION
        assert outcome.error_message == "Bridge transfer failed"
        assert outcome.tx_hash == "0xHASH1"
        assert outcome.step_history[-1] is SwapStep.FAILED
        sink.notify_swap_completed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_status_polling_times_out(self, monkeypatch):
        monkeypatch.setattr(settings, "BRIDGE_STATUS_MAX_ATTEMPTS", 2)
        bridge = _bridge([_status(BridgeTransferState.PENDING), _status(BridgeTransferState.NOT_FOUND)])
        coordinator = _coordinator(_provider(), FakeSigner(statuses=[True]), bridge_providers={"lifi": bridge})

        outcome = await coordinator.execute_bridge(_bridge_route())

        assert outcome.error_kind is ErrorKind.TIMEOUT
        assert outcome.error_message == TIMEOUT_MESSAGE
        assert outcome.tx_hash == "0xHASH1"
        assert bridge.get_status.await_count == 2

    @pytest.mark.asyncio
    async def test_cancelled_while_polling_transfer_status(self):
        cancel = asyncio.Event()

        async def _pending_then_cancel(*args):
            cancel.set()
            return _status(BridgeTransferState.PENDING)

        bridge = _bridge([])
        bridge.get_status = AsyncMock(side_effect=_pending_then_cancel)
        sink = MagicMock()
        sink.notify_swap_completed = AsyncMock()
        history = MagicMock()
        coordinator = _coordinator(_provider(), FakeSigner(statuses=[True]), sink=sink, history=history,
                                   bridge_providers={"lifi": bridge})

        outcome = await coordinator.execute_bridge(_bridge_route(), cancel_event=cancel)

        assert outcome.status is SwapStatus.CANCELLED
        assert outcome.tx_hash == "0xHASH1"
        assert bridge.get_status.await_count == 1
        sink.notify_swap_completed.assert_not_awaited()
        history.record_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_erc20_bridge_approves_the_bridge_spender(self):
        signer = FakeSigner(statuses=[True, True], allowance=0)
        bridge = _bridge([_status(BridgeTransferState.DONE)])
        coordinator = _coordinator(_provider(), signer, bridge_providers={"lifi": bridge})
        route = _bridge_route(from_token=USDC, from_amount="100000000")

        outcome = await coordinator.execute_bridge(route)

        assert outcome.succeeded
        assert SwapStep.APPROVING in outcome.step_history
        assert signer.sent[0].spender == "0xrouter"
        assert isinstance(signer.sent[1], SwapTransaction)
        bridge.get_bridge_approval.assert_awaited_once()
        assert bridge.get_bridge_approval.await_args.args[0] is route

    @pytest.mark.asyncio
    async def test_erc20_bridge_with_allowance_skips_approval(self):
        signer = FakeSigner(statuses=[True], allowance=10 ** 12)
        bridge = _bridge([_status(BridgeTransferState.DONE)])
        coordinator = _coordinator(_provider(), signer, bridge_providers={"lifi": bridge})

        outcome = await coordinator.execute_bridge(_bridge_route(from_token=USDC, from_amount="100000000"))

        assert outcome.succeeded
        assert SwapStep.APPROVING not in outcome.step_history
        assert len(signer.sent) == 1

    @pytest.mark.asyncio
    async def test_unknown_bridge_provider_is_unsupported(self):
        signer = FakeSigner()
        coordinator = _coordinator(_provider(), signer, bridge_providers={"lifi": _bridge([])})

        outcome = await coordinator.execute_bridge(_bridge_route(provider="okx"))
        without_providers = await _coordinator(_provider(), signer).execute_bridge(_bridge_route())

        assert outcome.status is SwapStatus.FAILED
        assert outcome.error_kind is ErrorKind.UNSUPPORTED
        assert outcome.error_message == "Bridge provider 'okx' is not available"
        assert without_providers.error_kind is ErrorKind.UNSUPPORTED
        assert signer.sent == []


class TestSwapOrderExecutor:
    @staticmethod
    def _order(chain_index="1"):
        return DCAOrder(id="dca-1", user_address="0xuser", chain_index=chain_index, from_token_address=USDC.address,
                        from_token_symbol="USDC", from_token_decimals=6, to_token_address=ETH.address,
                        to_token_symbol="ETH", amount_per_interval="10", frequency=DCAFrequency.DAILY)

    @pytest.mark.asyncio
    async def test_success_maps_amounts(self):
        coordinator = MagicMock()
        coordinator.execute = AsyncMock(return_value=SwapOutcome(status=SwapStatus.COMPLETED, tx_hash="0x1",
                                                                 amount_out="0.0033"))
        outcome = await SwapOrderExecutor(coordinator).execute_dca_interval(self._order())

        assert outcome.success
        assert outcome.amount_in == 10.0
        assert outcome.amount_out == pytest.approx(0.0033)
        request = coordinator.execute.await_args.args[0]
        assert request.from_token.decimals == 6
        assert request.user_address is None

    @pytest.mark.asyncio
    async def test_failure_carries_message(self):
        coordinator = MagicMock()
        coordinator.execute = AsyncMock(return_value=SwapOutcome(status=SwapStatus.FAILED,
                                                                 error_message="No route found"))
        outcome = await SwapOrderExecutor(coordinator).execute_dca_interval(self._order())

        assert not outcome.success
        assert outcome.error == "No route found"

    @pytest.mark.asyncio
    async def test_unknown_chain(self):
        coordinator = MagicMock()
        coordinator.execute = AsyncMock()
        outcome = await SwapOrderExecutor(coordinator).execute_dca_interval(self._order(chain_index="999999"))

        assert not outcome.success
        coordinator.execute.assert_not_awaited()
