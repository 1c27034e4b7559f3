from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Mapping, Optional, Protocol, Tuple

from xlama.configuration.config import settings
from xlama.core.chains.chain_registry import get_chain_by_index
from xlama.core.diagnostics.trade_debug_log import TradeDebugLog
from xlama.core.errors.error_taxonomy import ErrorKind, ExchangeError, classify_error, is_transient_error
from xlama.core.onchain.signer_protocol import ChainSigner, SignerRegistry
from xlama.core.pricing.price_feed_aggregator import PriceFeedAggregator
from xlama.core.retry.retryable_request import RetryPolicy, with_retry
from xlama.core.structures.structures import (
    ApprovalTransaction,
    BridgeRoute,
    BridgeTransferState,
    BridgeTransferStatus,
    Chain,
    DexTransactionRecord,
    Quote,
    SwapCompletedEvent,
    SwapTransaction,
    Token,
)
from xlama.core.utils.amount_utils import compare_amounts, from_smallest_unit, to_smallest_unit
from xlama.core.utils.date_utils import utc_now
from xlama.logging.logger import get_logger

log = get_logger(__name__)

TRANSACTION_FAILED_MESSAGE = "Transaction failed"
BRIDGE_FAILED_MESSAGE = "Bridge transfer failed"
DEFAULT_NOTIFIED_CAPACITY = 10_000


class SwapStep(Enum):
    QUOTED = "quoted"
    APPROVING = "approving"
    SUBMITTED = "submitted"
    CONFIRMING = "confirming"
    COMPLETED = "completed"
    FAILED = "failed"


class SwapStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SwapRequest:
    """
    Swap to execute. `amount` is a human amount of `from_token`; `quote` (when the caller
    already holds one) provides the expected output for notifications.
    """
    chain: Chain
    from_token: Token
    to_token: Token
    amount: str
    slippage_percent: float = 0.5
    user_address: Optional[str] = None
    quote: Optional[Quote] = None


@dataclass(frozen=True)
class SwapOutcome:
    status: SwapStatus
    tx_hash: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    step_history: Tuple[SwapStep, ...] = ()
    amount_out: Optional[str] = None
    event: Optional[SwapCompletedEvent] = None

    @property
    def succeeded(self) -> bool:
        return self.status is SwapStatus.COMPLETED


@dataclass(frozen=True)
class ConfirmationPolicy:
    """Bounded receipt polling: `max_attempts` polls, `interval_seconds` apart (optionally growing)."""
    max_attempts: int = 60
    interval_seconds: float = 2.0
    backoff_multiplier: float = 1.0
    max_interval_seconds: float = 30.0

    def next_interval(self, interval: float) -> float:
        return min(interval * self.backoff_multiplier, self.max_interval_seconds)

    @staticmethod
    def from_settings() -> "ConfirmationPolicy":
        return ConfirmationPolicy(
            max_attempts=max(1, settings.CONFIRMATION_MAX_ATTEMPTS),
            interval_seconds=max(0.0, settings.CONFIRMATION_POLL_INTERVAL_SECONDS),
            backoff_multiplier=max(1.0, settings.CONFIRMATION_BACKOFF_MULTIPLIER),
        )


class SwapProvider(Protocol):
    async def get_swap_transaction(
            self,
            chain_index: str,
            from_token_address: str,
            to_token_address: str,
            amount: str,
            user_wallet_address: str,
            slippage: Optional[float | str] = None,
    ) -> SwapTransaction:
        ...

    async def get_approval_transaction(self, chain_index: str, token_address: str,
                                       approve_amount: str = "") -> ApprovalTransaction:
        ...


class BridgeExecutionProvider(Protocol):
    provider_name: str

    async def get_step_transaction(self, route: BridgeRoute, from_address: Optional[str] = None,
                                   slippage_percent: Optional[float] = None) -> SwapTransaction:
        ...

    async def get_bridge_approval(self, route: BridgeRoute, bridge_tx: SwapTransaction) -> ApprovalTransaction:
        ...

    async def get_status(self, tx_hash: str, from_chain_index: str, to_chain_index: str,
                         bridge: Optional[str] = None) -> BridgeTransferStatus:
        ...


class SwapEventSink(Protocol):
    async def notify_swap_completed(self, event: SwapCompletedEvent) -> None:
        ...


class SwapHistoryRecorder(Protocol):
    def record_transaction(self, record: DexTransactionRecord) -> None:
        ...


class _SwapCancelled(Exception):
    pass


class _StepFailed(Exception):
    def __init__(self, kind: ErrorKind, message: str, tx_hash: Optional[str] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.tx_hash = tx_hash


def _canonical_hash(tx_hash: str) -> str:
    return tx_hash.lower() if tx_hash.startswith("0x") else tx_hash


class SwapExecutionCoordinator:
    """
    Drives a swap from a quote to a confirmed transaction.

    Steps: quoted → approving (EVM ERC-20 only) → submitted → confirming → completed | failed.
    Provider calls and receipt polls go through `with_retry`. Errors are classified at this
    boundary and returned in the outcome; they never propagate to the caller. A completed
    swap notifies the event sink at most once per transaction hash; the set of notified
    hashes keeps the most recent `notified_capacity` entries.

    Bridge routes are executed by the provider that quoted them, looked up in
    `bridge_providers` by `BridgeRoute.provider`.
    """

    def __init__(
            self,
            provider: SwapProvider,
            signers: SignerRegistry,
            *,
            sink: Optional[SwapEventSink] = None,
            history: Optional[SwapHistoryRecorder] = None,
            trade_log: Optional[TradeDebugLog] = None,
            price_feed: Optional[PriceFeedAggregator] = None,
            bridge_providers: Optional[Mapping[str, BridgeExecutionProvider]] = None,
            confirmation: Optional[ConfirmationPolicy] = None,
            retry_policy: Optional[RetryPolicy] = None,
            sleep: Callable[[float], object] = asyncio.sleep,
            notified_capacity: int = DEFAULT_NOTIFIED_CAPACITY,
    ) -> None:
        self.provider = provider
        self.signers = signers
        self.sink = sink
        self.history = history
        self.trade_log = trade_log
        self.price_feed = price_feed
        self.bridge_providers = dict(bridge_providers or {})
        self.confirmation = confirmation or ConfirmationPolicy()
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._notified: OrderedDict[str, None] = OrderedDict()
        self._notified_capacity = max(1, notified_capacity)
        self._notify_lock = asyncio.Lock()

    async def execute(self, request: SwapRequest, *, cancel_event: Optional[asyncio.Event] = None) -> SwapOutcome:
        chain = request.chain
        chain_type = chain.family.value
        steps: List[SwapStep] = [SwapStep.QUOTED]

        signer = self.signers.get(chain.family)
        if signer is None:
            return self._failure(request.chain, steps, ErrorKind.UNSUPPORTED,
                                 f"No signer available for {chain.name}")

        wallet = request.user_address or signer.address
        raw_amount = to_smallest_unit(request.amount, request.from_token.decimals)
        if self.trade_log is not None:
            self.trade_log.log_swap_start(chain_type, chain.chain_index, request.from_token.symbol,
                                          request.to_token.symbol, request.amount, wallet)

        tx_hash: Optional[str] = None
        try:
            if chain.is_evm and not request.from_token.is_native:
                await self._ensure_allowance(request, signer, wallet, raw_amount, steps, cancel_event)

            swap_tx = await with_retry(
                lambda: self.provider.get_swap_transaction(
                    chain.chain_index,
                    request.from_token.address,
                    request.to_token.address,
                    raw_amount,
                    wallet,
                    request.slippage_percent,
                ),
                self.retry_policy,
                label="swap-transaction",
            )
            self._raise_if_cancelled(cancel_event)
            tx_hash = await signer.sign_and_send(swap_tx)
            steps.append(SwapStep.SUBMITTED)
            log.info("[SWAP][SUBMITTED] chain=%s tx=%s", chain.chain_index, tx_hash)

            steps.append(SwapStep.CONFIRMING)
            await self._await_confirmation(signer, tx_hash, cancel_event)
        except _SwapCancelled:
            log.info("[SWAP][CANCELLED] chain=%s tx=%s", chain.chain_index, tx_hash)
            return SwapOutcome(status=SwapStatus.CANCELLED, tx_hash=tx_hash, step_history=tuple(steps))
        except _StepFailed as failure:
            return self._failure(chain, steps, failure.kind, failure.message, failure.tx_hash or tx_hash,
                                 user_message=failure.message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            classification = classify_error(exc, chain.family)
            log.warning("[SWAP][FAIL] chain=%s kind=%s error=%s", chain.chain_index, classification.kind.value, exc)
            return self._failure(chain, steps, classification.kind, str(exc), tx_hash,
                                 user_message=classification.user_message)

        steps.append(SwapStep.COMPLETED)
        amount_out = self._expected_output(request, swap_tx)
        event = await self._build_event(
            chain=chain,
            tx_hash=tx_hash,
            wallet=wallet,
            from_token=request.from_token,
            amount_in=request.amount,
            to_token=request.to_token,
            amount_out=amount_out,
            slippage=request.slippage_percent,
            signer=signer,
        )
        await self._finish(event, request.from_token, request.to_token, chain, "swap")
        return SwapOutcome(
            status=SwapStatus.COMPLETED,
            tx_hash=tx_hash,
            step_history=tuple(steps),
            amount_out=amount_out,
            event=event,
        )

    async def execute_bridge(
            self,
            route: BridgeRoute,
            *,
            user_address: Optional[str] = None,
            slippage_percent: float = 0.5,
            cancel_event: Optional[asyncio.Event] = None,
    ) -> SwapOutcome:
        """
        Execute a bridge route: source transaction, source confirmation, then transfer status
        polling until the destination leg is DONE or FAILED.
        """
        chain = get_chain_by_index(route.from_chain_index)
        steps: List[SwapStep] = [SwapStep.QUOTED]
        if chain is None:
            return SwapOutcome(status=SwapStatus.FAILED, error_kind=ErrorKind.UNSUPPORTED,
                               error_message=f"Unsupported chain {route.from_chain_index}",
                               step_history=(SwapStep.QUOTED, SwapStep.FAILED))
        bridge = self.bridge_providers.get(route.provider)
        if bridge is None:
            unsupported = classify_error(ExchangeError(f"Bridge provider '{route.provider}' is not available",
                                                       kind=ErrorKind.UNSUPPORTED))
            return self._failure(chain, steps, unsupported.kind, unsupported.user_message)
        signer = self.signers.get(chain.family)
        if signer is None:
            return self._failure(chain, steps, ErrorKind.UNSUPPORTED, f"No signer available for {chain.name}")

        wallet = user_address or signer.address
        human_in = from_smallest_unit(route.from_amount, route.from_token.decimals)
        if self.trade_log is not None:
            self.trade_log.log_swap_start(chain.family.value, chain.chain_index, route.from_token.symbol,
                                          route.to_token.symbol, human_in, wallet)

        tx_hash: Optional[str] = None
        try:
            bridge_tx = await with_retry(
                lambda: bridge.get_step_transaction(route, wallet, slippage_percent),
                self.retry_policy,
                label="bridge-transaction",
            )
            if chain.is_evm and not route.from_token.is_native:
                approval = await with_retry(lambda: bridge.get_bridge_approval(route, bridge_tx), self.retry_policy,
                                            label="bridge-approval")
                await self._approve_if_needed(signer, approval, wallet, route.from_amount, steps, cancel_event)

            self._raise_if_cancelled(cancel_event)
            tx_hash = await signer.sign_and_send(bridge_tx)
            steps.append(SwapStep.SUBMITTED)
            steps.append(SwapStep.CONFIRMING)
            await self._await_confirmation(signer, tx_hash, cancel_event)
            received = await self._await_bridge_transfer(bridge, route, tx_hash, cancel_event)
        except _SwapCancelled:
            log.info("[BRIDGE][CANCELLED] chain=%s tx=%s", chain.chain_index, tx_hash)
            return SwapOutcome(status=SwapStatus.CANCELLED, tx_hash=tx_hash, step_history=tuple(steps))
        except _StepFailed as failure:
            return self._failure(chain, steps, failure.kind, failure.message, failure.tx_hash or tx_hash,
                                 user_message=failure.message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            classification = classify_error(exc, chain.family)
            log.warning("[BRIDGE][FAIL] chain=%s kind=%s error=%s", chain.chain_index, classification.kind.value, exc)
            return self._failure(chain, steps, classification.kind, str(exc), tx_hash,
                                 user_message=classification.user_message)

        steps.append(SwapStep.COMPLETED)
        amount_out = from_smallest_unit(received or route.to_amount, route.to_token.decimals)
        event = await self._build_event(
            chain=chain,
            tx_hash=tx_hash,
            wallet=wallet,
            from_token=route.from_token,
            amount_in=human_in,
            to_token=route.to_token,
            amount_out=amount_out,
            slippage=slippage_percent,
            signer=signer,
        )
        await self._finish(event, route.from_token, route.to_token, chain, "bridge")
        return SwapOutcome(status=SwapStatus.COMPLETED, tx_hash=tx_hash, step_history=tuple(steps),
                           amount_out=amount_out, event=event)

    async def notify_completed(self, event: SwapCompletedEvent) -> bool:
        """
        Send `event` to the sink unless this transaction hash was already notified.

        The hash is claimed before sending; transient delivery errors are retried with the
        coordinator's retry policy, and a delivery that still fails is logged and dropped.
        """
        key = _canonical_hash(event.tx_hash)
        async with self._notify_lock:
            if key in self._notified:
                log.debug("[SWAP][NOTIFY][DUPLICATE] tx=%s", event.tx_hash)
                return False
            self._notified[key] = None
            while len(self._notified) > self._notified_capacity:
                self._notified.popitem(last=False)

        if self.sink is None:
            return True
        try:
            await with_retry(lambda: self.sink.notify_swap_completed(event), self.retry_policy, label="notify")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("[SWAP][NOTIFY][FAIL] tx=%s error=%s", event.tx_hash, exc)
        return True

    @staticmethod
    def _raise_if_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise _SwapCancelled()

    async def _wait(self, seconds: float, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is None:
            await self._sleep(seconds)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise _SwapCancelled()

    async def _ensure_allowance(self, request: SwapRequest, signer: ChainSigner, wallet: str, raw_amount: str,
                                steps: List[SwapStep], cancel_event: Optional[asyncio.Event]) -> None:
        chain_index = request.chain.chain_index
        token_address = request.from_token.address
        approval = await with_retry(
            lambda: self.provider.get_approval_transaction(chain_index, token_address, raw_amount),
            self.retry_policy,
            label="approval",
        )
        await self._approve_if_needed(signer, approval, wallet, raw_amount, steps, cancel_event)

    async def _approve_if_needed(self, signer: ChainSigner, approval: ApprovalTransaction, wallet: str,
                                 raw_amount: str, steps: List[SwapStep],
                                 cancel_event: Optional[asyncio.Event]) -> None:
        allowance = await with_retry(
            lambda: signer.get_allowance(approval.token_address, wallet, approval.spender),
            self.retry_policy,
            label="allowance",
        )
        if compare_amounts(allowance, raw_amount) >= 0:
            log.debug("[SWAP][APPROVAL][SKIP] allowance=%s amount=%s", allowance, raw_amount)
            return

        steps.append(SwapStep.APPROVING)
        self._raise_if_cancelled(cancel_event)
        approval_hash = await signer.sign_and_send(approval)
        log.info("[SWAP][APPROVAL][SUBMITTED] token=%s tx=%s", approval.token_address, approval_hash)
        try:
            await self._await_confirmation(signer, approval_hash, cancel_event)
        except _StepFailed as failure:
            raise _StepFailed(ErrorKind.APPROVAL, f"Token approval failed: {failure.message}") from failure

    async def _await_confirmation(self, signer: ChainSigner, tx_hash: str,
                                  cancel_event: Optional[asyncio.Event]) -> None:
        """
        Poll the receipt until success, failure or the attempt ceiling.

        Raises:
            _StepFailed: the transaction failed on chain or never confirmed in time.
            _SwapCancelled: `cancel_event` was set.
        """
        interval = self.confirmation.interval_seconds
        for attempt in range(self.confirmation.max_attempts):
            self._raise_if_cancelled(cancel_event)
            status = await with_retry(lambda: signer.get_transaction_status(tx_hash), self.retry_policy,
                                      label="confirmation")
            if status is True:
                log.debug("[SWAP][CONFIRMED] tx=%s attempts=%d", tx_hash, attempt + 1)
                return
            if status is False:
                raise _StepFailed(ErrorKind.CHAIN_EXECUTION, TRANSACTION_FAILED_MESSAGE, tx_hash)
            await self._wait(interval, cancel_event)
            interval = self.confirmation.next_interval(interval)

        log.warning("[SWAP][CONFIRMATION][TIMEOUT] tx=%s attempts=%d", tx_hash, self.confirmation.max_attempts)
        timeout = classify_error(ExchangeError("Transaction confirmation timed out", kind=ErrorKind.TIMEOUT))
        raise _StepFailed(timeout.kind, timeout.user_message, tx_hash)

    async def _await_bridge_transfer(self, bridge: BridgeExecutionProvider, route: BridgeRoute, tx_hash: str,
                                     cancel_event: Optional[asyncio.Event]) -> Optional[str]:
        """
        Poll the destination leg once the source transaction is confirmed.

        A status lookup that keeps failing with a transient error counts as still pending;
        the source funds are already committed, so only DONE, FAILED or the attempt ceiling
        end the wait.
        """
        interval = self.confirmation.interval_seconds
        for _ in range(max(1, settings.BRIDGE_STATUS_MAX_ATTEMPTS)):
            self._raise_if_cancelled(cancel_event)
            try:
                status = await with_retry(
                    lambda: bridge.get_status(tx_hash, route.from_chain_index, route.to_chain_index,
                                              route.tool or None),
                    self.retry_policy,
                    label="bridge-status",
                )
            except Exception as exc:
                if not is_transient_error(exc):
                    raise
                log.warning("[BRIDGE][STATUS][RETRY] tx=%s error=%s", tx_hash, exc)
                status = BridgeTransferStatus(state=BridgeTransferState.PENDING)
            if status.state is BridgeTransferState.DONE:
                log.info("[BRIDGE][DONE] tx=%s receiving=%s", tx_hash, status.receiving_tx_hash)
                return status.receiving_amount
            if status.state is BridgeTransferState.FAILED:
                log.warning("[BRIDGE][FAILED] tx=%s substatus=%s", tx_hash, status.substatus)
                raise _StepFailed(ErrorKind.CHAIN_EXECUTION, BRIDGE_FAILED_MESSAGE, tx_hash)
            await self._wait(interval, cancel_event)
            interval = self.confirmation.next_interval(interval)

        timeout = classify_error(ExchangeError("Bridge transfer timed out", kind=ErrorKind.TIMEOUT))
        raise _StepFailed(timeout.kind, timeout.user_message, tx_hash)

    @staticmethod
    def _expected_output(request: SwapRequest, swap_tx: SwapTransaction) -> str:
        quote = swap_tx.router_result or request.quote
        raw_out = quote.to_amount if quote is not None else swap_tx.min_receive_amount
        return from_smallest_unit(raw_out, request.to_token.decimals)

    async def _usd(self, token: Token, human_amount: str) -> Optional[float]:
        price = token.unit_price
        if price is None and self.price_feed is not None:
            price = await self.price_feed.get_price(token.symbol, chain_index=token.chain_index,
                                                    token_address=token.address)
        if price is None:
            return None
        return float(human_amount) * price

    async def _gas_fee(self, signer: ChainSigner, chain: Chain, tx_hash: str) -> Tuple[str, Optional[float]]:
        try:
            fee = await signer.get_transaction_fee(tx_hash)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.debug("[SWAP][GAS] fee lookup failed for tx=%s: %s", tx_hash, exc)
            fee = None
        if fee is None:
            return "0", None
        gas_fee = from_smallest_unit(fee, chain.native_decimals)
        native_price = await self.price_feed.get_price(chain.native_symbol) if self.price_feed is not None else None
        return gas_fee, float(gas_fee) * native_price if native_price is not None else None

    async def _build_event(self, *, chain: Chain, tx_hash: str, wallet: str, from_token: Token, amount_in: str,
                           to_token: Token, amount_out: str, slippage: float,
                           signer: ChainSigner) -> SwapCompletedEvent:
        gas_fee, gas_fee_usd = await self._gas_fee(signer, chain, tx_hash)
        return SwapCompletedEvent(
            tx_hash=tx_hash,
            wallet_address=wallet,
            chain_index=chain.chain_index,
            chain_id=chain.chain_id,
            token_in_symbol=from_token.symbol,
            token_in_address=from_token.address,
            token_in_amount=amount_in,
            token_in_usd=await self._usd(from_token, amount_in),
            token_out_symbol=to_token.symbol,
            token_out_address=to_token.address,
            token_out_amount=amount_out,
            token_out_usd=await self._usd(to_token, amount_out),
            gas_fee=gas_fee,
            gas_fee_usd=gas_fee_usd,
            slippage=slippage,
            explorer_url=chain.transaction_url(tx_hash),
        )

    async def _finish(self, event: SwapCompletedEvent, from_token: Token, to_token: Token, chain: Chain,
                      kind: str) -> None:
        if self.trade_log is not None:
            self.trade_log.log_swap_result(chain.family.value, chain.chain_index, True, event.tx_hash,
                                           data={"amountOut": event.token_out_amount})
        await self.notify_completed(event)
        if self.history is None:
            return
        record = DexTransactionRecord(
            tx_hash=event.tx_hash,
            user_address=event.wallet_address,
            chain_index=chain.chain_index,
            chain_name=chain.name,
            from_token_symbol=from_token.symbol,
            from_token_address=from_token.address,
            from_token_amount=event.token_in_amount,
            to_token_symbol=to_token.symbol,
            to_token_address=to_token.address,
            to_token_amount=event.token_out_amount,
            status="success",
            type=kind,
            from_amount_usd=event.token_in_usd,
            from_token_price=from_token.unit_price,
            from_token_logo=from_token.logo_url,
            to_amount_usd=event.token_out_usd,
            to_token_price=to_token.unit_price,
            to_token_logo=to_token.logo_url,
            explorer_url=event.explorer_url,
            created_at=utc_now(),
        )
        try:
            self.history.record_transaction(record)
        except Exception as exc:
            log.warning("[SWAP][HISTORY][FAIL] tx=%s error=%s", event.tx_hash, exc)

    def _failure(self, chain: Chain, steps: List[SwapStep], kind: ErrorKind, error: str,
                 tx_hash: Optional[str] = None, user_message: Optional[str] = None) -> SwapOutcome:
        message = user_message or error
        steps.append(SwapStep.FAILED)
        if self.trade_log is not None:
            self.trade_log.log_swap_result(chain.family.value, chain.chain_index, False, tx_hash, error=message,
                                           data={"kind": kind.value})
        return SwapOutcome(
            status=SwapStatus.FAILED,
            tx_hash=tx_hash,
            error_kind=kind,
            error_message=message,
            step_history=tuple(steps),
        )
