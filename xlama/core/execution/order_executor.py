from __future__ import annotations

from xlama.core.chains.chain_registry import get_chain_by_index
from xlama.core.execution.swap_execution_coordinator import SwapExecutionCoordinator, SwapRequest
from xlama.core.structures.orders import DCAOrder, ExecutionOutcome, LimitOrder
from xlama.core.structures.structures import Token
from xlama.logging.logger import get_logger

log = get_logger(__name__)


def _token(chain_index: str, address: str, symbol: str, decimals: int) -> Token:
    return Token(address=address, symbol=symbol, name=symbol, decimals=decimals, chain_index=chain_index)


class SwapOrderExecutor:
    """
    Runs limit-order and DCA swaps through the execution coordinator.

    Swaps are signed by the server-side signer of the chain family, so the sending wallet is
    the signer address.
    """

    def __init__(self, coordinator: SwapExecutionCoordinator) -> None:
        self.coordinator = coordinator

    async def execute_limit_order(self, order: LimitOrder) -> ExecutionOutcome:
        return await self._swap(
            order.chain_index,
            _token(order.chain_index, order.from_token_address, order.from_token_symbol, order.from_token_decimals),
            _token(order.chain_index, order.to_token_address, order.to_token_symbol, order.to_token_decimals),
            order.amount,
            order.slippage,
        )

    async def execute_dca_interval(self, order: DCAOrder) -> ExecutionOutcome:
        return await self._swap(
            order.chain_index,
            _token(order.chain_index, order.from_token_address, order.from_token_symbol, order.from_token_decimals),
            _token(order.chain_index, order.to_token_address, order.to_token_symbol, order.to_token_decimals),
            order.amount_per_interval,
            order.slippage,
        )

    async def _swap(self, chain_index: str, from_token: Token, to_token: Token, amount: str,
                    slippage: float) -> ExecutionOutcome:
        chain = get_chain_by_index(chain_index)
        if chain is None:
            return ExecutionOutcome(success=False, error=f"Unsupported chain {chain_index}")

        outcome = await self.coordinator.execute(
            SwapRequest(
                chain=chain,
                from_token=from_token,
                to_token=to_token,
                amount=amount,
                slippage_percent=slippage,
            )
        )
        if not outcome.succeeded:
            return ExecutionOutcome(success=False, tx_hash=outcome.tx_hash,
                                    error=outcome.error_message or outcome.status.value)
        log.info("[ORDERS][EXECUTOR] swapped %s %s -> %s %s tx=%s", amount, from_token.symbol, outcome.amount_out,
                 to_token.symbol, outcome.tx_hash)
        return ExecutionOutcome(
            success=True,
            tx_hash=outcome.tx_hash,
            amount_in=float(amount),
            amount_out=float(outcome.amount_out or 0),
        )
