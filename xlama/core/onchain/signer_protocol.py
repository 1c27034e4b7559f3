from __future__ import annotations

from typing import Mapping, Optional, Protocol, Union, runtime_checkable

from xlama.core.structures.structures import ApprovalTransaction, ChainFamily, SwapTransaction

TransactionPayload = Union[SwapTransaction, ApprovalTransaction]


@runtime_checkable
class ChainSigner(Protocol):
    """
    Wallet capability for one chain family.

    `get_transaction_status` returns None while the transaction is pending, True once it
    succeeded and False when it was mined but failed.
    """

    family: ChainFamily

    @property
    def address(self) -> str:
        ...

    async def sign_and_send(self, payload: TransactionPayload) -> str:
        ...

    async def sign_message(self, message: str) -> str:
        ...

    async def get_transaction_status(self, tx_hash: str) -> Optional[bool]:
        ...

    async def get_transaction_fee(self, tx_hash: str) -> Optional[int]:
        ...

    async def get_allowance(self, token_address: str, owner: str, spender: str) -> int:
        ...


SignerRegistry = Mapping[ChainFamily, ChainSigner]
