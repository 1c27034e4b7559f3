from __future__ import annotations

"""
EVM signer built on an eth-account HD wallet.

- Account derived at m/44'/60'/0'/0/{index}.
- EIP-1559 transactions with dynamic fees.
- Blocking web3 calls run in a worker thread so the event loop keeps serving.
- Secrets and raw calldata are never logged.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import TransactionNotFound
from web3.types import TxParams

from xlama.configuration.config import settings
from xlama.core.onchain.signer_protocol import TransactionPayload
from xlama.core.structures.structures import ApprovalTransaction, ChainFamily
from xlama.logging.logger import get_logger

log = get_logger(__name__)

# allowance(address,address)
ALLOWANCE_SELECTOR = "0xdd62ed3e"
# approve(address,uint256)
APPROVE_SELECTOR = "0x095ea7b3"
FALLBACK_GAS_LIMIT = 400_000


@dataclass(frozen=True)
class EvmSignerConfig:
    rpc_url: str
    mnemonic: str
    derivation_index: int = 0


def encode_allowance_call(owner: str, spender: str) -> str:
    """Calldata for ERC-20 `allowance(owner, spender)`."""
    owner_word = owner.lower().removeprefix("0x").rjust(64, "0")
    spender_word = spender.lower().removeprefix("0x").rjust(64, "0")
    return f"{ALLOWANCE_SELECTOR}{owner_word}{spender_word}"


def encode_approve_call(spender: str, amount: int) -> str:
    """Calldata for ERC-20 `approve(spender, amount)`."""
    spender_word = spender.lower().removeprefix("0x").rjust(64, "0")
    return f"{APPROVE_SELECTOR}{spender_word}{amount:064x}"


class EvmSigner:
    """Sign and broadcast EVM transactions for the server-side order executor."""

    family = ChainFamily.EVM

    def __init__(self, config: EvmSignerConfig, web3: Optional[Web3] = None) -> None:
        if not config.mnemonic:
            raise ValueError("EVM signer requires a mnemonic (set EVM_MNEMONIC).")
        if web3 is None:
            if not config.rpc_url:
                raise ValueError("EVM signer requires an RPC URL (set EVM_RPC_URL).")
            web3 = Web3(Web3.HTTPProvider(config.rpc_url, request_kwargs={"timeout": 30}))
        self.web3 = web3

        Account.enable_unaudited_hdwallet_features()
        account_path = f"m/44'/60'/0'/0/{config.derivation_index}"
        self.account: LocalAccount = Account.from_mnemonic(config.mnemonic, account_path=account_path)
        log.info("[EVM][SIGNER] Initialized. Address=%s", self.account.address)

    @property
    def address(self) -> str:
        return self.account.address

    def _build_eip1559(self, to: str, data: str, value_wei: int, gas_limit: Optional[int]) -> TxParams:
        latest = self.web3.eth.get_block("latest")
        base_fee = int(latest.get("baseFeePerGas") or 0)
        try:
            max_priority = int(self.web3.eth.max_priority_fee)
        except Exception as exc:
            log.debug("[EVM][SIGNER] Priority fee suggestion unavailable (%s); using 1 gwei.", exc)
            max_priority = int(Web3.to_wei(1, "gwei"))

        tx: TxParams = {
            "chainId": self.web3.eth.chain_id,
            "type": 2,
            "nonce": self.web3.eth.get_transaction_count(self.address),
            "to": Web3.to_checksum_address(to),
            "data": data,
            "value": int(value_wei or 0),
            "maxPriorityFeePerGas": max_priority,
            "maxFeePerGas": base_fee * 2 + max_priority,
        }
        if gas_limit:
            tx["gas"] = int(gas_limit)
        else:
            try:
                tx["gas"] = int(self.web3.eth.estimate_gas(
                    {"from": self.address, "to": tx["to"], "data": data, "value": tx["value"]}))
            except Exception as exc:
                log.warning("[EVM][SIGNER] Gas estimation failed (%s); using static headroom.", exc)
                tx["gas"] = FALLBACK_GAS_LIMIT
        log.debug("[EVM][SIGNER] Tx built: nonce=%s gas=%s maxFeePerGas=%s", tx["nonce"], tx["gas"],
                  tx["maxFeePerGas"])
        return tx

    def _send_blocking(self, payload: TransactionPayload) -> str:
        if isinstance(payload, ApprovalTransaction):
            to, data, value, gas_limit = payload.token_address, payload.data, 0, payload.gas_limit
        else:
            to, data, value, gas_limit = payload.to, payload.data, payload.value, payload.gas_limit
        if not to or not data:
            raise ValueError("EVM transaction requires 'to' and 'data'.")

        tx = self._build_eip1559(to=to, data=data, value_wei=value, gas_limit=gas_limit)
        signed = self.account.sign_transaction(tx)
        tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
        hex_hash = Web3.to_hex(tx_hash)
        log.info("[EVM][SIGNER] Broadcasted transaction %s", hex_hash)
        return hex_hash

    async def sign_and_send(self, payload: TransactionPayload) -> str:
        return await asyncio.to_thread(self._send_blocking, payload)

    async def sign_message(self, message: str) -> str:
        signed = self.account.sign_message(encode_defunct(text=message))
        return Web3.to_hex(signed.signature)

    def _receipt(self, tx_hash: str):
        try:
            return self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    async def get_transaction_status(self, tx_hash: str) -> Optional[bool]:
        receipt = await asyncio.to_thread(self._receipt, tx_hash)
        if receipt is None:
            return None
        return int(receipt.get("status", 0)) == 1

    async def get_transaction_fee(self, tx_hash: str) -> Optional[int]:
        """Fee paid in wei (gas used × effective gas price), None while pending."""
        receipt = await asyncio.to_thread(self._receipt, tx_hash)
        if receipt is None:
            return None
        return int(receipt.get("gasUsed", 0)) * int(receipt.get("effectiveGasPrice", 0))

    async def get_allowance(self, token_address: str, owner: str, spender: str) -> int:
        call = {"to": Web3.to_checksum_address(token_address), "data": encode_allowance_call(owner, spender)}
        raw = await asyncio.to_thread(self.web3.eth.call, call)
        return int.from_bytes(bytes(raw), "big") if raw else 0


def build_default_evm_signer() -> EvmSigner:
    """Signer for the server wallet configured through EVM_RPC_URL and EVM_MNEMONIC."""
    config = EvmSignerConfig(
        rpc_url=settings.EVM_RPC_URL,
        mnemonic=settings.EVM_MNEMONIC,
        derivation_index=settings.EVM_DERIVATION_INDEX,
    )
    return EvmSigner(config)
