from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass
from typing import Optional

import base58
from solana.rpc.api import Client
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from xlama.configuration.config import settings
from xlama.core.onchain.signer_protocol import TransactionPayload
from xlama.core.structures.structures import ApprovalTransaction, ChainFamily
from xlama.logging.logger import get_logger

log = get_logger(__name__)

_CONFIRMED_STATUSES = ("confirmed", "finalized")


@dataclass(frozen=True)
class SolanaSignerConfig:
    rpc_url: str
    secret_key_base58: str


def decode_serialized_transaction(raw: str) -> bytes:
    """
    Decode a serialized transaction blob. Aggregators return base58; bridges usually base64.

    Raises:
        ValueError: the blob is empty or neither base64 nor base58.
    """
    if not raw:
        raise ValueError("Serialized transaction payload is empty.")
    try:
        decoded = base64.b64decode(raw, validate=True)
        if decoded:
            return decoded
    except (binascii.Error, ValueError):
        log.debug("[SOLANA][SIGNER] Payload is not base64, trying base58.")
    decoded = base58.b58decode(raw)
    if not decoded:
        raise ValueError("Serialized transaction payload decodes to nothing.")
    return decoded


class SolanaSigner:
    """
    Signs and broadcasts Solana versioned transactions built by the aggregator.

    Blocking RPC calls run in a worker thread.
    """

    family = ChainFamily.SOLANA

    def __init__(self, config: SolanaSignerConfig, client: Optional[Client] = None) -> None:
        if not config.secret_key_base58:
            raise ValueError("Solana signer requires a base58 secret key (SOLANA_SECRET_KEY_BASE58).")
        if client is None:
            if not config.rpc_url:
                raise ValueError("Solana signer requires an RPC URL (SOLANA_RPC_URL).")
            client = Client(config.rpc_url, timeout=30)
        self.client = client
        self.keypair = Keypair.from_bytes(base58.b58decode(config.secret_key_base58))
        log.info("[SOLANA][SIGNER] Initialized. Address=%s", self.keypair.pubkey())

    @property
    def address(self) -> str:
        return str(self.keypair.pubkey())

    def _sign(self, raw_bytes: bytes) -> bytes:
        try:
            unsigned = VersionedTransaction.from_bytes(raw_bytes)
        except ValueError as exc:
            raise ValueError(f"Payload is not a valid VersionedTransaction: {exc}") from exc
        signed = VersionedTransaction(unsigned.message, [self.keypair])
        return bytes(signed)

    def _send_blocking(self, payload: TransactionPayload) -> str:
        if isinstance(payload, ApprovalTransaction):
            raise ValueError("Solana swaps do not use token approvals.")
        signed_payload = self._sign(decode_serialized_transaction(payload.data))
        response = self.client.send_raw_transaction(
            signed_payload,
            opts=TxOpts(skip_preflight=True, max_retries=5, preflight_commitment="processed"),
        )
        signature = str(response.value)
        log.info("[SOLANA][SIGNER] Broadcasted signature %s", signature)
        return signature

    async def sign_and_send(self, payload: TransactionPayload) -> str:
        return await asyncio.to_thread(self._send_blocking, payload)

    async def sign_message(self, message: str) -> str:
        return str(self.keypair.sign_message(message.encode("utf-8")))

    def _status_blocking(self, tx_hash: str) -> Optional[bool]:
        response = self.client.get_signature_statuses([Signature.from_string(tx_hash)])
        status = response.value[0] if response.value else None
        if status is None:
            return None
        if status.err is not None:
            return False
        confirmation = str(status.confirmation_status or "").lower()
        return True if any(level in confirmation for level in _CONFIRMED_STATUSES) else None

    async def get_transaction_status(self, tx_hash: str) -> Optional[bool]:
        return await asyncio.to_thread(self._status_blocking, tx_hash)

    def _fee_blocking(self, tx_hash: str) -> Optional[int]:
        response = self.client.get_transaction(Signature.from_string(tx_hash), max_supported_transaction_version=0)
        if response.value is None or response.value.transaction.meta is None:
            return None
        return int(response.value.transaction.meta.fee)

    async def get_transaction_fee(self, tx_hash: str) -> Optional[int]:
        """Fee paid in lamports, None while the transaction is unknown."""
        return await asyncio.to_thread(self._fee_blocking, tx_hash)

    async def get_allowance(self, token_address: str, owner: str, spender: str) -> int:
        raise NotImplementedError("Token allowances only exist on EVM chains.")


def build_default_solana_signer() -> SolanaSigner:
    """Signer for the keypair in SOLANA_SECRET_KEY_BASE58."""
    config = SolanaSignerConfig(
        rpc_url=settings.SOLANA_RPC_URL,
        secret_key_base58=settings.SOLANA_SECRET_KEY_BASE58,
    )
    return SolanaSigner(config)
