from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

from xlama.core.utils.amount_utils import is_positive_amount
from xlama.core.utils.dict_utils import (
    JSON,
    _read_list,
    _read_optional_str,
    _read_path,
    _read_str,
    _to_float_or_zero,
    _to_int_or_zero,
    _to_optional_float,
)

EVM_NATIVE_TOKEN_PLACEHOLDER: str = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"
EVM_NATIVE_TOKEN_ZERO_ADDRESS: str = "0x0000000000000000000000000000000000000000"

NATIVE_TOKEN_ADDRESSES_BY_CHAIN: Dict[str, str] = {
    "501": "So11111111111111111111111111111111111111112",
    "195": "T9yD14Nj9j7xAB4dbGeiX9h8unkKHxuWwb",
    "784": "0x2::sui::SUI",
    "607": "EQAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAM9c",
}


class ChainFamily(Enum):
    EVM = "evm"
    SOLANA = "solana"
    SUI = "sui"
    TRON = "tron"
    TON = "ton"


def is_native_token_address(address: str, chain_index: str = "") -> bool:
    lowered = (address or "").strip().lower()
    if lowered in (EVM_NATIVE_TOKEN_PLACEHOLDER, EVM_NATIVE_TOKEN_ZERO_ADDRESS):
        return True
    native = NATIVE_TOKEN_ADDRESSES_BY_CHAIN.get(chain_index)
    return native is not None and native.lower() == lowered


@dataclass(frozen=True)
class Chain:
    """
    Static chain descriptor from the registry.

    Attributes:
        chain_index: Aggregator chain index ("1", "501", ...); the canonical key.
        chain_id: EVM chain id, None for non-EVM families.
        family: Wallet/transaction model of the chain.
    """
    chain_index: str
    chain_id: Optional[int]
    name: str
    short_name: str
    native_symbol: str
    native_name: str
    native_decimals: int
    family: ChainFamily
    rpc_urls: Tuple[str, ...]
    explorer_url: str
    is_primary: bool = False

    @property
    def is_evm(self) -> bool:
        return self.family is ChainFamily.EVM

    def transaction_url(self, tx_hash: str) -> str:
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_hash}"


@dataclass(frozen=True)
class Token:
    address: str
    symbol: str
    name: str
    decimals: int
    chain_index: str
    logo_url: Optional[str] = None
    unit_price: Optional[float] = None

    @property
    def is_native(self) -> bool:
        return is_native_token_address(self.address, self.chain_index)

    def __str__(self) -> str:
        tail = self.address[-6:] if len(self.address) > 6 else self.address
        return f"[symbol={self.symbol} chain={self.chain_index} address=…{tail}]"

    @staticmethod
    def from_okx_json(payload: Mapping[str, JSON], chain_index: str = "") -> "Token":
        decimals = _to_int_or_zero(_read_path(payload, ("decimal",)))
        if decimals == 0:
            decimals = _to_int_or_zero(_read_path(payload, ("decimals",)))
        return Token(
            address=_read_str(payload, ("tokenContractAddress",)),
            symbol=_read_str(payload, ("tokenSymbol",)),
            name=_read_str(payload, ("tokenName",)),
            decimals=decimals,
            chain_index=_read_str(payload, ("chainIndex",)) or chain_index,
            logo_url=_read_optional_str(payload, ("tokenLogoUrl",)),
            unit_price=_to_optional_float(_read_path(payload, ("tokenUnitPrice",))),
        )


@dataclass(frozen=True)
class DexComparison:
    """One venue of a provider's quote-compare list (`receive_amount` is a human amount)."""
    dex_name: str
    dex_logo: str
    trade_fee_usd: float
    receive_amount: str

    @staticmethod
    def from_json(payload: Mapping[str, JSON]) -> "DexComparison":
        return DexComparison(
            dex_name=_read_str(payload, ("dexName",)),
            dex_logo=_read_str(payload, ("dexLogo",)),
            trade_fee_usd=_to_float_or_zero(_read_path(payload, ("tradeFee",))),
            receive_amount=_read_str(payload, ("receiveAmount",), "0"),
        )


@dataclass(frozen=True)
class SubRoute:
    dex_name: str
    percentage: float
    from_symbol: str
    to_symbol: str


@dataclass(frozen=True)
class Quote:
    """
    Provider quote, amounts in smallest units.

    Missing numeric fields are normalized to zero, except the price impact which stays None
    when the provider does not report it.
    """
    chain_index: str
    from_token: Token
    to_token: Token
    from_amount: str
    to_amount: str
    estimated_gas: int
    price_impact_percent: Optional[float]
    trade_fee_usd: float
    comparisons: Tuple[DexComparison, ...] = ()
    sub_routes: Tuple[SubRoute, ...] = ()
    provider: str = "okx"

    @staticmethod
    def from_okx_json(payload: Mapping[str, JSON], chain_index: str) -> "Quote":
        from_token_json = _read_path(payload, ("fromToken",))
        to_token_json = _read_path(payload, ("toToken",))

        comparisons = tuple(
            DexComparison.from_json(item)
            for item in _read_list(payload, ("quoteCompareList",))
            if isinstance(item, Mapping)
        )

        sub_routes = []
        # Aggregated shape: routerResult.routes[].subRoutes[]
        for route in _read_list(payload, ("routerResult", "routes")):
            percentage = _to_float_or_zero(_read_path(route, ("percentage",)))
            for sub in _read_list(route, ("subRoutes",)):
                sub_routes.append(
                    SubRoute(
                        dex_name=_read_str(sub, ("dexName",)),
                        percentage=percentage,
                        from_symbol=_read_str(sub, ("fromToken", "tokenSymbol")),
                        to_symbol=_read_str(sub, ("toToken", "tokenSymbol")),
                    )
                )
        # Raw aggregator shape: dexRouterList[].subRouterList[].dexProtocol[]
        for route in _read_list(payload, ("dexRouterList",)):
            percentage = _to_float_or_zero(_read_path(route, ("routerPercent",)))
            for sub in _read_list(route, ("subRouterList",)):
                for protocol in _read_list(sub, ("dexProtocol",)):
                    sub_routes.append(
                        SubRoute(
                            dex_name=_read_str(protocol, ("dexName",)),
                            percentage=_to_float_or_zero(_read_path(protocol, ("percent",))) or percentage,
                            from_symbol=_read_str(sub, ("fromToken", "tokenSymbol")),
                            to_symbol=_read_str(sub, ("toToken", "tokenSymbol")),
                        )
                    )

        impact = _read_path(payload, ("priceImpactPercentage",))
        if impact is None:
            impact = _read_path(payload, ("priceImpactPercent",))

        return Quote(
            chain_index=chain_index,
            from_token=Token.from_okx_json(from_token_json if isinstance(from_token_json, Mapping) else {}, chain_index),
            to_token=Token.from_okx_json(to_token_json if isinstance(to_token_json, Mapping) else {}, chain_index),
            from_amount=_read_str(payload, ("fromTokenAmount",), "0"),
            to_amount=_read_str(payload, ("toTokenAmount",), "0"),
            estimated_gas=_to_int_or_zero(_read_path(payload, ("estimateGasFee",))),
            price_impact_percent=_to_optional_float(impact),
            trade_fee_usd=_to_float_or_zero(_read_path(payload, ("tradeFee",))),
            comparisons=comparisons,
            sub_routes=tuple(sub_routes),
            provider="okx",
        )


@dataclass(frozen=True)
class SwapTransaction:
    """
    Transaction payload returned by the aggregator swap endpoint.

    EVM flows use `to`/`data`/`value`; Solana and other non-EVM flows carry the serialized
    transaction in `data`.
    """
    chain_index: str
    from_address: str
    to: str
    data: str
    value: int
    gas_limit: Optional[int]
    gas_price: Optional[int]
    min_receive_amount: str
    router_result: Optional[Quote] = None

    @staticmethod
    def from_okx_json(payload: Mapping[str, JSON], chain_index: str) -> "SwapTransaction":
        tx = _read_path(payload, ("tx",))
        tx_node = tx if isinstance(tx, Mapping) else {}
        router = _read_path(payload, ("routerResult",))
        gas = _to_int_or_zero(_read_path(tx_node, ("gas",)))
        gas_price = _to_int_or_zero(_read_path(tx_node, ("gasPrice",)))
        return SwapTransaction(
            chain_index=chain_index,
            from_address=_read_str(tx_node, ("from",)),
            to=_read_str(tx_node, ("to",)),
            data=_read_str(tx_node, ("data",)),
            value=_to_int_or_zero(_read_path(tx_node, ("value",))),
            gas_limit=gas or None,
            gas_price=gas_price or None,
            min_receive_amount=_read_str(tx_node, ("minReceiveAmount",), "0"),
            router_result=Quote.from_okx_json(router, chain_index) if isinstance(router, Mapping) else None,
        )


@dataclass(frozen=True)
class ApprovalTransaction:
    token_address: str
    spender: str
    data: str
    gas_limit: Optional[int]
    gas_price: Optional[int]

    @staticmethod
    def from_okx_json(payload: Mapping[str, JSON], token_address: str) -> "ApprovalTransaction":
        gas = _to_int_or_zero(_read_path(payload, ("gasLimit",)))
        gas_price = _to_int_or_zero(_read_path(payload, ("gasPrice",)))
        return ApprovalTransaction(
            token_address=token_address,
            spender=_read_str(payload, ("dexContractAddress",)),
            data=_read_str(payload, ("data",)),
            gas_limit=gas or None,
            gas_price=gas_price or None,
        )


@dataclass(frozen=True)
class BridgeStep:
    type: str
    tool: str
    tool_name: str
    logo_url: str


@dataclass(frozen=True)
class BridgeRoute:
    """
    Cross-chain route from the bridge provider. `raw` keeps the full step payload, which
    the provider needs back to build the executable transaction.
    """
    provider: str
    tool: str
    from_chain_index: str
    to_chain_index: str
    from_token: Token
    to_token: Token
    from_amount: str
    to_amount: str
    to_amount_min: str
    gas_cost_usd: float
    fee_cost_usd: float
    estimated_duration_seconds: int
    steps: Tuple[BridgeStep, ...] = ()
    transaction_request: Optional[Mapping[str, JSON]] = None
    raw: Mapping[str, JSON] = field(default_factory=dict)


class BridgeTransferState(Enum):
    PENDING = "PENDING"
    DONE = "DONE"
    FAILED = "FAILED"
    NOT_FOUND = "NOT_FOUND"


# OKX cross-chain order states; anything else is still in flight
_OKX_TRANSFER_STATES: Dict[str, BridgeTransferState] = {
    "SUCCESS": BridgeTransferState.DONE,
    "FAILURE": BridgeTransferState.FAILED,
    "REFUND": BridgeTransferState.FAILED,
}


@dataclass(frozen=True)
class BridgeTransferStatus:
    """Destination leg of a bridge transfer; `receiving_tx_hash` is set once it landed."""
    state: BridgeTransferState
    substatus: Optional[str] = None
    receiving_tx_hash: Optional[str] = None
    receiving_amount: Optional[str] = None

    @staticmethod
    def from_lifi_json(payload: Mapping[str, JSON]) -> "BridgeTransferStatus":
        raw_state = _read_str(payload, ("status",), BridgeTransferState.NOT_FOUND.value).upper()
        try:
            state = BridgeTransferState(raw_state)
        except ValueError:
            state = BridgeTransferState.PENDING
        return BridgeTransferStatus(
            state=state,
            substatus=_read_optional_str(payload, ("substatus",)),
            receiving_tx_hash=_read_optional_str(payload, ("receiving", "txHash")),
            receiving_amount=_read_optional_str(payload, ("receiving", "amount")),
        )

    @staticmethod
    def from_okx_json(payload: Mapping[str, JSON]) -> "BridgeTransferStatus":
        raw_state = _read_str(payload, ("status",)).upper()
        return BridgeTransferStatus(
            state=_OKX_TRANSFER_STATES.get(raw_state, BridgeTransferState.PENDING),
            substatus=_read_optional_str(payload, ("detailStatus",)),
            receiving_tx_hash=_read_optional_str(payload, ("toTxHash",)),
            receiving_amount=_read_optional_str(payload, ("toAmount",)),
        )


@dataclass(frozen=True)
class QuoteRequest:
    """
    User trade intent. `amount` is the human-entered string; it is converted with string
    arithmetic, never through floats.
    """
    chain: Optional[Chain]
    from_token: Optional[Token]
    to_token: Optional[Token]
    amount: str
    slippage_percent: float = 0.5
    enabled: bool = True
    auto_slippage: bool = False
    user_address: Optional[str] = None
    to_chain: Optional[Chain] = None

    @property
    def key(self) -> str:
        """Logical key for superseding: one live quote per wallet session and pair."""
        chain_index = self.chain.chain_index if self.chain else ""
        to_chain_index = self.to_chain.chain_index if self.to_chain else chain_index
        from_address = self.from_token.address.lower() if self.from_token else ""
        to_address = self.to_token.address.lower() if self.to_token else ""
        return f"{chain_index}:{from_address}->{to_chain_index}:{to_address}"

    @property
    def is_quotable(self) -> bool:
        if not self.enabled or self.chain is None or self.from_token is None or self.to_token is None:
            return False
        return is_positive_amount(self.amount)


@dataclass(frozen=True)
class TokenPricePoint:
    price: float
    change_24h: Optional[float] = None


def decimal_or_zero(value: object) -> Decimal:
    """Lenient Decimal parse for provider numbers; anything unparseable is zero."""
    if isinstance(value, bool) or value is None:
        return Decimal(0)
    if isinstance(value, Decimal):
        return value if value.is_finite() else Decimal(0)
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return Decimal(0)
    return parsed if parsed.is_finite() else Decimal(0)


@dataclass(frozen=True)
class SwapCompletedEvent:
    """Payload emitted once per transaction hash when a swap reaches terminal success."""
    tx_hash: str
    wallet_address: str
    chain_index: str
    chain_id: Optional[int]
    token_in_symbol: str
    token_in_address: str
    token_in_amount: str
    token_in_usd: Optional[float]
    token_out_symbol: str
    token_out_address: str
    token_out_amount: str
    token_out_usd: Optional[float]
    gas_fee: str
    gas_fee_usd: Optional[float]
    slippage: float
    status: str = "success"
    explorer_url: Optional[str] = None

    def to_payload(self) -> Dict[str, object]:
        return {
            "tx_hash": self.tx_hash,
            "wallet_address": self.wallet_address,
            "chain_index": self.chain_index,
            "chain_id": self.chain_id,
            "token_in_symbol": self.token_in_symbol,
            "token_in_address": self.token_in_address,
            "token_in_amount": self.token_in_amount,
            "token_in_usd_value": self.token_in_usd,
            "token_out_symbol": self.token_out_symbol,
            "token_out_address": self.token_out_address,
            "token_out_amount": self.token_out_amount,
            "token_out_usd_value": self.token_out_usd,
            "gas_fee": self.gas_fee,
            "gas_fee_usd": self.gas_fee_usd,
            "slippage": self.slippage,
            "status": self.status,
            "explorer_url": self.explorer_url,
        }


@dataclass(frozen=True)
class DexTransactionRecord:
    """Swap history row; unique per (tx_hash, user_address)."""
    tx_hash: str
    user_address: str
    chain_index: str
    chain_name: str
    from_token_symbol: str
    from_token_address: str
    from_token_amount: str
    to_token_symbol: str
    to_token_address: str
    to_token_amount: str
    status: str
    type: str = "swap"
    from_amount_usd: Optional[float] = None
    from_token_price: Optional[float] = None
    from_token_logo: Optional[str] = None
    to_amount_usd: Optional[float] = None
    to_token_price: Optional[float] = None
    to_token_logo: Optional[str] = None
    explorer_url: Optional[str] = None
    created_at: Optional[datetime] = None
