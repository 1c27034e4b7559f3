from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

from xlama.core.structures.structures import ChainFamily

GENERIC_UNEXPECTED_MESSAGE = "An unexpected error occurred. Please try again."
GENERIC_FAILURE_MESSAGE = "Something went wrong. Please try again later."
NETWORK_MESSAGE = "Unable to connect to the server. Please check your internet connection and try again."
TIMEOUT_MESSAGE = "The request took too long. Please try again."
RATE_LIMIT_MESSAGE = "Too many requests. Please wait a moment and try again."
USER_REJECTED_MESSAGE = "Transaction was cancelled in your wallet."
PASSTHROUGH_MAX_LENGTH = 100

TRANSIENT_KEYWORDS = ("failed to send", "network", "timeout", "fetch", "connection", "econnreset", "socket")

_MINIMUM_AMOUNT = re.compile(r"minimum[:\s]+([0-9.]+)", re.IGNORECASE)


class ErrorKind(Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    USER_REJECTED = "user_rejected"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INSUFFICIENT_LIQUIDITY = "insufficient_liquidity"
    PRICE_IMPACT = "price_impact"
    NO_ROUTE = "no_route"
    AMOUNT_TOO_LOW = "amount_too_low"
    UNSUPPORTED = "unsupported"
    APPROVAL = "approval"
    CHAIN_EXECUTION = "chain_execution"
    PAIR_INACTIVE = "pair_inactive"
    UNKNOWN = "unknown"


class ExchangeError(Exception):
    """Base error of the exchange core, already classified."""

    def __init__(
            self,
            message: str,
            kind: ErrorKind = ErrorKind.UNKNOWN,
            chain_family: Optional[ChainFamily] = None,
            code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.chain_family = chain_family
        self.code = code


class ProviderError(ExchangeError):
    """Envelope-level error returned by a remote provider (HTTP 200 with an error code)."""

    def __init__(self, provider: str, message: str, code: Optional[str] = None,
                 kind: ErrorKind = ErrorKind.UNKNOWN) -> None:
        super().__init__(message, kind=kind, code=code)
        self.provider = provider


class InvalidOrderTransition(ValueError):
    """Raised when an order status change is not allowed by the lifecycle rules."""


@dataclass(frozen=True)
class ErrorClassification:
    kind: ErrorKind
    chain_family: Optional[ChainFamily]
    user_message: str
    retryable: bool


# Kinds whose message was written for the user by the provider adapter
_PROVIDER_CLASSIFIED_KINDS = (
    ErrorKind.NO_ROUTE,
    ErrorKind.AMOUNT_TOO_LOW,
    ErrorKind.INSUFFICIENT_LIQUIDITY,
    ErrorKind.UNSUPPORTED,
    ErrorKind.PAIR_INACTIVE,
)

_SOLANA_KEYWORDS = ("solana", "phantom", "lamports", "blockhash", "spl token", "sol balance")
_TRON_KEYWORDS = ("tron", "tronlink", "energy", "bandwidth", "trx balance")
_SUI_PATTERN = re.compile(r"\bsui\b")
_TON_PATTERN = re.compile(r"\bton\b|tonconnect|tonkeeper")


def _error_message(error: BaseException) -> str:
    if isinstance(error, ExchangeError):
        return error.message
    message = str(error)
    if not message and isinstance(error, httpx.TimeoutException):
        return "timeout"
    return message


def _error_code(error: BaseException) -> Optional[str]:
    if isinstance(error, ExchangeError) and error.code is not None:
        return str(error.code)
    if isinstance(error, httpx.HTTPStatusError):
        return str(error.response.status_code)
    code = getattr(error, "code", None)
    return str(code) if code is not None else None


def _detect_chain_family(lowered: str, explicit: Optional[ChainFamily]) -> Optional[ChainFamily]:
    if explicit is not None and explicit is not ChainFamily.EVM:
        return explicit
    if any(keyword in lowered for keyword in _SOLANA_KEYWORDS):
        return ChainFamily.SOLANA
    if any(keyword in lowered for keyword in _TRON_KEYWORDS):
        return ChainFamily.TRON
    if _SUI_PATTERN.search(lowered):
        return ChainFamily.SUI
    if _TON_PATTERN.search(lowered):
        return ChainFamily.TON
    return None


def _classify_chain_family(family: ChainFamily, lowered: str) -> ErrorClassification:
    insufficient = "insufficient" in lowered or "not enough" in lowered
    if family is ChainFamily.SOLANA:
        if insufficient or "lamports" in lowered:
            return ErrorClassification(ErrorKind.INSUFFICIENT_FUNDS, family,
                                       "Insufficient SOL balance to cover the swap and network fees.", False)
        if "blockhash" in lowered:
            return ErrorClassification(ErrorKind.CHAIN_EXECUTION, family,
                                       "The Solana transaction expired before confirmation. Please try again.", True)
        return ErrorClassification(ErrorKind.CHAIN_EXECUTION, family,
                                   "The Solana transaction could not be completed. Please try again.", False)
    if family is ChainFamily.TRON:
        if "energy" in lowered or "bandwidth" in lowered:
            return ErrorClassification(ErrorKind.INSUFFICIENT_FUNDS, family,
                                       "Not enough Tron energy or bandwidth. Add TRX to cover resources and try again.",
                                       False)
        if insufficient:
            return ErrorClassification(ErrorKind.INSUFFICIENT_FUNDS, family,
                                       "Insufficient TRX balance to cover the swap and network fees.", False)
        return ErrorClassification(ErrorKind.CHAIN_EXECUTION, family,
                                   "The Tron transaction could not be completed. Please try again.", False)
    if family is ChainFamily.SUI:
        if insufficient or "gas" in lowered:
            return ErrorClassification(ErrorKind.INSUFFICIENT_FUNDS, family,
                                       "Insufficient SUI balance to cover the swap and gas.", False)
        return ErrorClassification(ErrorKind.CHAIN_EXECUTION, family,
                                   "The Sui transaction could not be completed. Please try again.", False)
    if insufficient:
        return ErrorClassification(ErrorKind.INSUFFICIENT_FUNDS, family,
                                   "Insufficient TON balance to cover the swap and network fees.", False)
    return ErrorClassification(ErrorKind.CHAIN_EXECUTION, family,
                               "The TON transaction could not be completed. Please try again.", False)


def _classify_explicit_kind(error: ExchangeError) -> Optional[ErrorClassification]:
    """Kinds set at raise time win over message matching."""
    kind = error.kind
    if kind is ErrorKind.NETWORK:
        return ErrorClassification(kind, error.chain_family, NETWORK_MESSAGE, True)
    if kind is ErrorKind.TIMEOUT:
        return ErrorClassification(kind, error.chain_family, TIMEOUT_MESSAGE, True)
    if kind is ErrorKind.RATE_LIMITED:
        return ErrorClassification(kind, error.chain_family, RATE_LIMIT_MESSAGE, False)
    if kind in _PROVIDER_CLASSIFIED_KINDS and error.message:
        return ErrorClassification(kind, error.chain_family, error.message, False)
    return None


def classify_error(error: object, chain_family: Optional[ChainFamily] = None) -> ErrorClassification:
    """
    Map any failure to an ErrorKind and a user-facing message.

    Checks run in a fixed order; the first match wins. Chain-family specific messages are
    checked before generic EVM ones so a Solana failure mentioning "allowance" still gets
    the Solana message.
    """
    if not isinstance(error, BaseException):
        return ErrorClassification(ErrorKind.UNKNOWN, chain_family, GENERIC_UNEXPECTED_MESSAGE, False)

    if isinstance(error, ExchangeError):
        explicit = _classify_explicit_kind(error)
        if explicit is not None:
            return explicit
        chain_family = chain_family or error.chain_family

    message = _error_message(error)
    lowered = message.lower()
    code = _error_code(error)

    # Wallet rejection
    if code == "4001" or "user rejected" in lowered or "rejected" in lowered or "denied" in lowered:
        return ErrorClassification(ErrorKind.USER_REJECTED, chain_family, USER_REJECTED_MESSAGE, False)

    # Transport
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ErrorClassification(ErrorKind.TIMEOUT, chain_family, TIMEOUT_MESSAGE, True)
    if isinstance(error, httpx.TransportError) or any(
            keyword in lowered for keyword in ("failed to send", "network", "fetch", "connection", "econnreset",
                                               "socket")
    ):
        return ErrorClassification(ErrorKind.NETWORK, chain_family, NETWORK_MESSAGE, True)
    if "timeout" in lowered or "timed out" in lowered:
        return ErrorClassification(ErrorKind.TIMEOUT, chain_family, TIMEOUT_MESSAGE, True)
    if code in ("429", "50011") or "rate limit" in lowered or "too many requests" in lowered or "429" in lowered:
        return ErrorClassification(ErrorKind.RATE_LIMITED, chain_family, RATE_LIMIT_MESSAGE, False)

    # Chain-family failures before any EVM wording
    family = _detect_chain_family(lowered, chain_family)
    if family is not None:
        return _classify_chain_family(family, lowered)

    if "insufficient funds" in lowered or "insufficient balance" in lowered or "exceeds balance" in lowered:
        return ErrorClassification(ErrorKind.INSUFFICIENT_FUNDS, chain_family,
                                   "Insufficient balance to complete this transaction, including gas fees.", False)
    if "insufficient liquidity" in lowered or "insufficient_liquidity" in lowered or "liquidity" in lowered:
        return ErrorClassification(ErrorKind.INSUFFICIENT_LIQUIDITY, chain_family,
                                   "Not enough liquidity for this trade. Try a smaller amount.", False)
    if "price impact" in lowered or "slippage" in lowered:
        return ErrorClassification(ErrorKind.PRICE_IMPACT, chain_family,
                                   "Price moved beyond your slippage tolerance. Increase slippage or try a smaller "
                                   "amount.", False)
    if "allowance" in lowered or "approve" in lowered or "approval" in lowered:
        return ErrorClassification(ErrorKind.APPROVAL, chain_family,
                                   "Token approval is required or failed. Please approve the token and try again.",
                                   False)
    if "execution reverted" in lowered or "revert" in lowered:
        return ErrorClassification(ErrorKind.CHAIN_EXECUTION, chain_family,
                                   "The transaction was reverted on chain. Please try again with a higher slippage.",
                                   False)
    if "no_possible_route" in lowered or "no route" in lowered or "no possible route" in lowered:
        return ErrorClassification(ErrorKind.NO_ROUTE, chain_family,
                                   "No route found for this trade. Try a different token pair or amount.", False)
    if "amount_too_low" in lowered or "minimum" in lowered or "too low" in lowered:
        match = _MINIMUM_AMOUNT.search(message)
        if match:
            return ErrorClassification(ErrorKind.AMOUNT_TOO_LOW, chain_family,
                                       f"Amount is too low. Minimum: {match.group(1)}", False)
        return ErrorClassification(ErrorKind.AMOUNT_TOO_LOW, chain_family,
                                   "Amount is too low for this trade. Please increase the amount.", False)
    if "not supported" in lowered or "unsupported" in lowered:
        return ErrorClassification(ErrorKind.UNSUPPORTED, chain_family,
                                   "This token pair or chain is not supported.", False)
    if "pair_is_inactive" in lowered:
        return ErrorClassification(ErrorKind.PAIR_INACTIVE, chain_family,
                                   "This trading pair is temporarily unavailable.", False)
    if "deposit_too_small" in lowered:
        return ErrorClassification(ErrorKind.AMOUNT_TOO_LOW, chain_family,
                                   "Deposit amount is too small. Please increase the amount.", False)
    if "fixed_rate_not_enabled" in lowered:
        return ErrorClassification(ErrorKind.UNSUPPORTED, chain_family,
                                   "Fixed rate is not available for this pair. Try a floating rate.", False)

    if message and len(message) < PASSTHROUGH_MAX_LENGTH and "error" not in lowered:
        return ErrorClassification(ErrorKind.UNKNOWN, chain_family, message, False)
    return ErrorClassification(ErrorKind.UNKNOWN, chain_family, GENERIC_FAILURE_MESSAGE, False)


def get_user_friendly_error_message(error: object, chain_family: Optional[ChainFamily] = None) -> str:
    return classify_error(error, chain_family).user_message


def is_transient_error(error: BaseException) -> bool:
    """
    Whether a retry may succeed: transport failures, timeouts and 5xx responses.
    Rate limits are never transient.
    """
    if isinstance(error, ExchangeError):
        if error.kind in (ErrorKind.NETWORK, ErrorKind.TIMEOUT):
            return True
        if error.kind is ErrorKind.RATE_LIMITED:
            return False
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError, TimeoutError)):
        return True
    lowered = str(error).lower()
    if "rate limit" in lowered or "too many requests" in lowered:
        return False
    return any(keyword in lowered for keyword in TRANSIENT_KEYWORDS)
