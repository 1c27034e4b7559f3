from __future__ import annotations

import base64
import hashlib
import hmac
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional
from urllib.parse import urlencode

from xlama.configuration.config import settings
from xlama.core.errors.error_taxonomy import ErrorKind, ProviderError
from xlama.core.utils.dict_utils import JSON, _read_path, _read_str

OKX_SUCCESS_CODE = "0"
OKX_RATE_LIMIT_CODE = "50011"


def _okx_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision, as expected by the signature."""
    moment = now or datetime.now(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def _build_request_path(path: str, params: Optional[Mapping[str, object]]) -> str:
    """Path plus query string; the query is part of the signed payload for GET requests."""
    filtered = {key: value for key, value in (params or {}).items() if value is not None and value != ""}
    if not filtered:
        return path
    return f"{path}?{urlencode({key: str(value) for key, value in filtered.items()})}"


def _sign(secret_key: str, timestamp: str, method: str, request_path: str, body: str = "") -> str:
    """base64(HMAC-SHA256(secret, timestamp + METHOD + requestPath + body))."""
    prehash = f"{timestamp}{method.upper()}{request_path}{body}"
    digest = hmac.new(secret_key.encode("utf-8"), prehash.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _build_okx_headers(method: str, request_path: str, body: str = "",
                       timestamp: Optional[str] = None) -> Dict[str, str]:
    stamp = timestamp or _okx_timestamp()
    headers: Dict[str, str] = {
        "Content-Type": "application/json",
        "OK-ACCESS-KEY": settings.OKX_API_KEY,
        "OK-ACCESS-SIGN": _sign(settings.OKX_SECRET_KEY, stamp, method, request_path, body),
        "OK-ACCESS-TIMESTAMP": stamp,
        "OK-ACCESS-PASSPHRASE": settings.OKX_API_PASSPHRASE,
    }
    if settings.OKX_PROJECT_ID:
        headers["OK-ACCESS-PROJECT"] = settings.OKX_PROJECT_ID
    return headers


def _unwrap_envelope(payload: JSON, endpoint: str) -> List[Mapping[str, JSON]]:
    """
    Return the `data` rows of a `{code, msg, data}` envelope.

    Raises:
        ProviderError when `code` is not "0"; code 50011 is tagged as a rate limit.
    """
    code = _read_str(payload, ("code",), OKX_SUCCESS_CODE)
    if code != OKX_SUCCESS_CODE:
        message = _read_str(payload, ("msg",)) or f"OKX request failed ({endpoint})"
        kind = ErrorKind.RATE_LIMITED if code == OKX_RATE_LIMIT_CODE else ErrorKind.UNKNOWN
        raise ProviderError("okx", message, code=code, kind=kind)

    data = _read_path(payload, ("data",))
    if isinstance(data, list):
        return [row for row in data if isinstance(row, Mapping)]
    if isinstance(data, Mapping):
        return [data]
    return []
