from __future__ import annotations

from typing import Mapping, Optional, Sequence, Union

JSON = Union[None, bool, int, float, str, list, dict]
PathPart = Union[str, int]


def _read_path(node: object, path: Sequence[PathPart]) -> Optional[object]:
    """Walk provider JSON by keys and list indexes; any miss along the way yields None."""
    current: object = node
    for part in path:
        if isinstance(part, int):
            if not isinstance(current, list) or not 0 <= part < len(current):
                return None
        elif not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def _read_str(node: object, path: Sequence[PathPart], default: str = "") -> str:
    """String at `path`; numbers are stringified, anything else yields `default`."""
    value = _read_path(node, path)
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return default


def _read_optional_str(node: object, path: Sequence[PathPart]) -> Optional[str]:
    return _read_str(node, path) or None


def _to_optional_float(value: object) -> Optional[float]:
    # Providers send prices both as numbers and as decimal strings
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _to_float_or_zero(value: object) -> float:
    parsed = _to_optional_float(value)
    return parsed if parsed is not None else 0.0


def _to_int_or_zero(value: object) -> int:
    """Gas and amount fields arrive as ints, decimal strings or 0x-prefixed hex; unparseable means 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if not isinstance(value, str):
        return 0
    text = value.strip()
    try:
        return int(text, 16) if text.lower().startswith("0x") else int(text)
    except ValueError:
        pass
    try:
        return int(float(text))
    except (ValueError, OverflowError):
        return 0


def _read_list(node: object, path: Sequence[PathPart]) -> list:
    value = _read_path(node, path)
    return value if isinstance(value, list) else []
