from __future__ import annotations

import math
from collections.abc import Iterator, Mapping
from typing import Any

RETRY_STATUS_CODES = frozenset({400, 403, 429, 500, 503, 504})

_STATUS_FIELDS = ("status_code", "statusCode", "status")
_CAUSE_FIELDS = ("__cause__", "cause")
_LAST_ERROR_FIELDS = ("last_error", "lastError")
_PRIMITIVE_TYPES = (str, bytes, bytearray, int, float, complex, bool)
_MISSING = object()


def _field(value: Any, name: str) -> Any:
    if isinstance(value, Mapping):
        return value.get(name, _MISSING)
    if name.startswith("__") and not isinstance(value, BaseException):
        return _MISSING
    return getattr(value, name, _MISSING)


def _as_status_code(raw: Any) -> float | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        numeric = float(raw)
    elif isinstance(raw, str):
        try:
            numeric = float(raw.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(numeric):
        return None
    return numeric


def _status_code(node: Any) -> float | None:
    for name in _STATUS_FIELDS:
        status = _as_status_code(_field(node, name))
        if status is not None:
            return status
    return None


def _nested_errors(node: Any) -> Iterator[Any]:
    for name in _CAUSE_FIELDS:
        cause = _field(node, name)
        if cause is not _MISSING:
            yield cause
    for name in _LAST_ERROR_FIELDS:
        last_error = _field(node, name)
        if last_error is not _MISSING:
            yield last_error
    errors = _field(node, "errors")
    if isinstance(errors, (list, tuple)):
        yield from errors
    for name in ("data", "error"):
        nested = _field(node, name)
        if nested is not _MISSING:
            yield nested


def collect_status_codes(error: Any) -> list[float]:
    """Return every status code reachable from ``error``.

    Only a closed set of relations is followed: the direct cause, a last
    error, a list of sub-errors, and nested ``data`` / ``error`` fields.
    Nodes are visited at most once, keyed by identity.
    """
    status_codes: list[float] = []
    visited: dict[int, Any] = {}
    pending: list[Any] = [error]
    while pending:
        node = pending.pop()
        if node is None or node is _MISSING or isinstance(node, _PRIMITIVE_TYPES):
            continue
        if id(node) in visited:
            continue
        visited[id(node)] = node

        status = _status_code(node)
        if status is not None:
            status_codes.append(status)
        # Reverse so the stack pops relations in declaration order.
        pending.extend(reversed(list(_nested_errors(node))))
    return status_codes


def is_retry_eligible(error: Any) -> bool:
    return any(code in RETRY_STATUS_CODES for code in collect_status_codes(error))


__all__ = ["RETRY_STATUS_CODES", "collect_status_codes", "is_retry_eligible"]
