"""Output helpers for the pomelobot CLI.

Every line goes through :func:`_emit`, which prints either the JSON payload
(``--json``) or the plain-text rendering.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional


def format_value(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return repr(value)


def _emit(json_output: bool, payload: Mapping[str, Any], plain: str) -> None:
    if json_output:
        print(json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False))
    else:
        print(plain)


def emit_result(json_output: bool, *, message: str, data: Any = None) -> None:
    """A response or a finished script; ``data`` replaces ``message`` in JSON."""
    payload: Dict[str, Any] = {"status": "ok"}
    if data is None:
        payload["message"] = message
    else:
        payload["result"] = data
    _emit(json_output, payload, message)


def emit_error(json_output: bool, *, message: str, data: Optional[Mapping[str, Any]] = None) -> None:
    payload: Dict[str, Any] = {"status": "error", "error": message}
    if data:
        payload["details"] = dict(data)
    _emit(json_output, payload, f"error: {message}")


def emit_event(json_output: bool, *, kind: str, route: Any = None, data: Any = None) -> None:
    """Print a server-initiated push or kick."""
    payload: Dict[str, Any] = {"status": "event", "event": kind, "data": data}
    if route is not None:
        payload["route"] = route
    _emit(json_output, payload, f"{kind if route is None else route} {format_value(data)}")


__all__ = ["emit_result", "emit_error", "emit_event", "format_value"]
