"""
Response envelope of the system of record.

Every reply is ``{"status": bool, "message": str, "data": {...},
"errors": {field: [messages]}}``. A reply is a success only when the
HTTP status is 2xx AND ``status`` is not false. Shared by the client
gateways and the reference server so both speak one failure taxonomy.

Failure modes:
    - RemoteRejection: non-2xx, or ``status: false``; carries the server
      message and any per-field errors.
    - TransportFailure: the body or its ``data`` is not a JSON object.
"""

from __future__ import annotations

from typing import Any, Mapping

from billing_kernel.exceptions import RemoteRejection, TransportFailure
from billing_kernel.logging_config import get_logger

logger = get_logger("envelope")

DEFAULT_FAILURE_MESSAGE = "Request failed"


def success(message: str, data: Mapping[str, Any]) -> dict[str, Any]:
    return {"status": True, "message": message, "data": dict(data)}


def failure(message: str, errors: Mapping[str, list[str]] | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"status": False, "message": message}
    if errors:
        body["errors"] = {name: list(messages) for name, messages in errors.items()}
    return body


def _field_errors(raw: Any) -> dict[str, list[str]]:
    if not isinstance(raw, Mapping):
        return {}
    errors: dict[str, list[str]] = {}
    for name, messages in raw.items():
        if isinstance(messages, str):
            errors[str(name)] = [messages]
        elif isinstance(messages, (list, tuple)):
            errors[str(name)] = [str(m) for m in messages]
    return errors


def interpret_response(status_code: int, body: Any) -> dict[str, Any]:
    """
    Turn a raw reply into its ``data`` dict, or raise.

    A body without a ``data`` key is treated as the data itself.
    """
    if not isinstance(body, Mapping):
        raise TransportFailure(f"unreadable response body (HTTP {status_code})")

    ok = 200 <= status_code < 300 and body.get("status", True) is not False
    if not ok:
        message = body.get("message") or f"{DEFAULT_FAILURE_MESSAGE} (HTTP {status_code})"
        rejection = RemoteRejection(
            str(message),
            status_code=status_code,
            field_errors=_field_errors(body.get("errors")),
        )
        logger.info(
            "remote_rejection",
            extra={
                "status_code": status_code,
                "error_fields": sorted(rejection.field_errors),
            },
        )
        raise rejection

    data = body.get("data", body)
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise TransportFailure(f"unexpected data payload of type {type(data).__name__}")
    return dict(data)
