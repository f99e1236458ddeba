"""
Configuration Loader (``billing_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into the typed ``billing_config.schema``
dataclasses. Callers use ``billing_config.get_active_settings()``; this
module is its implementation.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Invalid values raise ``ConfigurationError`` naming the offending key.
* ``compute_checksum`` is a deterministic SHA-256 of the canonical
  settings dict.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import (
    BillingSettings,
    EngineSettings,
    InFlightPolicy,
    MutationSettings,
    RemoteOperation,
    RemoteSettings,
)
from billing_kernel.exceptions import ConfigurationError


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file; an empty file yields an empty dict."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")
    return data


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = dict(base)
    for key, val in override.items():
        if isinstance(val, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], val)
        else:
            merged[key] = val
    return merged


def _positive_number(data: dict[str, Any], key: str, section: str) -> float:
    raw = data.get(key)
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw <= 0:
        raise ConfigurationError(f"{section}.{key}", f"must be a positive number, got {raw!r}")
    return float(raw)


def _non_negative_int(data: dict[str, Any], key: str, section: str) -> int:
    raw = data.get(key)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
        raise ConfigurationError(f"{section}.{key}", f"must be a non-negative integer, got {raw!r}")
    return raw


def parse_engine(data: dict[str, Any]) -> EngineSettings:
    try:
        epsilon = Decimal(str(data.get("overpayment_epsilon", "0")))
    except InvalidOperation:
        raise ConfigurationError(
            "engine.overpayment_epsilon", f"not a decimal: {data.get('overpayment_epsilon')!r}"
        ) from None
    if not epsilon.is_finite() or epsilon < 0:
        raise ConfigurationError("engine.overpayment_epsilon", "must be a non-negative decimal")
    return EngineSettings(
        overpayment_epsilon=epsilon,
        display_places=_non_negative_int(data, "display_places", "engine"),
        currency_symbol=str(data.get("currency_symbol", "")),
    )


def parse_mutations(data: dict[str, Any]) -> MutationSettings:
    policy_raw = data.get("in_flight_policy", InFlightPolicy.QUEUE.value)
    try:
        policy = InFlightPolicy(policy_raw)
    except ValueError:
        raise ConfigurationError(
            "mutations.in_flight_policy", f"expected queue or reject, got {policy_raw!r}"
        ) from None
    return MutationSettings(
        timeout_seconds=_positive_number(data, "timeout_seconds", "mutations"),
        in_flight_policy=policy,
        notice_history=_non_negative_int(data, "notice_history", "mutations"),
    )


def parse_routes(data: dict[str, Any]) -> dict[str, dict[RemoteOperation, str]]:
    routes: dict[str, dict[RemoteOperation, str]] = {}
    for collection, ops in (data or {}).items():
        if not isinstance(ops, dict):
            raise ConfigurationError(f"remote.routes.{collection}", "must be a mapping")
        parsed: dict[RemoteOperation, str] = {}
        for op_name, template in ops.items():
            try:
                op = RemoteOperation(op_name)
            except ValueError:
                raise ConfigurationError(
                    f"remote.routes.{collection}.{op_name}", "unknown operation"
                ) from None
            parsed[op] = str(template)
        routes[collection] = parsed
    return routes


def parse_remote(data: dict[str, Any]) -> RemoteSettings:
    base_url = data.get("base_url")
    if not base_url:
        raise ConfigurationError("remote.base_url", "is required")
    return RemoteSettings(
        base_url=str(base_url).rstrip("/"),
        request_timeout_seconds=_positive_number(data, "request_timeout_seconds", "remote"),
        refresh_path=str(data.get("refresh_path", "auth/refresh")),
        routes=parse_routes(data.get("routes", {})),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def parse_settings(data: dict[str, Any]) -> BillingSettings:
    return BillingSettings(
        engine=parse_engine(data.get("engine", {})),
        mutations=parse_mutations(data.get("mutations", {})),
        remote=parse_remote(data.get("remote", {})),
        checksum=compute_checksum(data),
    )
