"""
billing_config -- single public entrypoint for engine settings.

Responsibility:
    ``get_active_settings()`` is the only way to obtain configuration at
    runtime. It reads the packaged ``defaults.yaml`` and, when given, an
    override file, and returns frozen ``BillingSettings``.

Architecture position:
    Configuration -- sits above ``billing_kernel`` and below
    ``billing_services``. The kernel and the engines never import it;
    services receive the parsed values through their constructors.

Failure modes:
    - ``FileNotFoundError`` -- override path does not exist.
    - ``ConfigurationError`` -- a value is out of range or malformed.

Audit relevance:
    Every successful load emits a ``BILLING_CONFIG_TRACE`` log record with
    the settings checksum, so a log line can always be tied to the exact
    configuration in force.
"""

from __future__ import annotations

from pathlib import Path

from billing_config.loader import deep_merge, load_yaml_file, parse_settings
from billing_config.schema import (
    BillingSettings,
    EngineSettings,
    InFlightPolicy,
    MutationSettings,
    RemoteOperation,
    RemoteSettings,
)
from billing_kernel.logging_config import get_logger

_logger = get_logger("config")

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_settings(config_path: Path | str | None = None) -> BillingSettings:
    """Load defaults, apply the optional override file, and parse."""
    data = load_yaml_file(DEFAULTS_PATH)
    source = str(DEFAULTS_PATH)
    if config_path is not None:
        data = deep_merge(data, load_yaml_file(Path(config_path)))
        source = str(config_path)

    settings = parse_settings(data)
    _logger.info(
        "BILLING_CONFIG_TRACE",
        extra={
            "trace_type": "BILLING_CONFIG_TRACE",
            "source": source,
            "checksum": settings.checksum,
            "in_flight_policy": settings.mutations.in_flight_policy.value,
            "timeout_seconds": settings.mutations.timeout_seconds,
        },
    )
    return settings


__all__ = [
    "BillingSettings",
    "DEFAULTS_PATH",
    "EngineSettings",
    "InFlightPolicy",
    "MutationSettings",
    "RemoteOperation",
    "RemoteSettings",
    "get_active_settings",
]
