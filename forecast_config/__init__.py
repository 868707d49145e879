"""
forecast_config -- single public entrypoint for runtime settings.

Responsibility:
    Provides the ONLY way to obtain settings at runtime through
    ``get_active_config()``.  Returns a frozen ``EngineSettings``.

Architecture position:
    Configuration -- YAML-driven.  Sits above ``forecast_kernel`` and below
    ``forecast_services``.  The kernel MUST NEVER import from
    ``forecast_config``; services pass the relevant values down as plain
    arguments.

Invariants enforced:
    - Single entrypoint: runtime settings flow through ``get_active_config()``.
    - Validation on load: invalid values raise ``ValueError``.

Failure modes:
    - ``FileNotFoundError`` -- the settings file does not exist.
    - ``ValueError`` -- unknown keys or invalid values.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``FORECAST_CONFIG_TRACE`` log entry with the source path and the
    SHA-256 checksum of the settings document.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from forecast_config.loader import load_settings
from forecast_config.schema import (
    DatabaseSettings,
    DraftSettings,
    EngineSettings,
    LedgerSettings,
    ReconciliationSettings,
    RetrySettings,
)

_logger = logging.getLogger("forecast_kernel.config")

CONFIG_PATH_ENV = "FORECAST_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(path: Path | str | None = None) -> EngineSettings:
    """The ONLY public configuration entrypoint.

    Resolution order: explicit ``path``, then ``$FORECAST_CONFIG_PATH``,
    then ``forecast_config/sets/default.yaml``.

    Raises:
        FileNotFoundError: If the resolved file does not exist.
        ValueError: If the settings are invalid.
    """
    resolved = Path(path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
    settings = load_settings(resolved)

    _logger.info(
        "FORECAST_CONFIG_TRACE",
        extra={
            "trace_type": "FORECAST_CONFIG_TRACE",
            "source": str(resolved),
            "checksum": settings.checksum,
            "fallback_invoice_ratio": str(settings.reconciliation.fallback_invoice_ratio),
            "retry_max_attempts": settings.retry.max_attempts,
        },
    )
    return settings


__all__ = [
    "CONFIG_PATH_ENV",
    "DEFAULT_CONFIG_PATH",
    "DatabaseSettings",
    "DraftSettings",
    "EngineSettings",
    "LedgerSettings",
    "ReconciliationSettings",
    "RetrySettings",
    "get_active_config",
]
