"""
Configuration Loader (``forecast_config.loader``).

Responsibility
--------------
Loads a YAML settings file and parses it into the typed
``forecast_config.schema`` dataclasses.  Runtime callers go through
``forecast_config.get_active_config()``; the parse helpers are public for
tests and tooling.

Architecture position
---------------------
**Config layer**.  No dependency on kernel services, selectors or engines.

Invariants enforced
-------------------
* Unknown keys are rejected (``ValueError``) so typos never fall back to
  defaults silently.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the parsed
  document for configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values  -> ``ValueError`` from the schema.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from forecast_config.schema import (
    DatabaseSettings,
    DraftSettings,
    EngineSettings,
    LedgerSettings,
    ReconciliationSettings,
    RetrySettings,
)

_SECTIONS = ("ledger", "retry", "reconciliation", "drafts", "database")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _section(data: dict[str, Any], name: str, allowed: tuple[str, ...]) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' must be a mapping")
    unknown = sorted(set(section) - set(allowed))
    if unknown:
        raise ValueError(f"Unknown keys in '{name}': {', '.join(unknown)}")
    return section


def parse_decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def parse_settings(data: dict[str, Any], source: str = "") -> EngineSettings:
    """
    Parse a settings document.  Missing sections and keys take defaults.

    Raises:
        ValueError: on unknown sections or keys, or invalid values.
    """
    unknown = sorted(set(data) - set(_SECTIONS))
    if unknown:
        raise ValueError(f"Unknown configuration sections: {', '.join(unknown)}")

    ledger = _section(
        data,
        "ledger",
        ("reason_min_length", "reason_max_length", "conflict_retries", "stale_pending_after_seconds"),
    )
    retry = _section(data, "retry", ("max_attempts", "backoff_seconds", "backoff"))
    reconciliation = _section(data, "reconciliation", ("fallback_invoice_ratio",))
    drafts = _section(data, "drafts", ("max_age_hours",))
    database = _section(
        data, "database", ("url", "pool_size", "max_overflow", "pool_timeout", "pool_recycle")
    )

    recon_kwargs = {}
    if "fallback_invoice_ratio" in reconciliation:
        recon_kwargs["fallback_invoice_ratio"] = parse_decimal(
            reconciliation["fallback_invoice_ratio"], "reconciliation.fallback_invoice_ratio"
        )
    retry_kwargs = dict(retry)
    if "backoff_seconds" in retry_kwargs:
        retry_kwargs["backoff_seconds"] = float(retry_kwargs["backoff_seconds"])

    return EngineSettings(
        ledger=LedgerSettings(**ledger),
        retry=RetrySettings(**retry_kwargs),
        reconciliation=ReconciliationSettings(**recon_kwargs),
        drafts=DraftSettings(**drafts),
        database=DatabaseSettings(**database),
        checksum=compute_checksum(data),
        source=source,
    )


def load_settings(path: Path) -> EngineSettings:
    return parse_settings(load_yaml_file(path), source=str(path))
