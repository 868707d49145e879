"""
Engine settings schema.

Frozen dataclasses the loader parses ``sets/*.yaml`` into.  Each section
validates itself on construction, so an ``EngineSettings`` instance is
always internally consistent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

BACKOFF_KINDS = ("fixed", "exponential")


# ---------------------------------------------------------------------------
# Version ledger
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerSettings:
    """Version creation rules."""

    reason_min_length: int = 10
    reason_max_length: int = 500
    conflict_retries: int = 1
    stale_pending_after_seconds: int = 300

    def __post_init__(self) -> None:
        if self.reason_min_length < 1:
            raise ValueError("ledger.reason_min_length must be at least 1")
        if self.reason_max_length < self.reason_min_length:
            raise ValueError("ledger.reason_max_length must be >= reason_min_length")
        if self.conflict_retries < 0:
            raise ValueError("ledger.conflict_retries must be >= 0")
        if self.stale_pending_after_seconds < 0:
            raise ValueError("ledger.stale_pending_after_seconds must be >= 0")


@dataclass(frozen=True)
class RetrySettings:
    """Transient storage error retry policy."""

    max_attempts: int = 3
    backoff_seconds: float = 0.2
    backoff: str = "fixed"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("retry.max_attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("retry.backoff_seconds must be >= 0")
        if self.backoff not in BACKOFF_KINDS:
            raise ValueError(f"retry.backoff must be one of {BACKOFF_KINDS}, got {self.backoff!r}")


# ---------------------------------------------------------------------------
# Reconciliation and drafts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReconciliationSettings:
    fallback_invoice_ratio: Decimal = Decimal("0.6")

    def __post_init__(self) -> None:
        if not Decimal("0") <= self.fallback_invoice_ratio <= Decimal("1"):
            raise ValueError("reconciliation.fallback_invoice_ratio must be within [0, 1]")


@dataclass(frozen=True)
class DraftSettings:
    max_age_hours: int = 24

    def __post_init__(self) -> None:
        if self.max_age_hours <= 0:
            raise ValueError("drafts.max_age_hours must be positive")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection pool settings passed to ``init_engine_from_url``."""

    url: str | None = None
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 1800

    def __post_init__(self) -> None:
        for name in ("pool_size", "max_overflow", "pool_timeout", "pool_recycle"):
            if getattr(self, name) < 0:
                raise ValueError(f"database.{name} must be >= 0")


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineSettings:
    """Complete runtime settings.  ``checksum`` identifies the source file content."""

    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    reconciliation: ReconciliationSettings = field(default_factory=ReconciliationSettings)
    drafts: DraftSettings = field(default_factory=DraftSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    checksum: str = ""
    source: str = ""
