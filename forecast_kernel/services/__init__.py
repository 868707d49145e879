"""Kernel write services. Flush-only: callers own the transaction."""

from forecast_kernel.services.baseline_service import BaselineService
from forecast_kernel.services.retry_service import (
    RetryPolicy,
    RetryService,
    exponential_backoff,
    fixed_backoff,
    translate_storage_errors,
)
from forecast_kernel.services.version_ledger import VersionLedgerService

__all__ = [
    "BaselineService",
    "RetryPolicy",
    "RetryService",
    "VersionLedgerService",
    "exponential_backoff",
    "fixed_backoff",
    "translate_storage_errors",
]
