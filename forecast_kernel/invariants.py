"""
Forecast Kernel Invariants.

These guarantees hold for every project regardless of configuration.
The enforcement is distributed across VersionLedgerService, the
snapshot resolution rules, the ORM immutability listeners and the
(project_id, version_number) unique constraint.
"""

from enum import Enum, unique


@unique
class KernelInvariant(str, Enum):
    """Non-configurable invariants enforced by the kernel."""

    SNAPSHOT_COMPLETENESS = "snapshot_completeness"
    """Every line item existing when version N is committed has exactly
    one forecast entry in version N. Checked by VersionLedgerService
    before commit and by snapshot reads."""

    APPEND_ONLY_LEDGER = "append_only_ledger"
    """Committed versions and their entries are never updated or deleted.
    Enforced by forecast_kernel.db.immutability."""

    CONTIGUOUS_VERSION_NUMBERS = "contiguous_version_numbers"
    """Committed version numbers are 0..N or 1..N without gaps. Enforced
    by max+1 assignment under the unique constraint and compensation of
    failed commits."""

    BASELINE_PRESERVED = "baseline_preserved"
    """Forecast values live in forecast entries only; budget_cost on a
    line item is never overwritten by a version commit."""

    LINE_ITEM_RETENTION = "line_item_retention"
    """A line item referenced by a forecast entry is never hard-deleted."""

    ATOMIC_VERSION = "atomic_version"
    """A version becomes visible to readers only together with its full
    entry set. Pending versions are invisible."""


ALL_KERNEL_INVARIANTS: frozenset[KernelInvariant] = frozenset(KernelInvariant)

# The kernel package may not import from these packages.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = (
    "forecast_services",
    "forecast_config",
    "forecast_engines",
)
