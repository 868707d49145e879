"""
Module: forecast_engines
Responsibility:
    Package entrypoint that re-exports the pure calculation engines:
    snapshot resolution, version diffing, reconciliation metrics, the
    P&L timeline and the classification breakdowns.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import forecast_kernel.domain, forecast_kernel.exceptions and
    sibling engine modules.  MUST NOT import forecast_services.

Invariants enforced:
    - Purity: engines never read the clock.  ``as_of`` dates are passed in.
    - Decimal-only arithmetic for every monetary amount.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Every engine invocation is traced via ``@traced_engine``, emitting
    FORECAST_ENGINE_TRACE log records with engine name, version, input
    fingerprint and duration.

Usage:
    from forecast_engines import diff_snapshots, summarize_diff
    from forecast_engines import compute_metrics, pl_timeline
"""

from forecast_engines.breakdown import (
    BreakdownNode,
    CategoryControl,
    category_control_matrix,
    hierarchical_breakdown,
)
from forecast_engines.reconciliation import (
    FALLBACK_INVOICE_RATIO,
    Metrics,
    PLTimeline,
    SpendSplit,
    TimelinePoint,
    compute_metrics,
    months_elapsed,
    pl_timeline,
    ratio_percent,
    split_mapped_amount,
)
from forecast_engines.snapshot import check_completeness, resolve_version_lines
from forecast_engines.tracer import compute_input_fingerprint, traced_engine
from forecast_engines.version_diff import (
    CategoryDelta,
    DiffRow,
    DiffStatus,
    DiffSummary,
    aggregate_by_category,
    diff_snapshots,
    percent_change,
    summarize_diff,
)

__all__ = [
    "BreakdownNode",
    "CategoryControl",
    "CategoryDelta",
    "DiffRow",
    "DiffStatus",
    "DiffSummary",
    "FALLBACK_INVOICE_RATIO",
    "Metrics",
    "PLTimeline",
    "SpendSplit",
    "TimelinePoint",
    "aggregate_by_category",
    "category_control_matrix",
    "check_completeness",
    "compute_input_fingerprint",
    "compute_metrics",
    "diff_snapshots",
    "hierarchical_breakdown",
    "months_elapsed",
    "percent_change",
    "pl_timeline",
    "ratio_percent",
    "resolve_version_lines",
    "split_mapped_amount",
    "summarize_diff",
    "traced_engine",
]
