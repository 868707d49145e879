"""
forecast_engines.reconciliation -- budget vs. PO actuals.

Responsibility:
    Split each PO mapping's committed amount into an *actual* (invoiced)
    and a *future* (still open) portion, and aggregate project metrics:
    total budget, actual spend, variance, utilization, open orders, burn
    rate and the P&L gap.  Build the monthly P&L timeline.

Architecture position:
    Engines -- pure functions.  The caller supplies ``as_of`` (from an
    injected Clock) and the fallback ratio (from configuration).

Invariants enforced:
    - Without invoice data (invoiced value and quantity both absent or
      zero, or no positive line value) the actual portion is
      ``mapped * fallback_ratio``; the default ratio 0.6 is a documented
      approximation, not derived from data.
    - actual + future == mapped for every mapping.
    - Every ratio with a zero denominator is 0.
    - A mapping whose line item is excluded (or unknown to the snapshot)
      still counts toward actual spend but not toward category breakdowns.

Audit relevance:
    ``invoiced_amount`` reports only actuals backed by real invoice data,
    so approximated spend can always be told apart.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from forecast_kernel.domain.dtos import ZERO, MetricsFilter, POMappingRecord, Snapshot
from forecast_engines.tracer import traced_engine

FALLBACK_INVOICE_RATIO = Decimal("0.6")

_CENT = Decimal("0.01")
_HUNDRED = Decimal("100")
_ONE = Decimal("1")


@dataclass(frozen=True)
class SpendSplit:
    """Actual vs. future portions of one mapped amount."""

    mapped: Decimal
    actual: Decimal
    future: Decimal
    from_invoice: bool


@dataclass(frozen=True)
class Metrics:
    """Project-level reconciliation metrics."""

    total_budget: Decimal
    actual_spend: Decimal
    committed: Decimal
    invoiced_amount: Decimal
    open_orders: Decimal
    variance: Decimal
    variance_percent: Decimal
    utilization: Decimal
    burn_rate: Decimal
    pl_gap: Decimal
    months_elapsed: int
    po_count: int
    line_item_count: int


@dataclass(frozen=True)
class TimelinePoint:
    month: str
    actual: Decimal
    projected: Decimal
    cumulative_actual: Decimal


@dataclass(frozen=True)
class PLTimeline:
    """Monthly P&L impact.  Amounts without any usable date are reported separately."""

    points: tuple[TimelinePoint, ...]
    undated_actual: Decimal
    undated_projected: Decimal


def ratio_percent(numerator: Decimal, denominator: Decimal) -> Decimal:
    """numerator / denominator * 100, rounded to cents; 0 when denominator is 0."""
    if denominator == 0:
        return ZERO
    return (numerator / denominator * _HUNDRED).quantize(_CENT, rounding=ROUND_HALF_UP)


def has_invoice_data(mapping: POMappingRecord) -> bool:
    return bool(mapping.invoiced_value) or bool(mapping.invoiced_quantity)


def split_mapped_amount(
    mapping: POMappingRecord,
    fallback_ratio: Decimal = FALLBACK_INVOICE_RATIO,
) -> SpendSplit:
    """
    Split a mapped amount into actual and future portions.

    With invoice data and a positive PO line value the invoiced ratio
    ``min(invoiced_value / line_value, 1)`` applies; otherwise the fallback.
    """
    mapped = mapping.mapped_amount
    line_value = mapping.line_value
    if has_invoice_data(mapping) and line_value is not None and line_value > 0:
        ratio = min((mapping.invoiced_value or ZERO) / line_value, _ONE)
        from_invoice = True
    else:
        ratio = fallback_ratio
        from_invoice = False
    actual = mapped * ratio
    return SpendSplit(mapped=mapped, actual=actual, future=mapped - actual, from_invoice=from_invoice)


def months_elapsed(project_start: date | None, as_of: date) -> int:
    """Whole 30-day months since the project started, never less than 1."""
    if project_start is None:
        return 1
    return max(1, (as_of - project_start).days // 30)


def _mapping_in_scope(
    mapping: POMappingRecord,
    classifications: dict,
    filters: MetricsFilter | None,
) -> bool:
    if filters is None:
        return True
    classification = classifications.get(mapping.line_item_id)
    return classification is not None and filters.matches(classification)


@traced_engine("reconciliation_metrics", "1.0", fingerprint_fields=("as_of", "fallback_ratio"))
def compute_metrics(
    *,
    snapshot: Snapshot,
    mappings: Sequence[POMappingRecord],
    as_of: date,
    project_start: date | None = None,
    fallback_ratio: Decimal = FALLBACK_INVOICE_RATIO,
    filters: MetricsFilter | None = None,
) -> Metrics:
    """
    Reconcile a snapshot's budget against PO mappings.

    ``total_budget`` is the snapshot total (excluded lines contribute 0).
    With ``filters`` only matching line items (and their mappings) count.
    """
    total_budget = sum(
        (
            line.contribution
            for line in snapshot.lines
            if filters is None or filters.matches(line.line_item.classification)
        ),
        ZERO,
    )

    classifications = {line.line_item_id: line.line_item.classification for line in snapshot.lines}
    actual = future = committed = invoiced = ZERO
    po_ids = set()
    po_line_ids = set()
    for mapping in mappings:
        if not _mapping_in_scope(mapping, classifications, filters):
            continue
        split = split_mapped_amount(mapping, fallback_ratio)
        actual += split.actual
        future += split.future
        committed += split.mapped
        if split.from_invoice:
            invoiced += split.actual
        if mapping.po_id is not None:
            po_ids.add(mapping.po_id)
        if mapping.po_line_item_id is not None:
            po_line_ids.add(mapping.po_line_item_id)

    months = months_elapsed(project_start, as_of)
    variance = total_budget - actual
    return Metrics(
        total_budget=total_budget,
        actual_spend=actual,
        committed=committed,
        invoiced_amount=invoiced,
        open_orders=future,
        variance=variance,
        variance_percent=ratio_percent(variance, total_budget),
        utilization=ratio_percent(actual, total_budget),
        burn_rate=(actual / months).quantize(_CENT, rounding=ROUND_HALF_UP),
        pl_gap=committed - actual,
        months_elapsed=months,
        po_count=len(po_ids),
        line_item_count=len(po_line_ids),
    )


def _month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def _month_range(start: date, end: date) -> list[str]:
    keys = []
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        keys.append(f"{year:04d}-{month:02d}")
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return keys


@traced_engine("pl_timeline", "1.0", fingerprint_fields=("date_from", "date_to", "fallback_ratio"))
def pl_timeline(
    *,
    mappings: Iterable[POMappingRecord],
    date_from: date | None = None,
    date_to: date | None = None,
    fallback_ratio: Decimal = FALLBACK_INVOICE_RATIO,
) -> PLTimeline:
    """
    Monthly actual and projected P&L impact.

    Actual lands in the invoice month (else the PO line creation month);
    projected lands in the supplier promise month (else the invoice month).
    Without explicit bounds the range spans every dated amount.  Amounts
    dated outside explicit bounds are dropped.  Undated actual lands in the
    ``date_from`` month and undated projected in the ``date_to`` month; with
    no such bound it is totalled in ``undated_actual`` / ``undated_projected``.
    """
    actual_by_month: dict[str, Decimal] = {}
    projected_by_month: dict[str, Decimal] = {}
    undated_actual = undated_projected = ZERO
    dates: list[date] = []

    for mapping in mappings:
        split = split_mapped_amount(mapping, fallback_ratio)
        actual_date = mapping.invoice_date or mapping.po_line_created_date
        projected_date = mapping.supplier_promise_date or mapping.invoice_date

        if actual_date is None:
            actual_date = date_from
        if projected_date is None:
            projected_date = date_to

        if actual_date is None:
            undated_actual += split.actual
        else:
            key = _month_key(actual_date)
            actual_by_month[key] = actual_by_month.get(key, ZERO) + split.actual
            dates.append(actual_date)

        if projected_date is None:
            undated_projected += split.future
        else:
            key = _month_key(projected_date)
            projected_by_month[key] = projected_by_month.get(key, ZERO) + split.future
            dates.append(projected_date)

    start = date_from or (min(dates) if dates else None)
    end = date_to or (max(dates) if dates else None)
    if start is None or end is None or start > end:
        return PLTimeline(points=(), undated_actual=undated_actual, undated_projected=undated_projected)

    points = []
    cumulative = ZERO
    for key in _month_range(start, end):
        month_actual = actual_by_month.get(key, ZERO)
        cumulative += month_actual
        points.append(
            TimelinePoint(
                month=key,
                actual=month_actual,
                projected=projected_by_month.get(key, ZERO),
                cumulative_actual=cumulative,
            )
        )
    return PLTimeline(
        points=tuple(points),
        undated_actual=undated_actual,
        undated_projected=undated_projected,
    )
