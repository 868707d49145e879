"""
forecast_engines.version_diff -- line-by-line comparison of two snapshots.

Responsibility:
    Compare two snapshots of the same project and classify every line item
    as added, removed, increased, decreased or unchanged, with absolute and
    percentage deltas.  Roll the rows up by a classification level and into
    version-level totals.

Architecture position:
    Engines -- pure functions over Snapshot DTOs.

Invariants enforced:
    - An excluded line counts as absent.
    - delta = (amount_b or 0) - (amount_a or 0).
    - Percentages against a zero (or absent) base use the 100% convention:
      +100 when the new amount is positive, -100 when negative, 0 when both
      are zero.  Percentages are rounded half-up to 2 decimal places.
    - Diffing is symmetric: swapping the inputs negates every delta and
      swaps added/removed and increased/decreased.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from uuid import UUID

from forecast_kernel.domain.dtos import (
    ZERO,
    Classification,
    Snapshot,
    require_classification_field,
)
from forecast_engines.tracer import traced_engine

_CENT = Decimal("0.01")
_HUNDRED = Decimal("100")


class DiffStatus(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    INCREASED = "increased"
    DECREASED = "decreased"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class DiffRow:
    """Comparison of one line item between snapshot A and snapshot B."""

    line_item_id: UUID
    classification: Classification
    amount_a: Decimal | None
    amount_b: Decimal | None
    delta: Decimal
    delta_percent: Decimal
    status: DiffStatus


@dataclass(frozen=True)
class CategoryDelta:
    """Diff rows rolled up by one classification value."""

    name: str
    amount_a: Decimal
    amount_b: Decimal
    delta: Decimal
    delta_percent: Decimal
    row_count: int


@dataclass(frozen=True)
class DiffSummary:
    """Version-level totals of a diff."""

    total_a: Decimal
    total_b: Decimal
    total_change: Decimal
    change_percent: Decimal
    added: int
    removed: int
    increased: int
    decreased: int
    unchanged: int


def percent_change(base: Decimal | None, value: Decimal | None) -> Decimal:
    """
    Percentage change from ``base`` to ``value``.

    A zero or missing base yields +100 / -100 / 0 depending on the sign of
    ``value`` rather than dividing by zero.
    """
    a = base or ZERO
    b = value or ZERO
    if a != 0:
        pct = (b - a) / abs(a) * _HUNDRED
    elif b > 0:
        pct = _HUNDRED
    elif b < 0:
        pct = -_HUNDRED
    else:
        pct = ZERO
    return pct.quantize(_CENT, rounding=ROUND_HALF_UP)


def _status(a: Decimal | None, b: Decimal | None) -> DiffStatus:
    if a is None:
        return DiffStatus.ADDED
    if b is None:
        return DiffStatus.REMOVED
    if b > a:
        return DiffStatus.INCREASED
    if b < a:
        return DiffStatus.DECREASED
    return DiffStatus.UNCHANGED


@traced_engine("version_diff", "1.0")
def diff_snapshots(snapshot_a: Snapshot, snapshot_b: Snapshot) -> tuple[DiffRow, ...]:
    """
    Compare two snapshots.

    Returns:
        One row per line item active in either snapshot, ordered by
        classification and then line item id.
    """
    values_a = snapshot_a.values()
    values_b = snapshot_b.values()

    classifications: dict[UUID, Classification] = {}
    for snapshot in (snapshot_a, snapshot_b):
        for line in snapshot.lines:
            classifications.setdefault(line.line_item_id, line.line_item.classification)

    rows = []
    for line_item_id in set(values_a) | set(values_b):
        a = values_a.get(line_item_id)
        b = values_b.get(line_item_id)
        rows.append(
            DiffRow(
                line_item_id=line_item_id,
                classification=classifications[line_item_id],
                amount_a=a,
                amount_b=b,
                delta=(b or ZERO) - (a or ZERO),
                delta_percent=percent_change(a, b),
                status=_status(a, b),
            )
        )
    rows.sort(key=lambda row: (row.classification.as_tuple(), str(row.line_item_id)))
    return tuple(rows)


def aggregate_by_category(rows: Iterable[DiffRow], field: str) -> tuple[CategoryDelta, ...]:
    """
    Sum amounts and deltas per value of a classification field.

    Every row counts regardless of status.  Ordered by category name.

    Raises:
        UnknownClassificationFieldError: If ``field`` is not a classification
            level.
    """
    require_classification_field(field)
    totals: dict[str, list] = {}
    for row in rows:
        key = row.classification.get(field)
        bucket = totals.setdefault(key, [ZERO, ZERO, ZERO, 0])
        bucket[0] += row.amount_a or ZERO
        bucket[1] += row.amount_b or ZERO
        bucket[2] += row.delta
        bucket[3] += 1

    return tuple(
        CategoryDelta(
            name=name,
            amount_a=a,
            amount_b=b,
            delta=delta,
            delta_percent=percent_change(a, b),
            row_count=count,
        )
        for name, (a, b, delta, count) in sorted(totals.items())
    )


def summarize_diff(rows: Iterable[DiffRow]) -> DiffSummary:
    """Totals and status counts.  change_percent is 0 when total A is 0."""
    rows = list(rows)
    total_a = sum((row.amount_a or ZERO for row in rows), ZERO)
    total_b = sum((row.amount_b or ZERO for row in rows), ZERO)
    change = total_b - total_a
    if total_a == 0:
        change_percent = ZERO
    else:
        change_percent = (change / total_a * _HUNDRED).quantize(_CENT, rounding=ROUND_HALF_UP)

    counts = {status: 0 for status in DiffStatus}
    for row in rows:
        counts[row.status] += 1

    return DiffSummary(
        total_a=total_a,
        total_b=total_b,
        total_change=change,
        change_percent=change_percent,
        added=counts[DiffStatus.ADDED],
        removed=counts[DiffStatus.REMOVED],
        increased=counts[DiffStatus.INCREASED],
        decreased=counts[DiffStatus.DECREASED],
        unchanged=counts[DiffStatus.UNCHANGED],
    )
