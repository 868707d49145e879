"""
forecast_engines.breakdown -- budget vs. spend by classification.

Responsibility:
    Two views of a snapshot reconciled against PO mappings:

    1. ``category_control_matrix``  -- one row per value of a single
       classification level (budget, committed, actual, future).
    2. ``hierarchical_breakdown``   -- a tree business line > cost line >
       spend type > sub-category with budget, actual, variance and
       utilization at every node.

Architecture position:
    Engines -- pure functions.  Reuses the actual/future split of
    forecast_engines.reconciliation so the totals agree with the metrics.

Invariants enforced:
    - Categories come from active (non-excluded) snapshot lines only.
    - Mappings to excluded or unknown line items are skipped here.
    - A parent node's budget and actual equal the sums over its children.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from forecast_kernel.domain.dtos import (
    CLASSIFICATION_FIELDS,
    ZERO,
    POMappingRecord,
    Snapshot,
    require_classification_field,
)
from forecast_engines.reconciliation import (
    FALLBACK_INVOICE_RATIO,
    ratio_percent,
    split_mapped_amount,
)
from forecast_engines.tracer import traced_engine

LEVEL_ORDER = CLASSIFICATION_FIELDS


@dataclass(frozen=True)
class CategoryControl:
    name: str
    budget: Decimal
    committed: Decimal
    actual: Decimal
    future: Decimal


@dataclass(frozen=True)
class BreakdownNode:
    """One node of the classification tree."""

    level: str
    name: str
    budget: Decimal
    actual: Decimal
    variance: Decimal
    utilization: Decimal
    children: tuple["BreakdownNode", ...] = ()


@traced_engine("category_control", "1.0", fingerprint_fields=("field", "fallback_ratio"))
def category_control_matrix(
    *,
    snapshot: Snapshot,
    mappings: Sequence[POMappingRecord],
    field: str = "spend_type",
    fallback_ratio: Decimal = FALLBACK_INVOICE_RATIO,
) -> tuple[CategoryControl, ...]:
    """
    Budget and PO spend per value of ``field``.

    Ordered by budget (largest first), then name.

    Raises:
        UnknownClassificationFieldError: If ``field`` is not a classification
            level.
    """
    require_classification_field(field)

    active = {line.line_item_id: line for line in snapshot.active_lines()}
    totals: dict[str, list[Decimal]] = {}
    for line in active.values():
        bucket = totals.setdefault(line.line_item.classification.get(field), [ZERO] * 4)
        bucket[0] += line.value

    for mapping in mappings:
        line = active.get(mapping.line_item_id)
        if line is None:
            continue
        split = split_mapped_amount(mapping, fallback_ratio)
        bucket = totals[line.line_item.classification.get(field)]
        bucket[1] += split.mapped
        bucket[2] += split.actual
        bucket[3] += split.future

    rows = [
        CategoryControl(name=name, budget=b, committed=c, actual=a, future=f)
        for name, (b, c, a, f) in totals.items()
    ]
    rows.sort(key=lambda row: (-row.budget, row.name))
    return tuple(rows)


def _build_level(entries: list[tuple], depth: int) -> tuple[BreakdownNode, ...]:
    # entries: (classification tuple, budget, actual)
    groups: dict[str, list[tuple]] = {}
    for entry in entries:
        groups.setdefault(entry[0][depth], []).append(entry)

    nodes = []
    for name in sorted(groups):
        members = groups[name]
        budget = sum((m[1] for m in members), ZERO)
        actual = sum((m[2] for m in members), ZERO)
        children = _build_level(members, depth + 1) if depth + 1 < len(LEVEL_ORDER) else ()
        nodes.append(
            BreakdownNode(
                level=LEVEL_ORDER[depth],
                name=name,
                budget=budget,
                actual=actual,
                variance=budget - actual,
                utilization=ratio_percent(actual, budget),
                children=children,
            )
        )
    return tuple(nodes)


@traced_engine("hierarchical_breakdown", "1.0", fingerprint_fields=("fallback_ratio",))
def hierarchical_breakdown(
    *,
    snapshot: Snapshot,
    mappings: Sequence[POMappingRecord],
    fallback_ratio: Decimal = FALLBACK_INVOICE_RATIO,
) -> tuple[BreakdownNode, ...]:
    """Business line roots, each with nested cost line / spend type / sub-category nodes."""
    active = {line.line_item_id: line for line in snapshot.active_lines()}
    actual_by_item: dict = {}
    for mapping in mappings:
        if mapping.line_item_id not in active:
            continue
        split = split_mapped_amount(mapping, fallback_ratio)
        actual_by_item[mapping.line_item_id] = (
            actual_by_item.get(mapping.line_item_id, ZERO) + split.actual
        )

    entries = [
        (
            line.line_item.classification.as_tuple(),
            line.value,
            actual_by_item.get(line_item_id, ZERO),
        )
        for line_item_id, line in active.items()
    ]
    return _build_level(entries, 0)
