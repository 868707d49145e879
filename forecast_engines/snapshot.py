"""
forecast_engines.snapshot -- forecast value resolution for a new version.

Responsibility:
    Decide the value of every line item in version N from the edits, the
    previous version's snapshot and the baseline budgets.  Check that a
    resolved entry set is complete before it is persisted.

Architecture position:
    Engines -- pure functions, no I/O, no clock.

Resolution rules, in priority order, for each line item:
    1. ``edits[id]`` is a value       -> that value (re-includes an item
                                         excluded earlier).
    2. ``edits[id] is None``          -> excluded, contributes zero.
    3. previous snapshot has the item -> inherit value AND exclusion flag.
    4. otherwise                      -> the line item's budget_cost.

Invariants enforced:
    - Exactly one resolved line per line item (check_completeness).
    - Edits may only reference line items that exist.

Failure modes:
    - LineItemNotFoundError for edits naming an unknown line item.
    - SnapshotInvariantError (logged CRITICAL) for incomplete entry sets.
"""

from collections.abc import Mapping, Sequence
from decimal import Decimal
from uuid import UUID

from forecast_kernel.domain.dtos import ZERO, LineItemInfo, Snapshot, SnapshotLine
from forecast_kernel.exceptions import LineItemNotFoundError, SnapshotInvariantError
from forecast_kernel.logging_config import get_logger
from forecast_engines.tracer import traced_engine

logger = get_logger("engines.snapshot")


@traced_engine("snapshot_resolution", "1.0", fingerprint_fields=("version_number", "edits"))
def resolve_version_lines(
    *,
    project_id: UUID,
    version_number: int,
    line_items: Sequence[LineItemInfo],
    previous: Snapshot | None,
    edits: Mapping[UUID, Decimal | None],
) -> tuple[SnapshotLine, ...]:
    """
    Resolve the complete line set for version ``version_number``.

    Args:
        line_items: Every line item existing when the version is created.
        previous: Snapshot of version N-1, or None when there is none.
        edits: Sparse overrides; None means exclude, absent means inherit.

    Returns:
        One SnapshotLine per line item, in ``line_items`` order.
    """
    known = {item.id for item in line_items}
    unknown = [line_item_id for line_item_id in edits if line_item_id not in known]
    if unknown:
        raise LineItemNotFoundError(str(unknown[0]), str(project_id))

    inherited = {line.line_item_id: line for line in previous.lines} if previous else {}

    lines = []
    for item in line_items:
        if item.id in edits:
            value = edits[item.id]
            if value is None:
                lines.append(SnapshotLine(line_item=item, value=ZERO, excluded=True))
            else:
                lines.append(SnapshotLine(line_item=item, value=value))
        elif item.id in inherited:
            prior = inherited[item.id]
            lines.append(SnapshotLine(line_item=item, value=prior.value, excluded=prior.excluded))
        else:
            lines.append(SnapshotLine(line_item=item, value=item.budget_cost))
    return tuple(lines)


def check_completeness(
    *,
    project_id: UUID,
    version_number: int,
    line_item_ids: Sequence[UUID],
    lines: Sequence[SnapshotLine],
) -> None:
    """
    Raises:
        SnapshotInvariantError: Unless ``lines`` holds exactly one line for
            each id in ``line_item_ids`` and nothing else.
    """
    counts: dict[UUID, int] = {}
    for line in lines:
        counts[line.line_item_id] = counts.get(line.line_item_id, 0) + 1

    expected = set(line_item_ids)
    missing = [str(i) for i in expected if i not in counts]
    duplicated = [str(i) for i, n in counts.items() if n > 1]
    unexpected = [str(i) for i in counts if i not in expected]
    if missing or duplicated or unexpected:
        logger.critical(
            "snapshot_invariant_violated",
            extra={
                "project_id": str(project_id),
                "version_number": version_number,
                "missing": missing,
                "duplicated": duplicated,
                "unexpected": unexpected,
            },
        )
        raise SnapshotInvariantError(
            project_id=str(project_id),
            version_number=version_number,
            missing=missing + unexpected,
            duplicated=duplicated,
        )
