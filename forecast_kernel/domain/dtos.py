"""
Data Transfer Objects for the forecast kernel.

Responsibility:
    Immutable value objects passed between selectors, services and the pure
    engines.  ORM models convert to these with ``to_dto()``; engines never
    see ORM objects.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - All DTOs are frozen dataclasses.
    - Monetary values are Decimal.
    - A Snapshot holds at most one line per line item.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from forecast_kernel.exceptions import UnknownClassificationFieldError

ZERO = Decimal("0")

CLASSIFICATION_FIELDS: tuple[str, ...] = (
    "business_line",
    "cost_line",
    "spend_type",
    "sub_category",
)


def require_classification_field(field_name: str) -> str:
    if field_name not in CLASSIFICATION_FIELDS:
        raise UnknownClassificationFieldError(field_name)
    return field_name


@dataclass(frozen=True)
class Classification:
    """4-level classification of a cost line (business line > sub category)."""

    business_line: str
    cost_line: str
    spend_type: str
    sub_category: str

    def get(self, field_name: str) -> str:
        return getattr(self, require_classification_field(field_name))

    def as_tuple(self) -> tuple[str, str, str, str]:
        return (self.business_line, self.cost_line, self.spend_type, self.sub_category)


@dataclass(frozen=True)
class LineItemInfo:
    """Read-only view of a persisted line item."""

    id: UUID
    project_id: UUID
    classification: Classification
    budget_cost: Decimal
    created_in_version_id: UUID | None = None


@dataclass(frozen=True)
class VersionInfo:
    """A committed forecast version (entries not included)."""

    id: UUID
    project_id: UUID
    version_number: int
    reason: str
    created_at: datetime
    created_by: str

    @property
    def is_baseline(self) -> bool:
        return self.version_number == 0


@dataclass(frozen=True)
class SnapshotLine:
    """One line item's resolved value in a snapshot."""

    line_item: LineItemInfo
    value: Decimal
    excluded: bool = False

    @property
    def line_item_id(self) -> UUID:
        return self.line_item.id

    @property
    def contribution(self) -> Decimal:
        """Amount counted toward totals (excluded lines contribute zero)."""
        return ZERO if self.excluded else self.value


@dataclass(frozen=True)
class Snapshot:
    """
    Complete per-line-item values for one point in version history.

    Contract:
        ``version_number`` is the resolved version (0 for the baseline).
        ``version_id`` is None when the values come from the raw line-item
        table rather than a ledger entry.  ``is_unforecasted_baseline`` is
        True only for "latest" requests on a project with no versions.
    """

    project_id: UUID
    version_number: int
    lines: tuple[SnapshotLine, ...]
    version_id: UUID | None = None
    is_unforecasted_baseline: bool = False

    @property
    def total(self) -> Decimal:
        return sum((line.contribution for line in self.lines), ZERO)

    def active_lines(self) -> tuple[SnapshotLine, ...]:
        return tuple(line for line in self.lines if not line.excluded)

    def values(self) -> dict[UUID, Decimal]:
        """Values of non-excluded line items keyed by line item id."""
        return {line.line_item_id: line.value for line in self.lines if not line.excluded}

    def line(self, line_item_id: UUID) -> SnapshotLine | None:
        for candidate in self.lines:
            if candidate.line_item_id == line_item_id:
                return candidate
        return None

    def classification_of(self, line_item_id: UUID) -> Classification | None:
        found = self.line(line_item_id)
        return found.line_item.classification if found is not None else None

    def line_item_ids(self) -> frozenset[UUID]:
        return frozenset(line.line_item_id for line in self.lines)


@dataclass(frozen=True)
class NewLineItemSpec:
    """A line item to be created as part of a version commit."""

    classification: Classification
    value: Decimal


@dataclass(frozen=True)
class CommitRequest:
    """
    Persistence payload for one version.

    ``edits`` maps a persisted line item id to an explicit value, or to
    None for exclusion.  Line items not in ``edits`` inherit.
    """

    edits: Mapping[UUID, Decimal | None] = field(default_factory=dict)
    new_line_items: tuple[NewLineItemSpec, ...] = ()


@dataclass(frozen=True)
class POMappingRecord:
    """
    A PO line mapped to a cost line item, flattened for reconciliation.

    PO line fields are None when the mapping has no PO line data.
    """

    mapping_id: UUID
    line_item_id: UUID
    mapped_amount: Decimal
    po_id: UUID | None = None
    po_line_item_id: UUID | None = None
    line_value: Decimal | None = None
    invoiced_value: Decimal | None = None
    invoiced_quantity: Decimal | None = None
    invoice_date: date | None = None
    supplier_promise_date: date | None = None
    po_line_created_date: date | None = None


@dataclass(frozen=True)
class MetricsFilter:
    """Restrict aggregation to a cost line and/or spend type ("all" = any)."""

    cost_line: str | None = None
    spend_type: str | None = None

    def matches(self, classification: Classification) -> bool:
        if self.cost_line not in (None, "all") and classification.cost_line != self.cost_line:
            return False
        if self.spend_type not in (None, "all") and classification.spend_type != self.spend_type:
            return False
        return True
