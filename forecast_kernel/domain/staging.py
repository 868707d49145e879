"""
StagingBuffer -- unsaved edits for the next forecast version.

Responsibility:
    Hold the sparse set of edits a user makes while revising a forecast:
    value overrides, exclusions and brand-new line items.  Produce the
    persistence payload (``CommitRequest``) for the version ledger, a
    before/after summary, and a JSON draft that survives a page reload.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  The buffer is an
    explicit value passed between caller and facade; there is no ambient
    per-session state.

Invariants enforced:
    - Every transition returns a NEW buffer; a buffer is never mutated, so
      a failed commit leaves the caller's staged edits intact.
    - Draft line items are referenced by ``DraftRef`` and persisted ones by
      ``PersistedRef``.  Draft ids never reach the version ledger.
    - Validation rejects (never clamps) bad values.

Failure modes:
    - ValidationError from ``to_commit`` when any staged edit is invalid.
    - DraftExpiredError from ``from_draft_json`` when the draft is too old.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Any, Mapping, Union
from uuid import UUID, uuid4

from forecast_kernel.domain.dtos import (
    ZERO,
    Classification,
    CommitRequest,
    NewLineItemSpec,
    Snapshot,
)
from forecast_kernel.domain.validation import (
    ValidationIssue,
    check_reason,
    edit_value_issues,
    new_line_item_issues,
    raise_if_issues,
    to_decimal,
)
from forecast_kernel.exceptions import (
    DraftExpiredError,
    DraftLineItemNotFoundError,
    InvalidReasonError,
    ValidationError,
)

DRAFT_FORMAT_VERSION = 1
DEFAULT_DRAFT_MAX_AGE = timedelta(hours=24)

_CENT = Decimal("0.01")
_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class PersistedRef:
    """Reference to a line item that already exists in storage."""

    line_item_id: UUID

    def __str__(self) -> str:
        return str(self.line_item_id)


@dataclass(frozen=True)
class DraftRef:
    """Reference to a line item staged in this buffer but not yet persisted."""

    local_id: str

    def __str__(self) -> str:
        return f"draft:{self.local_id}"


LineItemRef = Union[PersistedRef, DraftRef]


@dataclass(frozen=True)
class DraftLineItem:
    """A new line item waiting for the next commit."""

    ref: DraftRef
    classification: Classification
    value: Decimal


@dataclass(frozen=True)
class StagingSummary:
    """Before/after totals for a staged revision."""

    total_budget: Decimal
    total_forecast: Decimal
    total_change: Decimal
    change_percent: Decimal
    modified_count: int
    excluded_count: int
    new_count: int


def _frozen(mapping: Mapping[UUID, Decimal]) -> Mapping[UUID, Decimal]:
    return MappingProxyType(dict(mapping))


def _draft_entry(item: Mapping[str, Any]) -> DraftLineItem:
    local_id = item["local_id"]
    if not isinstance(local_id, str) or not local_id:
        raise ValueError(f"bad local_id {local_id!r}")
    return DraftLineItem(
        ref=DraftRef(local_id=local_id),
        classification=Classification(
            business_line=item["business_line"],
            cost_line=item["cost_line"],
            spend_type=item["spend_type"],
            sub_category=item["sub_category"],
        ),
        value=to_decimal(item["value"]),
    )


@dataclass(frozen=True)
class StagingBuffer:
    """
    Immutable set of staged edits for one project.

    Contract:
        ``modifications`` maps persisted line item ids to override values,
        ``exclusions`` holds persisted ids to exclude, ``new_entries`` holds
        draft line items in insertion order.  A persisted id is never in both
        ``modifications`` and ``exclusions``.

    Guarantees:
        - Transitions (``modify``, ``exclude``, ``reset``, ``add_new``,
          ``remove_new``, ``clear``) return new buffers.
        - ``to_commit`` either returns a complete valid payload or raises.

    Non-goals:
        - Does NOT know which line items exist; unknown ids are reported by
          the version ledger as LineItemNotFoundError.
    """

    project_id: UUID
    base_version_number: int | None = None
    modifications: Mapping[UUID, Decimal] = field(default_factory=lambda: _frozen({}))
    exclusions: frozenset[UUID] = frozenset()
    new_entries: tuple[DraftLineItem, ...] = ()

    # -- transitions ---------------------------------------------------------

    def modify(self, ref: LineItemRef, value: Any) -> StagingBuffer:
        """Stage an explicit value.  Re-includes a previously excluded item."""
        amount = to_decimal(value)
        if isinstance(ref, DraftRef):
            self._require_draft(ref)
            return replace(
                self,
                new_entries=tuple(
                    replace(entry, value=amount) if entry.ref == ref else entry
                    for entry in self.new_entries
                ),
            )
        mods = dict(self.modifications)
        mods[ref.line_item_id] = amount
        return replace(
            self,
            modifications=_frozen(mods),
            exclusions=self.exclusions - {ref.line_item_id},
        )

    def exclude(self, ref: LineItemRef) -> StagingBuffer:
        """Exclude an item from the next version.  Excluding a draft discards it."""
        if isinstance(ref, DraftRef):
            return self.remove_new(ref)
        mods = dict(self.modifications)
        mods.pop(ref.line_item_id, None)
        return replace(
            self,
            modifications=_frozen(mods),
            exclusions=self.exclusions | {ref.line_item_id},
        )

    def reset(self, ref: PersistedRef) -> StagingBuffer:
        """Drop any staged override or exclusion so the item inherits again."""
        if isinstance(ref, DraftRef):
            raise ValidationError(
                [ValidationIssue("ref", "reset applies to persisted line items; use remove_new", str(ref))]
            )
        mods = dict(self.modifications)
        mods.pop(ref.line_item_id, None)
        return replace(
            self,
            modifications=_frozen(mods),
            exclusions=self.exclusions - {ref.line_item_id},
        )

    def add_new(
        self,
        *,
        business_line: str,
        cost_line: str,
        spend_type: str,
        sub_category: str,
        value: Any,
    ) -> tuple[StagingBuffer, DraftRef]:
        """Stage a brand-new line item.  Returns the new buffer and its draft ref."""
        ref = DraftRef(local_id=uuid4().hex)
        entry = DraftLineItem(
            ref=ref,
            classification=Classification(
                business_line=business_line,
                cost_line=cost_line,
                spend_type=spend_type,
                sub_category=sub_category,
            ),
            value=to_decimal(value),
        )
        return replace(self, new_entries=self.new_entries + (entry,)), ref

    def remove_new(self, ref: DraftRef) -> StagingBuffer:
        self._require_draft(ref)
        return replace(
            self,
            new_entries=tuple(e for e in self.new_entries if e.ref != ref),
        )

    def clear(self) -> StagingBuffer:
        return StagingBuffer(
            project_id=self.project_id,
            base_version_number=self.base_version_number,
        )

    # -- queries -------------------------------------------------------------

    @property
    def is_empty(self) -> bool:
        return not (self.modifications or self.exclusions or self.new_entries)

    @property
    def modified_count(self) -> int:
        return len(self.modifications)

    @property
    def excluded_count(self) -> int:
        return len(self.exclusions)

    @property
    def new_count(self) -> int:
        return len(self.new_entries)

    def validate(
        self,
        reason: str | None = None,
        *,
        reason_min_length: int = 10,
        reason_max_length: int = 500,
    ) -> list[ValidationIssue]:
        """Every problem with the staged edits (empty list = valid)."""
        issues: list[ValidationIssue] = []
        if reason is not None:
            try:
                check_reason(reason, reason_min_length, reason_max_length)
            except InvalidReasonError as exc:
                issues.extend(exc.issues)
        for line_item_id, value in self.modifications.items():
            issues.extend(edit_value_issues(value, ref=str(line_item_id)))
        for entry in self.new_entries:
            issues.extend(new_line_item_issues(entry.classification, entry.value, ref=str(entry.ref)))
        return issues

    def to_commit(self) -> CommitRequest:
        """
        Build the persistence payload.

        Raises:
            ValidationError: If any staged edit is invalid.  The buffer is
                unchanged and can be corrected and retried.
        """
        raise_if_issues(self.validate())
        edits: dict[UUID, Decimal | None] = dict(self.modifications)
        for line_item_id in self.exclusions:
            edits[line_item_id] = None
        new_items = tuple(
            NewLineItemSpec(
                classification=Classification(
                    *(part.strip() for part in entry.classification.as_tuple())
                ),
                value=entry.value,
            )
            for entry in self.new_entries
        )
        return CommitRequest(edits=edits, new_line_items=new_items)

    def summary(self, base: Snapshot) -> StagingSummary:
        """Totals of ``base`` before and after applying the staged edits."""
        total_budget = base.total
        total_forecast = ZERO
        for line in base.lines:
            line_item_id = line.line_item_id
            if line_item_id in self.exclusions:
                continue
            if line_item_id in self.modifications:
                total_forecast += self.modifications[line_item_id]
            else:
                total_forecast += line.contribution
        total_forecast += sum((entry.value for entry in self.new_entries), ZERO)

        change = total_forecast - total_budget
        if total_budget == 0:
            percent = ZERO
        else:
            percent = (change / total_budget * _HUNDRED).quantize(_CENT, rounding=ROUND_HALF_UP)

        return StagingSummary(
            total_budget=total_budget,
            total_forecast=total_forecast,
            total_change=change,
            change_percent=percent,
            modified_count=self.modified_count,
            excluded_count=self.excluded_count,
            new_count=self.new_count,
        )

    # -- drafts --------------------------------------------------------------

    def to_draft_json(self, saved_at: datetime) -> str:
        """Serialise the buffer so an interrupted editing session can resume."""
        payload = {
            "format": DRAFT_FORMAT_VERSION,
            "project_id": str(self.project_id),
            "base_version_number": self.base_version_number,
            "saved_at": saved_at.isoformat(),
            "modifications": {str(k): str(v) for k, v in self.modifications.items()},
            "exclusions": sorted(str(x) for x in self.exclusions),
            "new_entries": [
                {
                    "local_id": entry.ref.local_id,
                    "business_line": entry.classification.business_line,
                    "cost_line": entry.classification.cost_line,
                    "spend_type": entry.classification.spend_type,
                    "sub_category": entry.classification.sub_category,
                    "value": str(entry.value),
                }
                for entry in self.new_entries
            ],
        }
        return json.dumps(payload, sort_keys=True)

    @classmethod
    def from_draft_json(
        cls,
        text: str,
        now: datetime,
        max_age: timedelta = DEFAULT_DRAFT_MAX_AGE,
    ) -> StagingBuffer:
        """
        Restore a buffer saved with ``to_draft_json``.

        Drafts come back from client storage, so every field is checked.
        ``saved_at`` must carry a UTC offset.

        Raises:
            DraftExpiredError: If the draft is older than ``max_age``.
            ValidationError: If the text is not a draft this module wrote.
        """
        try:
            payload = json.loads(text)
            if payload.get("format") != DRAFT_FORMAT_VERSION:
                raise ValueError(f"unsupported draft format {payload.get('format')!r}")
            saved_at = datetime.fromisoformat(payload["saved_at"])
            if saved_at.tzinfo is None:
                raise ValueError("saved_at has no UTC offset")
            base = payload.get("base_version_number")
            if base is not None and (isinstance(base, bool) or not isinstance(base, int)):
                raise ValueError(f"bad base_version_number {base!r}")
            buffer = cls(
                project_id=UUID(payload["project_id"]),
                base_version_number=base,
                modifications=_frozen(
                    {UUID(k): to_decimal(v) for k, v in payload.get("modifications", {}).items()}
                ),
                exclusions=frozenset(UUID(x) for x in payload.get("exclusions", [])),
                new_entries=tuple(_draft_entry(item) for item in payload.get("new_entries", [])),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise ValidationError([ValidationIssue("draft", f"unreadable draft: {exc!r}")]) from exc

        if now - saved_at > max_age:
            raise DraftExpiredError(
                saved_at=payload["saved_at"],
                max_age_hours=max_age.total_seconds() / 3600,
            )
        return buffer

    # -- helpers -------------------------------------------------------------

    def _require_draft(self, ref: DraftRef) -> None:
        if not any(entry.ref == ref for entry in self.new_entries):
            raise DraftLineItemNotFoundError(ref.local_id)
