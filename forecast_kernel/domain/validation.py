"""
Input validation for forecast commits.

Responsibility:
    Pure checks on reasons, edit values, new line items and persistence
    payloads.  Each check returns a list of ``ValidationIssue`` values; an
    empty list means valid.  ``raise_if_issues`` converts a non-empty list
    into a ``ValidationError``.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Values are never clamped: zero or negative new-entry values and
      negative edit values are rejected.
    - Temporary identifiers and internal marker keys never reach storage.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from forecast_kernel.domain.dtos import CLASSIFICATION_FIELDS, Classification
from forecast_kernel.exceptions import InvalidReasonError, ValidationError

_MARKER_KEYS = frozenset({"local_id", "temp_id", "is_new", "is_draft"})
_TEMP_ID_PREFIX = "temp_"


@dataclass(frozen=True)
class ValidationIssue:
    """A single validation problem."""

    field: str
    message: str
    ref: str | None = None

    def as_dict(self) -> dict[str, str | None]:
        return {"field": self.field, "message": self.message, "ref": self.ref}

    def __str__(self) -> str:
        where = f"[{self.ref}] " if self.ref else ""
        return f"{where}{self.field}: {self.message}"


def to_decimal(value: Any) -> Decimal:
    """
    Convert user input to Decimal without going through binary floats.

    Raises:
        ValidationError: If the value is not numeric.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValidationError([ValidationIssue("value", f"not a number: {value!r}")])
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError([ValidationIssue("value", f"not a number: {value!r}")]) from None


def check_reason(reason: str | None, min_length: int, max_length: int) -> None:
    """
    Validate a version reason.

    Raises:
        InvalidReasonError: If blank, shorter than min_length or longer than
            max_length (after trimming surrounding whitespace).
    """
    text = (reason or "").strip()
    if not text or len(text) < min_length or len(text) > max_length:
        raise InvalidReasonError(
            reason_length=len(text),
            min_length=min_length,
            max_length=max_length,
        )


def edit_value_issues(value: Decimal | None, ref: str | None = None) -> list[ValidationIssue]:
    """Edit values must be finite and >= 0.  None (exclusion) is always valid."""
    if value is None:
        return []
    if not value.is_finite():
        return [ValidationIssue("value", "must be a finite number", ref)]
    if value < 0:
        return [ValidationIssue("value", f"must be >= 0, got {value}", ref)]
    return []


def classification_issues(
    classification: Classification,
    ref: str | None = None,
) -> list[ValidationIssue]:
    """Every classification level must be a non-blank string."""
    return [
        ValidationIssue(field_name, "is required", ref)
        for field_name in CLASSIFICATION_FIELDS
        if not (classification.get(field_name) or "").strip()
    ]


def new_line_item_issues(
    classification: Classification,
    value: Decimal,
    ref: str | None = None,
) -> list[ValidationIssue]:
    """New entries need every classification level and a strictly positive value."""
    issues = classification_issues(classification, ref)
    if not value.is_finite():
        issues.append(ValidationIssue("value", "must be a finite number", ref))
    elif value <= 0:
        issues.append(ValidationIssue("value", f"must be greater than 0, got {value}", ref))
    return issues


def persistence_payload_issues(payload: Mapping[str, Any]) -> list[ValidationIssue]:
    """Reject internal marker keys and temporary identifiers in a row payload."""
    issues: list[ValidationIssue] = []
    for key, val in payload.items():
        if key.startswith("_") or key in _MARKER_KEYS:
            issues.append(ValidationIssue(key, "internal field cannot be persisted"))
        elif key.endswith("id") and isinstance(val, str) and val.startswith(_TEMP_ID_PREFIX):
            issues.append(ValidationIssue(key, "temporary identifier cannot be persisted"))
    return issues


def raise_if_issues(issues: Iterable[ValidationIssue]) -> None:
    issues = list(issues)
    if issues:
        raise ValidationError(issues)
