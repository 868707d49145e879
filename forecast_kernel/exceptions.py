"""
Typed Exception Hierarchy for the Forecast Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the forecast engine branch on the KIND of failure, not on message
text:

  - validation problems go back to the user for correction
  - missing projects / versions are reported, never retried
  - version-number conflicts are retried once with a fresh number
  - transient storage failures are retried by policy
  - invariant violations are bugs and must stop processing

Every exception carries a machine-readable ``code`` class attribute and
structured attributes (never only a message string).

Example:
    try:
        service.create_version(project_id, reason, edits, [], actor)
    except ValidationError as e:
        return {"error": e.code, "issues": [i.as_dict() for i in e.issues]}
    except VersionConflictError as e:
        log.warning("conflict on version %s", e.version_number)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ForecastKernelError (base)
    |
    +-- ValidationError
    |   +-- InvalidReasonError
    |   +-- InvalidSelectorError
    |   +-- DraftExpiredError
    |   +-- UnknownClassificationFieldError
    |
    +-- NotFoundError
    |   +-- ProjectNotFoundError
    |   +-- VersionNotFoundError
    |   +-- LineItemNotFoundError
    |   +-- DraftLineItemNotFoundError
    |
    +-- ConflictError
    |   +-- VersionConflictError
    |   +-- BaselineVersionExistsError
    |
    +-- TransientStorageError
    |
    +-- InvariantViolationError
    |   +-- SnapshotInvariantError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError
        +-- LineItemReferencedError
        +-- ClassificationLockedError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_FAILED           | Staged edits / inputs rejected
                | INVALID_REASON              | Reason blank, too short or too long
                | INVALID_SELECTOR            | Selector not "latest" or int >= 0
                | DRAFT_EXPIRED               | Saved draft older than max age
                | UNKNOWN_CLASSIFICATION_FIELD| Grouping by a non-classification field
----------------|-----------------------------|-----------------------------------------
Not found       | PROJECT_NOT_FOUND           | Project id doesn't exist
                | VERSION_NOT_FOUND           | Version number doesn't exist
                | LINE_ITEM_NOT_FOUND         | Line item id doesn't exist in project
                | DRAFT_LINE_ITEM_NOT_FOUND   | Draft ref not staged in the buffer
----------------|-----------------------------|-----------------------------------------
Conflict        | VERSION_CONFLICT            | (project, version_number) already taken
                | BASELINE_VERSION_EXISTS     | Version 0 requested but versions exist
----------------|-----------------------------|-----------------------------------------
Storage         | TRANSIENT_STORAGE_ERROR     | Connection / timeout failure
----------------|-----------------------------|-----------------------------------------
Invariant       | SNAPSHOT_INVARIANT_VIOLATED | Entry set incomplete or duplicated
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Modifying a committed version / entry
                | LINE_ITEM_REFERENCED        | Deleting a referenced line item
                | CLASSIFICATION_LOCKED       | Reclassifying a PO-mapped line item

===============================================================================
"""


class ForecastKernelError(Exception):
    """
    Base exception for all forecast kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "FORECAST_KERNEL_ERROR"


# Validation exceptions


class ValidationError(ForecastKernelError):
    """
    Input rejected before any persistence took place.

    ``issues`` is a list of ``ValidationIssue`` objects (one per problem).
    """

    code: str = "VALIDATION_FAILED"

    def __init__(self, issues: list, message: str | None = None):
        self.issues = list(issues)
        if message is None:
            message = "; ".join(str(issue) for issue in self.issues) or "invalid input"
        super().__init__(f"Validation failed: {message}")


class InvalidReasonError(ValidationError):
    """Version reason is blank or outside the configured length bounds."""

    code: str = "INVALID_REASON"

    def __init__(self, reason_length: int, min_length: int, max_length: int):
        from forecast_kernel.domain.validation import ValidationIssue

        self.reason_length = reason_length
        self.min_length = min_length
        self.max_length = max_length
        super().__init__(
            [
                ValidationIssue(
                    field="reason",
                    message=(
                        f"reason must be {min_length}-{max_length} characters, "
                        f"got {reason_length}"
                    ),
                )
            ]
        )


class InvalidSelectorError(ValidationError):
    """Version selector is neither "latest" nor a non-negative integer."""

    code: str = "INVALID_SELECTOR"

    def __init__(self, selector: object):
        from forecast_kernel.domain.validation import ValidationIssue

        self.selector = selector
        super().__init__(
            [
                ValidationIssue(
                    field="selector",
                    message=f"expected 'latest' or a non-negative integer, got {selector!r}",
                )
            ]
        )


class DraftExpiredError(ValidationError):
    """A saved staging draft is older than the allowed age."""

    code: str = "DRAFT_EXPIRED"

    def __init__(self, saved_at: str, max_age_hours: float):
        from forecast_kernel.domain.validation import ValidationIssue

        self.saved_at = saved_at
        self.max_age_hours = max_age_hours
        super().__init__(
            [
                ValidationIssue(
                    field="saved_at",
                    message=f"draft saved at {saved_at} is older than {max_age_hours}h",
                )
            ]
        )


class UnknownClassificationFieldError(ValidationError):
    """Grouping requested on a field that is not a classification level."""

    code: str = "UNKNOWN_CLASSIFICATION_FIELD"

    def __init__(self, field_name: str):
        from forecast_kernel.domain.validation import ValidationIssue

        self.field_name = field_name
        super().__init__(
            [ValidationIssue(field="field", message=f"unknown classification field {field_name!r}")]
        )


# Not-found exceptions


class NotFoundError(ForecastKernelError):
    """Base exception for missing entities. Never retried."""

    code: str = "NOT_FOUND"


class ProjectNotFoundError(NotFoundError):
    """Project with given ID was not found."""

    code: str = "PROJECT_NOT_FOUND"

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project not found: {project_id}")


class VersionNotFoundError(NotFoundError):
    """Requested forecast version does not exist for the project."""

    code: str = "VERSION_NOT_FOUND"

    def __init__(self, project_id: str, version_number: int):
        self.project_id = project_id
        self.version_number = version_number
        super().__init__(
            f"Forecast version {version_number} not found for project {project_id}"
        )


class LineItemNotFoundError(NotFoundError):
    """Line item does not exist (or belongs to another project)."""

    code: str = "LINE_ITEM_NOT_FOUND"

    def __init__(self, line_item_id: str, project_id: str | None = None):
        self.line_item_id = line_item_id
        self.project_id = project_id
        suffix = f" in project {project_id}" if project_id else ""
        super().__init__(f"Line item not found: {line_item_id}{suffix}")


class DraftLineItemNotFoundError(NotFoundError):
    """Draft ref is not staged in the buffer it was used with."""

    code: str = "DRAFT_LINE_ITEM_NOT_FOUND"

    def __init__(self, local_id: str):
        self.local_id = local_id
        super().__init__(f"Draft line item not found: {local_id}")


# Conflict exceptions


class ConflictError(ForecastKernelError):
    """Base exception for concurrent-modification conflicts."""

    code: str = "CONFLICT"


class VersionConflictError(ConflictError):
    """Another writer already claimed this version number."""

    code: str = "VERSION_CONFLICT"

    def __init__(self, project_id: str, version_number: int):
        self.project_id = project_id
        self.version_number = version_number
        super().__init__(
            f"Version {version_number} of project {project_id} "
            "was created by another transaction"
        )


class BaselineVersionExistsError(ConflictError):
    """Version 0 may only be created while the project has no versions."""

    code: str = "BASELINE_VERSION_EXISTS"

    def __init__(self, project_id: str, latest_version_number: int):
        self.project_id = project_id
        self.latest_version_number = latest_version_number
        super().__init__(
            f"Project {project_id} already has versions "
            f"(latest {latest_version_number}); baseline cannot be created"
        )


# Storage exceptions


class TransientStorageError(ForecastKernelError):
    """
    Retryable storage failure (connection drop, lock timeout).

    Wraps the original DB-API error in ``original``.
    """

    code: str = "TRANSIENT_STORAGE_ERROR"

    def __init__(self, operation: str, original: BaseException):
        self.operation = operation
        self.original = original
        super().__init__(
            f"Transient storage failure during {operation}: "
            f"{type(original).__name__}: {original}"
        )


# Invariant exceptions


class InvariantViolationError(ForecastKernelError):
    """An internal invariant does not hold. Indicates a bug; never corrected."""

    code: str = "INVARIANT_VIOLATED"


class SnapshotInvariantError(InvariantViolationError):
    """A version's entry set is not exactly one entry per line item."""

    code: str = "SNAPSHOT_INVARIANT_VIOLATED"

    def __init__(
        self,
        project_id: str,
        version_number: int,
        missing: list[str] | None = None,
        duplicated: list[str] | None = None,
    ):
        self.project_id = project_id
        self.version_number = version_number
        self.missing = sorted(missing or [])
        self.duplicated = sorted(duplicated or [])
        super().__init__(
            f"Snapshot for version {version_number} of project {project_id} "
            f"is incomplete: missing={self.missing} duplicated={self.duplicated}"
        )


# Immutability exceptions


class ImmutabilityError(ForecastKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete a committed version or its entries."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class LineItemReferencedError(ImmutabilityError):
    """Line item is referenced by a forecast entry or PO mapping."""

    code: str = "LINE_ITEM_REFERENCED"

    def __init__(self, line_item_id: str, referenced_by: str):
        self.line_item_id = line_item_id
        self.referenced_by = referenced_by
        super().__init__(
            f"Line item {line_item_id} cannot be deleted: referenced by {referenced_by}"
        )


class ClassificationLockedError(ImmutabilityError):
    """Classification of a PO-mapped line item cannot change."""

    code: str = "CLASSIFICATION_LOCKED"

    def __init__(self, line_item_id: str, field: str):
        self.line_item_id = line_item_id
        self.field = field
        super().__init__(
            f"Line item {line_item_id} is PO-mapped; '{field}' cannot change"
        )
