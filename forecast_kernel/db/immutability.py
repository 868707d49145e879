"""
ORM-Level Immutability Enforcement for the forecast ledger.

===============================================================================
WHY THIS EXISTS
===============================================================================

Forecast versions are an audit trail: once a version is committed, its
number, reason and every one of its entries are fixed.  Later revisions are
expressed as NEW versions layered on top.  Line items that a version
references must stay resolvable forever, so they cannot be hard-deleted.

This module intercepts modifications made through SQLAlchemy before the SQL
is sent to the database:

    session.flush()
         |
         v
    [before_flush]  --> _check_line_item_deletion_before_flush()
         |
         v
    [before_update] --> _check_*_immutability() --> ImmutabilityViolationError
         |
         v
    [before_delete] --> _check_*_delete()       --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity            | When Immutable                       | Why
------------------|--------------------------------------|------------------------------
ForecastVersion   | After status = committed             | Ledger is append-only
ForecastEntry     | ALWAYS for update; delete once the   | Entries are the snapshot
                  | parent version is committed          |
LineItem          | Delete when referenced by an entry   | Versions must stay resolvable
                  | or PO mapping                        |
LineItem          | Classification once PO-mapped        | Mapped spend is reported by it

===============================================================================
DESIGN DECISIONS
===============================================================================

1. updated_at / updated_by may change on any record (audit metadata).

2. "WAS COMMITTED", NOT "IS COMMITTED".  The ledger itself flips a version
   from pending to committed; that transition is allowed.  Any change after
   it is blocked.  Detected via SQLAlchemy attribute history.

3. Pending versions (and their entries) can be deleted: that is how a
   failed commit is compensated.

4. Line-item deletion is checked in before_flush because mapper-level
   before_delete fires after the flush plan is fixed.  Callers that delete a
   pending version's entries and its line items must flush in between.

===============================================================================
USAGE
===============================================================================

    from forecast_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()

===============================================================================
"""

from sqlalchemy import event, inspect, text
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import get_history

from forecast_kernel.exceptions import (
    ClassificationLockedError,
    ImmutabilityViolationError,
    LineItemReferencedError,
)
from forecast_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at", "updated_by"})

_CLASSIFICATION_FIELDS = ("business_line", "cost_line", "spend_type", "sub_category")


def _block(entity_type: str, entity_id, operation: str, reason: str, **fields) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            **fields,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _line_item_references(session: Session, line_item_id) -> str | None:
    """Name of the first relation referencing the line item, if any."""
    params = {"line_item_id": str(line_item_id)}
    with session.no_autoflush:
        has_entries = session.execute(
            text(
                "SELECT EXISTS (SELECT 1 FROM forecast_entries "
                "WHERE line_item_id = :line_item_id)"
            ),
            params,
        ).scalar()
        if has_entries:
            return "forecast_entries"
        has_mappings = session.execute(
            text(
                "SELECT EXISTS (SELECT 1 FROM po_mappings "
                "WHERE line_item_id = :line_item_id)"
            ),
            params,
        ).scalar()
        if has_mappings:
            return "po_mappings"
    return None


def _check_line_item_deletion_before_flush(session, flush_context, instances):
    """
    Prevent hard deletion of line items that a version or PO mapping references.
    """
    from forecast_kernel.models.line_item import LineItem

    for obj in list(session.deleted):
        if not isinstance(obj, LineItem):
            continue

        referenced_by = _line_item_references(session, obj.id)
        if referenced_by is not None:
            logger.error(
                "immutability_violation_blocked",
                extra={
                    "entity_type": "LineItem",
                    "entity_id": str(obj.id),
                    "operation": "DELETE",
                    "reason": f"referenced_by_{referenced_by}",
                },
            )
            raise LineItemReferencedError(
                line_item_id=str(obj.id),
                referenced_by=referenced_by,
            )


def _check_line_item_classification(mapper, connection, target):
    """Block reclassification of a line item that has PO mappings."""
    from forecast_kernel.models.line_item import LineItem

    if not isinstance(target, LineItem):
        return

    changed = [f for f in _CLASSIFICATION_FIELDS if get_history(target, f).has_changes()]
    if not changed:
        return

    is_mapped = connection.execute(
        text(
            "SELECT EXISTS (SELECT 1 FROM po_mappings "
            "WHERE line_item_id = :line_item_id)"
        ),
        {"line_item_id": str(target.id)},
    ).scalar()
    if is_mapped:
        logger.error(
            "immutability_violation_blocked",
            extra={
                "entity_type": "LineItem",
                "entity_id": str(target.id),
                "operation": "UPDATE",
                "fields": changed,
                "reason": "po_mapped_classification",
            },
        )
        raise ClassificationLockedError(line_item_id=str(target.id), field=changed[0])


def _was_committed(target) -> bool:
    """True when the version was already committed before this flush."""
    from forecast_kernel.models.forecast_version import VersionStatus

    status_history = get_history(target, "status")
    if status_history.deleted:
        return status_history.deleted[0] == VersionStatus.COMMITTED.value
    if not status_history.added:
        return target.status == VersionStatus.COMMITTED.value
    return False


def _check_forecast_version_immutability(mapper, connection, target):
    """
    Prevent updates to committed versions.

    Allows the pending -> committed transition itself; blocks every later
    field change except audit metadata.
    """
    from forecast_kernel.models.forecast_version import ForecastVersion

    if not isinstance(target, ForecastVersion):
        return

    if not _was_committed(target):
        return

    for attr in inspect(target).attrs:
        if attr.key in _AUDIT_FIELDS or attr.key not in mapper.column_attrs:
            continue
        if attr.history.has_changes():
            _block(
                "ForecastVersion",
                target.id,
                "UPDATE",
                f"Cannot modify field '{attr.key}' on committed version",
                field=attr.key,
            )


def _check_forecast_version_delete(mapper, connection, target):
    """Committed versions are never deleted."""
    from forecast_kernel.models.forecast_version import ForecastVersion

    if not isinstance(target, ForecastVersion):
        return

    if _was_committed(target):
        _block(
            "ForecastVersion",
            target.id,
            "DELETE",
            "Committed forecast versions cannot be deleted",
        )


def _check_forecast_entry_immutability(mapper, connection, target):
    """Forecast entries are write-once."""
    from forecast_kernel.models.forecast_version import ForecastEntry

    if not isinstance(target, ForecastEntry):
        return

    for attr in inspect(target).attrs:
        if attr.key in _AUDIT_FIELDS or attr.key not in mapper.column_attrs:
            continue
        if attr.history.has_changes():
            _block(
                "ForecastEntry",
                target.id,
                "UPDATE",
                f"Cannot modify field '{attr.key}' on forecast entry",
                field=attr.key,
            )


def _check_forecast_entry_delete(mapper, connection, target):
    """Entries of a committed version cannot be deleted."""
    from forecast_kernel.models.forecast_version import ForecastEntry, VersionStatus

    if not isinstance(target, ForecastEntry):
        return

    status = connection.execute(
        text("SELECT status FROM forecast_versions WHERE id = :version_id"),
        {"version_id": str(target.version_id)},
    ).scalar()
    if status == VersionStatus.COMMITTED.value:
        _block(
            "ForecastEntry",
            target.id,
            "DELETE",
            "Entries of a committed version cannot be deleted",
        )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Call once after models are imported and before any database writes.
    Registering twice is harmless.
    """
    from forecast_kernel.models.forecast_version import ForecastEntry, ForecastVersion
    from forecast_kernel.models.line_item import LineItem

    listeners = (
        (Session, "before_flush", _check_line_item_deletion_before_flush),
        (LineItem, "before_update", _check_line_item_classification),
        (ForecastVersion, "before_update", _check_forecast_version_immutability),
        (ForecastVersion, "before_delete", _check_forecast_version_delete),
        (ForecastEntry, "before_update", _check_forecast_entry_immutability),
        (ForecastEntry, "before_delete", _check_forecast_entry_delete),
    )
    for target, event_name, listener_fn in listeners:
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that must violate immutability on purpose.
    """
    from forecast_kernel.models.forecast_version import ForecastEntry, ForecastVersion
    from forecast_kernel.models.line_item import LineItem

    _safe_remove_listener(Session, "before_flush", _check_line_item_deletion_before_flush)
    _safe_remove_listener(LineItem, "before_update", _check_line_item_classification)
    _safe_remove_listener(ForecastVersion, "before_update", _check_forecast_version_immutability)
    _safe_remove_listener(ForecastVersion, "before_delete", _check_forecast_version_delete)
    _safe_remove_listener(ForecastEntry, "before_update", _check_forecast_entry_immutability)
    _safe_remove_listener(ForecastEntry, "before_delete", _check_forecast_entry_delete)
