"""
Module: forecast_kernel.selectors.snapshot_selector
Responsibility: Read side of the forecast snapshot builder.  Resolves a
    version selector ("latest", 0, 1, 2, ...) to a complete Snapshot.
Architecture position: Kernel > Selectors.  Read-only.

Resolution rules:
    - 0        -> the committed version-0 ledger entry if one exists
                  (authoritative), otherwise the raw baseline line items
                  valued at budget_cost.
    - "latest" -> the highest committed version; with no versions, the raw
                  baseline flagged ``is_unforecasted_baseline``.
    - N >= 1   -> that committed version, or VersionNotFoundError.
    Pending versions are never visible.

Invariants enforced:
    - A committed version resolves to at most one line per line item, all
      belonging to the project (SnapshotInvariantError otherwise, logged
      CRITICAL).

Failure modes:
    - InvalidSelectorError for negative numbers, bools or strings other
      than "latest".
    - ProjectNotFoundError / VersionNotFoundError.
"""

from uuid import UUID

from sqlalchemy import select

from forecast_kernel.domain.dtos import Snapshot, SnapshotLine
from forecast_kernel.exceptions import (
    InvalidSelectorError,
    SnapshotInvariantError,
    VersionNotFoundError,
)
from forecast_kernel.logging_config import get_logger
from forecast_kernel.models.forecast_version import ForecastEntry, ForecastVersion
from forecast_kernel.models.line_item import LineItem
from forecast_kernel.selectors.base import BaseSelector
from forecast_kernel.selectors.line_item_selector import LineItemSelector
from forecast_kernel.selectors.version_selector import VersionSelector

logger = get_logger("selectors.snapshot")

LATEST = "latest"


def normalize_selector(selector: object) -> int | str:
    """
    Raises:
        InvalidSelectorError: Unless selector is "latest" or an int >= 0.
    """
    if selector == LATEST:
        return LATEST
    if isinstance(selector, int) and not isinstance(selector, bool) and selector >= 0:
        return selector
    raise InvalidSelectorError(selector)


class SnapshotSelector(BaseSelector[ForecastEntry]):
    """Resolves version selectors to complete snapshots."""

    def __init__(self, session):
        super().__init__(session)
        self._line_items = LineItemSelector(session)
        self._versions = VersionSelector(session)

    def resolve_snapshot(self, project_id: UUID, selector: int | str = LATEST) -> Snapshot:
        """Read-only and idempotent: the same inputs yield equal snapshots."""
        selector = normalize_selector(selector)
        self._line_items.require_project(project_id)

        if selector == LATEST:
            number = self._versions.latest_committed_number(project_id)
            if number is None:
                snapshot = self.baseline_snapshot(project_id, unforecasted=True)
            else:
                snapshot = self.version_snapshot(
                    self._versions.get_committed(project_id, number)
                )
        else:
            version = self._versions.get_committed(project_id, selector)
            if version is not None:
                snapshot = self.version_snapshot(version)
            elif selector == 0:
                snapshot = self.baseline_snapshot(project_id, unforecasted=False)
            else:
                raise VersionNotFoundError(str(project_id), selector)

        logger.debug(
            "snapshot_resolved",
            extra={
                "project_id": str(project_id),
                "selector": selector,
                "version_number": snapshot.version_number,
                "line_count": len(snapshot.lines),
                "unforecasted_baseline": snapshot.is_unforecasted_baseline,
            },
        )
        return snapshot

    def baseline_snapshot(self, project_id: UUID, unforecasted: bool = False) -> Snapshot:
        """Raw baseline line items valued at budget_cost (no ledger involved)."""
        lines = tuple(
            SnapshotLine(line_item=item, value=item.budget_cost)
            for item in self._line_items.list_baseline(project_id)
        )
        return Snapshot(
            project_id=project_id,
            version_number=0,
            lines=lines,
            version_id=None,
            is_unforecasted_baseline=unforecasted,
        )

    def version_snapshot(self, version: ForecastVersion) -> Snapshot:
        rows = self.session.execute(
            select(ForecastEntry, LineItem)
            .join(LineItem, ForecastEntry.line_item_id == LineItem.id)
            .where(ForecastEntry.version_id == version.id)
            .order_by(
                LineItem.business_line,
                LineItem.cost_line,
                LineItem.spend_type,
                LineItem.sub_category,
                LineItem.id,
            )
        ).all()

        seen: set[UUID] = set()
        duplicated: list[str] = []
        foreign: list[str] = []
        lines: list[SnapshotLine] = []
        for entry, item in rows:
            if item.id in seen:
                duplicated.append(str(item.id))
                continue
            if item.project_id != version.project_id:
                foreign.append(str(item.id))
                continue
            seen.add(item.id)
            lines.append(
                SnapshotLine(
                    line_item=item.to_dto(),
                    value=entry.forecasted_cost,
                    excluded=entry.is_excluded,
                )
            )

        if duplicated or foreign:
            error = SnapshotInvariantError(
                project_id=str(version.project_id),
                version_number=version.version_number,
                missing=foreign,
                duplicated=duplicated,
            )
            logger.critical(
                "snapshot_invariant_violated",
                extra={
                    "version_id": str(version.id),
                    "duplicated": duplicated,
                    "foreign_line_items": foreign,
                },
            )
            raise error

        return Snapshot(
            project_id=version.project_id,
            version_number=version.version_number,
            lines=tuple(lines),
            version_id=version.id,
        )
