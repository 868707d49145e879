"""
LineItemSelector -- read side of the line-item store.

Line items are returned ordered by classification, then id, so every
snapshot and report built from them is deterministic.
"""

from uuid import UUID

from sqlalchemy import or_, select

from forecast_kernel.domain.dtos import LineItemInfo
from forecast_kernel.exceptions import LineItemNotFoundError, ProjectNotFoundError
from forecast_kernel.models.forecast_version import ForecastVersion, VersionStatus
from forecast_kernel.models.line_item import LineItem
from forecast_kernel.models.project import Project
from forecast_kernel.selectors.base import BaseSelector

_ORDERING = (
    LineItem.business_line,
    LineItem.cost_line,
    LineItem.spend_type,
    LineItem.sub_category,
    LineItem.id,
)


class LineItemSelector(BaseSelector[LineItem]):
    """Read-only queries over projects and their line items."""

    def get_project(self, project_id: UUID) -> Project:
        """
        Raises:
            ProjectNotFoundError: If the project does not exist.
        """
        project = self.session.get(Project, project_id)
        if project is None:
            raise ProjectNotFoundError(str(project_id))
        return project

    def require_project(self, project_id: UUID) -> None:
        self.get_project(project_id)

    def list_for_project(
        self,
        project_id: UUID,
        include_version_id: UUID | None = None,
    ) -> list[LineItemInfo]:
        """
        Line items visible to readers: baseline items plus items created by
        committed versions.  Items created by the pending version
        ``include_version_id`` are included as well (used while that version
        is being built).
        """
        visible = or_(
            LineItem.created_in_version_id.is_(None),
            ForecastVersion.status == VersionStatus.COMMITTED.value,
        )
        if include_version_id is not None:
            visible = or_(visible, LineItem.created_in_version_id == include_version_id)
        rows = self.session.scalars(
            select(LineItem)
            .outerjoin(ForecastVersion, LineItem.created_in_version_id == ForecastVersion.id)
            .where(LineItem.project_id == project_id, visible)
            .order_by(*_ORDERING)
        )
        return [row.to_dto() for row in rows]

    def list_baseline(self, project_id: UUID) -> list[LineItemInfo]:
        """Line items that belong to the baseline (not introduced by a version)."""
        rows = self.session.scalars(
            select(LineItem)
            .where(
                LineItem.project_id == project_id,
                LineItem.created_in_version_id.is_(None),
            )
            .order_by(*_ORDERING)
        )
        return [row.to_dto() for row in rows]

    def get(self, project_id: UUID, line_item_id: UUID) -> LineItemInfo:
        """
        Raises:
            LineItemNotFoundError: If the id is unknown or belongs to another project.
        """
        row = self.session.get(LineItem, line_item_id)
        if row is None or row.project_id != project_id:
            raise LineItemNotFoundError(str(line_item_id), str(project_id))
        return row.to_dto()
