"""
VersionSelector -- read side of the version ledger.

Only committed versions are visible through ``list_committed`` and
``get_committed``.  ``max_version_number`` counts pending versions too,
because a pending version has already claimed its number.
"""

from uuid import UUID

from sqlalchemy import func, select

from forecast_kernel.domain.dtos import VersionInfo
from forecast_kernel.models.forecast_version import ForecastVersion, VersionStatus
from forecast_kernel.selectors.base import BaseSelector


class VersionSelector(BaseSelector[ForecastVersion]):
    """Read-only queries over forecast versions."""

    def list_committed(self, project_id: UUID) -> list[VersionInfo]:
        """Committed versions, newest (highest number) first."""
        rows = self.session.scalars(
            select(ForecastVersion)
            .where(
                ForecastVersion.project_id == project_id,
                ForecastVersion.status == VersionStatus.COMMITTED.value,
            )
            .order_by(ForecastVersion.version_number.desc())
        )
        return [row.to_dto() for row in rows]

    def get_committed(self, project_id: UUID, version_number: int) -> ForecastVersion | None:
        return self.session.scalars(
            select(ForecastVersion).where(
                ForecastVersion.project_id == project_id,
                ForecastVersion.version_number == version_number,
                ForecastVersion.status == VersionStatus.COMMITTED.value,
            )
        ).one_or_none()

    def latest_committed_number(self, project_id: UUID) -> int | None:
        return self.session.scalar(
            select(func.max(ForecastVersion.version_number)).where(
                ForecastVersion.project_id == project_id,
                ForecastVersion.status == VersionStatus.COMMITTED.value,
            )
        )

    def max_version_number(self, project_id: UUID) -> int | None:
        """Highest claimed number, pending or committed."""
        return self.session.scalar(
            select(func.max(ForecastVersion.version_number)).where(
                ForecastVersion.project_id == project_id,
            )
        )

    def pending_version_ids(self, project_id: UUID) -> list[UUID]:
        return list(
            self.session.scalars(
                select(ForecastVersion.id)
                .where(
                    ForecastVersion.project_id == project_id,
                    ForecastVersion.status == VersionStatus.PENDING.value,
                )
                .order_by(ForecastVersion.version_number)
            )
        )
