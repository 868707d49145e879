"""
Forecast version ledger models.

ForecastVersion is the ledger header; ForecastEntry holds one value per
(version, line item).  A committed version's entries are the complete
snapshot for that version.

Invariants enforced:
    - (project_id, version_number) is unique.  Pending versions hold their
      number too, so a concurrent writer cannot claim it.
    - (version_id, line_item_id) is unique: at most one entry per line item.
    - Committed versions and their entries are immutable
      (see db/immutability.py).
"""

from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from forecast_kernel.db.base import TrackedBase, UUIDString
from forecast_kernel.domain.dtos import VersionInfo


class VersionStatus(str, Enum):
    """Lifecycle status of a forecast version.

    Contract: Transitions are one-way: PENDING -> COMMITTED.  A pending
    version is invisible to readers and may be removed by compensation.
    """

    PENDING = "pending"
    COMMITTED = "committed"


class ForecastVersion(TrackedBase):
    """A numbered, reasoned, immutable forecast version."""

    __tablename__ = "forecast_versions"

    __table_args__ = (
        UniqueConstraint(
            "project_id", "version_number",
            name="uq_forecast_version_project_number",
        ),
        Index("idx_forecast_version_project", "project_id"),
        Index("idx_forecast_version_status", "status"),
    )

    project_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("projects.id"),
        nullable=False,
    )

    version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    reason: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=VersionStatus.PENDING.value,
    )

    project: Mapped["Project"] = relationship(back_populates="versions")  # noqa: F821

    entries: Mapped[list["ForecastEntry"]] = relationship(
        back_populates="version",
    )

    @property
    def is_committed(self) -> bool:
        return self.status == VersionStatus.COMMITTED.value

    def to_dto(self) -> VersionInfo:
        return VersionInfo(
            id=self.id,
            project_id=self.project_id,
            version_number=self.version_number,
            reason=self.reason,
            created_at=self.created_at,
            created_by=self.created_by,
        )

    def __repr__(self) -> str:
        return f"<ForecastVersion v{self.version_number} [{self.status}]>"


class ForecastEntry(TrackedBase):
    """
    Forecast value for one line item in one version.

    Excluded items are stored with ``forecasted_cost = 0`` and
    ``is_excluded = True`` so the exclusion carries forward by inheritance.
    """

    __tablename__ = "forecast_entries"

    __table_args__ = (
        UniqueConstraint(
            "version_id", "line_item_id",
            name="uq_forecast_entry_version_line_item",
        ),
        Index("idx_forecast_entry_version", "version_id"),
        Index("idx_forecast_entry_line_item", "line_item_id"),
    )

    version_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("forecast_versions.id"),
        nullable=False,
    )

    line_item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("line_items.id"),
        nullable=False,
    )

    forecasted_cost: Mapped[Decimal] = mapped_column(nullable=False)

    is_excluded: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    version: Mapped["ForecastVersion"] = relationship(back_populates="entries")

    def __repr__(self) -> str:
        flag = " excluded" if self.is_excluded else ""
        return f"<ForecastEntry {self.line_item_id} {self.forecasted_cost}{flag}>"
