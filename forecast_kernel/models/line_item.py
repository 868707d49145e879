"""
LineItem model -- one row of a project's cost breakdown.

Invariants enforced:
    - ``budget_cost`` is the baseline value and is never overwritten by a
      forecast version (forecast values live in ForecastEntry).
    - A line item referenced by any forecast entry is never hard-deleted
      (see db/immutability.py).
    - Classification is frozen once the item is PO-mapped.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from forecast_kernel.db.base import TrackedBase, UUIDString
from forecast_kernel.domain.dtos import Classification, LineItemInfo


class LineItem(TrackedBase):
    """
    A classified cost-breakdown row.

    Guarantees:
        - Belongs to exactly one project.
        - ``created_in_version_id`` is set when the row was created as a new
          entry during a version commit (NULL for baseline imports).
    """

    __tablename__ = "line_items"

    __table_args__ = (
        Index("idx_line_item_project", "project_id"),
        Index("idx_line_item_created_in_version", "created_in_version_id"),
    )

    project_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("projects.id"),
        nullable=False,
    )

    business_line: Mapped[str] = mapped_column(String(255), nullable=False)
    cost_line: Mapped[str] = mapped_column(String(255), nullable=False)
    spend_type: Mapped[str] = mapped_column(String(255), nullable=False)
    sub_category: Mapped[str] = mapped_column(String(255), nullable=False)

    budget_cost: Mapped[Decimal] = mapped_column(nullable=False)

    created_in_version_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("forecast_versions.id"),
        nullable=True,
    )

    project: Mapped["Project"] = relationship(back_populates="line_items")  # noqa: F821

    @property
    def classification(self) -> Classification:
        return Classification(
            business_line=self.business_line,
            cost_line=self.cost_line,
            spend_type=self.spend_type,
            sub_category=self.sub_category,
        )

    def to_dto(self) -> LineItemInfo:
        return LineItemInfo(
            id=self.id,
            project_id=self.project_id,
            classification=self.classification,
            budget_cost=self.budget_cost,
            created_in_version_id=self.created_in_version_id,
        )

    def __repr__(self) -> str:
        return (
            f"<LineItem {self.cost_line}/{self.spend_type}/{self.sub_category} "
            f"budget={self.budget_cost}>"
        )
