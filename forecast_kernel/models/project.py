"""
Project model.

A project owns the cost-breakdown line items and the forecast version
ledger.  ``start_date`` anchors burn-rate calculations.
"""

from datetime import date

from sqlalchemy import Date, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from forecast_kernel.db.base import TrackedBase


class Project(TrackedBase):
    """A budgeted project."""

    __tablename__ = "projects"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    business_line: Mapped[str | None] = mapped_column(String(255), nullable=True)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    line_items: Mapped[list["LineItem"]] = relationship(  # noqa: F821
        back_populates="project",
        order_by="LineItem.created_at",
    )

    versions: Mapped[list["ForecastVersion"]] = relationship(  # noqa: F821
        back_populates="project",
        order_by="ForecastVersion.version_number",
    )

    def __repr__(self) -> str:
        return f"<Project {self.name} {self.id}>"


__all__ = ["Project"]
