"""
BaselineService -- write side of the line-item store.

Responsibility:
    Create projects and maintain their baseline cost breakdown: add line
    items, change a line item's budget (and, while it is not PO-mapped, its
    classification), and delete line items nothing references.

Architecture position:
    Kernel > Services -- imperative shell.  Flush-only; the caller owns the
    transaction.

Invariants enforced:
    - budget_cost is the baseline value.  Forecast versions never write it.
    - A line item referenced by a forecast entry or PO mapping is never
      hard-deleted (LineItemReferencedError).
    - Classification of a PO-mapped line item is frozen
      (ClassificationLockedError).

Failure modes:
    - ValidationError for blank classification levels or negative budgets.
    - ProjectNotFoundError / LineItemNotFoundError.

Audit relevance:
    Every mutation is logged with project and line item ids and the actor.
"""

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select

from forecast_kernel.domain.dtos import CLASSIFICATION_FIELDS, Classification, LineItemInfo
from forecast_kernel.domain.validation import (
    classification_issues,
    edit_value_issues,
    raise_if_issues,
    to_decimal,
)
from forecast_kernel.exceptions import (
    ClassificationLockedError,
    LineItemNotFoundError,
    LineItemReferencedError,
)
from forecast_kernel.logging_config import get_logger
from forecast_kernel.models.forecast_version import ForecastEntry
from forecast_kernel.models.line_item import LineItem
from forecast_kernel.models.project import Project
from forecast_kernel.selectors.line_item_selector import LineItemSelector
from forecast_kernel.selectors.po_mapping_selector import POMappingSelector
from forecast_kernel.services.base import BaseService

logger = get_logger("services.baseline")


class BaselineService(BaseService[LineItem]):
    """
    Maintains projects and their baseline line items.

    Contract:
        All methods flush but never commit.

    Non-goals:
        - Does NOT create forecast versions (see VersionLedgerService).
        - Does NOT write purchase-order data.
    """

    def __init__(self, session):
        super().__init__(session)
        self._line_items = LineItemSelector(session)
        self._mappings = POMappingSelector(session)

    def create_project(
        self,
        name: str,
        *,
        business_line: str | None = None,
        start_date: date | None = None,
        actor: str = "system",
    ) -> Project:
        project = Project(
            name=name,
            business_line=business_line,
            start_date=start_date,
            created_by=actor,
        )
        self.session.add(project)
        self.session.flush()
        logger.info(
            "project_created",
            extra={"project_id": str(project.id), "project_name": name, "actor": actor},
        )
        return project

    def add_line_item(
        self,
        project_id: UUID,
        classification: Classification,
        budget_cost: Any,
        *,
        actor: str = "system",
    ) -> LineItemInfo:
        """Add a baseline line item.  Zero budgets are allowed; negatives are not."""
        self._line_items.require_project(project_id)
        amount = to_decimal(budget_cost)
        raise_if_issues(classification_issues(classification) + edit_value_issues(amount))

        row = LineItem(
            project_id=project_id,
            business_line=classification.business_line.strip(),
            cost_line=classification.cost_line.strip(),
            spend_type=classification.spend_type.strip(),
            sub_category=classification.sub_category.strip(),
            budget_cost=amount,
            created_by=actor,
        )
        self.session.add(row)
        self.session.flush()
        logger.info(
            "line_item_added",
            extra={
                "project_id": str(project_id),
                "line_item_id": str(row.id),
                "budget_cost": str(amount),
                "actor": actor,
            },
        )
        return row.to_dto()

    def update_line_item(
        self,
        project_id: UUID,
        line_item_id: UUID,
        *,
        budget_cost: Any = None,
        classification: Classification | None = None,
        actor: str = "system",
    ) -> LineItemInfo:
        """
        Change a line item's baseline budget and/or classification.

        Raises:
            ClassificationLockedError: If the classification changes on a
                PO-mapped line item.
        """
        row = self._require_row(project_id, line_item_id)
        issues = []
        amount: Decimal | None = None
        if budget_cost is not None:
            amount = to_decimal(budget_cost)
            issues.extend(edit_value_issues(amount))
        if classification is not None:
            issues.extend(classification_issues(classification))
        raise_if_issues(issues)

        if classification is not None:
            changed = [
                name
                for name in CLASSIFICATION_FIELDS
                if getattr(row, name) != classification.get(name).strip()
            ]
            if changed and self._mappings.is_line_item_mapped(line_item_id):
                raise ClassificationLockedError(line_item_id=str(line_item_id), field=changed[0])
            for name in changed:
                setattr(row, name, classification.get(name).strip())

        previous = row.budget_cost
        if amount is not None:
            row.budget_cost = amount
        row.updated_by = actor
        self.session.flush()

        logger.info(
            "line_item_updated",
            extra={
                "project_id": str(project_id),
                "line_item_id": str(line_item_id),
                "previous_budget_cost": str(previous),
                "budget_cost": str(row.budget_cost),
                "actor": actor,
            },
        )
        return row.to_dto()

    def delete_line_item(
        self,
        project_id: UUID,
        line_item_id: UUID,
        *,
        actor: str = "system",
    ) -> None:
        """
        Hard-delete a line item that nothing references.

        Raises:
            LineItemReferencedError: If a forecast entry or PO mapping uses it.
        """
        row = self._require_row(project_id, line_item_id)

        referenced = self.session.scalar(
            select(ForecastEntry.id).where(ForecastEntry.line_item_id == line_item_id).limit(1)
        )
        if referenced is not None:
            raise LineItemReferencedError(str(line_item_id), "forecast_entries")
        if self._mappings.is_line_item_mapped(line_item_id):
            raise LineItemReferencedError(str(line_item_id), "po_mappings")

        self.session.delete(row)
        self.session.flush()
        logger.info(
            "line_item_deleted",
            extra={
                "project_id": str(project_id),
                "line_item_id": str(line_item_id),
                "actor": actor,
            },
        )

    def _require_row(self, project_id: UUID, line_item_id: UUID) -> LineItem:
        row = self.session.get(LineItem, line_item_id)
        if row is None or row.project_id != project_id:
            raise LineItemNotFoundError(str(line_item_id), str(project_id))
        return row
