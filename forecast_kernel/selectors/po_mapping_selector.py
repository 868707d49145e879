"""
POMappingSelector -- flattened PO mappings for reconciliation.

Reads the externally-owned purchase-order relations; never writes them.
"""

from uuid import UUID

from sqlalchemy import select

from forecast_kernel.domain.dtos import POMappingRecord
from forecast_kernel.models.line_item import LineItem
from forecast_kernel.models.purchase_order import POLineItem, POMapping
from forecast_kernel.selectors.base import BaseSelector


class POMappingSelector(BaseSelector[POMapping]):
    """Read-only queries over PO mappings."""

    def mappings_for_project(self, project_id: UUID) -> list[POMappingRecord]:
        """Every mapping whose line item belongs to the project."""
        rows = self.session.execute(
            select(POMapping, POLineItem)
            .join(LineItem, POMapping.line_item_id == LineItem.id)
            .outerjoin(POLineItem, POMapping.po_line_item_id == POLineItem.id)
            .where(LineItem.project_id == project_id)
            .order_by(POMapping.id)
        ).all()
        return [_to_record(mapping, po_line) for mapping, po_line in rows]

    def is_line_item_mapped(self, line_item_id: UUID) -> bool:
        return (
            self.session.scalar(
                select(POMapping.id).where(POMapping.line_item_id == line_item_id).limit(1)
            )
            is not None
        )


def _to_record(mapping: POMapping, po_line: POLineItem | None) -> POMappingRecord:
    if po_line is None:
        return POMappingRecord(
            mapping_id=mapping.id,
            line_item_id=mapping.line_item_id,
            mapped_amount=mapping.mapped_amount,
            po_line_item_id=mapping.po_line_item_id,
        )
    return POMappingRecord(
        mapping_id=mapping.id,
        line_item_id=mapping.line_item_id,
        mapped_amount=mapping.mapped_amount,
        po_id=po_line.po_id,
        po_line_item_id=po_line.id,
        line_value=po_line.line_value,
        invoiced_value=po_line.invoiced_value,
        invoiced_quantity=po_line.invoiced_quantity,
        invoice_date=po_line.invoice_date,
        supplier_promise_date=po_line.supplier_promise_date,
        po_line_created_date=po_line.line_created_date,
    )
