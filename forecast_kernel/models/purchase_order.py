"""
Purchase-order models.

These relations are owned by the procurement side of the application; the
forecast engine only reads them.  A POMapping ties a PO line item to a cost
line item with a mapped (committed) amount.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from forecast_kernel.db.base import TrackedBase, UUIDString


class PurchaseOrder(TrackedBase):
    """A purchase order header."""

    __tablename__ = "purchase_orders"

    po_number: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    vendor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_value: Mapped[Decimal | None] = mapped_column(nullable=True)
    po_creation_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)

    line_items: Mapped[list["POLineItem"]] = relationship(back_populates="purchase_order")

    def __repr__(self) -> str:
        return f"<PurchaseOrder {self.po_number}>"


class POLineItem(TrackedBase):
    """
    A single line on a purchase order.

    ``invoiced_value`` / ``invoiced_quantity`` drive the actual-vs-future
    split; both absent (or zero) means no invoice data.
    """

    __tablename__ = "po_line_items"

    __table_args__ = (Index("idx_po_line_item_po", "po_id"),)

    po_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("purchase_orders.id"),
        nullable=False,
    )

    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    quantity: Mapped[Decimal | None] = mapped_column(nullable=True)
    line_value: Mapped[Decimal] = mapped_column(nullable=False)
    invoiced_value: Mapped[Decimal | None] = mapped_column(nullable=True)
    invoiced_quantity: Mapped[Decimal | None] = mapped_column(nullable=True)
    invoice_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    supplier_promise_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    line_created_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    purchase_order: Mapped["PurchaseOrder"] = relationship(back_populates="line_items")

    def __repr__(self) -> str:
        return f"<POLineItem {self.id} value={self.line_value}>"


class POMapping(TrackedBase):
    """Allocation of part of a PO line to a cost line item."""

    __tablename__ = "po_mappings"

    __table_args__ = (
        Index("idx_po_mapping_line_item", "line_item_id"),
        Index("idx_po_mapping_po_line_item", "po_line_item_id"),
    )

    po_line_item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("po_line_items.id"),
        nullable=False,
    )

    line_item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("line_items.id"),
        nullable=False,
    )

    mapped_amount: Mapped[Decimal] = mapped_column(nullable=False)
    mapping_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    mapped_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    mapped_at: Mapped[datetime | None] = mapped_column(nullable=True)

    po_line_item: Mapped["POLineItem"] = relationship()

    def __repr__(self) -> str:
        return f"<POMapping {self.po_line_item_id} -> {self.line_item_id} {self.mapped_amount}>"
