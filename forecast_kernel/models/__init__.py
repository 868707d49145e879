"""ORM models. Importing this package registers every table on Base.metadata."""

from forecast_kernel.models.forecast_version import (
    ForecastEntry,
    ForecastVersion,
    VersionStatus,
)
from forecast_kernel.models.line_item import LineItem
from forecast_kernel.models.project import Project
from forecast_kernel.models.purchase_order import POLineItem, POMapping, PurchaseOrder

__all__ = [
    "Project",
    "LineItem",
    "ForecastVersion",
    "ForecastEntry",
    "VersionStatus",
    "PurchaseOrder",
    "POLineItem",
    "POMapping",
]
