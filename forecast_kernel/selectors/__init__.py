"""Read-only selectors. They return DTOs and never mutate data."""

from forecast_kernel.selectors.line_item_selector import LineItemSelector
from forecast_kernel.selectors.po_mapping_selector import POMappingSelector
from forecast_kernel.selectors.snapshot_selector import (
    LATEST,
    SnapshotSelector,
    normalize_selector,
)
from forecast_kernel.selectors.version_selector import VersionSelector

__all__ = [
    "LATEST",
    "LineItemSelector",
    "POMappingSelector",
    "SnapshotSelector",
    "VersionSelector",
    "normalize_selector",
]
