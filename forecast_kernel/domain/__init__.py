"""Pure domain layer: DTOs, staging buffer, validation and clock."""

from forecast_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from forecast_kernel.domain.dtos import (
    CLASSIFICATION_FIELDS,
    Classification,
    CommitRequest,
    LineItemInfo,
    MetricsFilter,
    NewLineItemSpec,
    POMappingRecord,
    Snapshot,
    SnapshotLine,
    VersionInfo,
)
from forecast_kernel.domain.staging import (
    DraftLineItem,
    DraftRef,
    LineItemRef,
    PersistedRef,
    StagingBuffer,
    StagingSummary,
)
from forecast_kernel.domain.validation import ValidationIssue

__all__ = [
    "Clock",
    "SystemClock",
    "DeterministicClock",
    "CLASSIFICATION_FIELDS",
    "Classification",
    "CommitRequest",
    "LineItemInfo",
    "MetricsFilter",
    "NewLineItemSpec",
    "POMappingRecord",
    "Snapshot",
    "SnapshotLine",
    "VersionInfo",
    "DraftLineItem",
    "DraftRef",
    "LineItemRef",
    "PersistedRef",
    "StagingBuffer",
    "StagingSummary",
    "ValidationIssue",
]
