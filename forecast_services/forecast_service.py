"""
forecast_services.forecast_service -- the forecast ledger facade.

Responsibility:
    The single entry point the surrounding application calls: read the
    baseline, list versions, resolve snapshots, create versions (directly
    or from a StagingBuffer), diff versions and reconcile a snapshot
    against purchase-order actuals.

Architecture position:
    Services -- stateful orchestration over engines + kernel.  Owns the
    transaction boundaries (commit / rollback) of one SQLAlchemy session
    and the wall clock.  Kernel services below it only flush.

Version commit protocol:
    Phase 1 (transaction 1): discard stale pending versions, compute the
        next number, insert a PENDING version row and the version's new
        line items.  The (project, number) unique constraint makes the
        pending row a claim on the number.
    Phase 2 (transaction 2): resolve the complete entry set, write every
        ForecastEntry and flip the version to COMMITTED.  Readers only ever
        see committed versions.
    Failure in phase 2: roll back, then delete the pending version and the
        line items it created in a compensating transaction.  If the
        compensation fails too, the pending row stays invisible and
        ``recover_pending_versions`` removes it later.

Invariants enforced:
    - Validation happens before any write.
    - A failed create_version leaves no visible partial version.
    - A version-number conflict is retried ``ledger.conflict_retries`` times
      with a freshly computed number, then surfaces.
    - Transient storage errors are retried under the configured RetryPolicy.

Failure modes:
    - ValidationError / InvalidReasonError / InvalidSelectorError.
    - ProjectNotFoundError, VersionNotFoundError, LineItemNotFoundError.
    - VersionConflictError, BaselineVersionExistsError.
    - TransientStorageError once retries are exhausted.
    - SnapshotInvariantError (logged CRITICAL, never corrected).

Audit relevance:
    Every created version is logged with project, number, reason length,
    edit counts and actor; compensations and recoveries are logged too.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from forecast_config import EngineSettings, get_active_config
from forecast_engines.breakdown import (
    BreakdownNode,
    CategoryControl,
    category_control_matrix,
    hierarchical_breakdown,
)
from forecast_engines.reconciliation import Metrics, PLTimeline, compute_metrics, pl_timeline
from forecast_engines.snapshot import check_completeness, resolve_version_lines
from forecast_engines.version_diff import DiffRow, diff_snapshots
from forecast_kernel.domain.clock import Clock, SystemClock
from forecast_kernel.domain.dtos import (
    Classification,
    LineItemInfo,
    MetricsFilter,
    NewLineItemSpec,
    Snapshot,
    VersionInfo,
)
from forecast_kernel.domain.staging import StagingBuffer, StagingSummary
from forecast_kernel.domain.validation import (
    ValidationIssue,
    check_reason,
    edit_value_issues,
    new_line_item_issues,
    raise_if_issues,
    to_decimal,
)
from forecast_kernel.exceptions import (
    BaselineVersionExistsError,
    ForecastKernelError,
    LineItemNotFoundError,
    TransientStorageError,
    ValidationError,
    VersionConflictError,
)
from forecast_kernel.logging_config import LogContext, get_logger
from forecast_kernel.selectors.line_item_selector import LineItemSelector
from forecast_kernel.selectors.po_mapping_selector import POMappingSelector
from forecast_kernel.selectors.snapshot_selector import LATEST, SnapshotSelector
from forecast_kernel.selectors.version_selector import VersionSelector
from forecast_kernel.services.retry_service import (
    RetryPolicy,
    RetryService,
    exponential_backoff,
    fixed_backoff,
    translate_storage_errors,
)
from forecast_kernel.services.version_ledger import VersionLedgerService

logger = get_logger("services.forecast")

T = TypeVar("T")


def retry_policy_from_settings(settings: EngineSettings) -> RetryPolicy:
    retry = settings.retry
    if retry.backoff == "exponential":
        backoff = exponential_backoff(retry.backoff_seconds)
    else:
        backoff = fixed_backoff(retry.backoff_seconds)
    return RetryPolicy(max_attempts=retry.max_attempts, backoff=backoff)


class ForecastService:
    """
    Facade over the line-item store, version ledger, snapshot builder,
    diff engine and reconciliation aggregator.

    Contract:
        One instance per session.  Write operations commit on success and
        roll back on failure; read operations never write.

    Non-goals:
        - Does NOT write purchase-order data (externally owned).
        - Does NOT edit the baseline (see BaselineService).
    """

    def __init__(
        self,
        session: Session,
        settings: EngineSettings | None = None,
        clock: Clock | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session = session
        self._settings = settings or get_active_config()
        self._clock = clock or SystemClock()
        self._retry = RetryService(
            retry_policy or retry_policy_from_settings(self._settings),
            sleep=sleep,
        )
        self._line_items = LineItemSelector(session)
        self._versions = VersionSelector(session)
        self._snapshots = SnapshotSelector(session)
        self._mappings = POMappingSelector(session)

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    # =========================================================================
    # Reads
    # =========================================================================

    def get_baseline(self, project_id: UUID) -> list[LineItemInfo]:
        """Baseline line items (not introduced by any forecast version)."""

        def _load() -> list[LineItemInfo]:
            self._line_items.require_project(project_id)
            return self._line_items.list_baseline(project_id)

        return self._read("get_baseline", _load)

    def get_versions(self, project_id: UUID) -> list[VersionInfo]:
        """Committed versions, newest first."""

        def _load() -> list[VersionInfo]:
            self._line_items.require_project(project_id)
            return self._versions.list_committed(project_id)

        return self._read("get_versions", _load)

    def get_snapshot(self, project_id: UUID, selector: int | str = LATEST) -> Snapshot:
        return self._read(
            "get_snapshot",
            lambda: self._snapshots.resolve_snapshot(project_id, selector),
        )

    def diff_versions(
        self,
        project_id: UUID,
        version_a: int | str,
        version_b: int | str,
    ) -> tuple[DiffRow, ...]:
        def _load() -> tuple[Snapshot, Snapshot]:
            return (
                self._snapshots.resolve_snapshot(project_id, version_a),
                self._snapshots.resolve_snapshot(project_id, version_b),
            )

        snapshot_a, snapshot_b = self._read("diff_versions", _load)
        return diff_snapshots(snapshot_a, snapshot_b)

    def get_metrics(
        self,
        project_id: UUID,
        selector: int | str = LATEST,
        filters: MetricsFilter | None = None,
        as_of: date | None = None,
    ) -> Metrics:
        snapshot, mappings, project_start = self._reconciliation_inputs(project_id, selector)
        return compute_metrics(
            snapshot=snapshot,
            mappings=mappings,
            as_of=as_of or self._clock.today(),
            project_start=project_start,
            fallback_ratio=self._settings.reconciliation.fallback_invoice_ratio,
            filters=filters,
        )

    def get_category_controls(
        self,
        project_id: UUID,
        selector: int | str = LATEST,
        field: str = "spend_type",
    ) -> tuple[CategoryControl, ...]:
        snapshot, mappings, _ = self._reconciliation_inputs(project_id, selector)
        return category_control_matrix(
            snapshot=snapshot,
            mappings=mappings,
            field=field,
            fallback_ratio=self._settings.reconciliation.fallback_invoice_ratio,
        )

    def get_hierarchy(
        self,
        project_id: UUID,
        selector: int | str = LATEST,
    ) -> tuple[BreakdownNode, ...]:
        snapshot, mappings, _ = self._reconciliation_inputs(project_id, selector)
        return hierarchical_breakdown(
            snapshot=snapshot,
            mappings=mappings,
            fallback_ratio=self._settings.reconciliation.fallback_invoice_ratio,
        )

    def get_pl_timeline(
        self,
        project_id: UUID,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> PLTimeline:
        def _load():
            self._line_items.require_project(project_id)
            return self._mappings.mappings_for_project(project_id)

        return pl_timeline(
            mappings=self._read("get_pl_timeline", _load),
            date_from=date_from,
            date_to=date_to,
            fallback_ratio=self._settings.reconciliation.fallback_invoice_ratio,
        )

    # =========================================================================
    # Version creation
    # =========================================================================

    def create_version(
        self,
        project_id: UUID,
        reason: str,
        edits: Mapping[UUID, Any] | None = None,
        new_line_items: Iterable[NewLineItemSpec] = (),
        actor: str = "system",
    ) -> VersionInfo:
        """
        Create and commit the next forecast version in one call.

        ``edits`` maps line item ids to a new value, or to None to exclude
        the item.  Items not named inherit from the previous version.

        Raises:
            InvalidReasonError, ValidationError: Before anything is written.
            LineItemNotFoundError: An edit names an unknown line item.
            VersionConflictError: The number stayed contested after retrying.
        """
        ledger_settings = self._settings.ledger
        check_reason(reason, ledger_settings.reason_min_length, ledger_settings.reason_max_length)
        clean_edits = self._validated_edits(edits or {})
        specs = self._validated_specs(new_line_items)

        with LogContext.bind(project_id=str(project_id), actor=actor):
            version = self._retry.run(
                "create_version",
                lambda: self._with_conflict_retry(
                    lambda: self._commit_version(
                        project_id,
                        reason,
                        actor,
                        choose_number=self._next_version_number,
                        edits=clean_edits,
                        specs=specs,
                    )
                ),
            )

        logger.info(
            "forecast_version_created",
            extra={
                "project_id": str(project_id),
                "version_id": str(version.id),
                "version_number": version.version_number,
                "edit_count": len(clean_edits),
                "excluded_count": sum(1 for v in clean_edits.values() if v is None),
                "new_line_item_count": len(specs),
                "actor": actor,
            },
        )
        return version

    def create_baseline_version(
        self,
        project_id: UUID,
        reason: str,
        actor: str = "system",
    ) -> VersionInfo:
        """
        Record version 0 ("initial budget") valued at every line item's budget.

        Raises:
            BaselineVersionExistsError: If the project already has versions.
        """
        ledger_settings = self._settings.ledger
        check_reason(reason, ledger_settings.reason_min_length, ledger_settings.reason_max_length)

        def _baseline_number(pid: UUID) -> int:
            existing = self._versions.max_version_number(pid)
            if existing is not None:
                raise BaselineVersionExistsError(str(pid), existing)
            return 0

        with LogContext.bind(project_id=str(project_id), actor=actor):
            version = self._retry.run(
                "create_baseline_version",
                lambda: self._commit_version(
                    project_id,
                    reason,
                    actor,
                    choose_number=_baseline_number,
                    edits={},
                    specs=(),
                ),
            )

        logger.info(
            "baseline_version_created",
            extra={"project_id": str(project_id), "version_id": str(version.id), "actor": actor},
        )
        return version

    def commit_staged(
        self,
        project_id: UUID,
        reason: str,
        buffer: StagingBuffer,
        actor: str = "system",
    ) -> tuple[VersionInfo, StagingBuffer]:
        """
        Persist a staging buffer as the next version.

        Returns the new version and an emptied buffer.  On any failure the
        exception propagates and the caller still holds its original buffer.
        """
        if buffer.project_id != project_id:
            raise ValidationError(
                [ValidationIssue("project_id", "staging buffer belongs to another project")]
            )
        ledger_settings = self._settings.ledger
        raise_if_issues(
            buffer.validate(
                reason,
                reason_min_length=ledger_settings.reason_min_length,
                reason_max_length=ledger_settings.reason_max_length,
            )
        )
        request = buffer.to_commit()
        version = self.create_version(
            project_id,
            reason,
            edits=request.edits,
            new_line_items=request.new_line_items,
            actor=actor,
        )
        return version, replace(buffer.clear(), base_version_number=version.version_number)

    def recover_pending_versions(
        self,
        project_id: UUID,
        older_than: datetime | None = None,
    ) -> int:
        """
        Remove pending versions left behind by failed compensations.

        Only versions created before ``older_than`` are touched (default:
        now minus ``ledger.stale_pending_after_seconds``), so an in-flight
        commit is never removed.  Returns the number removed.
        """
        cutoff = older_than or self._stale_cutoff()

        def _recover() -> int:
            try:
                with translate_storage_errors("recover_pending_versions"):
                    self._line_items.require_project(project_id)
                    removed = self._discard_stale(project_id, cutoff)
                    self._session.commit()
            except (SQLAlchemyError, ForecastKernelError):
                self._session.rollback()
                raise
            return removed

        removed = self._retry.run("recover_pending_versions", _recover)
        if removed:
            logger.warning(
                "pending_versions_recovered",
                extra={"project_id": str(project_id), "count": removed},
            )
        return removed

    # =========================================================================
    # Staging helpers
    # =========================================================================

    def start_staging(self, project_id: UUID) -> StagingBuffer:
        """An empty buffer based on the latest committed version."""
        latest = self._read(
            "start_staging",
            lambda: self._snapshots.resolve_snapshot(project_id, LATEST),
        )
        base = None if latest.is_unforecasted_baseline else latest.version_number
        return StagingBuffer(project_id=project_id, base_version_number=base)

    def staging_summary(self, buffer: StagingBuffer) -> StagingSummary:
        return buffer.summary(self.get_snapshot(buffer.project_id, LATEST))

    def save_draft(self, buffer: StagingBuffer) -> str:
        return buffer.to_draft_json(saved_at=self._clock.now())

    def load_draft(self, text: str) -> StagingBuffer:
        """
        Raises:
            DraftExpiredError: If older than ``drafts.max_age_hours``.
        """
        return StagingBuffer.from_draft_json(
            text,
            now=self._clock.now(),
            max_age=timedelta(hours=self._settings.drafts.max_age_hours),
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _read(self, operation: str, fn: Callable[[], T]) -> T:
        def _attempt() -> T:
            try:
                with translate_storage_errors(operation):
                    return fn()
            except TransientStorageError:
                self._session.rollback()
                raise

        return self._retry.run(operation, _attempt)

    def _reconciliation_inputs(self, project_id: UUID, selector: int | str):
        def _load():
            project = self._line_items.get_project(project_id)
            snapshot = self._snapshots.resolve_snapshot(project_id, selector)
            mappings = self._mappings.mappings_for_project(project_id)
            start = project.start_date
            if start is None and project.created_at is not None:
                start = project.created_at.date()
            return snapshot, mappings, start

        return self._read("reconciliation_inputs", _load)

    def _validated_edits(self, edits: Mapping[UUID, Any]) -> dict[UUID, Decimal | None]:
        clean: dict[UUID, Decimal | None] = {}
        issues: list[ValidationIssue] = []
        for line_item_id, value in edits.items():
            amount = None if value is None else to_decimal(value)
            issues.extend(edit_value_issues(amount, ref=str(line_item_id)))
            clean[line_item_id] = amount
        raise_if_issues(issues)
        return clean

    def _validated_specs(self, specs: Iterable[NewLineItemSpec]) -> tuple[NewLineItemSpec, ...]:
        clean = []
        issues: list[ValidationIssue] = []
        for index, spec in enumerate(specs):
            value = to_decimal(spec.value)
            issues.extend(new_line_item_issues(spec.classification, value, ref=f"new[{index}]"))
            clean.append(
                NewLineItemSpec(
                    classification=Classification(
                        *(part.strip() for part in spec.classification.as_tuple())
                    ),
                    value=value,
                )
            )
        raise_if_issues(issues)
        return tuple(clean)

    def _with_conflict_retry(self, fn: Callable[[], T]) -> T:
        conflicts = 0
        while True:
            try:
                return fn()
            except VersionConflictError as exc:
                if conflicts >= self._settings.ledger.conflict_retries:
                    raise
                conflicts += 1
                logger.warning(
                    "version_conflict_retry",
                    extra={
                        "project_id": exc.project_id,
                        "version_number": exc.version_number,
                        "retry": conflicts,
                    },
                )

    def _next_version_number(self, project_id: UUID) -> int:
        latest = self._versions.latest_committed_number(project_id)
        return (latest if latest is not None else 0) + 1

    def _stale_cutoff(self) -> datetime:
        return self._clock.now() - timedelta(
            seconds=self._settings.ledger.stale_pending_after_seconds
        )

    def _discard_stale(self, project_id: UUID, cutoff: datetime) -> int:
        ledger = VersionLedgerService(self._session, self._clock)
        removed = 0
        for version_id in ledger.stale_pending_ids(project_id, cutoff):
            if ledger.discard_pending(version_id):
                removed += 1
        return removed

    def _check_edit_targets(self, project_id: UUID, edits: Mapping[UUID, Any]) -> None:
        if not edits:
            return
        known = {item.id for item in self._line_items.list_for_project(project_id)}
        for line_item_id in edits:
            if line_item_id not in known:
                raise LineItemNotFoundError(str(line_item_id), str(project_id))

    def _previous_snapshot(self, project_id: UUID, version_number: int) -> Snapshot | None:
        if version_number <= 0:
            return None
        previous = self._versions.get_committed(project_id, version_number - 1)
        if previous is None:
            return None
        return self._snapshots.version_snapshot(previous)

    def _commit_version(
        self,
        project_id: UUID,
        reason: str,
        actor: str,
        *,
        choose_number: Callable[[UUID], int],
        edits: Mapping[UUID, Decimal | None],
        specs: tuple[NewLineItemSpec, ...],
    ) -> VersionInfo:
        ledger = VersionLedgerService(self._session, self._clock)

        # Phase 1: claim the number and persist new line items.
        try:
            with translate_storage_errors("create_version.claim"):
                self._line_items.require_project(project_id)
                self._discard_stale(project_id, self._stale_cutoff())
                number = choose_number(project_id)
                self._check_edit_targets(project_id, edits)
                version = ledger.claim_version(project_id, number, reason, actor)
                ledger.add_line_items(project_id, version.id, specs, actor)
                self._session.commit()
        except (SQLAlchemyError, ForecastKernelError):
            self._session.rollback()
            raise

        version_id = version.id

        # Phase 2: complete entry set, then make the version visible.
        with LogContext.bind(version_id=str(version_id)):
            try:
                with translate_storage_errors("create_version.commit"):
                    items = self._line_items.list_for_project(project_id, include_version_id=version_id)
                    lines = resolve_version_lines(
                        project_id=project_id,
                        version_number=number,
                        line_items=items,
                        previous=self._previous_snapshot(project_id, number),
                        edits=edits,
                    )
                    check_completeness(
                        project_id=project_id,
                        version_number=number,
                        line_item_ids=[item.id for item in items],
                        lines=lines,
                    )
                    ledger.write_entries(version, lines, actor)
                    ledger.mark_committed(version, actor)
                    self._session.commit()
            except Exception:
                self._session.rollback()
                self._compensate(project_id, version_id, number)
                raise

        return version.to_dto()

    def _compensate(self, project_id: UUID, version_id: UUID, version_number: int) -> None:
        try:
            with translate_storage_errors("create_version.compensate"):
                VersionLedgerService(self._session, self._clock).discard_pending(version_id)
                self._session.commit()
        except (SQLAlchemyError, ForecastKernelError):
            self._session.rollback()
            logger.error(
                "version_compensation_failed",
                extra={
                    "project_id": str(project_id),
                    "version_id": str(version_id),
                    "version_number": version_number,
                },
                exc_info=True,
            )


__all__ = ["ForecastService", "retry_policy_from_settings"]
