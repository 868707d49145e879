"""
Tests for ForecastService -- the forecast ledger facade.

Covers:
- Sparse versions resolve to complete snapshots (inheritance, exclusion,
  new line items)
- Selector resolution and the unforecasted baseline
- Version 0 ("initial budget") recording
- Staged commits and drafts
- Failure atomicity: validation before writes, compensation after a
  failed second phase, recovery of stranded pending versions
- Reconciliation reads against PO mappings
"""

from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from forecast_config import ReconciliationSettings
from forecast_engines.version_diff import DiffStatus
from forecast_kernel.domain.dtos import Classification, MetricsFilter, NewLineItemSpec
from forecast_kernel.domain.staging import PersistedRef
from forecast_kernel.exceptions import (
    BaselineVersionExistsError,
    DraftExpiredError,
    InvalidReasonError,
    InvalidSelectorError,
    LineItemNotFoundError,
    ProjectNotFoundError,
    ValidationError,
    VersionConflictError,
    VersionNotFoundError,
)
from forecast_kernel.models.forecast_version import ForecastEntry, ForecastVersion
from forecast_kernel.models.line_item import LineItem
from forecast_kernel.services.version_ledger import VersionLedgerService
from forecast_services import ForecastService

REASON = "Quarterly reforecast after vendor quotes"
NEW_ITEM = Classification("Commercial", "Services", "OpEx", "Consulting")


@pytest.fixture
def project(make_project, make_line_item):
    """A project with line items A ($100) and B ($200)."""
    project_id = make_project()
    a = make_line_item(project_id, "100", sub_category="Steel")
    b = make_line_item(project_id, "200", sub_category="Cement")
    return project_id, a.id, b.id


def _count(session, model) -> int:
    return session.scalar(select(func.count()).select_from(model))


class TestCreateVersion:
    def test_sparse_edit_resolves_complete_snapshot(self, forecast_service, project):
        project_id, a, b = project

        version = forecast_service.create_version(project_id, REASON, {a: Decimal("150")})
        snapshot = forecast_service.get_snapshot(project_id, version.version_number)

        assert version.version_number == 1
        assert snapshot.values() == {a: Decimal("150"), b: Decimal("200")}
        assert snapshot.total == Decimal("350")

    def test_exclusion_inheritance_and_new_items(self, forecast_service, project):
        project_id, a, b = project
        forecast_service.create_version(project_id, REASON, {a: Decimal("150")})

        version = forecast_service.create_version(
            project_id,
            REASON,
            {b: None},
            new_line_items=[NewLineItemSpec(NEW_ITEM, Decimal("50"))],
        )
        snapshot = forecast_service.get_snapshot(project_id, "latest")

        assert version.version_number == 2
        assert snapshot.line(a).value == Decimal("150")
        assert snapshot.line(b).excluded
        assert snapshot.line(b).value == Decimal("0")
        new_line = next(line for line in snapshot.lines if line.line_item.classification == NEW_ITEM)
        assert new_line.value == Decimal("50")
        assert new_line.line_item.created_in_version_id == version.id
        assert snapshot.total == Decimal("200")

    def test_exclusion_is_inherited_until_revalued(self, forecast_service, project):
        project_id, a, b = project
        forecast_service.create_version(project_id, REASON, {b: None})
        forecast_service.create_version(project_id, REASON, {a: Decimal("90")})

        assert forecast_service.get_snapshot(project_id, 2).line(b).excluded

        forecast_service.create_version(project_id, REASON, {b: Decimal("210")})

        restored = forecast_service.get_snapshot(project_id, 3).line(b)
        assert not restored.excluded
        assert restored.value == Decimal("210")

    def test_excluded_item_kept_in_baseline_and_dropped_from_total(self, forecast_service, project):
        project_id, a, b = project

        forecast_service.create_version(project_id, REASON, {a: Decimal("150"), b: None})

        baseline = {item.id: item for item in forecast_service.get_baseline(project_id)}
        assert b in baseline
        assert baseline[b].budget_cost == Decimal("200")
        assert forecast_service.get_metrics(project_id).total_budget == Decimal("150")
        assert forecast_service.get_metrics(project_id, 0).total_budget == Decimal("300")

    def test_empty_edit_set_copies_previous(self, forecast_service, project):
        project_id, a, b = project
        forecast_service.create_version(project_id, REASON, {a: Decimal("150")})

        forecast_service.create_version(project_id, REASON)

        assert forecast_service.get_snapshot(project_id, 2).values() == forecast_service.get_snapshot(
            project_id, 1
        ).values()

    def test_baseline_item_added_later_enters_at_budget(
        self, forecast_service, project, make_line_item
    ):
        project_id, a, _ = project
        forecast_service.create_version(project_id, REASON, {a: Decimal("150")})
        late = make_line_item(project_id, "75", sub_category="Glass")

        forecast_service.create_version(project_id, REASON)

        assert forecast_service.get_snapshot(project_id, 2).line(late.id).value == Decimal("75")
        assert forecast_service.get_snapshot(project_id, 1).line(late.id) is None

    def test_reason_is_stored_trimmed(self, forecast_service, project):
        project_id, a, _ = project

        version = forecast_service.create_version(project_id, f"  {REASON}  ", {a: 1})

        assert version.reason == REASON

    def test_logs_creation(self, forecast_service, project, captured_logs):
        project_id, a, b = project

        forecast_service.create_version(project_id, REASON, {a: Decimal("1"), b: None}, actor="bob")

        record = next(r for r in captured_logs() if r["message"] == "forecast_version_created")
        assert record["edit_count"] == 2
        assert record["excluded_count"] == 1
        assert record["actor"] == "bob"

    def test_resolution_trace_carries_version_context(self, forecast_service, project, captured_logs):
        project_id, a, _ = project

        version = forecast_service.create_version(project_id, REASON, {a: Decimal("1")}, actor="bob")

        trace = next(
            r
            for r in captured_logs()
            if r["message"] == "FORECAST_ENGINE_TRACE" and r["engine_name"] == "snapshot_resolution"
        )
        assert trace["version_id"] == str(version.id)
        assert trace["project_id"] == str(project_id)
        assert trace["actor"] == "bob"


class TestValidationBeforeWrite:
    @pytest.mark.parametrize("reason", ["", "too short", "x" * 501])
    def test_invalid_reason_writes_nothing(self, session, forecast_service, project, reason):
        project_id, a, _ = project

        with pytest.raises(InvalidReasonError):
            forecast_service.create_version(project_id, reason, {a: Decimal("1")})

        assert _count(session, ForecastVersion) == 0

    def test_negative_edit_rejected(self, session, forecast_service, project):
        project_id, a, _ = project

        with pytest.raises(ValidationError) as exc_info:
            forecast_service.create_version(project_id, REASON, {a: Decimal("-5")})

        assert exc_info.value.issues[0].ref == str(a)
        assert _count(session, ForecastVersion) == 0

    def test_blank_new_item_classification_rejected(self, session, forecast_service, project):
        project_id, _, _ = project
        blank = Classification("Commercial", "", "OpEx", "Consulting")

        with pytest.raises(ValidationError):
            forecast_service.create_version(
                project_id, REASON, new_line_items=[NewLineItemSpec(blank, Decimal("5"))]
            )

        assert _count(session, LineItem) == 2

    def test_unknown_line_item_rolls_back_claim(self, session, forecast_service, project):
        project_id, _, _ = project

        with pytest.raises(LineItemNotFoundError):
            forecast_service.create_version(project_id, REASON, {uuid4(): Decimal("1")})

        assert _count(session, ForecastVersion) == 0

    def test_unknown_project(self, forecast_service):
        with pytest.raises(ProjectNotFoundError):
            forecast_service.create_version(uuid4(), REASON)


class TestSnapshotSelectors:
    def test_latest_without_versions_is_unforecasted_baseline(self, forecast_service, project):
        project_id, a, b = project

        snapshot = forecast_service.get_snapshot(project_id)

        assert snapshot.is_unforecasted_baseline
        assert snapshot.version_number == 0
        assert snapshot.values() == {a: Decimal("100"), b: Decimal("200")}

    def test_zero_is_raw_baseline_without_a_version_zero(self, forecast_service, project):
        project_id, a, _ = project
        forecast_service.create_version(
            project_id, REASON, {a: 1}, new_line_items=[NewLineItemSpec(NEW_ITEM, Decimal("50"))]
        )

        snapshot = forecast_service.get_snapshot(project_id, 0)

        assert not snapshot.is_unforecasted_baseline
        assert snapshot.version_id is None
        assert snapshot.total == Decimal("300")

    def test_missing_version(self, forecast_service, project):
        project_id, a, _ = project
        forecast_service.create_version(project_id, REASON, {a: 1})

        with pytest.raises(VersionNotFoundError) as exc_info:
            forecast_service.get_snapshot(project_id, 5)

        assert exc_info.value.version_number == 5

    @pytest.mark.parametrize("selector", [-1, "newest", True, 1.5])
    def test_invalid_selector(self, forecast_service, project, selector):
        with pytest.raises(InvalidSelectorError):
            forecast_service.get_snapshot(project[0], selector)

    def test_versions_listed_newest_first(self, forecast_service, project):
        project_id, a, _ = project
        for value in ("110", "120", "130"):
            forecast_service.create_version(project_id, REASON, {a: Decimal(value)})

        assert [v.version_number for v in forecast_service.get_versions(project_id)] == [3, 2, 1]

    def test_get_baseline_excludes_version_items(self, forecast_service, project):
        project_id, a, b = project
        forecast_service.create_version(
            project_id, REASON, new_line_items=[NewLineItemSpec(NEW_ITEM, Decimal("50"))]
        )

        assert {item.id for item in forecast_service.get_baseline(project_id)} == {a, b}


class TestBaselineVersion:
    def test_records_version_zero(self, forecast_service, project):
        project_id, a, _ = project

        version = forecast_service.create_baseline_version(project_id, "Initial approved budget")
        snapshot = forecast_service.get_snapshot(project_id, 0)

        assert version.version_number == 0
        assert version.is_baseline
        assert snapshot.version_id == version.id
        assert snapshot.total == Decimal("300")

    def test_next_version_follows_zero(self, forecast_service, project):
        project_id, a, _ = project
        forecast_service.create_baseline_version(project_id, "Initial approved budget")

        version = forecast_service.create_version(project_id, REASON, {a: Decimal("150")})

        assert version.version_number == 1

    def test_refused_once_versions_exist(self, forecast_service, project):
        project_id, a, _ = project
        forecast_service.create_version(project_id, REASON, {a: 1})

        with pytest.raises(BaselineVersionExistsError) as exc_info:
            forecast_service.create_baseline_version(project_id, "Initial approved budget")

        assert exc_info.value.latest_version_number == 1


class TestDiffVersions:
    def test_diff_between_versions(self, forecast_service, project):
        project_id, a, b = project
        forecast_service.create_version(project_id, REASON, {a: Decimal("150")})
        forecast_service.create_version(
            project_id, REASON, {b: None}, new_line_items=[NewLineItemSpec(NEW_ITEM, Decimal("50"))]
        )

        rows = forecast_service.diff_versions(project_id, 1, 2)

        statuses = {row.line_item_id: row.status for row in rows}
        assert statuses[a] == DiffStatus.UNCHANGED
        assert statuses[b] == DiffStatus.REMOVED
        assert DiffStatus.ADDED in statuses.values()

    def test_diff_against_baseline(self, forecast_service, project):
        project_id, a, _ = project
        forecast_service.create_version(project_id, REASON, {a: Decimal("150")})

        rows = {row.line_item_id: row for row in forecast_service.diff_versions(project_id, 0, "latest")}

        assert rows[a].delta == Decimal("50")
        assert rows[a].delta_percent == Decimal("50.00")


class TestCommitStaged:
    def test_commits_and_returns_cleared_buffer(self, forecast_service, project):
        project_id, a, b = project
        buffer = forecast_service.start_staging(project_id)
        buffer = buffer.modify(PersistedRef(a), "175").exclude(PersistedRef(b))
        buffer, _ = buffer.add_new(
            business_line="Commercial",
            cost_line="Services",
            spend_type="OpEx",
            sub_category="Consulting",
            value="50",
        )

        version, cleared = forecast_service.commit_staged(project_id, REASON, buffer)

        assert cleared.is_empty
        assert cleared.base_version_number == version.version_number == 1
        assert forecast_service.get_snapshot(project_id).total == Decimal("225")

    def test_invalid_buffer_is_left_intact(self, session, forecast_service, project):
        project_id, a, _ = project
        buffer = forecast_service.start_staging(project_id).modify(PersistedRef(a), "-1")

        with pytest.raises(ValidationError):
            forecast_service.commit_staged(project_id, REASON, buffer)

        assert buffer.modified_count == 1
        assert _count(session, ForecastVersion) == 0

    def test_buffer_of_other_project_rejected(self, forecast_service, project, make_project):
        other = forecast_service.start_staging(make_project("Other"))

        with pytest.raises(ValidationError):
            forecast_service.commit_staged(project[0], REASON, other)

    def test_summary_against_latest(self, forecast_service, project):
        project_id, a, _ = project
        forecast_service.create_version(project_id, REASON, {a: Decimal("150")})
        buffer = forecast_service.start_staging(project_id).modify(PersistedRef(a), "175")

        summary = forecast_service.staging_summary(buffer)

        assert buffer.base_version_number == 1
        assert summary.total_budget == Decimal("350")
        assert summary.total_forecast == Decimal("375")
        assert summary.change_percent == Decimal("7.14")

    def test_start_staging_on_unforecasted_project(self, forecast_service, project):
        assert forecast_service.start_staging(project[0]).base_version_number is None


class TestDrafts:
    def test_round_trip(self, forecast_service, project):
        project_id, a, _ = project
        buffer = forecast_service.start_staging(project_id).modify(PersistedRef(a), "175")

        restored = forecast_service.load_draft(forecast_service.save_draft(buffer))

        assert dict(restored.modifications) == {a: Decimal("175")}
        assert restored.project_id == project_id

    def test_expired_draft(self, forecast_service, project, deterministic_clock):
        buffer = forecast_service.start_staging(project[0])
        text = forecast_service.save_draft(buffer)
        deterministic_clock.advance(int(timedelta(hours=25).total_seconds()))

        with pytest.raises(DraftExpiredError):
            forecast_service.load_draft(text)


class TestFailureAtomicity:
    def test_failed_entry_write_is_compensated(self, session, forecast_service, project, monkeypatch):
        project_id, a, _ = project

        def _boom(self, version, lines, actor):
            raise RuntimeError("disk full")

        monkeypatch.setattr(VersionLedgerService, "write_entries", _boom)

        with pytest.raises(RuntimeError):
            forecast_service.create_version(
                project_id, REASON, {a: 1}, new_line_items=[NewLineItemSpec(NEW_ITEM, Decimal("50"))]
            )

        assert _count(session, ForecastVersion) == 0
        assert _count(session, ForecastEntry) == 0
        assert _count(session, LineItem) == 2
        assert forecast_service.get_versions(project_id) == []

    def test_number_is_reused_after_compensation(self, forecast_service, project, monkeypatch):
        project_id, a, _ = project
        def _boom(self, version, lines, actor):
            raise RuntimeError("boom")

        monkeypatch.setattr(VersionLedgerService, "write_entries", _boom)
        with pytest.raises(RuntimeError):
            forecast_service.create_version(project_id, REASON, {a: 1})
        monkeypatch.undo()

        assert forecast_service.create_version(project_id, REASON, {a: 2}).version_number == 1

    def test_failed_compensation_leaves_invisible_pending_version(
        self, session, forecast_service, project, monkeypatch, deterministic_clock, captured_logs
    ):
        project_id, a, _ = project

        def _fail_write(self, version, lines, actor):
            raise RuntimeError("write failed")

        def _fail_discard(self, version_id):
            raise OperationalError("DELETE", {}, Exception("connection lost"))

        monkeypatch.setattr(VersionLedgerService, "write_entries", _fail_write)
        monkeypatch.setattr(VersionLedgerService, "discard_pending", _fail_discard)

        with pytest.raises(RuntimeError):
            forecast_service.create_version(project_id, REASON, {a: 1})
        monkeypatch.undo()

        assert any(r["message"] == "version_compensation_failed" for r in captured_logs())
        assert _count(session, ForecastVersion) == 1
        assert forecast_service.get_versions(project_id) == []
        assert forecast_service.get_snapshot(project_id).is_unforecasted_baseline

        # A fresh pending claim still holds the number.
        with pytest.raises(VersionConflictError):
            forecast_service.create_version(project_id, REASON, {a: 2})

        assert forecast_service.recover_pending_versions(project_id) == 0

        deterministic_clock.advance(301)

        assert forecast_service.recover_pending_versions(project_id) == 1
        assert _count(session, ForecastVersion) == 0
        assert forecast_service.create_version(project_id, REASON, {a: 2}).version_number == 1

    def test_stale_pending_version_is_discarded_on_next_create(
        self, session, forecast_service, project, monkeypatch, deterministic_clock
    ):
        project_id, a, _ = project

        def _fail_write(self, version, lines, actor):
            raise RuntimeError("write failed")

        def _fail_discard(self, version_id):
            raise OperationalError("DELETE", {}, Exception("connection lost"))

        monkeypatch.setattr(VersionLedgerService, "write_entries", _fail_write)
        monkeypatch.setattr(VersionLedgerService, "discard_pending", _fail_discard)
        with pytest.raises(RuntimeError):
            forecast_service.create_version(project_id, REASON, {a: 1})
        monkeypatch.undo()
        deterministic_clock.advance(600)

        version = forecast_service.create_version(project_id, REASON, {a: 2})

        assert version.version_number == 1
        assert _count(session, ForecastVersion) == 1


class TestReconciliationReads:
    @pytest.fixture
    def mapped_project(self, forecast_service, make_project, make_line_item, make_po_mapping):
        project_id = make_project(start_date=date(2024, 1, 1))
        steel = make_line_item(project_id, "1000", spend_type="CapEx", sub_category="Steel")
        crew = make_line_item(project_id, "500", cost_line="Labour", spend_type="OpEx", sub_category="Crew")
        make_po_mapping(
            steel.id,
            "500",
            line_value="1000",
            invoiced_value="250",
            invoice_date=date(2024, 2, 10),
            supplier_promise_date=date(2024, 5, 1),
        )
        make_po_mapping(crew.id, "100", line_created_date=date(2024, 3, 3))
        forecast_service.create_version(project_id, REASON, {steel.id: Decimal("1200")})
        return project_id, steel.id, crew.id

    def test_metrics_for_latest(self, forecast_service, mapped_project):
        project_id, _, _ = mapped_project

        metrics = forecast_service.get_metrics(project_id, as_of=date(2024, 7, 1))

        assert metrics.total_budget == Decimal("1700")
        assert metrics.actual_spend == Decimal("185")
        assert metrics.invoiced_amount == Decimal("125")
        assert metrics.committed == Decimal("600")
        assert metrics.months_elapsed == 6
        assert metrics.line_item_count == 2

    def test_metrics_for_baseline_and_filter(self, forecast_service, mapped_project):
        project_id, _, _ = mapped_project

        baseline = forecast_service.get_metrics(project_id, 0, as_of=date(2024, 7, 1))
        labour = forecast_service.get_metrics(
            project_id, filters=MetricsFilter(cost_line="Labour"), as_of=date(2024, 7, 1)
        )

        assert baseline.total_budget == Decimal("1500")
        assert labour.total_budget == Decimal("500")
        assert labour.actual_spend == Decimal("60")

    def test_configured_fallback_ratio(self, session, settings, deterministic_clock, mapped_project):
        tuned = replace(settings, reconciliation=ReconciliationSettings(Decimal("0.5")))
        service = ForecastService(session, settings=tuned, clock=deterministic_clock)

        metrics = service.get_metrics(mapped_project[0], as_of=date(2024, 7, 1))

        assert metrics.actual_spend == Decimal("175")

    def test_category_controls(self, forecast_service, mapped_project):
        rows = {row.name: row for row in forecast_service.get_category_controls(mapped_project[0])}

        assert rows["CapEx"].budget == Decimal("1200")
        assert rows["CapEx"].actual == Decimal("125")
        assert rows["OpEx"].future == Decimal("40")

    def test_hierarchy(self, forecast_service, mapped_project):
        root = forecast_service.get_hierarchy(mapped_project[0])[0]

        assert root.budget == Decimal("1700")
        assert [child.name for child in root.children] == ["Labour", "Materials"]

    def test_pl_timeline(self, forecast_service, mapped_project):
        timeline = forecast_service.get_pl_timeline(mapped_project[0])

        months = {p.month: p for p in timeline.points}
        assert months["2024-02"].actual == Decimal("125")
        assert months["2024-03"].actual == Decimal("60")
        assert months["2024-05"].projected == Decimal("375")
        assert timeline.undated_projected == Decimal("40")
