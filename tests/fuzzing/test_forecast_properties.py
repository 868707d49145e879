"""
Hypothesis property tests for the pure forecast engines.

Properties:
- Inheritance: after any sequence of sparse versions, every line item holds
  the value of its most recent edit (or exclusion), else its budget.
- Diff antisymmetry: diff(a, b) and diff(b, a) mirror each other.
- Spend split: actual + future == mapped amount, both non-negative.
- Staging summary: the staged forecast total equals the total of the
  version the buffer would produce.
"""

from decimal import Decimal

from hypothesis import given, settings
from hypothesis import strategies as st
from hypothesis.strategies import composite

from forecast_engines.reconciliation import split_mapped_amount
from forecast_engines.snapshot import resolve_version_lines
from forecast_engines.version_diff import DiffStatus, diff_snapshots
from forecast_kernel.domain.dtos import Snapshot
from forecast_kernel.domain.staging import PersistedRef, StagingBuffer
from tests.factories import PROJECT_ID, line_item, mapping

# Line values whose ratios terminate keep split arithmetic exact.
line_values = st.sampled_from(
    (None, Decimal("0"), Decimal("100"), Decimal("250"), Decimal("400"), Decimal("1000"))
)

amounts = st.decimals(
    min_value=Decimal("0"),
    max_value=Decimal("1000000"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)


@composite
def line_items(draw, min_size=1, max_size=8):
    budgets = draw(st.lists(amounts, min_size=min_size, max_size=max_size))
    return [line_item(budget) for budget in budgets]


@composite
def edit_history(draw, items):
    """A list of sparse edit maps: value, None (exclude) or absent."""
    versions = []
    for _ in range(draw(st.integers(min_value=1, max_value=5))):
        edits = {}
        for item in items:
            choice = draw(st.sampled_from(("keep", "set", "exclude")))
            if choice == "set":
                edits[item.id] = draw(amounts)
            elif choice == "exclude":
                edits[item.id] = None
        versions.append(edits)
    return versions


def _build_versions(items, history):
    previous = None
    for number, edits in enumerate(history, start=1):
        lines = resolve_version_lines(
            project_id=PROJECT_ID,
            version_number=number,
            line_items=items,
            previous=previous,
            edits=edits,
        )
        previous = Snapshot(project_id=PROJECT_ID, version_number=number, lines=lines)
    return previous


class TestInheritance:
    @settings(max_examples=75, deadline=None)
    @given(data=st.data())
    def test_latest_edit_wins(self, data):
        items = data.draw(line_items())
        history = data.draw(edit_history(items))

        final = _build_versions(items, history)

        for item in items:
            last = [edits[item.id] for edits in history if item.id in edits]
            line = final.line(item.id)
            if not last:
                assert line.value == item.budget_cost and not line.excluded
            elif last[-1] is None:
                assert line.excluded and line.value == 0
            else:
                assert line.value == last[-1] and not line.excluded

    @settings(max_examples=50, deadline=None)
    @given(data=st.data())
    def test_every_item_resolved_exactly_once(self, data):
        items = data.draw(line_items())
        final = _build_versions(items, data.draw(edit_history(items)))

        assert sorted(str(line.line_item_id) for line in final.lines) == sorted(
            str(item.id) for item in items
        )


class TestDiffAntisymmetry:
    @settings(max_examples=75, deadline=None)
    @given(data=st.data())
    def test_mirror(self, data):
        items = data.draw(line_items())
        a = _build_versions(items, data.draw(edit_history(items)))
        b = _build_versions(items, data.draw(edit_history(items)))

        forward = {row.line_item_id: row for row in diff_snapshots(a, b)}
        backward = {row.line_item_id: row for row in diff_snapshots(b, a)}

        mirrored = {
            DiffStatus.ADDED: DiffStatus.REMOVED,
            DiffStatus.REMOVED: DiffStatus.ADDED,
            DiffStatus.INCREASED: DiffStatus.DECREASED,
            DiffStatus.DECREASED: DiffStatus.INCREASED,
            DiffStatus.UNCHANGED: DiffStatus.UNCHANGED,
        }
        assert forward.keys() == backward.keys()
        for line_item_id, row in forward.items():
            other = backward[line_item_id]
            assert row.delta == -other.delta
            assert mirrored[row.status] == other.status
            assert (row.amount_a, row.amount_b) == (other.amount_b, other.amount_a)

    @settings(max_examples=50, deadline=None)
    @given(data=st.data())
    def test_self_diff_is_unchanged(self, data):
        items = data.draw(line_items())
        snap = _build_versions(items, data.draw(edit_history(items)))

        assert all(row.status == DiffStatus.UNCHANGED for row in diff_snapshots(snap, snap))


class TestSpendSplit:
    @settings(max_examples=200, deadline=None)
    @given(
        mapped=amounts,
        line_value=line_values,
        invoiced=st.one_of(st.none(), amounts),
        ratio=st.decimals(min_value=Decimal("0"), max_value=Decimal("1"), places=2),
    )
    def test_actual_plus_future_is_mapped(self, mapped, line_value, invoiced, ratio):
        record = mapping(PROJECT_ID, mapped, line_value=line_value, invoiced_value=invoiced)

        split = split_mapped_amount(record, ratio)

        assert split.actual + split.future == mapped
        assert split.actual >= 0
        assert split.future >= 0


class TestStagingSummary:
    @settings(max_examples=50, deadline=None)
    @given(data=st.data())
    def test_summary_matches_resolved_version(self, data):
        items = data.draw(line_items())
        base = _build_versions(items, data.draw(edit_history(items)))
        staged = data.draw(edit_history(items))[0]

        buffer = StagingBuffer(project_id=PROJECT_ID, base_version_number=base.version_number)
        for line_item_id, value in staged.items():
            ref = PersistedRef(line_item_id)
            buffer = buffer.exclude(ref) if value is None else buffer.modify(ref, value)

        request = buffer.to_commit()
        lines = resolve_version_lines(
            project_id=PROJECT_ID,
            version_number=base.version_number + 1,
            line_items=items,
            previous=base,
            edits=request.edits,
        )
        resolved = Snapshot(project_id=PROJECT_ID, version_number=base.version_number + 1, lines=lines)

        assert buffer.summary(base).total_forecast == resolved.total
