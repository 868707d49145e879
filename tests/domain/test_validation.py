"""
Tests for forecast commit input validation.
"""

from decimal import Decimal

import pytest

from forecast_kernel.domain.validation import (
    ValidationIssue,
    check_reason,
    edit_value_issues,
    new_line_item_issues,
    persistence_payload_issues,
    raise_if_issues,
    to_decimal,
)
from forecast_kernel.exceptions import InvalidReasonError, ValidationError
from tests.factories import classification


class TestToDecimal:
    @pytest.mark.parametrize(
        "raw, expected",
        [("150", Decimal("150")), (150, Decimal("150")), (0.1, Decimal("0.1")), (" 2.50 ", Decimal("2.50"))],
    )
    def test_converts_without_float_noise(self, raw, expected):
        assert to_decimal(raw) == expected

    @pytest.mark.parametrize("raw", ["abc", "", None, True, [1]])
    def test_rejects_non_numbers(self, raw):
        with pytest.raises(ValidationError):
            to_decimal(raw)


class TestCheckReason:
    def test_accepts_reason_within_bounds(self):
        check_reason("Q3 reforecast for steel prices", 10, 500)

    @pytest.mark.parametrize("reason", [None, "", "    ", "too short"])
    def test_rejects_blank_or_short(self, reason):
        with pytest.raises(InvalidReasonError) as exc_info:
            check_reason(reason, 10, 500)

        assert exc_info.value.code == "INVALID_REASON"
        assert exc_info.value.issues[0].field == "reason"

    def test_surrounding_whitespace_does_not_count(self):
        with pytest.raises(InvalidReasonError) as exc_info:
            check_reason("   123456789   ", 10, 500)

        assert exc_info.value.reason_length == 9

    def test_rejects_too_long(self):
        with pytest.raises(InvalidReasonError):
            check_reason("x" * 501, 10, 500)

    def test_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            check_reason("", 10, 500)


class TestEditValues:
    def test_none_means_exclusion(self):
        assert edit_value_issues(None) == []

    def test_zero_is_allowed(self):
        assert edit_value_issues(Decimal("0")) == []

    def test_negative_rejected(self):
        issues = edit_value_issues(Decimal("-0.01"), ref="line-1")

        assert issues[0].ref == "line-1"

    @pytest.mark.parametrize("value", ["NaN", "Infinity"])
    def test_non_finite_rejected(self, value):
        assert edit_value_issues(Decimal(value))


class TestNewLineItems:
    def test_valid_item(self):
        assert new_line_item_issues(classification(), Decimal("1")) == []

    def test_zero_value_rejected(self):
        issues = new_line_item_issues(classification(), Decimal("0"))

        assert [i.field for i in issues] == ["value"]

    def test_blank_levels_reported_individually(self):
        issues = new_line_item_issues(
            classification(business_line="", spend_type=" "), Decimal("5"), ref="draft:1"
        )

        assert {i.field for i in issues} == {"business_line", "spend_type"}
        assert all(i.ref == "draft:1" for i in issues)


class TestPersistencePayload:
    def test_clean_payload(self):
        payload = {"project_id": "a1b2", "business_line": "Commercial", "budget_cost": Decimal("1")}

        assert persistence_payload_issues(payload) == []

    @pytest.mark.parametrize("key", ["_state", "local_id", "temp_id", "is_new", "is_draft"])
    def test_marker_keys_rejected(self, key):
        assert persistence_payload_issues({key: "x"})

    def test_temporary_identifier_rejected(self):
        issues = persistence_payload_issues({"line_item_id": "temp_1700000000"})

        assert issues[0].field == "line_item_id"

    def test_temp_prefix_in_text_fields_allowed(self):
        assert persistence_payload_issues({"sub_category": "temp_staff"}) == []


class TestRaiseIfIssues:
    def test_no_issues_no_error(self):
        raise_if_issues([])

    def test_collects_every_issue(self):
        issues = [ValidationIssue("a", "bad"), ValidationIssue("b", "worse", ref="r1")]

        with pytest.raises(ValidationError) as exc_info:
            raise_if_issues(issues)

        assert exc_info.value.issues == issues
        assert "[r1] b: worse" in str(exc_info.value)
