"""
Tests for RetryService, RetryPolicy and storage error translation.
"""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from forecast_config import EngineSettings, RetrySettings
from forecast_kernel.exceptions import TransientStorageError, VersionConflictError
from forecast_kernel.services.retry_service import (
    RetryPolicy,
    RetryService,
    exponential_backoff,
    fixed_backoff,
    translate_storage_errors,
)
from forecast_services import retry_policy_from_settings


def _transient() -> TransientStorageError:
    return TransientStorageError("test_op", OperationalError("SELECT 1", {}, Exception("gone")))


class _Flaky:
    """Fails with a transient error ``failures`` times, then returns ``result``."""

    def __init__(self, failures: int, result: str = "ok"):
        self.failures = failures
        self.result = result
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise _transient()
        return self.result


@pytest.fixture
def sleeps():
    return []


class TestRetryService:
    def test_succeeds_after_transient_failures(self, sleeps):
        fn = _Flaky(failures=2)
        service = RetryService(RetryPolicy(3, fixed_backoff(0.5)), sleep=sleeps.append)

        assert service.run("op", fn) == "ok"
        assert fn.calls == 3
        assert sleeps == [0.5, 0.5]

    def test_gives_up_after_max_attempts(self, sleeps, captured_logs):
        fn = _Flaky(failures=10)
        service = RetryService(RetryPolicy(3, fixed_backoff(0.0)), sleep=sleeps.append)

        with pytest.raises(TransientStorageError):
            service.run("op", fn)

        assert fn.calls == 3
        assert len(sleeps) == 2
        exhausted = [r for r in captured_logs() if r["message"] == "retry_exhausted"]
        assert exhausted[0]["attempts"] == 3

    def test_other_errors_are_not_retried(self, sleeps):
        calls = []

        def fn():
            calls.append(1)
            raise VersionConflictError("p", 1)

        with pytest.raises(VersionConflictError):
            RetryService(RetryPolicy(5), sleep=sleeps.append).run("op", fn)

        assert len(calls) == 1
        assert sleeps == []

    def test_no_retry_policy(self, sleeps):
        fn = _Flaky(failures=1)

        with pytest.raises(TransientStorageError):
            RetryService(RetryPolicy.no_retry(), sleep=sleeps.append).run("op", fn)

        assert fn.calls == 1


class TestRetryPolicy:
    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_exponential_backoff_is_capped(self):
        backoff = exponential_backoff(0.5, cap_seconds=3.0)

        assert [backoff(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 3.0]

    def test_policy_from_settings(self):
        settings = EngineSettings(retry=RetrySettings(max_attempts=5, backoff_seconds=0.1, backoff="exponential"))

        policy = retry_policy_from_settings(settings)

        assert policy.max_attempts == 5
        assert policy.backoff(3) == pytest.approx(0.4)


class TestTranslateStorageErrors:
    def test_operational_error_becomes_transient(self):
        original = OperationalError("SELECT 1", {}, Exception("database is locked"))

        with pytest.raises(TransientStorageError) as exc_info:
            with translate_storage_errors("read"):
                raise original

        assert exc_info.value.operation == "read"
        assert exc_info.value.original is original
        assert exc_info.value.code == "TRANSIENT_STORAGE_ERROR"

    def test_integrity_error_passes_through(self):
        with pytest.raises(IntegrityError):
            with translate_storage_errors("write"):
                raise IntegrityError("INSERT", {}, Exception("unique"))
