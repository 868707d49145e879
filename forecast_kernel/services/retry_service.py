"""
RetryService -- bounded retries for transient storage failures.

Responsibility:
    Run a unit of work under a ``RetryPolicy``: retry when it raises
    ``TransientStorageError``, sleep between attempts according to the
    policy's backoff, and give up after ``max_attempts``.  Also translates
    raw DB-API connectivity errors into ``TransientStorageError``.

Architecture position:
    Kernel > Services -- imperative shell.  The policy is injected; engine
    and ledger logic never loop on their own.

Invariants enforced:
    - Only TransientStorageError is retried.  Validation, not-found,
      conflict and invariant errors propagate on the first attempt.
    - The number of attempts never exceeds ``policy.max_attempts``.

Failure modes:
    - The last TransientStorageError is re-raised once attempts run out.

Audit relevance:
    Every retry and every exhaustion is logged with the operation name
    and attempt number.
"""

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TypeVar

from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from forecast_kernel.exceptions import TransientStorageError
from forecast_kernel.logging_config import get_logger

logger = get_logger("services.retry_service")

T = TypeVar("T")

TRANSIENT_DB_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)


def fixed_backoff(seconds: float) -> Callable[[int], float]:
    """Same delay before every retry."""

    def _backoff(attempt: int) -> float:
        return seconds

    return _backoff


def exponential_backoff(base_seconds: float, cap_seconds: float = 5.0) -> Callable[[int], float]:
    """``base * 2**(attempt-1)``, capped."""

    def _backoff(attempt: int) -> float:
        return min(cap_seconds, base_seconds * (2 ** (attempt - 1)))

    return _backoff


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many times to try, and how long to wait in between.

    ``backoff(attempt)`` returns the delay after failed attempt number
    ``attempt`` (1-based).
    """

    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default=fixed_backoff(0.2))

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1, backoff=fixed_backoff(0.0))


@contextmanager
def translate_storage_errors(operation: str) -> Iterator[None]:
    """Re-raise DB-API connectivity failures as TransientStorageError."""
    try:
        yield
    except TRANSIENT_DB_ERRORS as exc:
        raise TransientStorageError(operation=operation, original=exc) from exc


class RetryService:
    """
    Executes callables under a retry policy.

    Contract:
        ``run(operation, fn)`` calls ``fn()`` until it returns or raises
        something other than TransientStorageError, at most
        ``policy.max_attempts`` times.

    Non-goals:
        - Does NOT open or close transactions; ``fn`` must leave the
          session clean (rolled back) before raising.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def run(self, operation: str, fn: Callable[[], T]) -> T:
        attempt = 1
        while True:
            try:
                return fn()
            except TransientStorageError as exc:
                if attempt >= self.policy.max_attempts:
                    logger.error(
                        "retry_exhausted",
                        extra={
                            "operation": operation,
                            "attempts": attempt,
                            "error": str(exc.original),
                        },
                    )
                    raise
                delay = self.policy.backoff(attempt)
                logger.warning(
                    "retry_scheduled",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": self.policy.max_attempts,
                        "delay_seconds": delay,
                    },
                )
                self._sleep(delay)
                attempt += 1
