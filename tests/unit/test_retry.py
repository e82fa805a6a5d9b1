"""
Unit tests for the retry wrapper.

Tests cover:
- Which errors are retried
- Linear backoff between attempts
- Propagation of the final error
- Retry spans
"""

import pytest

from dataplane.tabledata.cdc.retry import RetryPolicy, retry
from dataplane.tabledata.config import RetryConfig
from dataplane.tabledata.errors import (
    AlreadyExistsError,
    DataIntegrityError,
    NotFoundError,
    OptimisticLockingError,
)
from dataplane.tabledata.telemetry import RecordingTelemetry
from tests.entities import RecordingSleep

KEY = {"pk": "ACCOUNT#a-1"}


class Flaky:
    """Raises the queued errors in order, then returns ``value``."""

    def __init__(self, errors, value="done"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class TestRetry:
    """Tests for retry()."""

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        sleep = RecordingSleep()
        operation = Flaky([])

        assert await retry(operation, sleep=sleep) == "done"
        assert operation.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_persistent_contention_gives_up(self):
        """Five attempts, four linear waits, then the last error."""
        sleep = RecordingSleep()
        errors = [OptimisticLockingError("Account", KEY) for _ in range(6)]
        operation = Flaky(errors)

        with pytest.raises(OptimisticLockingError) as exc_info:
            await retry(operation, sleep=sleep)

        assert operation.calls == 5
        assert sleep.delays == [2.0, 4.0, 6.0, 8.0]
        assert exc_info.value is errors[4]

    @pytest.mark.asyncio
    async def test_recovers_on_third_attempt(self):
        sleep = RecordingSleep()
        operation = Flaky(
            [AlreadyExistsError("Account", KEY), OptimisticLockingError("Account", KEY)],
            value=42,
        )

        assert await retry(operation, sleep=sleep) == 42
        assert operation.calls == 3
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            DataIntegrityError("bad type tag"),
            NotFoundError("Account", KEY),
            RuntimeError("boom"),
        ],
    )
    async def test_other_errors_not_retried(self, error):
        sleep = RecordingSleep()
        operation = Flaky([error])

        with pytest.raises(type(error)):
            await retry(operation, sleep=sleep)

        assert operation.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_custom_attempts_and_delay(self):
        sleep = RecordingSleep()
        operation = Flaky([AlreadyExistsError("Account", KEY) for _ in range(3)])

        with pytest.raises(AlreadyExistsError):
            await retry(operation, max_attempts=3, base_delay_ms=100, sleep=sleep)

        assert operation.calls == 3
        assert sleep.delays == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            await retry(Flaky([]), max_attempts=0)

    @pytest.mark.asyncio
    async def test_spans_per_attempt(self):
        telemetry = RecordingTelemetry()
        operation = Flaky([OptimisticLockingError("Account", KEY)])

        await retry(operation, sleep=RecordingSleep(), telemetry=telemetry)

        assert telemetry.spans == [
            ("retry", {"attempt": 0, "total_attempts": 5}),
            ("retry", {"attempt": 1, "total_attempts": 5}),
        ]


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_defaults(self):
        policy = RetryPolicy()

        assert policy.max_attempts == 5
        assert policy.base_delay_ms == 2000

    def test_from_config(self):
        policy = RetryPolicy.from_config(RetryConfig(max_attempts=2, base_delay_ms=10))

        assert policy.max_attempts == 2
        assert policy.base_delay_ms == 10

    @pytest.mark.asyncio
    async def test_run_uses_bound_sleep(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(max_attempts=2, base_delay_ms=500, sleep=sleep)
        operation = Flaky([OptimisticLockingError("Account", KEY)] * 2)

        with pytest.raises(OptimisticLockingError):
            await policy.run(operation)

        assert operation.calls == 2
        assert sleep.delays == [0.5]
