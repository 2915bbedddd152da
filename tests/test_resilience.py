"""Tests for error classification and the retry executor."""

import asyncio

import pytest

from src.vrtgate.config import RetrySettings
from src.vrtgate.resilience import (
    BatchCancelledError,
    CorruptedImageError,
    ErrorClassification,
    ErrorPolicy,
    ErrorSeverity,
    MissingAfterError,
    MissingBaselineError,
    NavigationError,
    NetworkError,
    RenderTimeoutError,
    ResourceExhaustedError,
    RetryExecutor,
    SizeMismatchError,
    classify_exception,
    policy_for,
    severity_for,
)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FlakyOperation:
    """Raises the given errors in turn, then returns ``value``."""

    def __init__(self, errors, value="done"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class TestClassification:
    @pytest.mark.parametrize(
        "error,expected",
        [
            (RenderTimeoutError("slow"), ErrorClassification.TIMEOUT),
            (NetworkError("reset"), ErrorClassification.NETWORK),
            (NavigationError("404"), ErrorClassification.NAVIGATION),
            (ResourceExhaustedError("oom"), ErrorClassification.MEMORY),
            (MissingBaselineError("none"), ErrorClassification.MISSING_BASELINE),
            (MissingAfterError("none"), ErrorClassification.MISSING_AFTER),
            (SizeMismatchError("1920x1080 vs 1920x2400"), ErrorClassification.SIZE_MISMATCH),
            (BatchCancelledError("aborted"), ErrorClassification.CANCELLED),
            (CorruptedImageError("bad"), ErrorClassification.CORRUPTED_IMAGE),
            (MemoryError(), ErrorClassification.MEMORY),
            (asyncio.TimeoutError(), ErrorClassification.TIMEOUT),
            (ConnectionResetError(), ErrorClassification.NETWORK),
            (KeyError("x"), ErrorClassification.UNKNOWN),
        ],
    )
    def test_classify_exception(self, error, expected):
        assert classify_exception(error) == expected

    def test_policies(self):
        assert policy_for(ErrorClassification.TIMEOUT) == ErrorPolicy.RETRY
        assert policy_for(ErrorClassification.NETWORK) == ErrorPolicy.RETRY
        assert policy_for(ErrorClassification.UNKNOWN) == ErrorPolicy.RETRY
        assert policy_for(ErrorClassification.NAVIGATION) == ErrorPolicy.SKIP
        assert policy_for(ErrorClassification.MEMORY) == ErrorPolicy.FAIL_BATCH
        assert policy_for(ErrorClassification.MISSING_BASELINE) == ErrorPolicy.SURFACE
        assert policy_for(ErrorClassification.CORRUPTED_IMAGE) == ErrorPolicy.SURFACE

    def test_severity(self):
        assert severity_for(ErrorClassification.MAX_RETRY_EXCEEDED) == ErrorSeverity.HIGH
        assert severity_for(ErrorClassification.MEMORY) == ErrorSeverity.HIGH
        assert severity_for(ErrorClassification.TIMEOUT) == ErrorSeverity.MEDIUM
        assert severity_for(ErrorClassification.NAVIGATION) == ErrorSeverity.LOW

    def test_error_carries_context(self):
        error = NavigationError("HTTP 404", url="https://example.com/x")

        assert error.message == "HTTP 404"
        assert error.context == {"url": "https://example.com/x"}


class TestRetryExecutor:
    @pytest.fixture
    def sleep(self):
        return RecordingSleep()

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, sleep):
        executor = RetryExecutor(max_retries=3, base_delay=1.0, sleep=sleep)

        outcome = await executor.run(FlakyOperation([]), "op")

        assert outcome.ok
        assert outcome.value == "done"
        assert outcome.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, sleep):
        executor = RetryExecutor(max_retries=3, base_delay=1.0, sleep=sleep)
        operation = FlakyOperation([NetworkError("reset"), RenderTimeoutError("slow")])

        outcome = await executor.run(operation, "op")

        assert outcome.ok
        assert outcome.attempts == 3
        assert [e.attempt for e in outcome.errors] == [1, 2]
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_retries", [1, 2, 3, 5])
    async def test_always_failing_operation_runs_exactly_max_retries(self, sleep, max_retries):
        executor = RetryExecutor(max_retries=max_retries, base_delay=0.5, sleep=sleep)
        operation = FlakyOperation([NetworkError("down")] * 10)

        outcome = await executor.run(operation, "op", {"url": "https://example.com"})

        assert not outcome.ok
        assert operation.calls == max_retries
        assert outcome.attempts == max_retries
        assert outcome.classification == ErrorClassification.MAX_RETRY_EXCEEDED
        assert outcome.cause_classification == ErrorClassification.NETWORK
        assert len(outcome.errors) == max_retries
        assert outcome.errors[0].context == {"url": "https://example.com"}
        assert sleep.delays == [0.5 * 2**i for i in range(max_retries - 1)]

    @pytest.mark.asyncio
    async def test_non_retryable_failure_returns_immediately(self, sleep):
        executor = RetryExecutor(max_retries=3, sleep=sleep)
        operation = FlakyOperation([NavigationError("HTTP 404")])

        outcome = await executor.run(operation, "op")

        assert not outcome.ok
        assert operation.calls == 1
        assert outcome.classification == ErrorClassification.NAVIGATION
        assert outcome.message == "HTTP 404"
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_fail_batch_failure_is_not_retried(self, sleep):
        executor = RetryExecutor(max_retries=3, sleep=sleep)
        operation = FlakyOperation([ResourceExhaustedError("Target crashed")])

        outcome = await executor.run(operation, "op")

        assert outcome.classification == ErrorClassification.MEMORY
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, sleep):
        executor = RetryExecutor(max_retries=3, sleep=sleep)
        operation = FlakyOperation([asyncio.CancelledError()])

        with pytest.raises(asyncio.CancelledError):
            await executor.run(operation, "op")
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_error_records_belong_to_their_run(self, sleep):
        executor = RetryExecutor(max_retries=2, sleep=sleep)

        first = await executor.run(FlakyOperation([NetworkError("a")]), "first")
        second = await executor.run(FlakyOperation([NavigationError("b")]), "second")

        assert [(r.operation, r.attempt) for r in first.errors] == [("first", 1)]
        assert [(r.operation, r.attempt) for r in second.errors] == [("second", 1)]
        assert first.errors[0].to_dict()["classification"] == "NETWORK"
        assert not hasattr(executor, "records")

    def test_delay_schedule(self):
        executor = RetryExecutor(base_delay=1.0)

        assert [executor.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_from_settings(self):
        executor = RetryExecutor.from_settings(RetrySettings(max_retries=5, base_delay=0.25))

        assert executor.max_retries == 5
        assert executor.base_delay == 0.25

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryExecutor(max_retries=0)
