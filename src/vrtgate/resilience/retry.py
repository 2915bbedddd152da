"""Retry executor with exponential backoff and classified failures."""

import asyncio
from collections.abc import Awaitable
from typing import Any, Callable, Optional, TypeVar

from ..utils.logging import get_structured_logger
from .classifier import classify_exception, policy_for, severity_for
from .types import (
    ErrorClassification,
    ErrorPolicy,
    ErrorRecord,
    Failure,
    Outcome,
    Success,
)

logger = get_structured_logger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[Any]]


class RetryExecutor:
    """Runs fallible async operations under the retry policy.

    ``max_retries`` is the total number of attempts. Between attempts the
    executor waits ``base_delay * 2 ** (attempt - 1)`` seconds. Only
    classifications whose policy is RETRY are attempted again; everything
    else returns a ``Failure`` immediately.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: Optional[SleepFunc] = None,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_settings(cls, settings, sleep: Optional[SleepFunc] = None) -> "RetryExecutor":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay,
            sleep=sleep,
        )

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** (attempt - 1))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        context: Optional[dict[str, Any]] = None,
    ) -> Outcome:
        """Run ``operation`` until it succeeds or the policy gives up.

        Cancellation of the calling task is never swallowed.
        """
        context = dict(context or {})
        errors: list[ErrorRecord] = []

        for attempt in range(1, self.max_retries + 1):
            try:
                value = await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                classification = classify_exception(e)
                record = ErrorRecord(
                    operation=name,
                    classification=classification,
                    attempt=attempt,
                    message=str(e) or type(e).__name__,
                    context=context,
                )
                errors.append(record)

                policy = policy_for(classification)
                logger.warning(
                    "Operation attempt failed",
                    operation=name,
                    attempt=attempt,
                    max_retries=self.max_retries,
                    classification=classification.value,
                    policy=policy.value,
                    severity=severity_for(classification).value,
                    error=record.message,
                    context=context,
                )

                if policy != ErrorPolicy.RETRY:
                    return Failure(
                        classification=classification,
                        message=record.message,
                        attempts=attempt,
                        cause=e,
                        cause_classification=classification,
                        errors=tuple(errors),
                    )

                if attempt == self.max_retries:
                    logger.error(
                        "Operation failed after all attempts",
                        operation=name,
                        attempts=attempt,
                        classification=ErrorClassification.MAX_RETRY_EXCEEDED.value,
                        severity=severity_for(
                            ErrorClassification.MAX_RETRY_EXCEEDED
                        ).value,
                        last_error=record.message,
                        context=context,
                    )
                    return Failure(
                        classification=ErrorClassification.MAX_RETRY_EXCEEDED,
                        message=f"Max retries ({self.max_retries}) exceeded: {record.message}",
                        attempts=attempt,
                        cause=e,
                        cause_classification=classification,
                        errors=tuple(errors),
                    )

                await self._sleep(self.delay_for(attempt))
            else:
                if errors:
                    logger.info(
                        "Operation recovered after retry",
                        operation=name,
                        attempts=attempt,
                        context=context,
                    )
                return Success(value=value, attempts=attempt, errors=tuple(errors))

        # range() above always returns from inside the loop
        raise AssertionError("unreachable")
