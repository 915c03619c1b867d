# src/fundtrace/engine/retry.py
"""Retries for calls to the external evidence model.

Model calls (embed, extract) are the only operations fundtrace retries.
Warehouse units are never retried here: a failed unit rolls back and is
picked up again by the next run or the broker's redelivery.

Backoff is tenacity's exponential wait with jitter. Each call reports how
many attempts it took so the ExtractionCall record can store it.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, NoReturn, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.wait import wait_base

if TYPE_CHECKING:
    from fundtrace.core.config import RetrySettings

T = TypeVar("T")

RetryHook = Callable[[int, BaseException], None]


class MaxRetriesExceeded(Exception):
    """Every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Max retries ({attempts}) exceeded: {last_error}")


@dataclass(frozen=True)
class RetryConfig:
    """Backoff policy for model calls.

    max_attempts counts the first try: max_attempts=3 is one call plus two retries.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 1.0
    exponential_base: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def no_retry(cls) -> "RetryConfig":
        return cls(max_attempts=1)

    @classmethod
    def from_settings(cls, settings: "RetrySettings") -> "RetryConfig":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.initial_delay_seconds,
            max_delay=settings.max_delay_seconds,
            exponential_base=settings.exponential_base,
        )

    def wait(self) -> wait_base:
        return wait_exponential_jitter(
            initial=self.base_delay,
            max=self.max_delay,
            exp_base=self.exponential_base,
            jitter=self.jitter,
        )


def _raise_exhausted(state: RetryCallState) -> NoReturn:
    assert state.outcome is not None
    error = state.outcome.exception()
    assert error is not None
    raise MaxRetriesExceeded(state.attempt_number, error) from error


class RetryManager:
    """Runs an operation under a RetryConfig.

    Example:
        manager = RetryManager(RetryConfig(max_attempts=3))
        fields = manager.execute_with_retry(
            lambda: model.extract(text, prompt),
            is_retryable=lambda e: getattr(e, "retryable", False),
        )
    """

    def __init__(self, config: RetryConfig, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self._config = config
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self._config.max_attempts

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        *,
        is_retryable: Callable[[BaseException], bool],
        on_retry: RetryHook | None = None,
    ) -> T:
        """Call operation until it succeeds, fails for good, or attempts run out.

        on_retry(attempt, error) fires before each backoff sleep, so it is
        never called for the final attempt.

        Raises:
            MaxRetriesExceeded: Every attempt failed with a retryable error
            Exception: The first non-retryable error, unchanged
        """

        def before_sleep(state: RetryCallState) -> None:
            if on_retry is not None and state.outcome is not None:
                error = state.outcome.exception()
                if error is not None:
                    on_retry(state.attempt_number, error)

        retrying = Retrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=self._config.wait(),
            retry=retry_if_exception(is_retryable),
            sleep=self._sleep,
            before_sleep=before_sleep,
            retry_error_callback=_raise_exhausted,
        )
        result: T = retrying(operation)
        return result
