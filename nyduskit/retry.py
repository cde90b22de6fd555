"""Retrying a callable with configurable delays between attempts."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

T = TypeVar("T")

DelayFunc = Callable[[int, "RetryConfig"], float]


class RetryError(Exception):
    """Raised when every attempt failed; holds the error of each attempt."""

    def __init__(self, errors: list[BaseException]):
        self.errors = list(errors)
        super().__init__(str(self))

    def __str__(self) -> str:
        lines = [f"#{number}: {error}" for number, error in enumerate(self.errors, start=1)]
        return "All attempts fail:\n" + "\n".join(lines)

    def wrapped_errors(self) -> list[BaseException]:
        """Return the errors collected from the attempts."""
        return list(self.errors)


class Unrecoverable(Exception):
    """Wraps an error that must stop retrying at once."""

    def __init__(self, error: BaseException):
        super().__init__(error)
        self.error = error


def is_recoverable(err: BaseException) -> bool:
    """Return False for errors wrapped in Unrecoverable."""
    return not isinstance(err, Unrecoverable)


def _unpack(err: BaseException) -> BaseException:
    return err.error if isinstance(err, Unrecoverable) else err


def fixed_delay(n: int, config: RetryConfig) -> float:
    """Keep the same delay for every attempt."""
    return config.delay


def backoff_delay(n: int, config: RetryConfig) -> float:
    """Double the delay after every attempt."""
    return config.delay * (1 << n)


def random_delay(n: int, config: RetryConfig) -> float:
    """Pick a random delay below the configured maximum jitter."""
    if config.max_jitter <= 0:
        return 0.0
    return random.random() * config.max_jitter


def combine_delay(*args: DelayFunc) -> DelayFunc:
    """Return a delay function that sums the given delay functions."""

    def combined(n: int, config: RetryConfig) -> float:
        return sum(delay(n, config) for delay in args)

    return combined


def _no_op(n: int, err: BaseException) -> None:
    return None


DEFAULT_DELAY_TYPE = combine_delay(fixed_delay, random_delay)


@dataclass
class RetryConfig:
    """Settings of a retry run; delays are in seconds."""

    attempts: int = 10
    delay: float = 0.1
    max_delay: float = 0.0
    max_jitter: float = 0.1
    on_retry: Callable[[int, BaseException], Any] = _no_op
    retry_if: Callable[[BaseException], bool] = is_recoverable
    delay_type: DelayFunc = DEFAULT_DELAY_TYPE
    last_error_only: bool = False


def retry_call(
    fn: Callable[[], T],
    attempts: int = 10,
    delay: float = 0.1,
    max_delay: float = 0.0,
    max_jitter: float = 0.1,
    on_retry: Optional[Callable[[int, BaseException], Any]] = None,
    retry_if: Callable[[BaseException], bool] = is_recoverable,
    delay_type: Optional[DelayFunc] = None,
    last_error_only: bool = False,
) -> Optional[T]:
    """Call fn until it succeeds and return its result.

    When every attempt fails, the last error is raised if last_error_only is
    set, otherwise a RetryError holding every error.
    """
    config = RetryConfig(
        attempts=attempts,
        delay=delay,
        max_delay=max_delay,
        max_jitter=max_jitter,
        on_retry=on_retry or _no_op,
        retry_if=retry_if,
        delay_type=delay_type or DEFAULT_DELAY_TYPE,
        last_error_only=last_error_only,
    )
    errors: list[BaseException] = []

    for n in range(config.attempts):
        try:
            return fn()
        except Exception as err:  # noqa: BLE001 - any failure is retried
            errors.append(_unpack(err))
            if not config.retry_if(err):
                break
            config.on_retry(n, err)
            if n == config.attempts - 1:
                break
            wait = config.delay_type(n, config)
            if config.max_delay > 0 and wait > config.max_delay:
                wait = config.max_delay
            time.sleep(wait)

    if config.last_error_only:
        if errors:
            raise errors[-1]
        return None
    raise RetryError(errors)