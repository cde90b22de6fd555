from unittest import mock

import pytest

from nyduskit.retry import (
    RetryConfig,
    RetryError,
    Unrecoverable,
    backoff_delay,
    combine_delay,
    fixed_delay,
    is_recoverable,
    random_delay,
    retry_call,
)


def _flaky(failures):
    calls = []

    def fn():
        calls.append(len(calls))
        if len(calls) <= failures:
            raise ValueError(f"fail {len(calls)}")
        return "done"

    return fn, calls


def test_succeeds_after_failures():
    fn, calls = _flaky(2)
    result = retry_call(fn, attempts=5, delay=0, delay_type=fixed_delay)
    assert result == "done"
    assert len(calls) == 3


def test_all_attempts_fail_collects_errors():
    fn, calls = _flaky(10)
    with pytest.raises(RetryError) as info:
        retry_call(fn, attempts=3, delay=0, delay_type=fixed_delay)
    errors = info.value.wrapped_errors()
    assert [str(e) for e in errors] == ["fail 1", "fail 2", "fail 3"]
    assert len(calls) == 3
    text = str(info.value)
    assert text.startswith("All attempts fail:\n")
    assert "#3: fail 3" in text


def test_last_error_only_raises_last_error():
    fn, _ = _flaky(10)
    with pytest.raises(ValueError, match="fail 4"):
        retry_call(fn, attempts=4, delay=0, delay_type=fixed_delay, last_error_only=True)


def test_unrecoverable_stops_immediately():
    inner = KeyError("gone")
    calls = []

    def fn():
        calls.append(1)
        raise Unrecoverable(inner)

    with pytest.raises(RetryError) as info:
        retry_call(fn, attempts=5, delay=0, delay_type=fixed_delay)
    assert calls == [1]
    assert info.value.wrapped_errors() == [inner]


def test_on_retry_receives_attempt_numbers():
    fn, _ = _flaky(10)
    seen = []
    with pytest.raises(RetryError):
        retry_call(
            fn,
            attempts=3,
            delay=0,
            delay_type=fixed_delay,
            on_retry=lambda n, err: seen.append(n),
        )
    assert seen == [0, 1, 2]


def test_is_recoverable():
    assert is_recoverable(ValueError("x"))
    assert not is_recoverable(Unrecoverable(ValueError("x")))


def test_delay_functions():
    config = RetryConfig(delay=0.5, max_jitter=0.2)
    assert fixed_delay(7, config) == config.delay
    assert backoff_delay(0, config) == config.delay
    assert backoff_delay(3, config) == 4.0
    combined = combine_delay(fixed_delay, fixed_delay)
    assert combined(0, config) == 2 * config.delay
    for n in range(20):
        value = random_delay(n, config)
        assert 0 <= value < config.max_jitter


def test_max_delay_caps_sleep():
    fn, _ = _flaky(10)
    with mock.patch("time.sleep") as sleep:
        with pytest.raises(RetryError):
            retry_call(fn, attempts=3, max_delay=0.25, delay_type=lambda n, c: 5.0)
    assert [c.args[0] for c in sleep.call_args_list] == [0.25, 0.25]


def test_no_sleep_after_last_attempt():
    fn, _ = _flaky(10)
    with mock.patch("time.sleep") as sleep:
        with pytest.raises(ValueError):
            retry_call(fn, attempts=2, delay_type=lambda n, c: 1.5, last_error_only=True)
    assert [c.args[0] for c in sleep.call_args_list] == [1.5]