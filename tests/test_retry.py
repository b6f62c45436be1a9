import pytest

from src.capsule_compiler.services.retry import MAX_ATTEMPTS, RETRY_DELAYS, with_retry


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def test_fails_twice_then_succeeds_with_schedule():
    clock = FakeClock()
    attempt_times = []

    def flaky():
        attempt_times.append(clock.now)
        if len(attempt_times) < 3:
            raise ConnectionError("refused")
        return "ok"

    assert with_retry(flaky, sleep=clock.sleep) == "ok"
    assert len(attempt_times) == MAX_ATTEMPTS
    gaps = [b - a for a, b in zip(attempt_times, attempt_times[1:])]
    assert gaps == [RETRY_DELAYS[0], RETRY_DELAYS[1]]
    assert clock.sleeps == [1.0]  # zero delays are not slept


def test_last_error_is_reraised_after_all_attempts():
    clock = FakeClock()
    calls = []

    def always_fails():
        calls.append(1)
        raise TimeoutError(f"attempt {len(calls)}")

    with pytest.raises(TimeoutError, match="attempt 3"):
        with_retry(always_fails, sleep=clock.sleep)
    assert len(calls) == 3


def test_success_on_first_attempt_does_not_sleep():
    clock = FakeClock()
    assert with_retry(lambda: 42, sleep=clock.sleep) == 42
    assert clock.sleeps == []


def test_on_failure_sees_each_failed_attempt():
    seen = []
    outcomes = iter([ValueError("a"), ValueError("b"), None])

    def fn():
        err = next(outcomes)
        if err:
            raise err
        return "done"

    result = with_retry(fn, sleep=lambda _s: None, on_failure=lambda n, exc: seen.append((n, str(exc))))
    assert result == "done"
    assert seen == [(1, "a"), (2, "b")]


def test_custom_schedule_and_attempts():
    clock = FakeClock()

    def never():
        raise RuntimeError("x")

    with pytest.raises(RuntimeError):
        with_retry(never, max_attempts=4, delays=(0.5, 2.0), sleep=clock.sleep)
    # the schedule's last entry is reused once it runs out
    assert clock.sleeps == [0.5, 2.0, 2.0]
