from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

from core.backoff import BackoffPolicy
from core.throttle import ThrottleState


def test_backoff_grows_and_caps() -> None:
    policy = BackoffPolicy(floor=1, cap=30, multiplier=2, jitter=0)
    delays = [policy.next_delay(n) for n in range(1, 8)]
    assert delays == [1, 2, 4, 8, 16, 30, 30]


def test_backoff_with_jitter_never_decreases_within_a_streak() -> None:
    policy = BackoffPolicy(floor=1, cap=30, multiplier=2, jitter=0.5)
    rng = random.Random(7)
    previous = 0.0
    for failures in range(1, 20):
        delay = policy.next_delay(failures, previous, rng)
        assert previous <= delay <= 30
        previous = delay
    assert previous == 30


def test_backoff_huge_failure_counts_do_not_overflow() -> None:
    policy = BackoffPolicy(floor=1, cap=600, jitter=0)
    assert policy.next_delay(10_000) == 600


def test_backoff_reset_threshold() -> None:
    policy = BackoffPolicy(reset_after=300)
    assert not policy.should_reset(299.9)
    assert policy.should_reset(300)


def test_throttle_window_boundaries() -> None:
    state = ThrottleState()
    key = ("@alice", "monitored_user")
    start = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    window = timedelta(minutes=15)

    assert not state.is_throttled(key, start, window)
    state.mark(key, start)
    assert state.is_throttled(key, start + timedelta(minutes=2), window)
    assert not state.is_throttled(key, start + timedelta(minutes=15), window)
    assert not state.is_throttled(("@bob", "monitored_user"), start, window)


def test_throttle_remembers_latest_mark() -> None:
    state = ThrottleState()
    key = ("@alice", "monitored_user")
    first = datetime(2024, 1, 1, tzinfo=timezone.utc)
    state.mark(key, first)
    state.mark(key, first + timedelta(minutes=20))
    assert state.last_notified(key) == first + timedelta(minutes=20)
    assert state.last_notified(("@bob", "monitored_user")) is None
