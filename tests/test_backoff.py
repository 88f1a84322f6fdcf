from __future__ import annotations

import random

import allure
import pytest

from course_queue.queue.backoff import BackoffPolicy

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Leases, Retries, Cancellation"),
]


def test_delay_without_jitter_doubles_until_cap() -> None:
    policy = BackoffPolicy(jitter=0.0)

    assert [policy.delay_seconds(attempt) for attempt in range(1, 10)] == [
        5.0,
        10.0,
        20.0,
        40.0,
        80.0,
        160.0,
        320.0,
        600.0,
        600.0,
    ]


@pytest.mark.parametrize("seed", [0, 1, 7, 42, 1234])
def test_jittered_delays_are_bounded_and_non_decreasing(seed: int) -> None:
    policy = BackoffPolicy(rng=random.Random(seed))

    delays = [policy.delay_seconds(attempt) for attempt in range(1, 15)]

    assert delays == sorted(delays)
    assert 4.0 <= delays[0] <= 6.0
    assert all(delay <= 600.0 for delay in delays)
    assert delays[-1] == 600.0


def test_huge_attempt_counts_stay_at_cap() -> None:
    assert BackoffPolicy().delay_seconds(10_000) == 600.0


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"base_seconds": 0}, "base_seconds"),
        ({"factor": 0.5}, "factor"),
        ({"max_seconds": 1}, "max_seconds"),
        ({"jitter": 1.0}, "jitter"),
    ],
)
def test_invalid_policy_is_rejected(kwargs: dict[str, float], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        BackoffPolicy(**kwargs)
