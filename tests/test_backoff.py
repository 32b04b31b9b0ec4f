import threading
from datetime import timedelta

import pytest

from conftest import FakeMonotonic
from nodekeeper_agent.backoff import Backoff
from nodekeeper_agent.errors import CancelledError, LockTimeoutError


def test_delay_doubles_up_to_max() -> None:
    clock = FakeMonotonic()
    backoff = Backoff(timedelta(seconds=3), timedelta(seconds=20), sleep=clock.sleep, monotonic=clock, jitter=False)
    deadline = clock() + 3600

    delays = []
    for _ in range(5):
        delays.append(backoff.next_delay())
        backoff.wait(deadline)
    assert delays == [3, 6, 12, 20, 20]

    backoff.reset()
    assert backoff.next_delay() == 3


def test_jitter_stays_within_half_to_full_delay() -> None:
    slept = []
    clock = FakeMonotonic()

    def sleep(seconds):
        slept.append(seconds)
        clock.sleep(seconds)

    backoff = Backoff(timedelta(seconds=4), timedelta(seconds=4), sleep=sleep, monotonic=clock)
    for _ in range(20):
        backoff.wait(clock() + 3600)
    assert all(2 <= s <= 4 for s in slept)


def test_wait_never_passes_deadline() -> None:
    clock = FakeMonotonic()
    backoff = Backoff(timedelta(seconds=30), timedelta(seconds=30), sleep=clock.sleep, monotonic=clock, jitter=False)
    deadline = clock() + 10
    with pytest.raises(LockTimeoutError):
        backoff.wait(deadline)
    assert clock() == deadline


def test_cancel_interrupts_wait() -> None:
    cancel = threading.Event()
    backoff = Backoff(timedelta(seconds=60), timedelta(seconds=60))
    threading.Timer(0.05, cancel.set).start()
    with pytest.raises(CancelledError):
        backoff.wait(backoff._monotonic() + 3600, cancel)
