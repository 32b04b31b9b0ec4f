"""Exponential backoff bounded by a deadline and a cancellation event."""

from datetime import timedelta
from typing import Callable, Optional
import random
import threading
import time

from .errors import CancelledError, LockTimeoutError


class Backoff:
    """Doubling delay between `min_delay` and `max_delay`.

    `wait()` sleeps for the next delay, jittered down to half of it so
    that requesters started together drift apart, but never past the
    deadline and never after `cancel` is set. The deadline is a
    monotonic timestamp.
    """

    def __init__(
        self,
        min_delay: timedelta = timedelta(seconds=3),
        max_delay: timedelta = timedelta(minutes=3),
        sleep: Optional[Callable[[float], None]] = None,
        monotonic: Callable[[], float] = time.monotonic,
        jitter: bool = True,
    ):
        self.min_delay = min_delay.total_seconds()
        self.max_delay = max_delay.total_seconds()
        self.jitter = jitter
        self._sleep = sleep
        self._monotonic = monotonic
        self.retries = 0

    def next_delay(self) -> float:
        return min(self.min_delay * (2 ** min(self.retries, 32)), self.max_delay)

    def reset(self) -> None:
        self.retries = 0

    def check(self, deadline: float, cancel: Optional[threading.Event] = None, what: str = "operation") -> None:
        """Raise if cancelled or past the deadline."""
        if cancel is not None and cancel.is_set():
            raise CancelledError(f"{what} cancelled")
        if self._monotonic() >= deadline:
            raise LockTimeoutError(f"{what} timed out")

    def wait(self, deadline: float, cancel: Optional[threading.Event] = None, what: str = "operation") -> None:
        """Sleep for the next delay, then raise if cancelled or timed out."""
        self.check(deadline, cancel, what)
        delay = self.next_delay()
        if self.jitter:
            delay = random.uniform(delay / 2, delay)
        delay = min(delay, max(0.0, deadline - self._monotonic()))
        self.retries += 1

        if self._sleep is not None:
            self._sleep(delay)
        elif cancel is not None:
            cancel.wait(delay)
        else:
            time.sleep(delay)

        self.check(deadline, cancel, what)
