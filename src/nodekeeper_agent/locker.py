"""Fleet lock: one holder per upgrade group.

The lock lives on the ManagedNode records themselves. A node holds the
lock while its `locked-since` annotation is non-empty. There is no
separate lock object and no other code reads the annotation directly.

Acquisition is a poll loop over the group's records:
- someone holds it: back off and poll again
- nobody holds it: require LOCK_FREE_THRESHOLD consecutive empty
  observations before claiming, then write our own record conditionally
- the conditional write loses, or a rival claim shows up right after
  ours: withdraw, back off and start over

The debounce absorbs the window where two requesters both see "free"
before either writes. A group whose observations alternate forever
between held and free never grants the lock.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
import logging
import threading
import time

from .backoff import Backoff
from .errors import ConflictError, NodekeeperError, NotFoundError
from .models import ANNOTATION_LOCKED_SINCE, format_timestamp, parse_timestamp
from .state_store import NodeStore

logger = logging.getLogger(__name__)

LOCK_FREE_THRESHOLD = 3


@dataclass(frozen=True)
class Holder:
    """Identity of a lock requester: its own node record."""
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class FleetLock:
    """Mutual exclusion over a group of node records."""

    def __init__(
        self,
        store: NodeStore,
        min_backoff: timedelta = timedelta(seconds=3),
        max_backoff: timedelta = timedelta(minutes=3),
        lock_timeout: timedelta = timedelta(hours=3),
        unlock_timeout: timedelta = timedelta(hours=1),
        annotation: str = ANNOTATION_LOCKED_SINCE,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.annotation = annotation
        self.lock_timeout = lock_timeout
        self.unlock_timeout = unlock_timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._monotonic = monotonic
        self.backoff = Backoff(min_backoff, max_backoff, sleep=sleep, monotonic=monotonic)

    def _deadline(self, timeout: timedelta) -> float:
        return self._monotonic() + timeout.total_seconds()

    def lock(
        self,
        holder: Holder,
        group_key: str = "",
        group: str = "",
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """Block until `holder` owns the lock for its group.

        Raises LockTimeoutError past the lock timeout and CancelledError
        once `cancel` is set.
        """
        deadline = self._deadline(self.lock_timeout)
        selector = {group_key: group} if group_key and group else None
        lock_free_counter = 0
        what = f"lock for {holder}"

        logger.info(f"Attempting to acquire lock for {holder} (group {group_key}={group!r})")

        try:
            while True:
                self.backoff.check(deadline, cancel, what)

                try:
                    nodes = self.store.list(holder.namespace, selector)
                except NodekeeperError as e:
                    logger.error(f"Failed to list nodes for {holder}: {e}, waiting {self.backoff.next_delay():.1f}s")
                    self.backoff.wait(deadline, cancel, what)
                    continue

                holders = [n for n in nodes if n.annotations.get(self.annotation)]
                for node in holders:
                    logger.info(f"Node {node.name} holds the lock since {node.annotations[self.annotation]}")

                if len(holders) == 1 and holders[0].name == holder.name:
                    logger.info(f"Lock already held by {holder}")
                    return

                if holders:
                    lock_free_counter = 0
                    self.backoff.wait(deadline, cancel, what)
                    continue

                lock_free_counter += 1
                if lock_free_counter < LOCK_FREE_THRESHOLD:
                    logger.info(
                        f"No nodes hold the lock, waiting {self.backoff.next_delay():.1f}s before retrying "
                        f"(attempt {lock_free_counter})"
                    )
                    self.backoff.wait(deadline, cancel, what)
                    continue

                logger.debug(f"No nodes hold the lock, proceeding to acquire for {holder}")
                node = self.store.get(holder.namespace, holder.name)
                node.annotations[self.annotation] = format_timestamp(self._clock())

                try:
                    self.store.update(node)
                except ConflictError as e:
                    logger.error(f"Failed to acquire lock for {holder}: {e}")
                    lock_free_counter = 0
                    self.backoff.wait(deadline, cancel, what)
                    continue

                # Another requester may have claimed between our last
                # observation and our write. Either of us seeing the other
                # withdraws, so at most one claim survives.
                rivals = [
                    n.name for n in self.store.list(holder.namespace, selector)
                    if n.annotations.get(self.annotation) and n.name != holder.name
                ]
                if rivals:
                    logger.warning(f"Lock for {holder} collided with {', '.join(rivals)}, withdrawing")
                    self._clear(holder)
                    lock_free_counter = 0
                    self.backoff.wait(deadline, cancel, what)
                    continue

                logger.info(f"Lock acquired by {holder}")
                return
        finally:
            self.backoff.reset()

    def _clear(self, holder: Holder) -> None:
        self.store.update_with_retry(
            holder.namespace, holder.name, lambda n: n.annotations.pop(self.annotation, None)
        )

    def unlock(self, holder: Holder, cancel: Optional[threading.Event] = None) -> None:
        """Clear our lock annotation, retrying until the write lands."""
        deadline = self._deadline(self.unlock_timeout)
        what = f"unlock for {holder}"

        try:
            while True:
                self.backoff.check(deadline, cancel, what)
                try:
                    node = self.store.get(holder.namespace, holder.name)
                    node.annotations.pop(self.annotation, None)
                    self.store.update(node)
                except NodekeeperError as e:
                    logger.error(f"Failed to unlock {holder}: {e}")
                    self.backoff.wait(deadline, cancel, what)
                    continue

                logger.info(f"Lock released by {holder}")
                return
        finally:
            self.backoff.reset()

    def has_lock(self, holder: Holder, cancel: Optional[threading.Event] = None) -> bool:
        """Whether `holder` currently carries the lock annotation."""
        deadline = self._deadline(self.unlock_timeout)
        what = f"lock check for {holder}"

        try:
            while True:
                self.backoff.check(deadline, cancel, what)
                try:
                    node = self.store.get(holder.namespace, holder.name)
                except NotFoundError:
                    self.backoff.wait(deadline, cancel, what)
                    continue
                except NodekeeperError as e:
                    logger.error(f"Failed to get {holder} for lock check: {e}")
                    self.backoff.wait(deadline, cancel, what)
                    continue

                return bool(node.annotations.get(self.annotation))
        finally:
            self.backoff.reset()

    def locked_since(self, holder: Holder) -> Optional[datetime]:
        """When `holder` took the lock, or None. Does not retry."""
        node = self.store.get(holder.namespace, holder.name)
        value = node.annotations.get(self.annotation)
        return parse_timestamp(value) if value else None
