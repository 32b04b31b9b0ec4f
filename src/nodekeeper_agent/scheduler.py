"""Rolling-upgrade scheduler.

Re-evaluated on every pass for the local node. All state lives on the
node record, because the upgrade ends with this process being killed by
the reboot it asked for:

- Idle: no schedule or no delay configured
- Scheduled: waiting for the next cron match
- AwaitingLock: due, blocked on the group's fleet lock
- Upgrading: lock held, packages and OS upgraded, reboot issued
- JustUpgraded: first pass after the reboot, still holding the lock;
  record `last-upgrade`, release the lock, back to Scheduled

`last-upgrade` is only written in JustUpgraded. If the reboot silently
fails the node keeps the lock until an operator clears it; nothing here
releases a lock whose upgrade was never proven.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional
import logging
import threading
import time

from croniter import croniter, CroniterBadCronError

from .errors import NodekeeperError, NotFoundError, UnrecognizedValueError, UpgradeDeferredError
from .locker import FleetLock, Holder
from .models import (
    ANNOTATION_LAST_UPGRADE,
    LABEL_ARCH,
    LABEL_HOSTNAME,
    LABEL_OS,
    LABEL_UPGRADE_GROUP,
    ManagedNode,
    SysInfo,
    format_timestamp,
    parse_duration,
    parse_timestamp,
)
from .state_store import NodeStore
from .system import System

logger = logging.getLogger(__name__)


def default_labels(info: SysInfo, node: ManagedNode) -> Dict[str, str]:
    """Labels the agent owns on its node record."""
    labels = {
        LABEL_OS: info.os.id,
        LABEL_ARCH: info.machine,
        LABEL_HOSTNAME: info.name,
    }
    if node.upgrade.group:
        labels[LABEL_UPGRADE_GROUP] = node.upgrade.group
    return labels


def next_upgrade_time(schedule: str, now: datetime, forgiveness: timedelta) -> datetime:
    """Earliest cron match at or after `now - forgiveness`.

    Back-dating by the forgiveness period keeps a match that passed a
    moment ago, while the loop was busy, as the current one.

    Raises:
        UnrecognizedValueError for an invalid cron expression
    """
    start = (now - forgiveness).astimezone(timezone.utc)
    base = start.replace(microsecond=0)
    if start.microsecond == 0:
        # croniter yields matches strictly after its base
        base -= timedelta(seconds=1)
    try:
        return croniter(schedule, base).get_next(datetime)
    except (CroniterBadCronError, ValueError, KeyError) as e:
        raise UnrecognizedValueError(f"invalid upgrade schedule {schedule!r}: {e}") from e


class UpgradeScheduler:
    """Keeps a node's labels and status current and drives its upgrades."""

    def __init__(
        self,
        store: NodeStore,
        system: System,
        locker: FleetLock,
        forgiveness_period: timedelta = timedelta(minutes=1),
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.store = store
        self.system = system
        self.locker = locker
        self.forgiveness_period = forgiveness_period
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

    def reconcile(self, namespace: str, name: str, cancel: Optional[threading.Event] = None) -> Optional[datetime]:
        """One pass for the node record (namespace, name).

        Returns the time at which the node should be checked again, or
        None when nothing is scheduled.

        Raises:
            UpgradeDeferredError when an upgrade was due but could not run
        """
        try:
            node = self.store.get(namespace, name)
        except NotFoundError:
            logger.info(f"Node {namespace}/{name} not found, skipping reconciliation")
            return None

        info = self.system.node.info()
        node = self.update_node_labels(node, info)
        node = self.update_node_status(node, info)
        return self.handle_upgrade(node, cancel)

    def update_node_labels(self, node: ManagedNode, info: SysInfo) -> ManagedNode:
        wanted = default_labels(info, node)
        if all(node.labels.get(k) == v for k, v in wanted.items()):
            return node

        logger.info(f"Updating labels on {node.namespace}/{node.name}: {wanted}")
        return self.store.update_with_retry(node.namespace, node.name, lambda n: n.labels.update(wanted))

    def update_node_status(self, node: ManagedNode, info: SysInfo) -> ManagedNode:
        if node.status.release == info.os.release:
            return node

        logger.info(f"Updating status on {node.namespace}/{node.name}: release {info.os.release}")

        def mutate(n: ManagedNode) -> None:
            n.status.release = info.os.release

        return self.store.update_with_retry(node.namespace, node.name, mutate)

    def last_upgrade_time(self, node: ManagedNode) -> Optional[datetime]:
        value = node.annotations.get(ANNOTATION_LAST_UPGRADE)
        if not value:
            return None
        logger.info(f"Last upgrade of {node.name} at {value}")
        return parse_timestamp(value)

    def handle_upgrade(self, node: ManagedNode, cancel: Optional[threading.Event] = None) -> Optional[datetime]:
        spec = node.upgrade
        if not spec.schedule:
            logger.info(f"Node {node.name} has no upgrade schedule")
            return None
        if not spec.delay:
            logger.info(f"Node {node.name} has no upgrade delay")
            return None

        now = self._clock()
        next_time = next_upgrade_time(spec.schedule, now, self.forgiveness_period)
        delay = parse_duration(spec.delay)
        holder = Holder(node.namespace, node.name)

        # Holding the lock at the start of a pass means we came back from
        # the reboot that ended our upgrade.
        if self.locker.has_lock(holder, cancel):
            self._finish_upgrade(holder, now, cancel)
            return None

        last = self.last_upgrade_time(node)
        if last is not None and now - last < delay:
            logger.info(f"Node {node.name} upgraded {now - last} ago, within delay {spec.delay}")
            # Matches before last + delay are skipped anyway
            return max(next_time, last + delay)

        logger.info(f"Next upgrade of {node.name} at {format_timestamp(next_time)} ({spec.schedule}), in {next_time - now}")

        if next_time <= now:
            # Within the forgiveness period after the match: run now
            pass
        elif next_time - now < self.forgiveness_period:
            self._wait_until(next_time, now, cancel)
        else:
            return next_time

        requeue_at = next_time + delay

        try:
            self.locker.lock(holder, LABEL_UPGRADE_GROUP, spec.group, cancel)
        except NodekeeperError as e:
            raise UpgradeDeferredError(f"failed to acquire upgrade lock for {holder}: {e}", requeue_at) from e

        logger.warning(f"Upgrading node {node.name} (group {spec.group!r})")
        try:
            self.system.package.upgrade_all()
            self.system.node.upgrade()
        except NodekeeperError as e:
            raise UpgradeDeferredError(f"upgrade of {holder} failed: {e}", requeue_at) from e

        # Expected to end this process; the next pass resumes as JustUpgraded
        self.system.node.reboot()
        return None

    def _finish_upgrade(self, holder: Holder, now: datetime, cancel: Optional[threading.Event] = None) -> None:
        logger.info(f"Node {holder} holds the upgrade lock, recording completed upgrade")

        def mutate(n: ManagedNode) -> None:
            n.annotations[ANNOTATION_LAST_UPGRADE] = format_timestamp(now)

        self.store.update_with_retry(holder.namespace, holder.name, mutate)
        self.locker.unlock(holder, cancel)

    def _wait_until(self, moment: datetime, now: datetime, cancel: Optional[threading.Event]) -> None:
        seconds = min((moment - now).total_seconds(), self.forgiveness_period.total_seconds())
        logger.info(f"Upgrade due in {seconds:.0f}s, waiting")
        if self._sleep is not None:
            self._sleep(seconds)
        elif cancel is not None:
            if cancel.wait(seconds):
                raise UpgradeDeferredError("wait for upgrade time cancelled", moment)
        else:
            time.sleep(seconds)
