"""One agent per host.

A pass:
1. Get or create this host's ManagedNode record and apply the configured
   upgrade settings to it
2. Upgrade scheduler: labels, status, upgrade state machine
3. Convergence executor for every ConfigSet in the namespace, with the
   record as the scheduler left it

Errors from one step are recorded on the PassResult and never stop the
next step or the loop.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
import logging
import threading

from .config import AgentConfig
from .config_repo import ConfigRepo
from .errors import NodekeeperError, UpgradeDeferredError
from .executor import ConvergenceExecutor, ReconcileError, ReconcileResponse, ReconcileResult
from .locker import FleetLock
from .models import ManagedNode, format_timestamp
from .scheduler import UpgradeScheduler
from .state_store import NodeStore
from .system import System

logger = logging.getLogger(__name__)

MIN_PASS_INTERVAL = timedelta(seconds=1)


@dataclass
class PassResult:
    """Outcome of one agent pass."""
    next_check: Optional[datetime] = None
    configsets: Dict[str, ReconcileResponse] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "next_check": format_timestamp(self.next_check) if self.next_check else None,
            "error": self.error,
            "configsets": {
                name: {
                    "result": response.result.value,
                    "changed_files": list(response.changed_files),
                    "error": (
                        {"resource": response.error.resource, "message": response.error.message}
                        if response.error else None
                    ),
                }
                for name, response in self.configsets.items()
            },
        }


class Agent:
    """Wires the store, the desired-state repo and the host's handlers."""

    def __init__(
        self,
        config: AgentConfig,
        store: NodeStore,
        repo: ConfigRepo,
        system: System,
        name: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.config = config
        self.store = store
        self.repo = repo
        self.system = system
        self.namespace = config.namespace
        self.name = name or system.node.hostname()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.locker = FleetLock(
            store,
            min_backoff=config.backoff_min,
            max_backoff=config.backoff_max,
            lock_timeout=config.lock_timeout,
            unlock_timeout=config.unlock_timeout,
            clock=self._clock,
            sleep=sleep,
        )
        self.scheduler = UpgradeScheduler(
            store, system, self.locker,
            forgiveness_period=config.forgiveness_period,
            clock=self._clock,
            sleep=sleep,
        )
        self.executor = ConvergenceExecutor(system, repo)

        self.stop_event = threading.Event()
        # Passes from the loop and from the API never overlap
        self._pass_lock = threading.Lock()

    def run_once(self) -> PassResult:
        with self._pass_lock:
            return self._run_pass()

    def _run_pass(self) -> PassResult:
        result = PassResult()
        logger.info(f"Starting pass for {self.namespace}/{self.name}")

        try:
            node = self.store.get_or_create(self.namespace, self.name)
            self._sync_upgrade_spec(node)
        except NodekeeperError as e:
            logger.error(f"Failed to get node record {self.namespace}/{self.name}: {e}")
            result.error = str(e)
            return result

        try:
            result.next_check = self.scheduler.reconcile(self.namespace, self.name, self.stop_event)
        except UpgradeDeferredError as e:
            logger.warning(f"Upgrade deferred: {e}")
            result.next_check = e.requeue_at
            result.error = str(e)
        except NodekeeperError as e:
            logger.error(f"Upgrade scheduler failed: {e}", exc_info=True)
            result.error = str(e)

        try:
            node = self.store.get(self.namespace, self.name)
            names = self.repo.configset_names(self.namespace)
        except NodekeeperError as e:
            logger.error(f"Failed to load desired state: {e}")
            result.error = result.error or str(e)
            return result

        logger.info(f"Applying {len(names)} configsets at revision {self.repo.revision()}")
        for name in names:
            try:
                configset = self.repo.get_configset(self.namespace, name)
            except NodekeeperError as e:
                # One broken document never blocks the others
                logger.error(f"Failed to load configset {self.namespace}/{name}: {e}")
                result.configsets[name] = ReconcileResponse(
                    result=ReconcileResult.FAILED,
                    error=ReconcileError(f"{name}/load", str(e)),
                )
                continue
            result.configsets[name] = self.executor.reconcile(configset, node)

        logger.info(f"Pass finished for {self.namespace}/{self.name}")
        return result

    def _sync_upgrade_spec(self, node: ManagedNode) -> None:
        """Write the configured upgrade settings onto the record, if any."""
        wanted = self.config.upgrade
        if wanted is None or node.upgrade == wanted:
            return

        logger.info(
            f"Setting upgrade spec on {node.namespace}/{node.name}: "
            f"group={wanted.group!r} schedule={wanted.schedule!r} delay={wanted.delay!r}"
        )

        def mutate(n: ManagedNode) -> None:
            n.upgrade = replace(wanted)

        self.store.update_with_retry(node.namespace, node.name, mutate)

    def wait_seconds(self, result: PassResult) -> float:
        """Seconds until the next pass: the interval, or sooner if asked."""
        interval = self.config.reconcile_interval
        if result.next_check is not None:
            interval = min(interval, max(result.next_check - self._clock(), MIN_PASS_INTERVAL))
        return interval.total_seconds()

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """Run passes until `stop_event` (default: self.stop_event) is set."""
        if stop_event is not None:
            # Also cancels blocking lock waits inside a pass
            self.stop_event = stop_event
        stop = self.stop_event
        logger.info(f"Agent loop started for {self.namespace}/{self.name}")

        while not stop.is_set():
            try:
                result = self.run_once()
            except Exception as e:
                # The loop outlives any single pass
                logger.error(f"Pass for {self.namespace}/{self.name} crashed: {e}", exc_info=True)
                result = PassResult(error=str(e))
            wait = self.wait_seconds(result)
            logger.debug(f"Next pass in {wait:.0f}s")
            stop.wait(wait)

        logger.info("Agent loop stopped")

    def stop(self) -> None:
        self.stop_event.set()
