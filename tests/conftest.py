# --- test import path bootstrap (src/ layout) ---
import sys as _sys
from pathlib import Path as _Path

_ROOT = _Path(__file__).resolve().parents[1]
for _dir in (_ROOT / "src", _ROOT):
    if _dir.is_dir():
        _p = str(_dir)
        if _p not in _sys.path:
            _sys.path.insert(0, _p)
# --- end bootstrap ---

import grp
import os
import pwd
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set, Tuple

import pytest

from nodekeeper_agent.config_repo import ConfigRepo
from nodekeeper_agent.errors import CommandError
from nodekeeper_agent.handlers import (
    CommandOutput,
    ExecHandler,
    NodeHandler,
    PackageHandler,
    ServiceHandler,
)
from nodekeeper_agent.handlers.files import CommonFileHandler
from nodekeeper_agent.models import OSInfo, ServiceStatus, SysInfo
from nodekeeper_agent.state_store import NodeStore
from nodekeeper_agent.system import System


class FakeRunner:
    """CommandRunner stand-in: records argv, replays scripted output."""

    def __init__(self, outputs: Optional[Dict[Tuple[str, ...], CommandOutput]] = None):
        self.outputs = dict(outputs or {})
        self.calls: List[Tuple[str, ...]] = []

    def run(self, command: str, *args: str) -> CommandOutput:
        argv = (command, *args)
        self.calls.append(argv)
        return self.outputs.get(argv, CommandOutput(stdout="", stderr="", exit_code=0))

    def run_checked(self, command: str, *args: str) -> str:
        output = self.run(command, *args)
        if not output.ok:
            raise CommandError(" ".join([command, *args]), output.exit_code, output.stderr)
        return output.stdout


class FakePackages(PackageHandler):
    def __init__(self, installed: Optional[Set[str]] = None):
        super().__init__(FakeRunner())
        self.installed = set(installed or ())
        self.calls: List[Tuple[str, str]] = []
        self.upgrade_error: Optional[Exception] = None

    def install(self, name: str) -> None:
        self.calls.append(("install", name))
        self.installed.add(name)

    def remove(self, name: str) -> None:
        self.calls.append(("remove", name))
        self.installed.discard(name)

    def list(self) -> List[str]:
        self.calls.append(("list", ""))
        return sorted(self.installed)

    def upgrade_all(self) -> None:
        self.calls.append(("upgrade_all", ""))
        if self.upgrade_error is not None:
            raise self.upgrade_error


class FakeServices(ServiceHandler):
    def __init__(self):
        super().__init__(FakeRunner())
        self.running: Set[str] = set()
        self.enabled: Set[str] = set()
        self.arguments: Dict[str, str] = {}
        self.failing_restarts: Set[str] = set()
        self.calls: List[Tuple[str, str]] = []

    def enable(self, name: str) -> None:
        self.calls.append(("enable", name))
        self.enabled.add(name)

    def disable(self, name: str) -> None:
        self.calls.append(("disable", name))
        self.enabled.discard(name)

    def start(self, name: str) -> None:
        self.calls.append(("start", name))
        self.running.add(name)

    def stop(self, name: str) -> None:
        self.calls.append(("stop", name))
        self.running.discard(name)

    def restart(self, name: str) -> None:
        self.calls.append(("restart", name))
        if name in self.failing_restarts:
            raise CommandError(f"restart {name}", 1, "unit failed")
        self.running.add(name)

    def set_arguments(self, name: str, arguments: str) -> None:
        self.calls.append(("set_arguments", name))
        self.arguments[name] = arguments

    def status(self, name: str) -> ServiceStatus:
        return ServiceStatus.RUNNING if name in self.running else ServiceStatus.STOPPED


class FakeNode(NodeHandler):
    def __init__(self, hostname: str = "node-a", os_id: str = "arch", release: str = "6.1.0"):
        super().__init__(FakeRunner())
        self._hostname = hostname
        self.sys_info = SysInfo(
            name=hostname,
            kernel="Linux",
            machine="x86_64",
            os=OSInfo(id=os_id, name="Arch Linux", release=release),
        )
        self.upgrades = 0
        self.reboots = 0

    def info(self) -> SysInfo:
        return self.sys_info

    def hostname(self) -> str:
        return self._hostname

    def upgrade(self) -> None:
        self.upgrades += 1

    def reboot(self) -> None:
        self.reboots += 1


class FakeClock:
    """Controllable wall clock; sleep() advances it."""

    def __init__(self, now: datetime):
        self.now = now
        self.sleeps: List[float] = []

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class FakeMonotonic:
    """Monotonic time that only moves when something sleeps."""

    def __init__(self):
        self.t = 1000.0

    def __call__(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        self.t += seconds


def current_owner() -> Tuple[str, str]:
    return pwd.getpwuid(os.getuid()).pw_name, grp.getgrgid(os.getgid()).gr_name


@pytest.fixture
def store(tmp_path) -> NodeStore:
    return NodeStore(path=str(tmp_path / "nodes.db"))


@pytest.fixture
def repo(tmp_path) -> ConfigRepo:
    return ConfigRepo(path=str(tmp_path / "desired"))


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def system(runner) -> System:
    owner, group = current_owner()
    return System(
        package=FakePackages(),
        service=FakeServices(),
        file=CommonFileHandler(owner, group),
        exec=ExecHandler(runner),
        node=FakeNode(),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 5, 1, 3, 0, 30, tzinfo=timezone.utc))
