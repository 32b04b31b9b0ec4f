"""Records exchanged between the store, the scheduler and the executor.

ManagedNode is the per-host record in the shared store. Its annotations
carry the upgrade coordination state; only the locker and the scheduler
read or write them.

ConfigSet is the declared state for a set of hosts selected by labels.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import re

from .errors import UnrecognizedValueError

LABEL_OS = "os"
LABEL_ARCH = "arch"
LABEL_HOSTNAME = "hostname"
LABEL_UPGRADE_GROUP = "upgrade-group"

ANNOTATION_LOCKED_SINCE = "locked-since"
ANNOTATION_LAST_UPGRADE = "last-upgrade"

RFC3339 = "%Y-%m-%dT%H:%M:%SZ"


class PackageEnsure(str, Enum):
    INSTALLED = "installed"
    ABSENT = "absent"
    UNHANDLED = "unhandled"

    @classmethod
    def from_string(cls, value: str) -> "PackageEnsure":
        try:
            return cls(value)
        except ValueError:
            return cls.UNHANDLED


class FileEnsure(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    ABSENT = "absent"
    UNHANDLED = "unhandled"

    @classmethod
    def from_string(cls, value: str) -> "FileEnsure":
        # Empty means a regular file
        if not value:
            return cls.FILE
        try:
            return cls(value)
        except ValueError:
            return cls.UNHANDLED


class ServiceStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"

    @classmethod
    def from_string(cls, value: str) -> "ServiceStatus":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


@dataclass
class UpgradeSpec:
    """When and with whom a node upgrades."""
    group: str = ""
    schedule: str = ""  # cron expression
    delay: str = ""  # minimum time between upgrades, e.g. "24h"


@dataclass
class NodeStatus:
    release: str = ""  # uname -r


@dataclass
class ManagedNode:
    """One host in the fleet, keyed by (namespace, name)."""
    name: str
    namespace: str = "default"
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    upgrade: UpgradeSpec = field(default_factory=UpgradeSpec)
    status: NodeStatus = field(default_factory=NodeStatus)
    version: int = 0  # optimistic-concurrency token, owned by the store

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "upgrade": {
                "group": self.upgrade.group,
                "schedule": self.upgrade.schedule,
                "delay": self.upgrade.delay,
            },
            "status": {"release": self.status.release},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], version: int = 0) -> "ManagedNode":
        upgrade = data.get("upgrade") or {}
        status = data.get("status") or {}
        return cls(
            name=data["name"],
            namespace=data.get("namespace", "default"),
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
            upgrade=UpgradeSpec(
                group=upgrade.get("group", ""),
                schedule=upgrade.get("schedule", ""),
                delay=upgrade.get("delay", ""),
            ),
            status=NodeStatus(release=status.get("release", "")),
            version=version,
        )


@dataclass
class Package:
    name: str
    ensure: str = PackageEnsure.INSTALLED.value


@dataclass
class File:
    path: str
    ensure: str = FileEnsure.FILE.value
    content: str = ""
    template: str = ""
    target: str = ""  # symlink target
    owner: str = ""
    group: str = ""
    mode: str = ""
    secret_refs: List[str] = field(default_factory=list)
    config_map_refs: List[str] = field(default_factory=list)


@dataclass
class Service:
    name: str
    enable: bool = False
    ensure: str = ServiceStatus.RUNNING.value
    arguments: str = ""
    subscribe_files: List[str] = field(default_factory=list)
    user: str = ""


@dataclass
class Exec:
    command: str
    args: List[str] = field(default_factory=list)
    subscribe_files: List[str] = field(default_factory=list)


@dataclass
class ConfigSet:
    """Declared packages, files, services and execs for matching nodes."""
    name: str
    namespace: str = "default"
    labels: Dict[str, str] = field(default_factory=dict)  # node selector
    packages: List[Package] = field(default_factory=list)
    files: List[File] = field(default_factory=list)
    services: List[Service] = field(default_factory=list)
    executions: List[Exec] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfigSet":
        """Build a ConfigSet from its document.

        Raises:
            UnrecognizedValueError for a missing required key or a value of
            the wrong shape
        """
        try:
            return cls._from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            name = data.get("name", "?") if isinstance(data, dict) else "?"
            raise UnrecognizedValueError(f"invalid configset document {name!r}: {e!r}") from e

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "ConfigSet":
        spec = data.get("spec") or {}
        return cls(
            name=data["name"],
            namespace=data.get("namespace", "default"),
            labels=dict(data.get("labels") or {}),
            packages=[
                Package(name=p["name"], ensure=p.get("ensure", "installed"))
                for p in spec.get("packages") or []
            ],
            files=[
                File(
                    path=f["path"],
                    ensure=f.get("ensure", ""),
                    content=f.get("content", ""),
                    template=f.get("template", ""),
                    target=f.get("target", ""),
                    owner=f.get("owner", ""),
                    group=f.get("group", ""),
                    mode=f.get("mode", ""),
                    secret_refs=list(f.get("secretRefs") or []),
                    config_map_refs=list(f.get("configMapRefs") or []),
                )
                for f in spec.get("files") or []
            ],
            services=[
                Service(
                    name=s["name"],
                    enable=bool(s.get("enable", False)),
                    ensure=s.get("ensure", ""),
                    arguments=s.get("arguments", ""),
                    subscribe_files=list(s.get("subscribe_files") or []),
                    user=s.get("user", ""),
                )
                for s in spec.get("services") or []
            ],
            executions=[
                Exec(
                    command=e["command"],
                    args=list(e.get("args") or []),
                    subscribe_files=list(e.get("subscribe_files") or []),
                )
                for e in spec.get("executions") or []
            ],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "labels": dict(self.labels),
            "spec": {
                "packages": [{"name": p.name, "ensure": p.ensure} for p in self.packages],
                "files": [
                    {
                        "path": f.path,
                        "ensure": f.ensure,
                        "content": f.content,
                        "template": f.template,
                        "target": f.target,
                        "owner": f.owner,
                        "group": f.group,
                        "mode": f.mode,
                        "secretRefs": list(f.secret_refs),
                        "configMapRefs": list(f.config_map_refs),
                    }
                    for f in self.files
                ],
                "services": [
                    {
                        "name": s.name,
                        "enable": s.enable,
                        "ensure": s.ensure,
                        "arguments": s.arguments,
                        "subscribe_files": list(s.subscribe_files),
                        "user": s.user,
                    }
                    for s in self.services
                ],
                "executions": [
                    {
                        "command": e.command,
                        "args": list(e.args),
                        "subscribe_files": list(e.subscribe_files),
                    }
                    for e in self.executions
                ],
            },
        }


@dataclass
class Secret:
    name: str
    namespace: str = "default"
    data: Dict[str, str] = field(default_factory=dict)


@dataclass
class ConfigMap:
    name: str
    namespace: str = "default"
    data: Dict[str, str] = field(default_factory=dict)


@dataclass
class OSInfo:
    id: str = ""  # os-release ID, lower-cased
    name: str = ""  # os-release NAME
    release: str = ""  # uname -r


@dataclass
class SysInfo:
    """Identity of the local host."""
    name: str = ""  # hostname
    kernel: str = ""  # uname -s
    machine: str = ""  # uname -m
    os: OSInfo = field(default_factory=OSInfo)


def label_match(labels: Dict[str, str], selector: Dict[str, str]) -> bool:
    """True when every selector key is present in labels with the same value."""
    for key, value in selector.items():
        if key not in labels or labels[key] != value:
            return False
    return True


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {
    "h": timedelta(hours=1),
    "m": timedelta(minutes=1),
    "s": timedelta(seconds=1),
    "ms": timedelta(milliseconds=1),
}


def parse_duration(value: str) -> timedelta:
    """Parse a Go-style duration such as "24h", "1h30m" or "250ms"."""
    text = value.strip().lower()
    if not text:
        raise UnrecognizedValueError(f"invalid duration: {value!r}")

    total = timedelta()
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            raise UnrecognizedValueError(f"invalid duration: {value!r}")
        number, unit = match.groups()
        total += float(number) * _DURATION_UNITS[unit]
        pos = match.end()

    if pos != len(text):
        raise UnrecognizedValueError(f"invalid duration: {value!r}")
    return total


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(RFC3339)


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC3339 timestamp; naive values are taken as UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError as e:
        raise UnrecognizedValueError(f"invalid timestamp: {value!r}") from e
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment
