"""Handler set for the local OS, resolved once at startup.

The set is passed explicitly into the scheduler and the executor; there
is no module-level current system.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import logging

from .errors import UnsupportedSystemError
from .handlers import CommandRunner, ExecHandler, FileHandler, NodeHandler, PackageHandler, ServiceHandler
from .handlers.files import CommonFileHandler
from .handlers.nodes import AlpineNode, FreeBSDNode, SystemdNode
from .handlers.packages import Apk, Pacman, Pkgng
from .handlers.services import FreeBSDRc, OpenRC, Systemd
from .sys_probe import SysProbe

logger = logging.getLogger(__name__)


class OSID(str, Enum):
    ARCH = "arch"
    ALPINE = "alpine"
    FREEBSD = "freebsd"


@dataclass
class System:
    """One handler of each kind for a single OS."""
    package: PackageHandler
    service: ServiceHandler
    file: FileHandler
    exec: ExecHandler
    node: NodeHandler


def build_system(
    os_id: str,
    runner: Optional[CommandRunner] = None,
    probe: Optional[SysProbe] = None,
    file_owner: str = "",
    file_group: str = "",
) -> System:
    """Build the handler set for an os-release ID.

    Raises:
        UnsupportedSystemError for an ID with no handler set
    """
    runner = runner or CommandRunner()
    probe = probe or SysProbe(runner)

    try:
        os_id = OSID(os_id.lower())
    except ValueError as e:
        raise UnsupportedSystemError(f"no handlers for OS {os_id!r}") from e

    if os_id == OSID.ARCH:
        return System(
            package=Pacman(runner),
            service=Systemd(runner),
            file=CommonFileHandler(file_owner or "root", file_group or "root"),
            exec=ExecHandler(runner),
            node=SystemdNode(runner, probe),
        )
    if os_id == OSID.ALPINE:
        return System(
            package=Apk(runner),
            service=OpenRC(runner),
            file=CommonFileHandler(file_owner or "root", file_group or "root"),
            exec=ExecHandler(runner),
            node=AlpineNode(runner, probe),
        )
    return System(
        package=Pkgng(runner),
        service=FreeBSDRc(runner),
        file=CommonFileHandler(file_owner or "root", file_group or "wheel"),
        exec=ExecHandler(runner),
        node=FreeBSDNode(runner, probe),
    )


def detect_system(
    runner: Optional[CommandRunner] = None,
    probe: Optional[SysProbe] = None,
    file_owner: str = "",
    file_group: str = "",
) -> System:
    """Probe the local OS and build its handler set."""
    runner = runner or CommandRunner()
    probe = probe or SysProbe(runner)
    os_id = probe.info().os.id
    logger.info(f"Detected OS {os_id!r}")
    return build_system(os_id, runner, probe, file_owner, file_group)
