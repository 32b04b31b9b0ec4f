"""Host-level handlers: identity, OS upgrade and reboot."""

from typing import Optional
import logging

from ..errors import NodekeeperError
from ..models import SysInfo
from ..sys_probe import SysProbe
from . import CommandRunner, NodeHandler

logger = logging.getLogger(__name__)


class _ProbedNode(NodeHandler):
    """Identity comes from SysProbe on every OS."""

    def __init__(self, runner: CommandRunner, probe: Optional[SysProbe] = None):
        super().__init__(runner)
        self.probe = probe or SysProbe(runner)

    def info(self) -> SysInfo:
        return self.probe.info()

    def hostname(self) -> str:
        return self.probe.hostname()


class SystemdNode(_ProbedNode):
    """Linux hosts booted by systemd."""

    def upgrade(self) -> None:
        # OS upgrades arrive through the package manager
        return None

    def reboot(self) -> None:
        logger.warning("Rebooting host via systemctl")
        try:
            self.runner.run_checked("/usr/bin/systemctl", "reboot")
        except NodekeeperError as e:
            logger.error(f"Failed to call reboot: {e}")


class FreeBSDNode(_ProbedNode):
    """FreeBSD base-system upgrades via freebsd-update."""

    FREEBSD_UPDATE = "/usr/sbin/freebsd-update"

    def upgrade(self) -> None:
        fetch = self.runner.run(self.FREEBSD_UPDATE, "--not-running-from-cron", "fetch")
        if not fetch.ok:
            logger.error(f"freebsd-update fetch failed ({fetch.exit_code}): {fetch.stderr or fetch.stdout}")

        install = self.runner.run(self.FREEBSD_UPDATE, "install")
        if install.exit_code == 2:
            logger.info("freebsd-update: no updates to install")
        elif not install.ok:
            logger.error(f"freebsd-update install failed ({install.exit_code}): {install.stderr or install.stdout}")

    def reboot(self) -> None:
        logger.warning("Rebooting host via shutdown")
        try:
            self.runner.run_checked("/sbin/shutdown", "-r", "now")
        except NodekeeperError as e:
            logger.error(f"Failed to call reboot: {e}")


class AlpineNode(_ProbedNode):
    """Alpine hosts; upgrade and reboot are not managed."""

    def upgrade(self) -> None:
        return None

    def reboot(self) -> None:
        logger.warning("Reboot is not implemented for Alpine, skipping")
