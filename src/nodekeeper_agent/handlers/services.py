"""Init systems: systemd, OpenRC and FreeBSD rc."""

import logging
import re

from ..models import ServiceStatus
from . import ServiceHandler

logger = logging.getLogger(__name__)


class Systemd(ServiceHandler):
    """systemd units via systemctl."""

    SYSTEMCTL = "/usr/bin/systemctl"

    def enable(self, name: str) -> None:
        self.runner.run_checked(self.SYSTEMCTL, "enable", name)

    def disable(self, name: str) -> None:
        self.runner.run_checked(self.SYSTEMCTL, "disable", name)

    def start(self, name: str) -> None:
        logger.info(f"Starting service {name}")
        self.runner.run_checked(self.SYSTEMCTL, "start", name)

    def stop(self, name: str) -> None:
        logger.info(f"Stopping service {name}")
        self.runner.run_checked(self.SYSTEMCTL, "stop", name)

    def restart(self, name: str) -> None:
        logger.info(f"Restarting service {name}")
        self.runner.run_checked(self.SYSTEMCTL, "restart", name)

    def set_arguments(self, name: str, arguments: str) -> None:
        # Unit arguments live in drop-ins managed as files
        logger.debug(f"Ignoring arguments for systemd unit {name}")

    def status(self, name: str) -> ServiceStatus:
        output = self.runner.run(self.SYSTEMCTL, "is-active", "--quiet", name)
        return ServiceStatus.RUNNING if output.ok else ServiceStatus.STOPPED


class OpenRC(ServiceHandler):
    """Alpine OpenRC services."""

    RC_UPDATE = "/sbin/rc-update"
    RC_SERVICE = "/sbin/rc-service"
    RC_STATUS = "/bin/rc-status"

    _STATUS_LINE = re.compile(r"(\S+)\s*=\s*(\w+)")

    def enable(self, name: str) -> None:
        self.runner.run_checked(self.RC_UPDATE, "add", name)

    def disable(self, name: str) -> None:
        self.runner.run_checked(self.RC_UPDATE, "del", name)

    def start(self, name: str) -> None:
        logger.info(f"Starting service {name}")
        self.runner.run_checked(self.RC_SERVICE, name, "start")

    def stop(self, name: str) -> None:
        logger.info(f"Stopping service {name}")
        self.runner.run_checked(self.RC_SERVICE, name, "stop")

    def restart(self, name: str) -> None:
        logger.info(f"Restarting service {name}")
        self.runner.run_checked(self.RC_SERVICE, name, "restart")

    def set_arguments(self, name: str, arguments: str) -> None:
        logger.debug(f"Ignoring arguments for OpenRC service {name}")

    def status(self, name: str) -> ServiceStatus:
        output = self.runner.run(self.RC_STATUS, "-a", "-f", "ini")
        return self.parse_status_output(output.stdout, name)

    @classmethod
    def parse_status_output(cls, output: str, name: str) -> ServiceStatus:
        """Find `name` in `rc-status -f ini` output."""
        for line in output.splitlines():
            match = cls._STATUS_LINE.match(line.strip())
            if match and match.group(1) == name:
                if match.group(2) == "started":
                    return ServiceStatus.RUNNING
                return ServiceStatus.STOPPED
        return ServiceStatus.STOPPED


class FreeBSDRc(ServiceHandler):
    """FreeBSD rc.d services, settings kept in /etc/rc.conf.d/<name>."""

    SYSRC = "/usr/sbin/sysrc"
    SERVICE = "/usr/sbin/service"

    @staticmethod
    def _rc_file(name: str) -> str:
        return f"/etc/rc.conf.d/{name}"

    def enable(self, name: str) -> None:
        self.runner.run_checked(self.SYSRC, "-f", self._rc_file(name), f"{name}_enable=YES")

    def disable(self, name: str) -> None:
        self.runner.run_checked(self.SYSRC, "-f", self._rc_file(name), f"{name}_enable=NO")

    def set_arguments(self, name: str, arguments: str) -> None:
        self.runner.run_checked(self.SYSRC, "-f", self._rc_file(name), f"{name}_args={arguments}")

    def start(self, name: str) -> None:
        logger.info(f"Starting service {name}")
        self.runner.run_checked(self.SERVICE, name, "start")

    def stop(self, name: str) -> None:
        logger.info(f"Stopping service {name}")
        self.runner.run_checked(self.SERVICE, name, "stop")

    def restart(self, name: str) -> None:
        logger.info(f"Restarting service {name}")
        self.runner.run_checked(self.SERVICE, name, "restart")

    def status(self, name: str) -> ServiceStatus:
        output = self.runner.run(self.SERVICE, name, "status")
        return ServiceStatus.RUNNING if output.ok else ServiceStatus.STOPPED
