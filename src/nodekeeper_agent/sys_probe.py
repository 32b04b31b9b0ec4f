"""Host identity probing.

Discovers what the agent is running on:
- /etc/os-release for the distribution ID and NAME
- `uname -snrm` for kernel, hostname, release and machine
"""

from pathlib import Path
from typing import Dict, Optional
import logging
import shlex
import socket

from .errors import NodekeeperError
from .handlers import CommandRunner
from .models import OSInfo, SysInfo

logger = logging.getLogger(__name__)

OS_RELEASE_PATHS = ("/etc/os-release", "/usr/lib/os-release")


class SysProbe:
    """Probe the local host."""

    def __init__(self, runner: Optional[CommandRunner] = None, os_release_path: Optional[str] = None):
        self.runner = runner or CommandRunner()
        self.os_release_path = os_release_path

    def info(self) -> SysInfo:
        """Collect host identity. Missing sources leave fields empty."""
        release = self.read_os_release()
        sys_info = SysInfo(
            os=OSInfo(id=release.get("ID", "").lower(), name=release.get("NAME", "")),
        )

        try:
            output = self.runner.run("uname", "-snrm")
        except NodekeeperError as e:
            logger.warning(f"Failed to run uname: {e}")
            return sys_info

        fields = output.stdout.split()
        if not output.ok or len(fields) != 4:
            logger.warning(f"Unexpected uname output: {output.stdout!r}")
            return sys_info

        sys_info.kernel, sys_info.name, sys_info.os.release, sys_info.machine = fields
        return sys_info

    def hostname(self) -> str:
        return socket.gethostname()

    def read_os_release(self) -> Dict[str, str]:
        """Parse os-release KEY=value lines, unquoting values."""
        paths = [self.os_release_path] if self.os_release_path else list(OS_RELEASE_PATHS)
        for candidate in paths:
            path = Path(candidate)
            if path.exists():
                return self.parse_os_release(path.read_text(encoding="utf-8"))

        logger.warning(f"No os-release file found in {paths}")
        return {}

    @staticmethod
    def parse_os_release(text: str) -> Dict[str, str]:
        values = {}
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, raw = line.partition("=")
            try:
                parts = shlex.split(raw)
            except ValueError:
                parts = [raw]
            values[key.strip()] = parts[0] if parts else ""
        return values
