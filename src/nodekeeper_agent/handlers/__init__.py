"""Handler base classes and the command runner.

Handlers are the per-OS primitives the reconcilers drive:
- PackageHandler: install, remove, list, upgrade everything
- ServiceHandler: enable/disable, start/stop/restart, arguments, status
- FileHandler: ownership, mode, content, removal
- ExecHandler: run an arbitrary command
- NodeHandler: host identity, OS upgrade, reboot

Every handler that shells out goes through a CommandRunner, so tests can
swap in a fake runner and assert on the exact command lines.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple
import logging
import subprocess

from ..errors import CommandError
from ..models import ServiceStatus, SysInfo

logger = logging.getLogger(__name__)


@dataclass
class CommandOutput:
    """Result of running an external program."""
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner:
    """Runs external programs and captures their output."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    def run(self, command: str, *args: str) -> CommandOutput:
        """Run a program; a non-zero exit is reported, not raised.

        Raises:
            CommandError if the program cannot be started or times out
        """
        argv = [command, *args]
        logger.debug(f"Running: {' '.join(argv)}")
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise CommandError(" ".join(argv), 127, str(e)) from e
        except subprocess.TimeoutExpired as e:
            raise CommandError(" ".join(argv), -1, f"timed out after {self.timeout}s") from e

        return CommandOutput(stdout=result.stdout, stderr=result.stderr, exit_code=result.returncode)

    def run_checked(self, command: str, *args: str) -> str:
        """Run a program and return stdout.

        Raises:
            CommandError if the program fails or exits non-zero
        """
        output = self.run(command, *args)
        if not output.ok:
            raise CommandError(" ".join([command, *args]), output.exit_code, output.stderr or output.stdout)
        return output.stdout


class PackageHandler:
    """Base class for package managers."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def install(self, name: str) -> None:
        raise NotImplementedError

    def remove(self, name: str) -> None:
        raise NotImplementedError

    def list(self) -> List[str]:
        raise NotImplementedError

    def upgrade_all(self) -> None:
        raise NotImplementedError


class ServiceHandler:
    """Base class for init systems."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def enable(self, name: str) -> None:
        raise NotImplementedError

    def disable(self, name: str) -> None:
        raise NotImplementedError

    def start(self, name: str) -> None:
        raise NotImplementedError

    def stop(self, name: str) -> None:
        raise NotImplementedError

    def restart(self, name: str) -> None:
        raise NotImplementedError

    def set_arguments(self, name: str, arguments: str) -> None:
        raise NotImplementedError

    def status(self, name: str) -> ServiceStatus:
        raise NotImplementedError


class FileHandler:
    """Base class for file ownership, mode and content."""

    def chown(self, path: str, owner: str = "", group: str = "") -> None:
        raise NotImplementedError

    def set_mode(self, path: str, mode: str) -> None:
        raise NotImplementedError

    def write_content_file(self, path: str, content: bytes) -> None:
        raise NotImplementedError

    def remove(self, path: str) -> None:
        raise NotImplementedError


class ExecHandler:
    """Runs user-declared commands."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def run_command(self, command: str, *args: str) -> Tuple[str, int]:
        """Run a command and return (stdout, exit code).

        Raises:
            CommandError on a non-zero exit
        """
        output = self.runner.run(command, *args)
        if not output.ok:
            raise CommandError(" ".join([command, *args]), output.exit_code, output.stderr)
        return output.stdout, output.exit_code


class NodeHandler:
    """Base class for host-level operations."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def info(self) -> SysInfo:
        raise NotImplementedError

    def hostname(self) -> str:
        raise NotImplementedError

    def upgrade(self) -> None:
        raise NotImplementedError

    def reboot(self) -> None:
        """Reboot the host. Failures are logged, never raised."""
        raise NotImplementedError
