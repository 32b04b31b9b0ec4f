"""Package managers: Pacman (Arch), Apk (Alpine), Pkgng (FreeBSD)."""

from typing import List
import logging
import re

from ..errors import CommandError
from . import PackageHandler

logger = logging.getLogger(__name__)


class Pacman(PackageHandler):
    """Arch Linux pacman."""

    PACMAN = "/usr/bin/pacman"

    def install(self, name: str) -> None:
        logger.info(f"Installing package {name}")
        self.runner.run_checked(self.PACMAN, "-Sy", "--needed", "--noconfirm", name)

    def remove(self, name: str) -> None:
        logger.info(f"Removing package {name}")
        self.runner.run_checked(self.PACMAN, "-Rcs", "--noconfirm", name)

    def list(self) -> List[str]:
        output = self.runner.run_checked(self.PACMAN, "-Q")
        packages = []
        for line in output.splitlines():
            if not line.strip():
                continue
            parts = line.split()
            if len(parts) != 2:
                raise CommandError(f"{self.PACMAN} -Q", 0, f"unexpected output line: {line!r}")
            packages.append(parts[0])
        return packages

    def upgrade_all(self) -> None:
        logger.info("Upgrading all packages")
        self.runner.run_checked(self.PACMAN, "-Syu", "--noconfirm")


class Apk(PackageHandler):
    """Alpine apk."""

    APK = "/sbin/apk"

    # e.g. "musl-1.2.4-r2 x86_64 {musl} (MIT) [installed]"
    _LIST_LINE = re.compile(r"^(.+)-([^-]+)-r([^-]+) (\S+) \{(\S+)\} \((.+?)\) \[(\w+)\]$")

    def install(self, name: str) -> None:
        logger.info(f"Installing package {name}")
        self.runner.run_checked(self.APK, "add", name)

    def remove(self, name: str) -> None:
        logger.info(f"Removing package {name}")
        self.runner.run_checked(self.APK, "del", name)

    def list(self) -> List[str]:
        output = self.runner.run_checked(self.APK, "list", "-I")
        return self.parse_list_output(output)

    @classmethod
    def parse_list_output(cls, output: str) -> List[str]:
        packages = []
        for line in output.splitlines():
            match = cls._LIST_LINE.match(line.strip())
            if match:
                packages.append(match.group(1))
        return packages

    def upgrade_all(self) -> None:
        logger.info("Upgrading all packages")
        self.runner.run_checked(self.APK, "update")
        self.runner.run_checked(self.APK, "upgrade")


class Pkgng(PackageHandler):
    """FreeBSD pkg."""

    PKG = "/usr/sbin/pkg"

    def install(self, name: str) -> None:
        logger.info(f"Installing package {name}")
        self.runner.run_checked(self.PKG, "install", "-qy", name)

    def remove(self, name: str) -> None:
        logger.info(f"Removing package {name}")
        self.runner.run_checked(self.PKG, "remove", "-qy", name)

    def list(self) -> List[str]:
        output = self.runner.run_checked(self.PKG, "query", "-a", "%n")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def upgrade_all(self) -> None:
        logger.info("Upgrading all packages")
        self.runner.run_checked(self.PKG, "upgrade", "-y")
