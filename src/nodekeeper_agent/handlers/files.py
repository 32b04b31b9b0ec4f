"""Local file operations shared by every supported OS.

Each operation reads the current state first and only touches the
filesystem when it differs, so repeating a call is a no-op.
"""

from pathlib import Path
import grp
import hashlib
import logging
import os
import pwd
import stat

from ..errors import CommandError, UnrecognizedValueError
from . import FileHandler

logger = logging.getLogger(__name__)


def parse_mode(mode: str) -> int:
    """Parse an octal mode string such as "0644", "644" or "0o644"."""
    text = mode.strip().lower()
    if text.startswith("0o"):
        text = text[2:]
    try:
        value = int(text, 8)
    except ValueError as e:
        raise UnrecognizedValueError(f"invalid file mode: {mode!r}") from e
    if value > 0o7777:
        raise UnrecognizedValueError(f"invalid file mode: {mode!r}")
    return value


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class CommonFileHandler(FileHandler):
    """POSIX file handler.

    Empty owner or group falls back to the defaults given at startup
    (root/root on Linux, root/wheel on FreeBSD).
    """

    def __init__(self, default_owner: str = "root", default_group: str = "root"):
        self.default_owner = default_owner
        self.default_group = default_group

    def chown(self, path: str, owner: str = "", group: str = "") -> None:
        owner = owner or self.default_owner
        group = group or self.default_group

        try:
            uid = pwd.getpwnam(owner).pw_uid
        except KeyError as e:
            raise UnrecognizedValueError(f"unknown user {owner!r} for {path}") from e
        try:
            gid = grp.getgrnam(group).gr_gid
        except KeyError as e:
            raise UnrecognizedValueError(f"unknown group {group!r} for {path}") from e

        current = os.lstat(path)
        if current.st_uid == uid and current.st_gid == gid:
            return

        logger.info(f"Setting ownership of {path} to {owner}:{group}")
        os.chown(path, uid, gid, follow_symlinks=False)

    def set_mode(self, path: str, mode: str) -> None:
        if not mode:
            return
        desired = parse_mode(mode)
        current = stat.S_IMODE(os.stat(path).st_mode)
        if current == desired:
            return

        logger.info(f"Setting mode of {path} to {oct(desired)}")
        os.chmod(path, desired)

    def write_content_file(self, path: str, content: bytes) -> None:
        target = Path(path)
        try:
            if sha256_hex(target.read_bytes()) == sha256_hex(content):
                return
        except FileNotFoundError:
            pass

        logger.info(f"Writing file {path}")
        try:
            target.write_bytes(content)
        except OSError as e:
            raise CommandError(f"write {path}", 1, str(e)) from e

    def remove(self, path: str) -> None:
        target = Path(path)
        if not target.exists() and not target.is_symlink():
            return

        logger.info(f"Removing {path}")
        if target.is_dir() and not target.is_symlink():
            target.rmdir()
        else:
            target.unlink()
