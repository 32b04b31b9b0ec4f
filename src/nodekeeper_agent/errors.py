"""Error types raised by the agent.

Callers catch these by kind:
- NotFoundError: missing node, secret, configmap or file
- ConflictError: optimistic-concurrency rejection, always retryable
- UnrecognizedValueError: unknown ensure value, fatal for the pass
- CommandError: external program failed
- LockTimeoutError / CancelledError: lock deadline hit or pass cancelled
"""

from datetime import datetime
from typing import List, Optional


class NodekeeperError(Exception):
    """Base class for all agent errors."""


class NotFoundError(NodekeeperError):
    """A record or referenced object does not exist."""


class ConflictError(NodekeeperError):
    """A conditional write lost against a concurrent writer."""


class UnrecognizedValueError(NodekeeperError):
    """An enum field carried a value we do not handle."""


class ConfigError(NodekeeperError):
    """Invalid agent configuration."""


class UnsupportedSystemError(NodekeeperError):
    """No handler set exists for the detected OS."""


class CommandError(NodekeeperError):
    """An external command failed to run or exited non-zero."""

    def __init__(self, command: str, exit_code: int, stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        message = f"Command failed ({exit_code}): {command}"
        if stderr:
            message += f"\nStderr: {stderr.strip()}"
        super().__init__(message)


class AggregateError(NodekeeperError):
    """Several independent operations failed; none blocked the others."""

    def __init__(self, errors: List[Exception]):
        self.errors = list(errors)
        super().__init__("; ".join(str(e) for e in self.errors))


class LockTimeoutError(NodekeeperError):
    """A lock operation ran past its deadline."""


class CancelledError(NodekeeperError):
    """The pass was cancelled while blocked."""


class UpgradeDeferredError(NodekeeperError):
    """The upgrade could not proceed this pass; check again at requeue_at."""

    def __init__(self, message: str, requeue_at: Optional[datetime] = None):
        self.requeue_at = requeue_at
        super().__init__(message)
