"""Error types raised by tracekeeper.

Only failures that callers can act on are raised. Cleanup problems (a stray
file that cannot be deleted, a directory that cannot be listed) are logged and
swallowed where they happen.
"""


class TraceKeeperError(Exception):
    """Base class for tracekeeper errors."""


class CommandTimeout(TraceKeeperError):
    """A child process exceeded its timeout and was killed."""

    def __init__(self, command: str, timeout: float):
        super().__init__(f"Command timed out after {timeout:g}s: {command}")
        self.command = command
        self.timeout = timeout


class ConfigBuildError(TraceKeeperError):
    """The rendered collector config cannot be passed on safely."""


class InvalidRetentionArguments(TraceKeeperError, ValueError):
    """Retention limits must be zero or positive."""
