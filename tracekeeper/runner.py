"""Single chokepoint for running shell commands."""

from __future__ import annotations

import os
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path

from tracekeeper.errors import CommandTimeout
from tracekeeper.log import get_logger

logger = get_logger(__name__)

# Seconds to reap a killed child before giving up on its pipes.
KILL_GRACE_S = 1.0


@dataclass(frozen=True)
class CommandResult:
    """Exit status and captured output of a finished command."""

    returncode: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def stdout_lines(self) -> list[str]:
        return self.stdout.decode("utf-8", errors="replace").splitlines()

    def stderr_lines(self) -> list[str]:
        return self.stderr.decode("utf-8", errors="replace").splitlines()


class ProcessRunner:
    """Run commands through ``sh -c`` and collect their output.

    Output is always drained with ``communicate`` so a chatty child cannot
    block on a full pipe. A command that outlives ``timeout`` is killed and
    ``CommandTimeout`` is raised instead of returning an exit code.
    """

    def __init__(self, shell: str = "sh"):
        self.shell = shell

    def execute(
        self,
        command: str,
        cwd: str | Path | None = None,
        timeout: float | None = None
    ) -> CommandResult:
        """
        Execute a shell command.

        Args:
            command: Command line handed to the shell
            cwd: Working directory override; also exported as TMPDIR so the
                collector stages its scratch files next to its output
            timeout: Seconds to wait before force-killing the child

        Returns:
            CommandResult with the exit status and captured streams

        Raises:
            CommandTimeout: The child did not exit within ``timeout``
            OSError: The shell could not be spawned
        """
        env = None
        if cwd is not None:
            env = dict(os.environ)
            env["TMPDIR"] = str(cwd)

        logger.debug("exec", command=command, cwd=str(cwd) if cwd else None, timeout=timeout)
        proc = subprocess.Popen(
            [self.shell, "-c", command],
            cwd=str(cwd) if cwd is not None else None,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True
        )
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._kill_group(proc)
            logger.error("exec_timeout", command=command, timeout=timeout)
            raise CommandTimeout(command, timeout or 0.0)

        result = CommandResult(returncode=proc.returncode, stdout=stdout, stderr=stderr)
        if not result.ok:
            logger.debug("exec_nonzero", command=command, returncode=result.returncode)
        return result

    @staticmethod
    def _kill_group(proc: subprocess.Popen) -> None:
        """Kill the shell and everything it spawned, then reap without blocking on stray pipe holders."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError as exc:
            logger.warning("exec_killpg_failed", pid=proc.pid, error=str(exc))
            proc.kill()
        try:
            proc.communicate(timeout=KILL_GRACE_S)
        except subprocess.TimeoutExpired:
            logger.warning("exec_pipes_held_open", pid=proc.pid)
            for stream in (proc.stdout, proc.stderr):
                if stream is not None:
                    stream.close()
            proc.wait(timeout=KILL_GRACE_S)
