"""Collector backend for the atrace async interface.

Long-trace parameters are accepted for interface parity and ignored. There is
no temp file: dump writes straight to the output path.
"""

from __future__ import annotations

import shlex
from collections.abc import Collection
from pathlib import Path

from tracekeeper.config_builder import sanitize_tag
from tracekeeper.engines.base import StartResult, TraceEngine, make_world_accessible
from tracekeeper.errors import CommandTimeout
from tracekeeper.log import get_logger
from tracekeeper.runner import CommandResult
from tracekeeper.session import SessionKind

logger = get_logger(__name__)

PROCESS_LIST_COMMAND = "ps -AT"


class LegacyEngine(TraceEngine):
    name = "ATRACE"
    output_extension = "ctrace"

    def _run(self, command: str, what: str) -> CommandResult | None:
        try:
            return self.runner.execute(command, timeout=self.settings.startup_timeout_s)
        except (CommandTimeout, OSError) as exc:
            logger.error(f"{what}_failed", command=command, error=str(exc))
            return None

    def start(
        self,
        tags: Collection[str],
        buffer_size_kb: int,
        apps: bool,
        long_trace: bool,
        max_long_trace_size_mb: int,
        max_long_trace_duration_minutes: int,
        kind: SessionKind
    ) -> StartResult:
        parts = [self.settings.atrace_binary, "--async_start", "-c", "-b", str(buffer_size_kb)]
        if apps:
            parts.extend(["-a", "'*'"])
        parts.extend(sanitize_tag(tag) for tag in sorted(set(tags)))
        command = " ".join(parts)

        logger.info("atrace_start", kind=kind.value, command=command)
        result = self._run(command, "atrace_start")
        if result is None:
            return StartResult.FAILED
        if not result.ok:
            logger.error("atrace_start_failed", returncode=result.returncode)
            return StartResult.FAILED
        return StartResult.STARTED

    def stop(self, kind: SessionKind) -> None:
        command = f"{self.settings.atrace_binary} --async_stop > /dev/null"
        logger.debug("atrace_stop", kind=kind.value, command=command)
        result = self._run(command, "atrace_stop")
        if result is not None and not result.ok:
            logger.error("atrace_stop_failed", returncode=result.returncode)

    def dump(self, output_file: Path, kind: SessionKind) -> bool:
        """Stop and write the compressed capture, then append the process list for context."""
        try:
            output_file.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("atrace_dump_failed", output=str(output_file), error=str(exc))
            return False

        command = f"{self.settings.atrace_binary} --async_stop -z -c -o {shlex.quote(str(output_file))}"
        logger.debug("atrace_dump", kind=kind.value, command=command)
        result = self._run(command, "atrace_dump")
        if result is None:
            return False
        if not result.ok:
            logger.error("atrace_dump_failed", returncode=result.returncode)
            return False

        ps = self._run(PROCESS_LIST_COMMAND, "atrace_dump_ps")
        if ps is None:
            return False
        try:
            with open(output_file, "ab") as f:
                f.write(ps.stdout)
        except OSError as exc:
            logger.error("atrace_dump_ps_append_failed", output=str(output_file), error=str(exc))
            return False
        if not ps.ok:
            logger.error("atrace_dump_ps_failed", returncode=ps.returncode)
            return False

        self.telemetry.record_dump(output_file)
        make_world_accessible(output_file)
        return True

    def is_running(self, kind: SessionKind) -> bool:
        """Tracing counts as on only if the platform flag is set and tracing_on is not 0."""
        if not self.settings.user_initiated:
            return False

        for path in self.settings.tracing_on_paths:
            try:
                with open(path, "r") as f:
                    first_line = f.readline().strip()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.debug("tracing_on_unreadable", path=str(path), error=str(exc))
                continue
            return first_line != "0"
        return False
