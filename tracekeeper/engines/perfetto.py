"""Collector backend driving a detached perfetto session per kind."""

from __future__ import annotations

import os
import shlex
from collections.abc import Collection
from pathlib import Path

from tracekeeper.config_builder import build_config, heredoc_command
from tracekeeper.engines.base import StartResult, TraceEngine, make_world_accessible
from tracekeeper.errors import CommandTimeout, ConfigBuildError
from tracekeeper.log import get_logger
from tracekeeper.reconciler import delete_quietly, wait_for_trace_file
from tracekeeper.session import SessionKind

logger = get_logger(__name__)

# perfetto --is_detached exit codes
DETACHED_FOUND = 0
DETACHED_NOT_FOUND = 2


class PerfettoEngine(TraceEngine):
    name = "PERFETTO"
    output_extension = "ptrace"

    def _tag(self, kind: SessionKind) -> str:
        return self.settings.session(kind).tag

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
        log = logger.bind(kind=kind.value)
        if self.is_running(kind):
            log.error("start_refused_already_running")
            return StartResult.ALREADY_RUNNING

        temp_path = self.temp_path(kind)
        delete_quietly(temp_path, "temp file")

        try:
            config = build_config(
                tags,
                buffer_size_kb,
                apps=apps,
                long_trace=long_trace,
                max_long_trace_size_mb=max_long_trace_size_mb,
                max_long_trace_duration_minutes=max_long_trace_duration_minutes,
                product=self.settings.product
            )
        except ConfigBuildError as exc:
            log.error("start_config_malformed", error=str(exc))
            return StartResult.FAILED

        binary = self.settings.perfetto_binary
        command = heredoc_command(
            f"{binary} --detach={self._tag(kind)} -o {shlex.quote(str(temp_path))} -c - --txt",
            config
        )

        work_dir = self.settings.output_dir(kind)
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            log.warning("work_dir_unavailable", path=str(work_dir), error=str(exc))

        log.info("start", buffer_size_kb=buffer_size_kb, tags=sorted(tags))
        timeout = self.settings.startup_timeout_s
        try:
            result = self.runner.execute(
                command,
                cwd=work_dir if work_dir.is_dir() else None,
                timeout=timeout
            )
        except CommandTimeout:
            log.error("start_timeout", timeout_s=timeout)
            return StartResult.FAILED
        except OSError as exc:
            log.error("start_failed", error=str(exc))
            return StartResult.FAILED

        if not result.ok:
            log.error("start_failed", returncode=result.returncode, stderr=result.stderr_lines()[-5:])
            return StartResult.FAILED

        log.info("start_succeeded")
        return StartResult.STARTED

    def stop(self, kind: SessionKind) -> None:
        log = logger.bind(kind=kind.value)
        log.info("stop")
        if not self.is_running(kind):
            log.warning("stop_without_running_session")
        self._detach(kind, self.settings.startup_timeout_s)

    def force_stop(self, kind: SessionKind) -> None:
        logger.warning("force_stop", kind=kind.value, tag=self._tag(kind))
        self._detach(kind, self.settings.force_stop_timeout_s)

    def _detach(self, kind: SessionKind, timeout: float) -> None:
        command = f"{self.settings.perfetto_binary} --stop --attach={self._tag(kind)}"
        try:
            result = self.runner.execute(command, timeout=timeout)
        except CommandTimeout:
            logger.error("stop_timeout", kind=kind.value, timeout_s=timeout)
            return
        except OSError as exc:
            logger.error("stop_failed", kind=kind.value, error=str(exc))
            return
        if not result.ok:
            logger.error("stop_failed", kind=kind.value, returncode=result.returncode)

    def dump(self, output_file: Path, kind: SessionKind) -> bool:
        """Stop the session, wait for the temp file to settle, then rename it to output_file."""
        log = logger.bind(kind=kind.value, output=str(output_file))
        self.stop(kind)

        temp_path = self.temp_path(kind)
        if not wait_for_trace_file(temp_path, self.settings.dump_wait_timeout_ms):
            log.error("dump_aborted_trace_file_not_ready")
            return False

        log.info("dump_saving")
        try:
            output_file.parent.mkdir(parents=True, exist_ok=True)
            os.replace(temp_path, output_file)
        except OSError as exc:
            log.error("dump_failed", error=str(exc))
            return False

        size_mb = self.telemetry.record_dump(output_file)
        log.info("dump_saved", size_mb=size_mb)
        make_world_accessible(output_file)
        return True

    def is_running(self, kind: SessionKind) -> bool:
        command = f"{self.settings.perfetto_binary} --is_detached={self._tag(kind)}"
        try:
            result = self.runner.execute(command, timeout=self.settings.force_stop_timeout_s)
        except (CommandTimeout, OSError) as exc:
            logger.error("is_detached_failed", kind=kind.value, error=str(exc))
            return False

        if result.returncode == DETACHED_FOUND:
            return True
        if result.returncode != DETACHED_NOT_FOUND:
            logger.error("is_detached_error", kind=kind.value, returncode=result.returncode)
        return False
