"""Start/stop/update flows on top of the engine, reconciler and sweeper."""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Iterable
from functools import cached_property
from pathlib import Path

from tracekeeper.categories import CategoryCatalog
from tracekeeper.engines import StartResult, TraceEngine, create_engine
from tracekeeper.log import get_logger
from tracekeeper.reconciler import StateReconciler
from tracekeeper.retention import cleanup_older_files, clear_saved_traces, delete_older_files
from tracekeeper.runner import ProcessRunner
from tracekeeper.session import SessionAction, SessionKind, output_file, output_filename
from tracekeeper.settings import TracerSettings
from tracekeeper.telemetry import TRACE_NAME, TelemetryStore

logger = get_logger(__name__)

_START_ACTIONS = {
    StartResult.STARTED: "started",
    StartResult.ALREADY_RUNNING: "unchanged",
    StartResult.FAILED: "failed",
}


class TracingFlags:
    """Persisted "tracing is on" flag per kind, the way a caller remembers intent."""

    def __init__(self, path: Path | None = None):
        self.path = path
        self._flags: dict[str, bool] = {}
        if path is not None and path.is_file():
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                self._flags = {str(k): bool(v) for k, v in data.items()}
            except (OSError, ValueError, AttributeError) as exc:
                logger.warning("flags_unreadable", path=str(path), error=str(exc))

    def get(self, kind: SessionKind) -> bool:
        return self._flags.get(kind.value, False)

    def set(self, kind: SessionKind, value: bool) -> None:
        self._flags[kind.value] = value
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".flags-")
            with os.fdopen(fd, "w") as f:
                json.dump(self._flags, f, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except OSError as exc:
            logger.error("flags_write_failed", path=str(self.path), error=str(exc))


class TraceController:
    """
    Everything a service layer does with a capture, minus notifications and UI.

    Built once from settings; the engine variant is fixed for its lifetime.
    """

    def __init__(
        self,
        settings: TracerSettings,
        engine: TraceEngine | None = None,
        runner: ProcessRunner | None = None,
        catalog: CategoryCatalog | None = None,
        flags: TracingFlags | None = None,
        telemetry: TelemetryStore | None = None
    ):
        self.settings = settings
        self.runner = runner or ProcessRunner()
        self.telemetry = telemetry or TelemetryStore(settings.telemetry_path)
        self.engine = engine or create_engine(settings, self.runner, self.telemetry)
        self.catalog = catalog or CategoryCatalog(
            self.runner,
            source=settings.engine,
            binary=settings.atrace_binary if settings.engine == "atrace" else settings.perfetto_binary,
            timeout=settings.category_query_timeout_s
        )
        self.flags = flags or TracingFlags(settings.flags_path)
        self.reconciler = StateReconciler(self.engine, settings)

    @cached_property
    def available_categories(self) -> dict[str, str]:
        return self.catalog.list_categories()

    def active_tags(self, requested: Iterable[str] | None = None, only_available: bool = True) -> set[str]:
        """Requested tags (or the defaults), optionally narrowed to what the platform offers."""
        tags = set(self.settings.default_tags if requested is None else requested)
        if only_available:
            tags &= set(self.available_categories)
        return tags

    def unavailable_tags(self, requested: Iterable[str] | None = None) -> set[str]:
        tags = set(self.settings.default_tags if requested is None else requested)
        return tags - set(self.available_categories)

    def start_tracing(
        self,
        kind: SessionKind,
        tags: Iterable[str] | None = None,
        buffer_size_kb: int | None = None,
        apps: bool = False,
        long_trace: bool = False,
        max_long_trace_size_mb: int = 0,
        max_long_trace_duration_minutes: int = 0
    ) -> StartResult:
        """
        Start a capture for kind if the reconciler allows it.

        A failed start stops whatever half-started and clears the kind's flag.
        """
        session = self.settings.describe(kind, SessionAction.START)
        log = logger.bind(kind=kind.value, action=session.action.value, tag=session.tag)
        self.flags.set(kind, True)
        if not self.reconciler.should_start(kind):
            log.info("start_not_needed")
            return StartResult.ALREADY_RUNNING

        active = self.active_tags(tags)
        buffer_kb = self.settings.buffer_kb(kind, buffer_size_kb)
        log.info("start_requested", buffer_size_kb=buffer_kb, temp_path=str(session.temp_path))
        result = self.engine.start(
            active,
            buffer_kb,
            apps,
            long_trace,
            max_long_trace_size_mb,
            max_long_trace_duration_minutes,
            kind
        )
        if result == StartResult.FAILED:
            log.error("start_failed_resetting")
            self.engine.stop(kind)
            self.flags.set(kind, False)
        return result

    def stop_tracing(self, kind: SessionKind, forced: bool = True, wait_for_cleanup: bool = False) -> Path | None:
        """
        Stop and dump the capture for kind if the reconciler says there is one.

        Returns:
            Path of the saved capture, or None if nothing was saved
        """
        session = self.settings.describe(kind, SessionAction.STOP)
        log = logger.bind(kind=kind.value, action=session.action.value, tag=session.tag)
        self.flags.set(kind, False)
        if not self.reconciler.should_stop(kind):
            log.info("stop_not_needed")
            return None

        filename = output_filename(kind, self.engine.output_extension)
        target = output_file(self.settings.traces_root, session.output_dir, kind, filename, forced)

        saved: Path | None = None
        if self.engine.dump(target, kind):
            self.telemetry.set(TRACE_NAME, filename if forced else "")
            saved = target
        else:
            log.error("dump_failed_capture_lost", target=str(target))

        if wait_for_cleanup:
            self.sweep()
        else:
            cleanup_older_files(
                self.settings.traces_root,
                self.settings.keep_count,
                self.settings.keep_age_ms,
                self.settings.in_progress_names()
            )
        return saved

    def sweep(self, min_count: int | None = None, min_age_ms: int | None = None) -> bool:
        return delete_older_files(
            self.settings.traces_root,
            self.settings.keep_count if min_count is None else min_count,
            self.settings.keep_age_ms if min_age_ms is None else min_age_ms,
            self.settings.in_progress_names()
        )

    def update_tracing(
        self,
        desired: dict[SessionKind, bool] | None = None,
        assume_off: bool = False,
        tags: Iterable[str] | None = None,
        buffer_size_kb: int | None = None,
        apps: bool = False
    ) -> dict[SessionKind, str]:
        """
        Bring each kind in line with its desired on/off flag.

        Args:
            desired: Wanted state per kind; missing kinds use the stored flags
            assume_off: Skip the collector query, e.g. right after boot

        Returns:
            Action taken per kind: "started", "stopped", "failed", "unchanged" or "skipped"
        """
        actions: dict[SessionKind, str] = {}
        for kind in SessionKind:
            want = self.flags.get(kind) if desired is None or kind not in desired else desired[kind]
            running = False if assume_off else self.engine.is_running(kind)
            if want == running:
                actions[kind] = "unchanged"
                continue
            if kind is SessionKind.FANS and not self.settings.fans_auto_start:
                logger.info("auto_start_disabled", kind=kind.value)
                actions[kind] = "skipped"
                continue
            if want:
                result = self.start_tracing(kind, tags, buffer_size_kb, apps)
                actions[kind] = _START_ACTIONS[result]
            else:
                self.stop_tracing(kind)
                actions[kind] = "stopped"
        return actions

    def clear_saved_traces(self) -> int:
        """Delete saved primary captures from the primary output directory."""
        return clear_saved_traces(self.settings.output_dir(SessionKind.FANS))
