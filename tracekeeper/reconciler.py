"""Reconcile collector attachment state with the in-progress file on disk.

The collector keeps its temp file at zero length for the whole capture and
only fills it during stop, so size is the signal for "writing has finished".
Age is only consulted on the stop path, to tell a dump that just finished
from one that was abandoned.
"""

from __future__ import annotations

import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from tracekeeper.engines.base import TraceEngine
from tracekeeper.log import get_logger
from tracekeeper.session import SessionKind, orphan_filename
from tracekeeper.settings import TracerSettings

logger = get_logger(__name__)

POLL_INTERVAL_S = 0.1
ZERO_SIZE_STABLE_POLLS = 10
READY_STABLE_POLLS = 5
FRESH_ORPHAN_MS = 3000


@dataclass(frozen=True)
class ObservedState:
    """One snapshot of collector and temp-file state. Never persisted."""

    collector_running: bool
    file_exists: bool
    size: int = 0
    mtime: float = 0.0
    age_ms: int = 0


def observe_file(path: Path) -> tuple[bool, int, float, int]:
    """Return (exists, size, mtime, age_ms) for path, tolerating it vanishing mid-check."""
    try:
        stat = path.stat()
    except FileNotFoundError:
        return False, 0, 0.0, 0
    age_ms = int((time.time() - stat.st_mtime) * 1000)
    return True, stat.st_size, stat.st_mtime, age_ms


def delete_quietly(path: Path, what: str = "file") -> bool:
    """Remove path if present; failures are logged, never raised."""
    try:
        path.unlink(missing_ok=True)
        logger.info("deleted", what=what, path=str(path))
        return True
    except OSError as exc:
        logger.error("delete_failed", what=what, path=str(path), error=str(exc))
        return False


def list_directory(directory: Path) -> None:
    """Log every entry of directory with size and age, for postmortems."""
    logger.info("directory_listing", path=str(directory))
    try:
        entries = sorted(directory.iterdir())
    except OSError as exc:
        logger.error("directory_listing_failed", path=str(directory), error=str(exc))
        return
    if not entries:
        logger.info("directory_empty", path=str(directory))
        return
    now = time.time()
    for entry in entries:
        try:
            stat = entry.stat()
        except OSError:
            continue
        logger.info(
            "directory_entry",
            name=entry.name,
            size=stat.st_size,
            modified_ms_ago=int((now - stat.st_mtime) * 1000)
        )


def wait_for_trace_file(
    path: Path,
    timeout_ms: int,
    poll_interval_s: float = POLL_INTERVAL_S,
    zero_stable_polls: int = ZERO_SIZE_STABLE_POLLS,
    ready_stable_polls: int = READY_STABLE_POLLS
) -> bool:
    """
    Wait for the collector to finish writing path after a stop.

    Polls existence and size. A nonzero size that stays unchanged for
    ``ready_stable_polls`` polls means the file is ready. A size stuck at zero
    for ``zero_stable_polls`` polls means the collector wrote nothing.

    Returns:
        True once the file is ready, False on a zero-size file or timeout
    """
    logger.info("waiting_for_trace_file", path=str(path), timeout_ms=timeout_ms)
    start = time.monotonic()
    deadline = start + timeout_ms / 1000.0
    last_size = -1
    stable_count = 0
    appeared = False

    while time.monotonic() < deadline:
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            time.sleep(poll_interval_s)
            continue

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if not appeared:
            logger.info("trace_file_appeared", elapsed_ms=elapsed_ms)
            appeared = True
        logger.debug("trace_file_size", size=size)

        if size == last_size:
            stable_count += 1
            if size == 0 and stable_count >= zero_stable_polls:
                logger.error("trace_file_empty_after_stop", path=str(path))
                list_directory(path.parent)
                return False
            if size > 0 and stable_count >= ready_stable_polls:
                logger.info("trace_file_ready", size=size, elapsed_ms=elapsed_ms)
                return True
        else:
            stable_count = 0
            last_size = size

        time.sleep(poll_interval_s)

    exists, size, _, _ = observe_file(path)
    if exists:
        logger.error("trace_file_wait_timeout", reason="unstable", final_size=size)
    else:
        logger.error("trace_file_wait_timeout", reason="never_appeared")
    list_directory(path.parent)
    return False


class StateReconciler:
    """Decides whether a start or stop should proceed, repairing the filesystem on the way."""

    def __init__(
        self,
        engine: TraceEngine,
        settings: TracerSettings,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.engine = engine
        self.settings = settings
        self.sleep = sleep

    def observe(self, kind: SessionKind) -> ObservedState:
        running = self.engine.is_running(kind)
        exists, size, mtime, age_ms = observe_file(self.engine.temp_path(kind))
        return ObservedState(
            collector_running=running,
            file_exists=exists,
            size=size,
            mtime=mtime,
            age_ms=age_ms
        )

    def should_start(self, kind: SessionKind) -> bool:
        """
        Return True if a new capture for kind may start.

        running + file:      already capturing, False
        idle + no file:      clean slate, True
        running + no file:   force detach and clean up, then True
        idle + file:         orphan; delete it whatever its size, then True
        """
        temp_path = self.engine.temp_path(kind)
        state = self.observe(kind)
        log = logger.bind(kind=kind.value, collector=state.collector_running, file=state.file_exists)
        log.info("start_check")

        if state.collector_running and state.file_exists:
            log.info("start_skipped_already_running")
            return False

        if not state.collector_running and not state.file_exists:
            log.info("start_clean_slate")
            return True

        if state.collector_running and not state.file_exists:
            log.warning("inconsistent_collector_without_file")
            return self.recover_and_restart(kind)

        log.warning("orphan_file_detected", size=state.size, age_ms=state.age_ms)
        if state.size == 0:
            log.warning("orphan_empty", reason="collector exited before stop")
        else:
            log.warning("orphan_non_empty", reason="dump or rename failed")
        delete_quietly(temp_path, "orphan")
        log.info("start_after_cleanup")
        return True

    def should_stop(self, kind: SessionKind) -> bool:
        """
        Return True if the stop/dump flow should run for kind.

        running + file:      normal stop, True
        idle + no file:      nothing to stop, False
        running + no file:   True, so the collector does not leak
        idle + file:         empty orphan is deleted (False); a fresh non-empty
                             one is finished as a dump (True); a stale non-empty
                             one is salvaged or deleted (False)
        """
        temp_path = self.engine.temp_path(kind)
        state = self.observe(kind)
        log = logger.bind(kind=kind.value, collector=state.collector_running, file=state.file_exists)
        log.info("stop_check")

        if not state.collector_running and not state.file_exists:
            log.info("stop_skipped_nothing_running")
            return False

        if state.collector_running and state.file_exists:
            if state.size == 0:
                log.info("stop_normal")
            else:
                log.warning("stop_abnormal_file_has_data", size=state.size)
            return True

        if state.collector_running and not state.file_exists:
            log.warning("stop_file_missing", reason="deleted externally; capture is lost")
            return True

        log.warning("orphan_file_detected", size=state.size, age_ms=state.age_ms)
        if state.size == 0:
            log.warning("orphan_empty_deleting")
            delete_quietly(temp_path, "orphan")
            return False

        if state.age_ms < FRESH_ORPHAN_MS:
            log.info("orphan_fresh_proceeding_with_dump")
            return True

        log.warning("orphan_stale_salvaging")
        self.salvage_orphan(kind, temp_path, state.mtime, state.size)
        return False

    def salvage_orphan(self, kind: SessionKind, temp_path: Path, mtime: float, size: int) -> Path | None:
        """Move a stale orphan into the kind's output directory, deleting it if that fails."""
        target = self.settings.output_dir(kind) / orphan_filename(kind, mtime, self.engine.output_extension or "ptrace")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(temp_path), str(target))
        except OSError as exc:
            logger.error("orphan_salvage_failed", path=str(temp_path), error=str(exc))
            if delete_quietly(temp_path, "orphan"):
                logger.warning("orphan_deleted_after_salvage_failure", path=str(temp_path))
            return None
        logger.info("orphan_salvaged", target=str(target), size=size)
        return target

    def recover_and_restart(self, kind: SessionKind) -> bool:
        """Force-detach the collector and clear its temp file. Best effort; always returns True."""
        log = logger.bind(kind=kind.value)
        log.warning("recovery_started")

        self.engine.force_stop(kind)
        delete_quietly(self.engine.temp_path(kind), "temp file")
        self.sleep(self.settings.recovery_settle_s)

        if self.engine.is_running(kind):
            log.error("recovery_collector_still_attached")
            self.engine.force_stop(kind)
            self.sleep(self.settings.recovery_settle_s)

        log.info("recovery_complete")
        return True
