"""Capability interface shared by the collector backends."""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Collection
from enum import IntEnum
from pathlib import Path

from tracekeeper.log import get_logger
from tracekeeper.runner import ProcessRunner
from tracekeeper.session import SessionKind
from tracekeeper.settings import TracerSettings
from tracekeeper.telemetry import TelemetryStore

logger = get_logger(__name__)


class StartResult(IntEnum):
    FAILED = -1
    ALREADY_RUNNING = 0
    STARTED = 1


class TraceEngine(ABC):
    """A collector backend. Exactly one is built per process and injected where needed."""

    name: str = ""
    output_extension: str = ""

    def __init__(
        self,
        settings: TracerSettings,
        runner: ProcessRunner | None = None,
        telemetry: TelemetryStore | None = None
    ):
        self.settings = settings
        self.runner = runner or ProcessRunner()
        self.telemetry = telemetry or TelemetryStore(settings.telemetry_path)

    @abstractmethod
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
        ...

    @abstractmethod
    def stop(self, kind: SessionKind) -> None:
        ...

    @abstractmethod
    def dump(self, output_file: Path, kind: SessionKind) -> bool:
        ...

    @abstractmethod
    def is_running(self, kind: SessionKind) -> bool:
        ...

    def force_stop(self, kind: SessionKind) -> None:
        """Detach the collector for ``kind`` without waiting on its output."""
        self.stop(kind)

    def temp_path(self, kind: SessionKind) -> Path:
        return self.settings.temp_path(kind)


def make_world_accessible(path: Path) -> None:
    """Let the capture be pulled off the device by any user."""
    try:
        os.chmod(path, 0o666)
    except OSError as exc:
        logger.warning("chmod_failed", path=str(path), error=str(exc))
