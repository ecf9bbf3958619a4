"""Key/value properties describing the last dump, for external inspection."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path

from tracekeeper.log import get_logger

logger = get_logger(__name__)

DUMP_TIME = "dump_time"
DUMP_SIZE_MB = "dump_size_mb"
TRACE_NAME = "trace_name"

DUMP_TIME_FORMAT = "%Y%m%d%H%M%S%f"


def file_size_mb(path: Path) -> float:
    """Size in MB rounded to two decimals, or -1 if the path is not a file."""
    try:
        if not path.is_file():
            return -1
        return round(path.stat().st_size / 1048576.0, 2)
    except OSError:
        return -1


def dump_timestamp(now: datetime | None = None) -> str:
    """yyyyMMddHHmmssSSS"""
    return (now or datetime.now()).strftime(DUMP_TIME_FORMAT)[:-3]


class TelemetryStore:
    """
    String properties kept in memory and, when a path is given, mirrored to a
    JSON file that is replaced atomically on every write.
    """

    def __init__(self, path: Path | None = None):
        self.path = path
        self._lock = threading.Lock()
        self._values: dict[str, str] = self._load()

    def _load(self) -> dict[str, str]:
        if self.path is None or not self.path.is_file():
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("telemetry_unreadable", path=str(self.path), error=str(exc))
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def get(self, key: str, default: str = "") -> str:
        with self._lock:
            return self._values.get(key, default)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value
            self._flush()

    def as_dict(self) -> dict[str, str]:
        with self._lock:
            return dict(self._values)

    def record_dump(self, output_file: Path) -> float:
        """Record dump time and size for a finished capture and return the size in MB."""
        size_mb = file_size_mb(output_file)
        self.set(DUMP_TIME, dump_timestamp())
        self.set(DUMP_SIZE_MB, f"{size_mb:.2f}")
        return size_mb

    def _flush(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".telemetry-")
            with os.fdopen(fd, "w") as f:
                json.dump(self._values, f, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except OSError as exc:
            logger.error("telemetry_write_failed", path=str(self.path), error=str(exc))
