"""Keep-N / keep-newer-than-T pruning of finished captures."""

from __future__ import annotations

import glob
import threading
import time
from collections.abc import Iterable
from pathlib import Path

from tracekeeper.errors import InvalidRetentionArguments
from tracekeeper.log import get_logger

logger = get_logger(__name__)


def delete_older_files(
    directory: Path,
    min_count: int,
    min_age_ms: int,
    in_progress_names: Iterable[str] = ()
) -> bool:
    """
    Delete old captures in directory.

    The ``min_count`` newest files are always kept. Of the rest, only files
    older than ``min_age_ms`` are deleted. Subdirectories and in-progress
    files are never touched.

    Returns:
        True if at least one file was deleted

    Raises:
        InvalidRetentionArguments: min_count or min_age_ms is negative
    """
    if min_count < 0 or min_age_ms < 0:
        raise InvalidRetentionArguments("Constraints must be positive or 0")

    skip = set(in_progress_names)
    try:
        entries = list(directory.iterdir())
    except OSError:
        return False

    candidates: list[tuple[float, Path]] = []
    for entry in entries:
        try:
            if entry.is_dir():
                continue
            if entry.name in skip:
                logger.info("retention_skip_active", name=entry.name)
                continue
            candidates.append((entry.stat().st_mtime, entry))
        except OSError:
            continue

    # Newest first.
    candidates.sort(key=lambda item: item[0], reverse=True)

    deleted = False
    now = time.time()
    for mtime, path in candidates[min_count:]:
        age_ms = (now - mtime) * 1000
        if age_ms <= min_age_ms:
            continue
        try:
            path.unlink()
            deleted = True
            logger.info("retention_deleted", path=str(path), age_ms=int(age_ms))
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("retention_delete_failed", path=str(path), error=str(exc))
    return deleted


def cleanup_older_files(
    directory: Path,
    min_count: int,
    min_age_ms: int,
    in_progress_names: Iterable[str] = ()
) -> threading.Thread:
    """Run delete_older_files on a daemon thread and return without waiting."""
    names = tuple(in_progress_names)

    def _sweep() -> None:
        try:
            delete_older_files(directory, min_count, min_age_ms, names)
        except (OSError, ValueError) as exc:
            logger.error("retention_failed", path=str(directory), error=str(exc))

    thread = threading.Thread(target=_sweep, name="tracekeeper-retention", daemon=True)
    thread.start()
    return thread


def clear_saved_traces(directory: Path, pattern: str = "FANS*.*trace") -> int:
    """Remove saved captures matching pattern in directory; returns how many went."""
    removed = 0
    for name in glob.glob(str(directory / pattern)):
        try:
            Path(name).unlink()
            removed += 1
        except OSError as exc:
            logger.error("clear_saved_traces_failed", path=name, error=str(exc))
    return removed
