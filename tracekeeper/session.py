"""Session kinds and output file naming."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


class SessionKind(str, Enum):
    """Independent capture lineages, each with its own collector tag and temp file."""

    FANS = "fans"
    DFX = "dfx"

    @property
    def token(self) -> str:
        """Sanitized upper-case token embedded in output filenames."""
        return re.sub(r"[^A-Za-z0-9]", "", self.value).upper()


class SessionAction(str, Enum):
    START = "start"
    STOP = "stop"


@dataclass(frozen=True)
class Session:
    """One capture lineage as seen by the engine and reconciler."""

    kind: SessionKind
    action: SessionAction
    tag: str
    temp_path: Path
    output_dir: Path
    default_buffer_kb: int


def format_timestamp(moment: datetime | float) -> str:
    """Format a datetime or epoch seconds as yyyyMMddHHmmss in local time."""
    if not isinstance(moment, datetime):
        moment = datetime.fromtimestamp(moment)
    return moment.strftime(TIMESTAMP_FORMAT)


def output_filename(kind: SessionKind, extension: str, now: datetime | None = None) -> str:
    """<KIND>.<yyyyMMddHHmmss>.<ext>"""
    return f"{kind.token}.{format_timestamp(now or datetime.now())}.{extension}"


def orphan_filename(kind: SessionKind, mtime: float, extension: str = "ptrace") -> str:
    """Name a salvaged orphan after its own modification time."""
    return f"{kind.token}.orphan.{format_timestamp(mtime)}.{extension}"


def output_file(
    traces_root: Path,
    kind_dir: Path,
    kind: SessionKind,
    filename: str,
    forced: bool = True
) -> Path:
    """
    Pick where a finished capture lands.

    Auxiliary captures always go to their own directory. Primary captures go
    to their directory on an explicit stop and to the traces root otherwise.
    """
    if kind is SessionKind.DFX or forced:
        return kind_dir / filename
    return traces_root / filename
