"""Pydantic settings for tracekeeper.

Precedence (highest first):
1. Explicit keyword arguments / CLI options
2. Environment variables (TRACEKEEPER_<FIELD>)
3. Built-in defaults (this file)

Examples:
    TRACEKEEPER_ENGINE=atrace
    TRACEKEEPER_TRACES_ROOT=/tmp/traces
    TRACEKEEPER_KEEP_COUNT=3
"""

from __future__ import annotations

import os
from functools import cached_property
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tracekeeper.session import Session, SessionAction, SessionKind

ENV_PREFIX = "TRACEKEEPER_"

DAY_MS = 24 * 60 * 60 * 1000

# Same list for user builds; user builds cannot trace workq, irq or sync.
DEFAULT_TRACE_TAGS = (
    "am", "camera", "gfx", "hal", "aidl", "input", "view",
    "binder_driver", "wm", "dalvik", "memreclaim"
)
DEFAULT_TRACE_TAGS_USER = DEFAULT_TRACE_TAGS


class SessionSettings(BaseModel):
    """Per-kind paths and collector tag."""

    model_config = ConfigDict(frozen=True)

    tag: str
    temp_filename: str
    output_dirname: str
    default_buffer_kb: int = Field(default=4096, gt=0)
    fixed_buffer: bool = Field(
        default=False,
        description="Ignore the caller's buffer size and always use default_buffer_kb."
    )


def _default_sessions() -> dict[SessionKind, SessionSettings]:
    return {
        SessionKind.FANS: SessionSettings(
            tag="Fanstrace",
            temp_filename=".fans_trace-in-progress.trace",
            output_dirname="fans",
            default_buffer_kb=4096
        ),
        SessionKind.DFX: SessionSettings(
            tag="DFXtrace",
            temp_filename=".DFX_trace-in-progress.trace",
            output_dirname="DFX",
            default_buffer_kb=8192,
            fixed_buffer=True
        ),
    }


class TracerSettings(BaseModel):
    """Everything the engine, reconciler and sweeper need, built once and passed in."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    traces_root: Path = Path("/data/local/traces")
    engine: Literal["perfetto", "atrace"] = "perfetto"
    perfetto_binary: str = "perfetto"
    atrace_binary: str = "atrace"
    sessions: dict[SessionKind, SessionSettings] = Field(default_factory=_default_sessions)

    startup_timeout_s: float = Field(default=10.0, gt=0)
    force_stop_timeout_s: float = Field(default=3.0, gt=0)
    category_query_timeout_s: float = Field(default=10.0, gt=0)
    dump_wait_timeout_ms: int = Field(default=10_000, gt=0)
    recovery_settle_s: float = Field(default=0.5, ge=0)

    keep_count: int = Field(default=1, ge=0)
    keep_age_ms: int = Field(default=2 * DAY_MS, ge=0)

    telemetry_path: Path | None = None
    flags_path: Path | None = None

    build_type: str = "userdebug"
    product: str = ""
    device_type: str = ""
    low_ram: bool = False
    user_initiated: bool = Field(
        default=False,
        description="Platform flag the legacy engine requires before it reports a running trace."
    )
    tracing_on_paths: tuple[Path, ...] = (
        Path("/sys/kernel/debug/tracing/tracing_on"),
        Path("/sys/kernel/tracing/tracing_on"),
    )

    @field_validator("traces_root", mode="before")
    @classmethod
    def expand_root(cls, v: Any) -> Path:
        return Path(v).expanduser()

    @classmethod
    def from_env(cls, **overrides: Any) -> "TracerSettings":
        """Build settings from TRACEKEEPER_* environment variables plus overrides."""
        values: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            if name in ("sessions", "tracing_on_paths"):
                continue
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = _coerce_env(raw, field.annotation)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def session(self, kind: SessionKind) -> SessionSettings:
        return self.sessions[kind]

    def describe(self, kind: SessionKind, action: SessionAction = SessionAction.START) -> Session:
        session = self.session(kind)
        return Session(
            kind=kind,
            action=action,
            tag=session.tag,
            temp_path=self.temp_path(kind),
            output_dir=self.output_dir(kind),
            default_buffer_kb=session.default_buffer_kb
        )

    def temp_path(self, kind: SessionKind) -> Path:
        return self.traces_root / self.session(kind).temp_filename

    def output_dir(self, kind: SessionKind) -> Path:
        return self.traces_root / self.session(kind).output_dirname

    def in_progress_names(self) -> frozenset[str]:
        """Filenames the collector writes into while a capture is live."""
        return frozenset(s.temp_filename for s in self.sessions.values())

    def buffer_kb(self, kind: SessionKind, requested: int | None) -> int:
        session = self.session(kind)
        if session.fixed_buffer or requested is None:
            return session.default_buffer_kb
        return requested

    @cached_property
    def default_tags(self) -> frozenset[str]:
        """Tags used when the caller has no stored selection."""
        tags = DEFAULT_TRACE_TAGS_USER if self.build_type == "user" else DEFAULT_TRACE_TAGS
        return frozenset(tags)

    @cached_property
    def fans_auto_start(self) -> bool:
        """Low-RAM and go/slim devices never auto-start the primary capture."""
        return not (self.low_ram or self.device_type in ("go", "slim"))


def _coerce_env(raw: str, annotation: Any) -> Any:
    if annotation is bool:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    return raw
