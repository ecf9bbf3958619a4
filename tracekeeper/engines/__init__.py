"""Collector backends."""

from __future__ import annotations

from tracekeeper.engines.base import StartResult, TraceEngine
from tracekeeper.runner import ProcessRunner
from tracekeeper.settings import TracerSettings
from tracekeeper.telemetry import TelemetryStore


def create_engine(
    settings: TracerSettings,
    runner: ProcessRunner | None = None,
    telemetry: TelemetryStore | None = None
) -> TraceEngine:
    """Build the backend named by ``settings.engine``."""
    # Imported here: the perfetto backend depends on the reconciler, which depends on base.
    if settings.engine == "atrace":
        from tracekeeper.engines.legacy import LegacyEngine
        return LegacyEngine(settings, runner, telemetry)
    from tracekeeper.engines.perfetto import PerfettoEngine
    return PerfettoEngine(settings, runner, telemetry)


__all__ = [
    "StartResult",
    "TraceEngine",
    "create_engine"
]
