"""CLI entry point for tracekeeper."""

import typer
from typing import List, Optional
from pathlib import Path
from rich.console import Console
from rich.table import Table
from tracekeeper.config_builder import build_config
from tracekeeper.controller import TraceController
from tracekeeper.engines import StartResult
from tracekeeper.errors import TraceKeeperError
from tracekeeper.log import configure_logging
from tracekeeper.session import SessionKind
from tracekeeper.settings import TracerSettings

app = typer.Typer(
    help="tracekeeper - Start, stop and repair perfetto capture sessions",
    no_args_is_help=True
)
console = Console()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    traces_root: Optional[Path] = typer.Option(None, "--traces-root", help="Directory holding temp and output traces"),
    engine: Optional[str] = typer.Option(None, "--engine", help="Collector backend: perfetto or atrace"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="VERBOSE, DEBUG, INFO, WARN, ERROR or NONE"),
    log_json: bool = typer.Option(False, "--log-json", help="Emit JSON log lines"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also append logs to this file"),
):
    """tracekeeper - Start, stop and repair perfetto capture sessions."""
    configure_logging(level=log_level, json_format=log_json, log_file=log_file)
    try:
        ctx.obj = TracerSettings.from_env(traces_root=traces_root, engine=engine)
    except ValueError as e:
        console.print(f"[red]Error:[/red] Invalid settings: {e}")
        raise typer.Exit(code=1)


def _controller(ctx: typer.Context) -> TraceController:
    settings = ctx.obj if isinstance(ctx.obj, TracerSettings) else TracerSettings.from_env()
    return TraceController(settings)


def _kind(value: str) -> SessionKind:
    try:
        return SessionKind(value.lower())
    except ValueError:
        console.print(f"[red]Error:[/red] Unknown session kind: {value}")
        raise typer.Exit(code=1)


@app.command()
def categories(ctx: typer.Context):
    """List the trace categories the platform offers."""
    table = Table("Category", "Description")
    for name, description in _controller(ctx).available_categories.items():
        table.add_row(name, description)
    console.print(table)


@app.command()
def config(
    tag: List[str] = typer.Option([], "--tag", help="Category to enable; repeat for more"),
    buffer_kb: int = typer.Option(4096, "--buffer-kb", help="Per-CPU buffer size in KB"),
    apps: bool = typer.Option(False, "--apps", help="Trace all apps"),
    long_trace: bool = typer.Option(False, "--long-trace", help="Render a long-capture config"),
    num_cpus: Optional[int] = typer.Option(None, "--num-cpus", help="Override the CPU count"),
):
    """Print the collector config for the given categories."""
    try:
        text = build_config(tag, buffer_kb, apps=apps, long_trace=long_trace, num_cpus=num_cpus)
    except TraceKeeperError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    typer.echo(text, nl=False)


@app.command()
def status(ctx: typer.Context):
    """Show collector and temp-file state per session kind."""
    controller = _controller(ctx)
    table = Table("Kind", "Tag", "Collector", "Temp file", "Size", "Age (ms)")
    for kind in SessionKind:
        session = controller.settings.describe(kind)
        state = controller.reconciler.observe(kind)
        table.add_row(
            kind.value,
            session.tag,
            "attached" if state.collector_running else "-",
            str(session.temp_path) if state.file_exists else "-",
            str(state.size) if state.file_exists else "-",
            str(state.age_ms) if state.file_exists else "-"
        )
    console.print(table)


@app.command()
def start(
    ctx: typer.Context,
    kind: str = typer.Option("fans", "--kind", help="Session kind: fans or dfx"),
    tag: Optional[List[str]] = typer.Option(None, "--tag", help="Category to enable; defaults to the built-in list"),
    buffer_kb: Optional[int] = typer.Option(None, "--buffer-kb", help="Per-CPU buffer size in KB"),
    apps: bool = typer.Option(False, "--apps", help="Trace all apps"),
    long_trace: bool = typer.Option(False, "--long-trace", help="Long capture"),
    max_size_mb: int = typer.Option(0, "--max-size-mb", help="Long capture size cap"),
    max_duration_min: int = typer.Option(0, "--max-duration-min", help="Long capture duration cap"),
):
    """Start a capture if nothing is running for this kind."""
    session_kind = _kind(kind)
    controller = _controller(ctx)
    console.print(f"[blue]Engine:[/blue] {controller.engine.name}")
    console.print(f"[blue]Kind:[/blue] {session_kind.value}")

    result = controller.start_tracing(
        session_kind,
        tags=tag or None,
        buffer_size_kb=buffer_kb,
        apps=apps,
        long_trace=long_trace,
        max_long_trace_size_mb=max_size_mb,
        max_long_trace_duration_minutes=max_duration_min
    )
    if result == StartResult.FAILED:
        console.print("[red]Error:[/red] Trace start failed")
        raise typer.Exit(code=1)
    if result == StartResult.ALREADY_RUNNING:
        console.print("[yellow]![/yellow] Trace already running")
        return
    console.print("[green]✓[/green] Trace started")


@app.command()
def stop(
    ctx: typer.Context,
    kind: str = typer.Option("fans", "--kind", help="Session kind: fans or dfx"),
    forced: bool = typer.Option(True, "--forced/--auto", help="Save into the kind's directory instead of the traces root"),
):
    """Stop and save the capture for this kind."""
    session_kind = _kind(kind)
    controller = _controller(ctx)
    saved = controller.stop_tracing(session_kind, forced=forced, wait_for_cleanup=True)
    if saved is None:
        console.print("[yellow]![/yellow] Nothing saved")
        return
    console.print(f"[green]✓[/green] Trace saved: {saved}")


@app.command()
def update(
    ctx: typer.Context,
    fans: Optional[bool] = typer.Option(None, "--fans/--no-fans", help="Desired primary capture state"),
    dfx: Optional[bool] = typer.Option(None, "--dfx/--no-dfx", help="Desired auxiliary capture state"),
    assume_off: bool = typer.Option(False, "--assume-off", help="Skip the collector query (e.g. at boot)"),
):
    """Start or stop captures so they match the desired state."""
    desired = {}
    if fans is not None:
        desired[SessionKind.FANS] = fans
    if dfx is not None:
        desired[SessionKind.DFX] = dfx

    actions = _controller(ctx).update_tracing(desired, assume_off=assume_off)
    for kind, action in actions.items():
        console.print(f"[blue]{kind.value}:[/blue] {action}")
    if "failed" in actions.values():
        raise typer.Exit(code=1)


@app.command()
def sweep(
    ctx: typer.Context,
    min_count: Optional[int] = typer.Option(None, "--min-count", help="Always keep this many newest files"),
    min_age_hours: Optional[float] = typer.Option(None, "--min-age-hours", help="Keep files newer than this"),
):
    """Delete old captures from the traces root."""
    min_age_ms = int(min_age_hours * 3600 * 1000) if min_age_hours is not None else None
    try:
        deleted = _controller(ctx).sweep(min_count, min_age_ms)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    console.print("[green]✓[/green] Old traces deleted" if deleted else "Nothing to delete")


@app.command()
def clear(ctx: typer.Context):
    """Delete all saved primary captures."""
    removed = _controller(ctx).clear_saved_traces()
    console.print(f"[green]✓[/green] Removed {removed} trace(s)")


if __name__ == "__main__":
    app()
