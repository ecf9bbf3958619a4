"""Render the text-format perfetto config for a capture."""

from __future__ import annotations

import os
import re
from collections.abc import Iterable

from tracekeeper.errors import ConfigBuildError
from tracekeeper.log import get_logger

logger = get_logger(__name__)

# Heredoc delimiter used when the config is fed to the collector on stdin.
MARKER = "PERFETTO_ARGUMENTS"

MEMORY_TAG = "memory"
POWER_TAG = "power"
SCHED_TAG = "sched"

FTRACE_BUFFER_KB = 8192
AUX_BUFFER_KB = 2048
DEFAULT_DFX_BUFFER_KB = 8192

_INVALID_TAG_CHARS = re.compile(r"[^a-zA-Z0-9_]")

# Events requested when compact sched is not in use.
_FTRACE_EVENTS = [
    "sched/sched_switch",
    "sched/sched_waking",
    "power/cpu_frequency",
    "kgsl/gpu_frequency",
    "power/gpu_frequency",
    "power/cpu_frequency_limits",
    "block/block_rq_insert",
]
_BLOCK_EVENTS = [
    "block/block_rq_issue",
    "block/block_rq_complete",
]
_VENDOR_EVENTS = [
    "sched/sched_blocked_reason",
    "trans_sched/dump_info",
    "trans_mem/alter_rwsem_list_add",
    "trans_mem/rwsem_owner",
    "scheduler/sched_frequency_limits",
]
_BLOCK_EVENT_PRODUCTS = ("X6879",)

_BATTERY_COUNTERS = [
    "BATTERY_COUNTER_CAPACITY_PERCENT",
    "BATTERY_COUNTER_CHARGE",
    "BATTERY_COUNTER_CURRENT",
]


def sanitize_tag(tag: str) -> str:
    """Strip everything but letters, digits and underscores, warning when that changes the tag."""
    clean = _INVALID_TAG_CHARS.sub("", tag)
    if clean != tag:
        logger.warning("invalid_tag", tag=tag, cleaned=clean)
    return clean


def build_config(
    tags: Iterable[str],
    buffer_size_kb: int,
    apps: bool = False,
    long_trace: bool = False,
    max_long_trace_size_mb: int = 0,
    max_long_trace_duration_minutes: int = 0,
    num_cpus: int | None = None,
    product: str = ""
) -> str:
    """
    Build the perfetto text config for the given categories.

    Args:
        tags: Atrace categories to enable
        buffer_size_kb: Per-CPU buffer size; multiplied by the CPU count
        apps: Trace all apps (atrace_apps: "*")
        long_trace: Long capture; slows battery polling and honours the caps below
        max_long_trace_size_mb: File size cap for long captures, 0 for none
        max_long_trace_duration_minutes: Duration cap for long captures, 0 for none
        num_cpus: CPU count, defaults to os.cpu_count()
        product: Device product name, used to gate a few block events

    Returns:
        Config text, identical for identical inputs

    Raises:
        ConfigBuildError: The text contains the heredoc delimiter
    """
    tag_set = set(tags)
    cpus = num_cpus or os.cpu_count() or 1
    lines: list[str] = []
    add = lines.append

    add("write_into_file: true")
    # Flush ftrace data every 30s even if cpus are idle.
    add("flush_period_ms: 30000")
    add("file_write_period_ms: 604800000")
    if long_trace:
        if max_long_trace_size_mb > 0:
            add(f"max_file_size_bytes: {max_long_trace_size_mb * 1024 * 1024}")
        if max_long_trace_duration_minutes > 0:
            add(f"duration_ms: {max_long_trace_duration_minutes * 60 * 1000}")

    add("incremental_state_config {")
    add("  clear_period_ms: 15000")
    add("}")

    # target_buffer 0: ftrace.
    add("buffers {")
    add(f"  size_kb: {buffer_size_kb * cpus}")
    add("  fill_policy: RING_BUFFER")
    add("}")
    # target_buffer 1: everything else.
    add("buffers {")
    add(f"  size_kb: {AUX_BUFFER_KB}")
    add("  fill_policy: RING_BUFFER")
    add("}")

    add("data_sources {")
    add("  config {")
    add('    name: "linux.ftrace"')
    add("    target_buffer: 0")
    add("    ftrace_config {")
    for tag in sorted(tag_set):
        add(f'      atrace_categories: "{sanitize_tag(tag)}"')
    if apps:
        add('      atrace_apps: "*"')

    if SCHED_TAG in tag_set:
        add("      compact_sched {")
        add("        enabled: true")
        add("      }")
    else:
        events = list(_FTRACE_EVENTS)
        if any(p in product for p in _BLOCK_EVENT_PRODUCTS) or buffer_size_kb != DEFAULT_DFX_BUFFER_KB:
            events.extend(_BLOCK_EVENTS)
        events.extend(_VENDOR_EVENTS)
        for event in events:
            add(f'      ftrace_events: "{event}"')

    # Kernel buffer size and how often it is drained into the buffer above.
    add(f"      buffer_size_kb: {FTRACE_BUFFER_KB}")
    add("      drain_period_ms: 1000")
    add("    }")
    add("  }")
    add("}")

    # Process association; with memory, poll instead of a single scan.
    add("data_sources {")
    add("  config {")
    add('    name: "linux.process_stats"')
    add("    target_buffer: 1")
    if MEMORY_TAG in tag_set:
        add("    process_stats_config {")
        add("      proc_stats_poll_ms: 60000")
        add("    }")
    add("  }")
    add("}")

    add("data_sources {")
    add("  config {")
    add('    name: "android.surfaceflinger.frametimeline"')
    add("    target_buffer: 0")
    add("  }")
    add("}")

    if POWER_TAG in tag_set:
        add("data_sources {")
        add("  config {")
        add('    name: "android.power"')
        add("    target_buffer: 1")
        add("    android_power_config {")
        add(f"      battery_poll_ms: {5000 if long_trace else 1000}")
        add("      collect_power_rails: true")
        for counter in _BATTERY_COUNTERS:
            add(f"      battery_counters: {counter}")
        add("    }")
        add("  }")
        add("}")

    if MEMORY_TAG in tag_set:
        add("data_sources {")
        add("  config {")
        add('    name: "android.sys_stats"')
        add("    target_buffer: 1")
        add("    sys_stats_config {")
        add("      vmstat_period_ms: 1000")
        add("    }")
        add("  }")
        add("}")

    config = "\n".join(lines) + "\n"
    check_marker(config)
    return config


def check_marker(config: str) -> None:
    """Refuse config text that would end the heredoc early."""
    if MARKER in config:
        logger.error("config_contains_marker", marker=MARKER)
        raise ConfigBuildError(f"Config text contains the heredoc delimiter {MARKER}")


def heredoc_command(prefix: str, config: str) -> str:
    """Append config to a shell command as a quoted heredoc on stdin."""
    check_marker(config)
    return f"{prefix} <<'{MARKER}'\n{config}{MARKER}"
