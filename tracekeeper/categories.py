"""Available trace categories, queried live with a static fallback."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError

from tracekeeper.errors import CommandTimeout
from tracekeeper.log import get_logger
from tracekeeper.runner import ProcessRunner

logger = get_logger(__name__)

FTRACE_DATA_SOURCE = "linux.ftrace"

# Categories the live query is known to drop on some builds.
PATCHED_CATEGORIES = {
    "binder_driver": "Binder Kernel driver",
    "memreclaim": "Kernel Memory Reclaim",
}

FALLBACK_CATEGORIES = {
    "adb": "ADB",
    "aidl": "AIDL calls",
    "am": "Activity Manager",
    "audio": "Audio",
    "binder_driver": "Binder Kernel driver",
    "binder_lock": "Binder global lock trace",
    "bionic": "Bionic C Library",
    "camera": "Camera",
    "dalvik": "Dalvik VM",
    "database": "Database",
    "disk": "Disk I/O",
    "freq": "CPU Frequency",
    "gfx": "Graphics",
    "hal": "Hardware Modules",
    "i2c": "I2C Events",
    "idle": "CPU Idle",
    "input": "Input",
    "irq": "IRQ Events",
    "memory": "Memory",
    "memreclaim": "Kernel Memory Reclaim",
    "mmc": "eMMC commands",
    "network": "Network",
    "nnapi": "NNAPI",
    "pagecache": "Page cache",
    "pdx": "PDX services",
    "pm": "Package Manager",
    "power": "Power Management",
    "regulators": "Voltage and Current Regulators",
    "res": "Resource Loading",
    "rro": "Runtime Resource Overlay",
    "rs": "RenderScript",
    "sched": "CPU Scheduling",
    "sm": "Sync Manager",
    "ss": "System Server",
    "sync": "Synchronization",
    "thermal": "Thermal event",
    "vibrator": "Vibrator",
    "video": "Video",
    "view": "View System",
    "webview": "WebView",
    "wm": "Window Manager",
    "workq": "Kernel Workqueues",
}


@lru_cache(maxsize=1)
def _service_state_class() -> Any:
    """
    Message class for the slice of TracingServiceState we read.

    Only data_sources[].ds_descriptor.{name, ftrace_descriptor} is declared;
    every other field is skipped as unknown when parsing.
    """
    F = descriptor_pb2.FieldDescriptorProto
    proto = descriptor_pb2.FileDescriptorProto(
        name="tracekeeper/service_state.proto",
        package="tracekeeper",
        syntax="proto2"
    )

    def message(name: str, *fields: tuple[str, int, int, int, str]) -> None:
        msg = proto.message_type.add(name=name)
        for field_name, number, field_type, label, type_name in fields:
            field = msg.field.add(name=field_name, number=number, type=field_type, label=label)
            if type_name:
                field.type_name = type_name

    message(
        "AtraceCategory",
        ("name", 1, F.TYPE_STRING, F.LABEL_OPTIONAL, ""),
        ("description", 2, F.TYPE_STRING, F.LABEL_OPTIONAL, "")
    )
    message(
        "FtraceDescriptor",
        ("atrace_categories", 1, F.TYPE_MESSAGE, F.LABEL_REPEATED, ".tracekeeper.AtraceCategory")
    )
    message(
        "DataSourceDescriptor",
        ("name", 1, F.TYPE_STRING, F.LABEL_OPTIONAL, ""),
        ("ftrace_descriptor", 8, F.TYPE_MESSAGE, F.LABEL_OPTIONAL, ".tracekeeper.FtraceDescriptor")
    )
    message(
        "DataSource",
        ("ds_descriptor", 1, F.TYPE_MESSAGE, F.LABEL_OPTIONAL, ".tracekeeper.DataSourceDescriptor"),
        ("producer_id", 2, F.TYPE_INT32, F.LABEL_OPTIONAL, "")
    )
    message(
        "TracingServiceState",
        ("data_sources", 2, F.TYPE_MESSAGE, F.LABEL_REPEATED, ".tracekeeper.DataSource")
    )

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(proto.SerializeToString())
    return message_factory.GetMessageClass(pool.FindMessageTypeByName("tracekeeper.TracingServiceState"))


def parse_service_state(raw: bytes) -> dict[str, str]:
    """
    Pull atrace categories out of a serialized TracingServiceState.

    Raises:
        DecodeError: The bytes are not a valid message
    """
    state = _service_state_class()()
    state.ParseFromString(raw)
    categories: dict[str, str] = {}
    for data_source in state.data_sources:
        descriptor = data_source.ds_descriptor
        if descriptor.name != FTRACE_DATA_SOURCE:
            continue
        for category in descriptor.ftrace_descriptor.atrace_categories:
            if category.name:
                categories[category.name] = category.description
    return categories


def parse_category_lines(lines: list[str]) -> dict[str, str]:
    """Parse ``name - description`` lines as printed by ``atrace --list_categories``."""
    categories: dict[str, str] = {}
    for line in lines:
        fields = line.strip().split(" - ", 1)
        if len(fields) == 2:
            categories[fields[0]] = fields[1]
        else:
            logger.debug("category_line_unparsed", line=line)
    return categories


def with_patched_categories(categories: dict[str, str]) -> dict[str, str]:
    """Return a name-ordered copy that always includes PATCHED_CATEGORIES."""
    result = dict(categories)
    for name, description in PATCHED_CATEGORIES.items():
        if name not in result:
            result[name] = description
            logger.warning("category_patched", category=name)
    return dict(sorted(result.items()))


class CategoryCatalog:
    """Lists categories the platform can trace. Never raises; always returns a table."""

    def __init__(
        self,
        runner: ProcessRunner,
        source: str = "perfetto",
        binary: str | None = None,
        timeout: float = 10.0
    ):
        """
        Args:
            runner: Command runner
            source: "perfetto" to read --query-raw, "atrace" to read --list_categories
            binary: Collector binary, defaults to the source name
            timeout: Seconds before the query is abandoned
        """
        self.runner = runner
        self.source = source
        self.binary = binary or source
        self.timeout = timeout

    def list_categories(self) -> dict[str, str]:
        categories = self._query()
        if not categories:
            logger.warning("category_fallback", source=self.source)
            categories = dict(FALLBACK_CATEGORIES)
        return with_patched_categories(categories)

    def _query(self) -> dict[str, str]:
        if self.source == "atrace":
            command = f"{self.binary} --list_categories"
        else:
            command = f"{self.binary} --query-raw"
        try:
            result = self.runner.execute(command, timeout=self.timeout)
        except CommandTimeout:
            logger.error("category_query_timeout", command=command, timeout=self.timeout)
            return {}
        except OSError as exc:
            logger.error("category_query_failed", command=command, error=str(exc))
            return {}

        for line in result.stderr_lines():
            logger.error("category_query_stderr", line=line)
        if not result.ok:
            logger.error("category_query_failed", command=command, returncode=result.returncode)
            return {}

        if self.source == "atrace":
            return parse_category_lines(result.stdout_lines())
        try:
            return parse_service_state(result.stdout)
        except DecodeError as exc:
            logger.error("service_state_undecodable", error=str(exc))
            return {}
