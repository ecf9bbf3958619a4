"""Test doubles for the process runner and collector."""

import re
from pathlib import Path

from tracekeeper.categories import _service_state_class
from tracekeeper.errors import CommandTimeout
from tracekeeper.runner import CommandResult


class FakeRunner:
    """Records commands and answers them from registered rules; later rules win."""

    def __init__(self):
        self.commands = []
        self._rules = []

    def on(self, fragment, result=None, action=None, raises=None):
        self._rules.append((fragment, result, action, raises))
        return self

    def execute(self, command, cwd=None, timeout=None):
        self.commands.append(command)
        for fragment, result, action, raises in reversed(self._rules):
            if fragment not in command:
                continue
            if action is not None:
                action(command)
            if raises is not None:
                raise raises
            return result if result is not None else CommandResult(0)
        return CommandResult(0)

    def ran(self, fragment):
        return [c for c in self.commands if fragment in c]


class FakeCollector(FakeRunner):
    """
    Simulates a perfetto daemon: --detach creates an empty temp file, --stop
    fills it, --is_detached reports attachment.
    """

    def __init__(self, payload=b"trace-bytes" * 100, stop_writes=True):
        super().__init__()
        self.attached = {}
        self.outputs = {}
        self.payload = payload
        self.stop_writes = stop_writes

    def execute(self, command, cwd=None, timeout=None):
        detach = re.search(r"--detach=(\S+) -o (\S+)", command)
        if detach:
            self.commands.append(command)
            tag, path = detach.group(1), Path(detach.group(2))
            self.attached[tag] = True
            self.outputs[tag] = path
            path.write_bytes(b"")
            return CommandResult(0)

        stop = re.search(r"--stop --attach=(\S+)", command)
        if stop:
            self.commands.append(command)
            tag = stop.group(1)
            if self.attached.get(tag):
                self.attached[tag] = False
                if self.stop_writes and tag in self.outputs:
                    self.outputs[tag].write_bytes(self.payload)
                return CommandResult(0)
            return CommandResult(1)

        query = re.search(r"--is_detached=(\S+)", command)
        if query:
            self.commands.append(command)
            return CommandResult(0 if self.attached.get(query.group(1)) else 2)

        return super().execute(command, cwd, timeout)


def timeout_error(command="cmd", timeout=1.0):
    return CommandTimeout(command, timeout)


class FakeEngine:
    """Engine stand-in with a settable attachment state."""

    name = "FAKE"
    output_extension = "ptrace"

    def __init__(self, settings, running=False, stays_attached=False):
        self.settings = settings
        self.running = running
        self.stays_attached = stays_attached
        self.force_stops = []
        self.is_running_calls = 0

    def is_running(self, kind):
        self.is_running_calls += 1
        return self.running

    def force_stop(self, kind):
        self.force_stops.append(kind)
        if not self.stays_attached:
            self.running = False

    def temp_path(self, kind):
        return self.settings.temp_path(kind)


def service_state_bytes(categories, data_source="linux.ftrace"):
    """Serialized TracingServiceState advertising the given atrace categories."""
    state = _service_state_class()()
    source = state.data_sources.add()
    source.producer_id = 1
    source.ds_descriptor.name = data_source
    for name, description in categories.items():
        category = source.ds_descriptor.ftrace_descriptor.atrace_categories.add()
        category.name = name
        category.description = description
    other = state.data_sources.add()
    other.ds_descriptor.name = "android.power"
    return state.SerializeToString()
