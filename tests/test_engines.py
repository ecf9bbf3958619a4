import json
import os
import stat
import tempfile
import unittest
from pathlib import Path

from fakes import FakeCollector, FakeRunner, timeout_error
from tracekeeper.config_builder import MARKER
from tracekeeper.engines import StartResult, create_engine
from tracekeeper.engines.legacy import LegacyEngine
from tracekeeper.engines.perfetto import PerfettoEngine
from tracekeeper.runner import CommandResult
from tracekeeper.session import SessionKind
from tracekeeper.settings import TracerSettings
from tracekeeper.telemetry import DUMP_SIZE_MB, DUMP_TIME, TelemetryStore

FANS = SessionKind.FANS
DFX = SessionKind.DFX


def _start(engine, kind=FANS, tags=("gfx", "am"), buffer_kb=4096, apps=False):
    return engine.start(list(tags), buffer_kb, apps, False, 0, 0, kind)


class EngineTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.telemetry_path = self.root / "props.json"
        self.settings = TracerSettings(
            traces_root=self.root,
            telemetry_path=self.telemetry_path,
            dump_wait_timeout_ms=3000
        )

    def tearDown(self):
        self._tmp.cleanup()


class TestCreateEngine(EngineTestCase):
    def test_variant_follows_settings(self):
        self.assertIsInstance(create_engine(self.settings, FakeRunner()), PerfettoEngine)
        legacy = create_engine(self.settings.model_copy(update={"engine": "atrace"}), FakeRunner())
        self.assertIsInstance(legacy, LegacyEngine)
        self.assertEqual(legacy.output_extension, "ctrace")


class TestPerfettoEngine(EngineTestCase):
    def test_is_running_exit_codes(self):
        for code, expected in [(0, True), (2, False), (1, False)]:
            runner = FakeRunner().on("--is_detached=Fanstrace", CommandResult(code))
            self.assertEqual(PerfettoEngine(self.settings, runner).is_running(FANS), expected)

    def test_is_running_uses_kind_tag(self):
        runner = FakeRunner().on("--is_detached", CommandResult(2))
        PerfettoEngine(self.settings, runner).is_running(DFX)
        self.assertEqual(runner.commands, ["perfetto --is_detached=DFXtrace"])

    def test_is_running_timeout_is_not_running(self):
        runner = FakeRunner().on("--is_detached", raises=timeout_error())
        self.assertFalse(PerfettoEngine(self.settings, runner).is_running(FANS))

    def test_start_command(self):
        runner = FakeRunner().on("--is_detached", CommandResult(2))
        self.assertEqual(_start(PerfettoEngine(self.settings, runner)), StartResult.STARTED)

        detach = runner.ran("--detach=")
        self.assertEqual(len(detach), 1)
        temp = self.settings.temp_path(FANS)
        self.assertTrue(detach[0].startswith(f"perfetto --detach=Fanstrace -o {temp} -c - --txt <<'{MARKER}'\n"))
        self.assertIn('atrace_categories: "gfx"', detach[0])
        self.assertTrue(detach[0].endswith(MARKER))

    def test_start_clears_stale_temp_file(self):
        temp = self.settings.temp_path(FANS)
        temp.write_bytes(b"stale")
        runner = FakeRunner().on("--is_detached", CommandResult(2))
        _start(PerfettoEngine(self.settings, runner))
        self.assertFalse(temp.exists())

    def test_start_already_running(self):
        runner = FakeRunner().on("--is_detached", CommandResult(0))
        self.assertEqual(_start(PerfettoEngine(self.settings, runner)), StartResult.ALREADY_RUNNING)
        self.assertEqual(runner.ran("--detach="), [])

    def test_start_timeout_fails(self):
        runner = FakeRunner().on("--is_detached", CommandResult(2)).on("--detach=", raises=timeout_error())
        self.assertEqual(_start(PerfettoEngine(self.settings, runner)), StartResult.FAILED)

    def test_start_nonzero_fails(self):
        runner = FakeRunner().on("--is_detached", CommandResult(2)).on("--detach=", CommandResult(1))
        self.assertEqual(_start(PerfettoEngine(self.settings, runner)), StartResult.FAILED)

    def test_start_malformed_config_fails(self):
        runner = FakeRunner().on("--is_detached", CommandResult(2))
        engine = PerfettoEngine(self.settings, runner)
        self.assertEqual(_start(engine, tags=[MARKER]), StartResult.FAILED)
        self.assertEqual(runner.ran("--detach="), [])

    def test_stop_and_force_stop(self):
        runner = FakeRunner().on("--is_detached", CommandResult(0))
        engine = PerfettoEngine(self.settings, runner)
        engine.stop(DFX)
        engine.force_stop(FANS)
        self.assertEqual(
            runner.ran("--stop"),
            ["perfetto --stop --attach=DFXtrace", "perfetto --stop --attach=Fanstrace"]
        )

    def test_dump_renames_and_records_telemetry(self):
        collector = FakeCollector(payload=b"p" * 2048)
        engine = PerfettoEngine(self.settings, collector)
        self.assertEqual(_start(engine), StartResult.STARTED)
        self.assertTrue(engine.is_running(FANS))

        output = self.root / "fans" / "FANS.20240101000000.ptrace"
        self.assertTrue(engine.dump(output, FANS))
        self.assertFalse(self.settings.temp_path(FANS).exists())
        self.assertEqual(output.read_bytes(), b"p" * 2048)
        self.assertFalse(engine.is_running(FANS))
        self.assertEqual(stat.S_IMODE(os.stat(output).st_mode), 0o666)

        with open(self.telemetry_path) as f:
            props = json.load(f)
        self.assertEqual(props[DUMP_SIZE_MB], "0.00")
        self.assertEqual(len(props[DUMP_TIME]), 17)

    def test_dump_fails_when_collector_writes_nothing(self):
        collector = FakeCollector(stop_writes=False)
        engine = PerfettoEngine(self.settings, collector)
        _start(engine)
        output = self.root / "fans" / "out.ptrace"
        self.assertFalse(engine.dump(output, FANS))
        self.assertFalse(output.exists())

    def test_dump_fails_when_file_never_appears(self):
        settings = self.settings.model_copy(update={"dump_wait_timeout_ms": 200})
        runner = FakeRunner().on("--is_detached", CommandResult(2))
        engine = PerfettoEngine(settings, runner)
        self.assertFalse(engine.dump(self.root / "out.ptrace", FANS))
        self.assertEqual(runner.ran("--stop"), ["perfetto --stop --attach=Fanstrace"])


class TestLegacyEngine(EngineTestCase):
    def setUp(self):
        super().setUp()
        self.tracing_on = self.root / "tracing_on"
        self.settings = self.settings.model_copy(update={
            "engine": "atrace",
            "tracing_on_paths": (self.root / "missing_tracing_on", self.tracing_on),
        })

    def test_start_command(self):
        runner = FakeRunner()
        engine = LegacyEngine(self.settings, runner)
        self.assertEqual(_start(engine, tags=["view", "gfx"], buffer_kb=2048, apps=True), StartResult.STARTED)
        self.assertEqual(runner.commands, ["atrace --async_start -c -b 2048 -a '*' gfx view"])

    def test_start_without_apps(self):
        runner = FakeRunner()
        _start(LegacyEngine(self.settings, runner), tags=["gfx"], buffer_kb=1024)
        self.assertEqual(runner.commands, ["atrace --async_start -c -b 1024 gfx"])

    def test_start_failure(self):
        runner = FakeRunner().on("--async_start", CommandResult(1))
        self.assertEqual(_start(LegacyEngine(self.settings, runner)), StartResult.FAILED)

    def test_stop(self):
        runner = FakeRunner()
        LegacyEngine(self.settings, runner).stop(FANS)
        self.assertEqual(runner.commands, ["atrace --async_stop > /dev/null"])

    def test_dump_appends_process_list(self):
        output = self.root / "FANS.20240101000000.ctrace"

        def write_trace(command):
            output.write_bytes(b"TRACE\n")

        runner = FakeRunner()
        runner.on("--async_stop -z -c -o", action=write_trace)
        runner.on("ps -AT", CommandResult(0, b"PID TID CMD\n"))
        engine = LegacyEngine(self.settings, runner, TelemetryStore())

        self.assertTrue(engine.dump(output, FANS))
        self.assertEqual(output.read_bytes(), b"TRACE\nPID TID CMD\n")
        self.assertEqual(runner.commands, [f"atrace --async_stop -z -c -o {output}", "ps -AT"])

    def test_dump_failure(self):
        runner = FakeRunner().on("--async_stop", CommandResult(1))
        self.assertFalse(LegacyEngine(self.settings, runner).dump(self.root / "x.ctrace", FANS))

    def test_is_running_requires_user_initiated_flag(self):
        self.tracing_on.write_text("1\n")
        self.assertFalse(LegacyEngine(self.settings, FakeRunner()).is_running(FANS))

        settings = self.settings.model_copy(update={"user_initiated": True})
        self.assertTrue(LegacyEngine(settings, FakeRunner()).is_running(FANS))
        self.tracing_on.write_text("0\n")
        self.assertFalse(LegacyEngine(settings, FakeRunner()).is_running(FANS))

    def test_is_running_without_tracing_on_file(self):
        settings = self.settings.model_copy(update={"user_initiated": True})
        self.assertFalse(LegacyEngine(settings, FakeRunner()).is_running(FANS))


if __name__ == "__main__":
    unittest.main()
