import os
import re
import tempfile
import unittest
from pathlib import Path

from fakes import FakeCollector, FakeRunner, service_state_bytes
from tracekeeper.controller import TraceController, TracingFlags
from tracekeeper.engines import StartResult
from tracekeeper.runner import CommandResult
from tracekeeper.session import SessionKind
from tracekeeper.settings import TracerSettings
from tracekeeper.telemetry import DUMP_SIZE_MB, TRACE_NAME

FANS = SessionKind.FANS
DFX = SessionKind.DFX

LIVE_CATEGORIES = {"am": "Activity Manager", "gfx": "Graphics", "view": "View System", "sched": "CPU Scheduling"}


class ControllerTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.settings = TracerSettings(
            traces_root=self.root,
            telemetry_path=self.root / "state" / "props.json",
            flags_path=self.root / "state" / "flags.json",
            dump_wait_timeout_ms=5000,
            recovery_settle_s=0
        )
        self.collector = FakeCollector(payload=b"t" * 4096)
        self.collector.on("--query-raw", CommandResult(0, service_state_bytes(LIVE_CATEGORIES)))

    def tearDown(self):
        self._tmp.cleanup()

    def controller(self, settings=None, runner=None):
        return TraceController(settings or self.settings, runner=runner or self.collector)


class TestStartStop(ControllerTestCase):
    def test_full_capture_cycle(self):
        controller = self.controller()

        self.assertEqual(controller.start_tracing(FANS), StartResult.STARTED)
        temp = self.settings.temp_path(FANS)
        self.assertTrue(temp.exists())
        self.assertTrue(controller.engine.is_running(FANS))
        self.assertTrue(controller.flags.get(FANS))

        saved = controller.stop_tracing(FANS, forced=True, wait_for_cleanup=True)
        self.assertIsNotNone(saved)
        self.assertEqual(saved.parent, self.root / "fans")
        self.assertRegex(saved.name, r"^FANS\.\d{14}\.ptrace$")
        self.assertEqual(saved.read_bytes(), b"t" * 4096)
        self.assertFalse(temp.exists())
        self.assertFalse(controller.engine.is_running(FANS))
        self.assertFalse(controller.flags.get(FANS))

        self.assertEqual(controller.telemetry.get(TRACE_NAME), saved.name)
        self.assertEqual(controller.telemetry.get(DUMP_SIZE_MB), "0.00")

    def test_start_uses_available_default_tags(self):
        self.controller().start_tracing(FANS)
        detach = self.collector.ran("--detach=Fanstrace")[0]
        tags = set(re.findall(r'atrace_categories: "(\w+)"', detach))
        self.assertEqual(tags, {"am", "gfx", "view", "binder_driver", "memreclaim"})

    def test_second_start_is_not_needed(self):
        controller = self.controller()
        controller.start_tracing(FANS)
        self.assertEqual(controller.start_tracing(FANS), StartResult.ALREADY_RUNNING)
        self.assertEqual(len(self.collector.ran("--detach=")), 1)

    def test_kinds_run_side_by_side(self):
        controller = self.controller()
        self.assertEqual(controller.start_tracing(FANS), StartResult.STARTED)
        self.assertEqual(controller.start_tracing(DFX), StartResult.STARTED)

        saved = controller.stop_tracing(DFX, forced=False, wait_for_cleanup=True)
        self.assertEqual(saved.parent, self.root / "DFX")
        self.assertRegex(saved.name, r"^DFX\.\d{14}\.ptrace$")
        self.assertTrue(controller.engine.is_running(FANS))
        self.assertTrue(self.settings.temp_path(FANS).exists())

    def test_unforced_primary_stop_lands_in_root(self):
        controller = self.controller()
        controller.start_tracing(FANS)
        saved = controller.stop_tracing(FANS, forced=False, wait_for_cleanup=True)
        self.assertEqual(saved.parent, self.root)
        self.assertTrue(saved.exists())
        self.assertEqual(controller.telemetry.get(TRACE_NAME), "")

    def test_stop_uses_session_output_directory(self):
        sessions = dict(self.settings.sessions)
        sessions[FANS] = sessions[FANS].model_copy(update={"output_dirname": "primary"})
        controller = self.controller(settings=self.settings.model_copy(update={"sessions": sessions}))
        controller.start_tracing(FANS)
        saved = controller.stop_tracing(FANS, wait_for_cleanup=True)
        self.assertEqual(saved.parent, self.root / "primary")

    def test_stop_with_nothing_running(self):
        controller = self.controller()
        self.assertIsNone(controller.stop_tracing(FANS, wait_for_cleanup=True))
        self.assertEqual(self.collector.ran("--stop"), [])

    def test_failed_start_resets(self):
        runner = FakeRunner()
        runner.on("--query-raw", CommandResult(0, service_state_bytes(LIVE_CATEGORIES)))
        runner.on("--is_detached", CommandResult(2))
        runner.on("--detach=", CommandResult(1, b"", b"permission denied"))
        controller = self.controller(runner=runner)

        self.assertEqual(controller.start_tracing(FANS), StartResult.FAILED)
        self.assertFalse(controller.flags.get(FANS))
        self.assertEqual(runner.ran("--stop --attach="), ["perfetto --stop --attach=Fanstrace"])

    def test_stop_sweeps_old_captures(self):
        controller = self.controller()
        old = self.root / "FANS.20200101000000.ptrace"
        old.write_bytes(b"old")
        older = self.root / "FANS.20190101000000.ptrace"
        older.write_bytes(b"older")
        os.utime(old, (1577836800, 1577836800))
        os.utime(older, (1546300800, 1546300800))

        controller.start_tracing(FANS)
        controller.stop_tracing(FANS, forced=False, wait_for_cleanup=True)

        remaining = sorted(p.name for p in self.root.iterdir() if p.is_file())
        self.assertEqual(len(remaining), 1)
        self.assertNotIn(old.name, remaining)
        self.assertNotIn(older.name, remaining)


class TestTags(ControllerTestCase):
    def test_active_and_unavailable_tags(self):
        controller = self.controller()
        self.assertEqual(controller.active_tags(["gfx", "webview"]), {"gfx"})
        self.assertEqual(controller.active_tags(["gfx", "webview"], only_available=False), {"gfx", "webview"})
        self.assertEqual(controller.unavailable_tags(["gfx", "webview"]), {"webview"})
        self.assertIn("camera", controller.unavailable_tags())

    def test_categories_queried_once(self):
        controller = self.controller()
        controller.active_tags()
        controller.active_tags(["gfx"])
        self.assertEqual(len(self.collector.ran("--query-raw")), 1)


class TestUpdateTracing(ControllerTestCase):
    def test_starts_and_stops_to_match_desired(self):
        controller = self.controller()
        actions = controller.update_tracing({FANS: True, DFX: False})
        self.assertEqual(actions, {FANS: "started", DFX: "unchanged"})

        actions = controller.update_tracing({FANS: False})
        self.assertEqual(actions, {FANS: "stopped", DFX: "unchanged"})
        self.assertEqual(len(list((self.root / "fans").glob("FANS.*.ptrace"))), 1)

    def test_uses_stored_flags(self):
        controller = self.controller()
        controller.flags.set(DFX, True)
        self.assertEqual(controller.update_tracing(), {FANS: "unchanged", DFX: "started"})

    def test_auto_start_disabled_on_low_ram(self):
        settings = self.settings.model_copy(update={"low_ram": True})
        controller = self.controller(settings=settings)
        actions = controller.update_tracing({FANS: True, DFX: True})
        self.assertEqual(actions, {FANS: "skipped", DFX: "started"})
        self.assertEqual(self.collector.ran("--detach=Fanstrace"), [])

    def test_assume_off_defers_to_reconciler(self):
        controller = self.controller()
        controller.start_tracing(FANS)
        actions = controller.update_tracing({FANS: True, DFX: False}, assume_off=True)
        self.assertEqual(actions[FANS], "unchanged")
        self.assertEqual(len(self.collector.ran("--detach=Fanstrace")), 1)


class TestTracingFlags(unittest.TestCase):
    def test_persisted_across_instances(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "flags.json"
            TracingFlags(path).set(DFX, True)
            flags = TracingFlags(path)
            self.assertTrue(flags.get(DFX))
            self.assertFalse(flags.get(FANS))

    def test_unreadable_file_starts_empty(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "flags.json"
            path.write_text("not json")
            self.assertFalse(TracingFlags(path).get(FANS))


class TestClearSavedTraces(ControllerTestCase):
    def test_clears_primary_directory(self):
        controller = self.controller()
        controller.start_tracing(FANS)
        controller.stop_tracing(FANS, wait_for_cleanup=True)
        self.assertEqual(controller.clear_saved_traces(), 1)
        self.assertEqual(list((self.root / "fans").iterdir()), [])


if __name__ == "__main__":
    unittest.main()
