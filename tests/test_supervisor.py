import sys
import threading
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from primesweep import (  # noqa: E402
    MonitorState,
    ProgressMonitor,
    SearchSupervisor,
    TerminationFlag,
)
from kernel_emulation import (  # noqa: E402
    FailingContext,
    FakeCandidateContext,
    FakeRangeContext,
    IdleContext,
    RecordingTelemetry,
)


class EventRecorder:
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def __call__(self, name, attributes):
        with self._lock:
            self.events.append((name, dict(attributes)))

    def names(self):
        return [name for name, _ in self.events]


class TerminationFlagTests(unittest.TestCase):
    def test_only_first_setter_wins(self):
        flag = TerminationFlag()
        self.assertFalse(flag.is_set())
        self.assertTrue(flag.try_set())
        self.assertFalse(flag.try_set())
        self.assertTrue(flag.is_set())

    def test_wait_returns_early_once_set(self):
        flag = TerminationFlag()
        self.assertFalse(flag.wait(0))
        flag.try_set()
        self.assertTrue(flag.wait(5.0))


class ProgressMonitorTests(unittest.TestCase):
    def test_range_scan_reports_first_prime(self):
        context = FakeRangeContext(10, 30, lanes=1)
        flag = TerminationFlag()
        outcome = ProgressMonitor(context, flag, poll_interval=0).run()

        self.assertEqual(outcome.state, MonitorState.FOUND)
        self.assertEqual(outcome.result.value, 11)
        self.assertTrue(outcome.authoritative)
        self.assertTrue(flag.is_set())
        self.assertEqual(context.status_history, [(10,), (11,)])

    def test_exhausted_range_stops_without_setting_flag(self):
        context = FakeRangeContext(8, 10, lanes=1)
        flag = TerminationFlag()
        outcome = ProgressMonitor(context, flag, poll_interval=0).run()

        self.assertEqual(outcome.state, MonitorState.STOPPED)
        self.assertEqual(outcome.stop_reason, "exhausted")
        self.assertIsNone(outcome.result)
        self.assertFalse(flag.is_set())

    def test_stops_when_flag_already_set(self):
        flag = TerminationFlag()
        flag.try_set()
        outcome = ProgressMonitor(IdleContext(), flag, poll_interval=0).run()

        self.assertEqual(outcome.state, MonitorState.STOPPED)
        self.assertEqual(outcome.stop_reason, "flag")

    def test_late_result_is_not_authoritative(self):
        flag = TerminationFlag()
        flag.try_set()
        outcome = ProgressMonitor(FakeCandidateContext([4, 7]), flag, poll_interval=0).run()

        self.assertEqual(outcome.state, MonitorState.FOUND)
        self.assertEqual(outcome.result.value, 7)
        self.assertFalse(outcome.authoritative)

    def test_status_preview_limits_lanes(self):
        context = FakeRangeContext(100, 200, lanes=16)
        ProgressMonitor(context, TerminationFlag(), poll_interval=0, status_preview=10).run()
        self.assertTrue(all(len(snapshot) == 10 for snapshot in context.status_history))

    def test_telemetry_sampled_every_interval(self):
        telemetry = RecordingTelemetry()
        recorder = EventRecorder()
        context = IdleContext(complete_after=25, device_index=3)
        monitor = ProgressMonitor(
            context,
            TerminationFlag(),
            telemetry=telemetry,
            poll_interval=0,
            sampling_interval=10,
            on_event=recorder,
        )
        outcome = monitor.run()

        self.assertEqual(outcome.stop_reason, "exhausted")
        self.assertEqual(outcome.ticks, 25)
        # ticks 0, 10 and 20
        self.assertEqual(telemetry.queries, [3, 3, 3])
        self.assertEqual(len(monitor.samples), 3)
        self.assertEqual(recorder.names().count("monitor.sample"), 3)

    def test_telemetry_failure_errors_monitor_only(self):
        telemetry = RecordingTelemetry(failing=[0])
        flag = TerminationFlag()
        outcome = ProgressMonitor(
            IdleContext(complete_after=5), flag, telemetry=telemetry, poll_interval=0
        ).run()

        self.assertEqual(outcome.state, MonitorState.ERRORED)
        self.assertIn("sensor unavailable", outcome.error)
        self.assertFalse(flag.is_set())

    def test_read_failure_errors_monitor(self):
        recorder = EventRecorder()
        outcome = ProgressMonitor(
            FailingContext(fail_on_poll=2), TerminationFlag(), poll_interval=0, on_event=recorder
        ).run()

        self.assertEqual(outcome.state, MonitorState.ERRORED)
        self.assertEqual(outcome.ticks, 1)
        self.assertIn("monitor.error", recorder.names())


class SearchSupervisorTests(unittest.TestCase):
    def test_single_device_range_scan(self):
        recorder = EventRecorder()
        supervisor = SearchSupervisor([FakeRangeContext(10, 30)], poll_interval=0, on_event=recorder)
        report = supervisor.run()

        self.assertTrue(report.found)
        self.assertEqual(report.winner.value, 11)
        self.assertEqual(report.winner.device_index, 0)
        self.assertTrue(report.flag_set)
        self.assertEqual(recorder.names()[-1], "search.complete")
        self.assertIn("Prime found by device 0: 11", report.summary())

    def test_winner_logged_once_and_lane_status_at_debug(self):
        with self.assertLogs("primesweep.supervisor", level="DEBUG") as captured:
            SearchSupervisor([FakeRangeContext(10, 30)], poll_interval=0).run()

        info = [r.getMessage() for r in captured.records if r.levelname == "INFO"]
        self.assertEqual(info.count("Prime found by device 0: 11"), 1)
        status = [r for r in captured.records if r.getMessage().startswith("Lane status")]
        self.assertTrue(status)
        self.assertTrue(all(r.levelname == "DEBUG" for r in status))

    def test_no_primes_in_range(self):
        contexts = [FakeRangeContext(8, 10, device_index=i) for i in range(2)]
        report = SearchSupervisor(contexts, poll_interval=0).run()

        self.assertFalse(report.found)
        self.assertFalse(report.flag_set)
        self.assertTrue(all(o.stop_reason == "exhausted" for o in report.outcomes))
        self.assertEqual(report.summary()[0], "No prime found in the range.")
        self.assertEqual(report.summary()[-1], "Computation finished.")

    def test_candidate_list_reports_prime_candidate(self):
        context = FakeCandidateContext([4, 6, 7, 9])
        self.assertEqual(context.verdicts, (0, 0, 1, 0))
        report = SearchSupervisor([context], poll_interval=0).run()
        self.assertEqual(report.winner.value, 7)

    def test_redundant_devices_yield_one_authoritative_result(self):
        contexts = [FakeRangeContext(10, 30, lanes=2, device_index=i) for i in range(4)]
        report = SearchSupervisor(contexts, poll_interval=0).run()

        authoritative = [o for o in report.outcomes if o.authoritative]
        self.assertEqual(len(authoritative), 1)
        self.assertEqual(report.winner, authoritative[0].result)
        self.assertIn(report.winner.value, (11, 13))
        for outcome in report.outcomes:
            self.assertIn(outcome.state, (MonitorState.FOUND, MonitorState.STOPPED))

    def test_idle_device_stops_on_flag(self):
        idle = IdleContext(device_index=1)
        report = SearchSupervisor([FakeRangeContext(10, 30), idle], poll_interval=0.01).run()

        outcomes = {o.device_index: o for o in report.outcomes}
        self.assertEqual(outcomes[0].state, MonitorState.FOUND)
        self.assertEqual(outcomes[1].state, MonitorState.STOPPED)
        self.assertEqual(outcomes[1].stop_reason, "flag")

    def test_read_failure_is_isolated(self):
        contexts = [
            FailingContext(device_index=0),
            FakeRangeContext(24, 28, device_index=1),
            FakeRangeContext(10, 30, device_index=2),
        ]
        report = SearchSupervisor(contexts, poll_interval=0).run()

        outcomes = {o.device_index: o for o in report.outcomes}
        self.assertEqual(outcomes[0].state, MonitorState.ERRORED)
        self.assertEqual(outcomes[1].state, MonitorState.STOPPED)
        self.assertEqual(report.winner.value, 11)
        self.assertTrue(any("Device 0 failed" in line for line in report.summary()))

    def test_read_failure_does_not_set_flag(self):
        contexts = [FailingContext(device_index=0), FakeRangeContext(24, 28, device_index=1)]
        report = SearchSupervisor(contexts, poll_interval=0).run()

        self.assertFalse(report.flag_set)
        self.assertIsNone(report.winner)

    def test_unexpected_exception_is_recorded(self):
        context = FailingContext(device_index=5, error=ValueError("corrupt snapshot"))
        report = SearchSupervisor([context], poll_interval=0).run()

        self.assertEqual(report.outcomes[0].state, MonitorState.ERRORED)
        self.assertEqual(report.outcomes[0].error, "corrupt snapshot")

    def test_telemetry_failure_on_one_device_is_isolated(self):
        telemetry = RecordingTelemetry(failing=[1])
        contexts = [FakeRangeContext(10, 30, device_index=0), IdleContext(device_index=1)]
        report = SearchSupervisor(contexts, telemetry=telemetry, poll_interval=0.01).run()

        outcomes = {o.device_index: o for o in report.outcomes}
        self.assertEqual(outcomes[1].state, MonitorState.ERRORED)
        self.assertEqual(report.winner.value, 11)

    def test_rejects_invalid_arguments(self):
        with self.assertRaises(ValueError):
            SearchSupervisor([])
        with self.assertRaises(ValueError):
            SearchSupervisor([IdleContext()], sampling_interval=0)
        with self.assertRaises(ValueError):
            SearchSupervisor([IdleContext()], poll_interval=-1)


if __name__ == "__main__":
    unittest.main()
