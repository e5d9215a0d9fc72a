"""Supervision of in-flight search kernels.

Every launched :class:`~primesweep.runtime.ExecutionContext` gets its own
host thread running a :class:`ProgressMonitor`.  Monitors only read their own
device's buffers and only write the shared :class:`TerminationFlag`, so they
never wait on each other.  The supervisor:

* starts one monitor thread per device and joins them all
* resolves races between devices with test-and-set on the flag
* aggregates per-device outcomes into a :class:`SearchReport`

Stopping is advisory.  Kernels keep running on the hardware after the flag is
set; only host-side polling ends.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Mapping, Optional, Sequence, Tuple

from .runtime import BufferReadError, ExecutionContext, TelemetryError
from .telemetry import DeviceTelemetry, TelemetrySample

__all__ = [
    "MonitorOutcome",
    "MonitorState",
    "ProgressMonitor",
    "SearchReport",
    "SearchResult",
    "SearchSupervisor",
    "TerminationFlag",
]

EventCallback = Callable[[str, Mapping[str, object]], None]


class TerminationFlag:
    """Shared stop signal with a single false to true transition."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = False
        self._event = threading.Event()

    def is_set(self) -> bool:
        with self._lock:
            return self._value

    def try_set(self) -> bool:
        """Set the flag; return ``True`` only for the caller that flipped it."""

        with self._lock:
            if self._value:
                return False
            self._value = True
        self._event.set()
        return True

    def wait(self, timeout: Optional[float]) -> bool:
        """Sleep up to ``timeout`` seconds, waking early once the flag is set."""

        return self._event.wait(timeout)


class MonitorState(str, enum.Enum):
    POLLING = "polling"
    FOUND = "found"
    STOPPED = "stopped"
    ERRORED = "errored"


@dataclass(frozen=True)
class SearchResult:
    device_index: int
    value: int


@dataclass(frozen=True)
class MonitorOutcome:
    """Terminal state reached by one device's monitor."""

    device_index: int
    state: MonitorState
    ticks: int
    result: Optional[SearchResult] = None
    authoritative: bool = False
    stop_reason: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class SearchReport:
    winner: Optional[SearchResult]
    outcomes: Tuple[MonitorOutcome, ...]
    flag_set: bool
    started_at: float
    completed_at: float

    @property
    def found(self) -> bool:
        return self.winner is not None

    @property
    def duration(self) -> float:
        return self.completed_at - self.started_at

    def summary(self) -> List[str]:
        lines = []
        if self.winner is None:
            lines.append("No prime found in the range.")
        else:
            lines.append(f"Prime found by device {self.winner.device_index}: {self.winner.value}")
        for outcome in self.outcomes:
            if outcome.state is MonitorState.ERRORED:
                lines.append(f"Device {outcome.device_index} failed: {outcome.error}")
        lines.append("Computation finished.")
        return lines


class ProgressMonitor:
    """Polling loop for a single device.

    Each tick checks whether the kernel has completed, snapshots the status and
    result buffers, then decides between Found, Stopped or another tick.  The
    completion check comes first so that a finished kernel's buffers are read
    after its last write.  Telemetry is sampled every ``sampling_interval``
    ticks, starting with the first one.
    """

    def __init__(
        self,
        context: ExecutionContext,
        flag: TerminationFlag,
        *,
        telemetry: Optional[DeviceTelemetry] = None,
        poll_interval: float = 1.0,
        sampling_interval: int = 10,
        status_preview: int = 10,
        on_event: Optional[EventCallback] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._context = context
        self._flag = flag
        self._telemetry = telemetry
        self._poll_interval = poll_interval
        self._sampling_interval = sampling_interval
        self._status_preview = status_preview
        self._on_event = on_event
        self._logger = logger or logging.getLogger("primesweep.supervisor")
        self.state = MonitorState.POLLING
        self.samples: List[TelemetrySample] = []

    @property
    def device_index(self) -> int:
        return self._context.device_index

    def run(self) -> MonitorOutcome:
        elapsed = 0
        try:
            while True:
                complete = self._context.is_complete()
                status = self._context.read_status(self._status_preview)
                if status:
                    self._log_status(status)
                value = self._context.read_result()
                if value is not None:
                    return self._found(value, elapsed)
                if self._flag.is_set():
                    return self._stopped("flag", elapsed)
                if complete:
                    return self._stopped("exhausted", elapsed)
                if self._telemetry is not None and elapsed % self._sampling_interval == 0:
                    self._sample(self._telemetry)
                self._flag.wait(self._poll_interval)
                elapsed += 1
        except (BufferReadError, TelemetryError) as exc:
            self.state = MonitorState.ERRORED
            self._logger.error("Monitor for device %s stopped: %s", self.device_index, exc)
            self._notify("monitor.error", {"device_index": self.device_index, "error": str(exc)})
            return MonitorOutcome(
                device_index=self.device_index,
                state=MonitorState.ERRORED,
                ticks=elapsed,
                error=str(exc),
            )

    def _found(self, value: int, elapsed: int) -> MonitorOutcome:
        self.state = MonitorState.FOUND
        result = SearchResult(device_index=self.device_index, value=value)
        authoritative = self._flag.try_set()
        if authoritative:
            self._logger.debug("Device %s set the termination flag with %s", self.device_index, value)
        else:
            self._logger.info(
                "Device %s also found %s after another device won; not authoritative",
                self.device_index,
                value,
            )
        self._notify(
            "monitor.found",
            {"device_index": self.device_index, "value": value, "authoritative": authoritative},
        )
        return MonitorOutcome(
            device_index=self.device_index,
            state=MonitorState.FOUND,
            ticks=elapsed,
            result=result,
            authoritative=authoritative,
        )

    def _stopped(self, reason: str, elapsed: int) -> MonitorOutcome:
        self.state = MonitorState.STOPPED
        if reason == "exhausted":
            self._logger.info("Device %s exhausted its search space", self.device_index)
        else:
            self._logger.debug("Device %s stopped polling; another device found a result", self.device_index)
        self._notify("monitor.stopped", {"device_index": self.device_index, "reason": reason})
        return MonitorOutcome(
            device_index=self.device_index,
            state=MonitorState.STOPPED,
            ticks=elapsed,
            stop_reason=reason,
        )

    def _sample(self, telemetry: DeviceTelemetry) -> None:
        sample = telemetry.query(self.device_index)
        self.samples.append(sample)
        self._logger.info(
            "Device %s: Utilization: %s%%, Temperature: %s°C",
            sample.device_index,
            sample.utilization_percent,
            sample.temperature_celsius,
        )
        self._notify("monitor.sample", sample.as_dict())

    def _log_status(self, status: Sequence[int]) -> None:
        self._logger.debug("Lane status for device %s: %s", self.device_index, ", ".join(map(str, status)))

    def _notify(self, name: str, attributes: Mapping[str, object]) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(name, attributes)
        except Exception:
            self._logger.exception("Event callback raised an exception")


class SearchSupervisor:
    """Run one :class:`ProgressMonitor` thread per launched context.

    Parameters
    ----------
    contexts:
        Launched execution contexts, one per device.
    telemetry:
        Optional sampler queried from inside each monitor's tick.  ``None``
        disables sampling.
    poll_interval:
        Seconds between polling ticks.
    sampling_interval:
        Telemetry is sampled on ticks where ``elapsed % sampling_interval == 0``.
    status_preview:
        Number of leading lanes included in each status log line.
    on_event:
        Callback receiving ``(name, attributes)`` for monitor lifecycle events,
        typically :meth:`primesweep.runtime.SearchRuntime.emit`.
    """

    def __init__(
        self,
        contexts: Sequence[ExecutionContext],
        *,
        telemetry: Optional[DeviceTelemetry] = None,
        poll_interval: float = 1.0,
        sampling_interval: int = 10,
        status_preview: int = 10,
        on_event: Optional[EventCallback] = None,
    ) -> None:
        if not contexts:
            raise ValueError("At least one execution context is required")
        if poll_interval < 0:
            raise ValueError("poll_interval must not be negative")
        if sampling_interval <= 0:
            raise ValueError("sampling_interval must be a positive integer")
        if status_preview < 0:
            raise ValueError("status_preview must not be negative")

        self._contexts = list(contexts)
        self._telemetry = telemetry
        self._poll_interval = poll_interval
        self._sampling_interval = sampling_interval
        self._status_preview = status_preview
        self._on_event = on_event
        self._logger = logging.getLogger("primesweep.supervisor")
        self.flag = TerminationFlag()

    def run(self) -> SearchReport:
        started_at = time.time()
        outcomes: List[Optional[MonitorOutcome]] = [None] * len(self._contexts)
        threads = []
        for position, context in enumerate(self._contexts):
            monitor = ProgressMonitor(
                context,
                self.flag,
                telemetry=self._telemetry,
                poll_interval=self._poll_interval,
                sampling_interval=self._sampling_interval,
                status_preview=self._status_preview,
                on_event=self._on_event,
                logger=self._logger,
            )
            thread = threading.Thread(
                target=self._run_monitor,
                args=(position, monitor, outcomes),
                name=f"monitor-{context.device_index}",
            )
            thread.start()
            threads.append(thread)

        for thread in threads:
            thread.join()

        final = tuple(outcome for outcome in outcomes if outcome is not None)
        winner = next((o.result for o in final if o.authoritative), None)
        report = SearchReport(
            winner=winner,
            outcomes=final,
            flag_set=self.flag.is_set(),
            started_at=started_at,
            completed_at=time.time(),
        )
        for line in report.summary():
            self._logger.info(line)
        if self._on_event is not None:
            self._on_event(
                "search.complete",
                {
                    "found": report.found,
                    "value": winner.value if winner else None,
                    "device_index": winner.device_index if winner else None,
                    "duration": report.duration,
                },
            )
        return report

    def _run_monitor(
        self,
        position: int,
        monitor: ProgressMonitor,
        outcomes: List[Optional[MonitorOutcome]],
    ) -> None:
        try:
            outcomes[position] = monitor.run()
        except Exception as exc:
            self._logger.exception("Monitor for device %s crashed", monitor.device_index)
            outcomes[position] = MonitorOutcome(
                device_index=monitor.device_index,
                state=MonitorState.ERRORED,
                ticks=0,
                error=str(exc),
            )
