"""Device discovery and kernel dispatch for primesweep searches.

This module owns everything that touches the OpenCL runtime on the host side:
listing platforms and devices, building one isolated execution context per
device, binding the work descriptor to the search kernel and enqueuing it
without waiting for completion.  Observation of in-flight kernels lives in
:mod:`primesweep.supervisor`; this module only exposes the buffer reads that
the monitors need.

Context construction is all-or-nothing.  A device that cannot be set up aborts
the run with :class:`DeviceSetupError` instead of continuing on a reduced
device set.
"""

from __future__ import annotations

import contextlib
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import numpy as np
import pyopencl as cl

from .kernels import CANDIDATE_KERNEL, KERNEL_SOURCE, RANGE_KERNEL

__all__ = [
    "BufferReadError",
    "CandidateList",
    "Device",
    "DeviceSetupError",
    "ExecutionContext",
    "PlatformInfo",
    "RangeScan",
    "SearchConfigurationError",
    "SearchRuntime",
    "TelemetryError",
    "TelemetryEvent",
    "WorkDescriptor",
    "coerce_log_level",
    "configure_logging",
    "parse_candidates",
]

U64_MAX = 2**64 - 1
DEFAULT_LANE_COUNT = 1024


class SearchConfigurationError(ValueError):
    """Raised when search parameters are invalid."""


class DeviceSetupError(RuntimeError):
    """Raised when devices cannot be enumerated or prepared for a search."""


class BufferReadError(RuntimeError):
    """Raised when a device buffer cannot be read back to the host."""


class TelemetryError(RuntimeError):
    """Raised when device telemetry cannot be initialised or queried."""


@dataclass(frozen=True)
class TelemetryEvent:
    """Structured telemetry payload emitted by the runtime and supervisor."""

    name: str
    timestamp: float
    attributes: Mapping[str, object] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "timestamp": self.timestamp,
            "attributes": dict(self.attributes),
        }


@dataclass(frozen=True)
class Device:
    """One compute accelerator as reported by the OpenCL runtime.

    ``index`` is the position of the device across all platforms and is the
    value used to look the device up in NVML.
    """

    index: int
    name: str
    platform: str
    handle: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class PlatformInfo:
    name: str
    devices: Tuple[Device, ...]


def _ensure_u64(value: int, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise SearchConfigurationError(f"{label} must be an integer. Got {value!r}.")
    value = int(value)
    if not 0 <= value <= U64_MAX:
        raise SearchConfigurationError(f"{label} must fit in an unsigned 64-bit integer. Got {value}.")
    return value


@dataclass(frozen=True)
class RangeScan:
    """Scan every integer in ``[start, end]``."""

    start: int
    end: int

    def __post_init__(self) -> None:
        start = _ensure_u64(self.start, "start")
        end = _ensure_u64(self.end, "end")
        if start > end:
            raise SearchConfigurationError(f"start ({start}) must not exceed end ({end}).")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    def describe(self) -> str:
        return f"range [{self.start}, {self.end}]"


@dataclass(frozen=True)
class CandidateList:
    """Test an explicit, ordered list of values."""

    candidates: Tuple[int, ...]

    def __post_init__(self) -> None:
        values = tuple(_ensure_u64(value, "candidate") for value in self.candidates)
        if not values:
            raise SearchConfigurationError("Candidate list must not be empty.")
        object.__setattr__(self, "candidates", values)

    def describe(self) -> str:
        return f"{len(self.candidates)} candidates"


WorkDescriptor = Union[RangeScan, CandidateList]


def parse_candidates(text: str) -> CandidateList:
    """Parse a comma or whitespace separated list of integers."""

    tokens = [token for token in text.replace(",", " ").split() if token]
    values = []
    for token in tokens:
        try:
            values.append(int(token, 0))
        except ValueError as exc:
            raise SearchConfigurationError(f"Invalid candidate value: {token!r}") from exc
    return CandidateList(tuple(values))


class ExecutionContext:
    """Per-device bundle of queue, compiled kernel and output buffers.

    Instances are produced by :meth:`SearchRuntime.build_contexts`.  Reads go
    through a dedicated monitor queue so they are not serialised behind the
    running kernel on the compute queue.
    """

    def __init__(
        self,
        *,
        device: Device,
        work: WorkDescriptor,
        lane_count: int,
        context: Any,
        queue: Any,
        monitor_queue: Any,
        kernel: Any,
        result_buffer: Any,
        result_host: np.ndarray,
        status_buffer: Any = None,
        status_host: Optional[np.ndarray] = None,
        input_buffer: Any = None,
    ) -> None:
        self.device = device
        self.work = work
        self.lane_count = lane_count
        self._context = context
        self._queue = queue
        self._monitor_queue = monitor_queue
        self._kernel = kernel
        self._result_buffer = result_buffer
        self._result_host = result_host
        self._status_buffer = status_buffer
        self._status_host = status_host
        # must outlive the kernel launch that references it
        self._input_buffer = input_buffer
        self._event: Any = None

    @property
    def device_index(self) -> int:
        return self.device.index

    @property
    def launched(self) -> bool:
        return self._event is not None

    def launch(self) -> None:
        """Enqueue the kernel and return as soon as it is queued."""

        if self._event is not None:
            raise RuntimeError(f"Kernel for device {self.device_index} was already launched")
        self._event = cl.enqueue_nd_range_kernel(
            self._queue, self._kernel, (self.lane_count,), None
        )
        self._queue.flush()

    def is_complete(self) -> bool:
        """Return ``True`` once the device has finished executing the kernel."""

        if self._event is None:
            return False
        try:
            status = self._event.command_execution_status
        except cl.Error as exc:
            raise BufferReadError(
                f"Failed to query kernel status on device {self.device_index}: {exc}"
            ) from exc
        if status < 0:
            raise BufferReadError(
                f"Kernel on device {self.device_index} terminated with error status {status}"
            )
        return status == cl.command_execution_status.COMPLETE

    def read_status(self, limit: Optional[int] = None) -> Tuple[int, ...]:
        """Snapshot the per-lane status slots (empty in candidate mode)."""

        if self._status_buffer is None or self._status_host is None:
            return ()
        self._read_into(self._status_host, self._status_buffer, "status")
        lanes = self._status_host if limit is None else self._status_host[:limit]
        return tuple(int(value) for value in lanes)

    def read_verdicts(self) -> Tuple[int, ...]:
        """Return the raw results array in candidate mode."""

        if not isinstance(self.work, CandidateList):
            return ()
        self._read_into(self._result_host, self._result_buffer, "result")
        return tuple(int(value) for value in self._result_host)

    def read_result(self) -> Optional[int]:
        """Return the value found by the kernel, or ``None`` if nothing yet."""

        if isinstance(self.work, CandidateList):
            for position, verdict in enumerate(self.read_verdicts()):
                if verdict > 0:
                    return self.work.candidates[position]
            return None
        self._read_into(self._result_host, self._result_buffer, "result")
        value = int(self._result_host[0])
        return value or None

    def _read_into(self, host: np.ndarray, buffer: Any, label: str) -> None:
        try:
            cl.enqueue_copy(self._monitor_queue, host, buffer, is_blocking=True)
        except cl.Error as exc:
            raise BufferReadError(
                f"Failed to read {label} buffer on device {self.device_index}: {exc}"
            ) from exc


class SearchRuntime:
    """Enumerate OpenCL devices and dispatch the search kernel to each."""

    def __init__(
        self,
        *,
        lane_count: int = DEFAULT_LANE_COUNT,
        log_level: int | str = logging.INFO,
        telemetry_sinks: Optional[Sequence[Callable[[TelemetryEvent], None]]] = None,
    ) -> None:
        if lane_count <= 0:
            raise SearchConfigurationError(f"lane_count must be a positive integer. Got {lane_count}.")
        self.lane_count = lane_count
        configure_logging(log_level)
        self._logger = logging.getLogger("primesweep.runtime")
        self._telemetry_sinks: List[Callable[[TelemetryEvent], None]] = list(telemetry_sinks or [])
        self._recent_events: Deque[TelemetryEvent] = deque(maxlen=256)
        self._platforms: Optional[Tuple[PlatformInfo, ...]] = None

    # ------------------------------------------------------------------
    # Telemetry API

    def add_telemetry_sink(self, sink: Callable[[TelemetryEvent], None]) -> None:
        """Register a callback that receives emitted telemetry events."""

        self._telemetry_sinks.append(sink)

    def remove_telemetry_sink(self, sink: Callable[[TelemetryEvent], None]) -> None:
        with contextlib.suppress(ValueError):
            self._telemetry_sinks.remove(sink)

    def recent_events(self, limit: Optional[int] = None) -> Sequence[TelemetryEvent]:
        if limit is None or limit >= len(self._recent_events):
            return tuple(self._recent_events)
        return tuple(list(self._recent_events)[-limit:])

    def emit(self, name: str, attributes: Mapping[str, object]) -> None:
        event = TelemetryEvent(name=name, timestamp=time.time(), attributes=dict(attributes))
        self._recent_events.append(event)
        for sink in list(self._telemetry_sinks):
            try:
                sink(event)
            except Exception:
                self._logger.exception("Telemetry sink raised an exception")

    # ------------------------------------------------------------------
    # Device enumeration

    def platforms(self, *, refresh: bool = False) -> Tuple[PlatformInfo, ...]:
        """Return every OpenCL platform with its devices, in runtime order."""

        if self._platforms is not None and not refresh:
            return self._platforms
        try:
            raw_platforms = cl.get_platforms()
            listing: List[PlatformInfo] = []
            index = 0
            for platform in raw_platforms:
                devices = []
                for handle in platform.get_devices(device_type=cl.device_type.ALL):
                    devices.append(
                        Device(index=index, name=handle.name.strip(), platform=platform.name.strip(), handle=handle)
                    )
                    index += 1
                listing.append(PlatformInfo(name=platform.name.strip(), devices=tuple(devices)))
        except cl.Error as exc:
            raise DeviceSetupError(f"Failed to enumerate OpenCL devices: {exc}") from exc
        self._platforms = tuple(listing)
        return self._platforms

    def devices(self) -> List[Device]:
        return [device for platform in self.platforms() for device in platform.devices]

    def log_devices(self) -> None:
        self._logger.info("Available platforms:")
        for platform in self.platforms():
            self._logger.info("Platform: %s", platform.name)
            for device in platform.devices:
                self._logger.info("  Device: %s", device.name)

    def diagnostics(self) -> Dict[str, object]:
        return {
            "lane_count": self.lane_count,
            "platforms": [
                {
                    "name": platform.name,
                    "devices": [
                        {"index": device.index, "name": device.name} for device in platform.devices
                    ],
                }
                for platform in self.platforms()
            ],
        }

    # ------------------------------------------------------------------
    # Dispatch

    def build_contexts(
        self, work: WorkDescriptor, devices: Optional[Iterable[Device]] = None
    ) -> List[ExecutionContext]:
        """Build one execution context per device, failing on the first error."""

        if isinstance(work, RangeScan) and work.end > U64_MAX - self.lane_count:
            raise SearchConfigurationError(
                f"end ({work.end}) must not exceed {U64_MAX - self.lane_count} with {self.lane_count} lanes; "
                "the lane stride would wrap past the top of the unsigned 64-bit range."
            )
        targets = list(devices) if devices is not None else self.devices()
        if not targets:
            raise DeviceSetupError("No OpenCL devices available.")
        return [self._build_context(device, work) for device in targets]

    def dispatch(
        self, work: WorkDescriptor, devices: Optional[Iterable[Device]] = None
    ) -> List[ExecutionContext]:
        """Build every context, then enqueue every kernel without waiting."""

        contexts = self.build_contexts(work, devices)
        self._logger.info("Starting computation...")
        for ctx in contexts:
            try:
                ctx.launch()
            except cl.Error as exc:
                raise DeviceSetupError(
                    f"Failed to enqueue kernel on device {ctx.device_index} ({ctx.device.name}): {exc}"
                ) from exc
            self.emit(
                "runtime.kernel.enqueued",
                {"device_index": ctx.device_index, "global_size": ctx.lane_count},
            )
        return contexts

    def _build_context(self, device: Device, work: WorkDescriptor) -> ExecutionContext:
        mf = cl.mem_flags
        try:
            context = cl.Context(devices=[device.handle])
            queue = cl.CommandQueue(context, device=device.handle)
            monitor_queue = cl.CommandQueue(context, device=device.handle)
            program = cl.Program(context, KERNEL_SOURCE).build()

            if isinstance(work, CandidateList):
                count = len(work.candidates)
                candidates_host = np.array(work.candidates, dtype=np.uint64)
                result_host = np.zeros(count, dtype=np.int32)
                candidates_buffer = cl.Buffer(
                    context, mf.READ_ONLY | mf.COPY_HOST_PTR, hostbuf=candidates_host
                )
                result_buffer = cl.Buffer(
                    context, mf.WRITE_ONLY | mf.COPY_HOST_PTR, hostbuf=result_host
                )
                kernel = cl.Kernel(program, CANDIDATE_KERNEL)
                kernel.set_args(candidates_buffer, result_buffer, np.uint64(count))
                ctx = ExecutionContext(
                    device=device,
                    work=work,
                    lane_count=count,
                    context=context,
                    queue=queue,
                    monitor_queue=monitor_queue,
                    kernel=kernel,
                    result_buffer=result_buffer,
                    result_host=result_host,
                    input_buffer=candidates_buffer,
                )
            else:
                result_host = np.zeros(1, dtype=np.uint64)
                status_host = np.zeros(self.lane_count, dtype=np.uint64)
                result_buffer = cl.Buffer(
                    context, mf.WRITE_ONLY | mf.COPY_HOST_PTR, hostbuf=result_host
                )
                status_buffer = cl.Buffer(
                    context, mf.WRITE_ONLY | mf.COPY_HOST_PTR, hostbuf=status_host
                )
                kernel = cl.Kernel(program, RANGE_KERNEL)
                kernel.set_args(
                    result_buffer, status_buffer, np.uint64(work.start), np.uint64(work.end)
                )
                ctx = ExecutionContext(
                    device=device,
                    work=work,
                    lane_count=self.lane_count,
                    context=context,
                    queue=queue,
                    monitor_queue=monitor_queue,
                    kernel=kernel,
                    result_buffer=result_buffer,
                    result_host=result_host,
                    status_buffer=status_buffer,
                    status_host=status_host,
                )
        except cl.Error as exc:
            raise DeviceSetupError(
                f"Failed to prepare device {device.index} ({device.name}) on {device.platform}: {exc}"
            ) from exc

        self._logger.debug(
            "Prepared %s on device %s with %s lanes", work.describe(), device.index, ctx.lane_count
        )
        self.emit(
            "runtime.context.built",
            {
                "device_index": device.index,
                "device": device.name,
                "platform": device.platform,
                "lanes": ctx.lane_count,
                "work": work.describe(),
            },
        )
        return ctx


def coerce_log_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    if isinstance(resolved, str):
        raise SearchConfigurationError(f"Unknown log level: {level}")
    return resolved


def configure_logging(level: int | str = logging.INFO) -> logging.Logger:
    """Attach the console handler to the ``primesweep`` logger once."""

    logger = logging.getLogger("primesweep")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("[%(asctime)s] %(levelname)s - %(message)s", "%H:%M:%S")
        )
        logger.addHandler(handler)
    logger.setLevel(coerce_log_level(level))
    return logger
