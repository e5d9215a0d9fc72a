"""Device telemetry sampling and JSONL sinks for primesweep."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Mapping, Optional, Protocol

import pynvml

from .runtime import TelemetryError, TelemetryEvent

__all__ = [
    "DeviceTelemetry",
    "NvmlTelemetry",
    "TelemetryRecord",
    "TelemetrySample",
    "TelemetryWriter",
    "build_cli_telemetry_sink",
]


@dataclass(frozen=True)
class TelemetrySample:
    """Point-in-time utilization and temperature for one device."""

    device_index: int
    utilization_percent: int
    temperature_celsius: int
    sample_time: float

    def as_dict(self) -> dict[str, object]:
        return {
            "device_index": self.device_index,
            "utilization_percent": self.utilization_percent,
            "temperature_celsius": self.temperature_celsius,
            "sample_time": self.sample_time,
        }


class DeviceTelemetry(Protocol):
    """Anything that can report utilization and temperature by device index."""

    def query(self, index: int) -> TelemetrySample:
        ...


class NvmlTelemetry:
    """NVML-backed sampler.

    One NVML session is shared by every monitor thread, so queries are
    serialised with a lock.  Device indices follow the OpenCL enumeration
    order, which matches NVML on single-vendor NVIDIA machines.
    """

    def __init__(self) -> None:
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as exc:
            raise TelemetryError(f"Failed to initialize NVML: {exc}") from exc
        self._lock = threading.Lock()
        self._closed = False

    def __enter__(self) -> "NvmlTelemetry":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def query(self, index: int) -> TelemetrySample:
        with self._lock:
            if self._closed:
                raise TelemetryError("NVML session is closed")
            try:
                handle = pynvml.nvmlDeviceGetHandleByIndex(index)
                utilization = pynvml.nvmlDeviceGetUtilizationRates(handle)
                temperature = pynvml.nvmlDeviceGetTemperature(handle, pynvml.NVML_TEMPERATURE_GPU)
            except pynvml.NVMLError as exc:
                raise TelemetryError(f"Failed to query telemetry for device {index}: {exc}") from exc
        return TelemetrySample(
            device_index=index,
            utilization_percent=int(utilization.gpu),
            temperature_celsius=int(temperature),
            sample_time=time.time(),
        )

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                pynvml.nvmlShutdown()
            except pynvml.NVMLError as exc:
                raise TelemetryError(f"Failed to shut down NVML: {exc}") from exc


@dataclass(frozen=True)
class TelemetryRecord:
    """One JSONL line.  ``device_index`` is lifted out of the attributes so
    per-device events can be filtered without parsing the payload."""

    timestamp: float
    component: str
    event: str
    device_index: Optional[int] = None
    attributes: Mapping[str, object] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp,
            "component": self.component,
            "event": self.event,
            "device_index": self.device_index,
            "attributes": dict(self.attributes),
        }


class TelemetryWriter:
    """Thread-safe JSONL writer for telemetry records."""

    def __init__(self, handle: IO[str], *, component: str) -> None:
        self._handle = handle
        self._component = component
        self._lock = threading.Lock()

    @property
    def component(self) -> str:
        return self._component

    def write_record(self, record: TelemetryRecord) -> None:
        payload = json.dumps(record.as_dict(), ensure_ascii=False)
        with self._lock:
            self._handle.write(payload + "\n")
            self._handle.flush()

    def __call__(self, event: TelemetryEvent) -> None:
        attributes = dict(event.attributes)
        device_index = attributes.pop("device_index", None)
        self.write_record(
            TelemetryRecord(
                timestamp=event.timestamp,
                component=self._component,
                event=event.name,
                device_index=device_index,
                attributes=attributes,
            )
        )

    def close(self) -> None:
        with self._lock:
            self._handle.close()


def build_cli_telemetry_sink(
    *,
    output_path: Path,
    component: str,
    header: Optional[Mapping[str, object]] = None,
) -> TelemetryWriter:
    """Open ``output_path`` for appending and write the run header first."""

    output_path.parent.mkdir(parents=True, exist_ok=True)
    handle = output_path.open("a", encoding="utf-8")
    writer = TelemetryWriter(handle, component=component)
    if header is not None:
        writer.write_record(
            TelemetryRecord(
                timestamp=time.time(),
                component=component,
                event="telemetry.start",
                attributes=dict(header),
            )
        )
    return writer
