"""Multi-device OpenCL prime search with host-side supervision."""

__version__ = "0.1.0"

from .runtime import (
    BufferReadError,
    CandidateList,
    Device,
    DeviceSetupError,
    ExecutionContext,
    PlatformInfo,
    RangeScan,
    SearchConfigurationError,
    SearchRuntime,
    TelemetryError,
    TelemetryEvent,
    parse_candidates,
)
from .supervisor import (
    MonitorOutcome,
    MonitorState,
    ProgressMonitor,
    SearchReport,
    SearchResult,
    SearchSupervisor,
    TerminationFlag,
)
from .telemetry import NvmlTelemetry, TelemetrySample

__all__ = [
    "BufferReadError",
    "CandidateList",
    "Device",
    "DeviceSetupError",
    "ExecutionContext",
    "MonitorOutcome",
    "MonitorState",
    "NvmlTelemetry",
    "PlatformInfo",
    "ProgressMonitor",
    "RangeScan",
    "SearchConfigurationError",
    "SearchReport",
    "SearchResult",
    "SearchRuntime",
    "SearchSupervisor",
    "TelemetryError",
    "TelemetryEvent",
    "TelemetrySample",
    "TerminationFlag",
    "parse_candidates",
]
