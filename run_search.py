"""Command line entrypoint for multi-device prime searches.

Every OpenCL device in the machine scans the same range (or tests the same
candidate list).  The run ends once every device's monitor has stopped: either
a device found a prime, its kernel exhausted the range, or its monitor failed.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from primesweep import (
    DeviceSetupError,
    NvmlTelemetry,
    RangeScan,
    SearchConfigurationError,
    SearchRuntime,
    SearchSupervisor,
    TelemetryError,
    parse_candidates,
)
from primesweep.cli_utils import (
    PRESETS,
    list_presets,
    merge_overrides,
    resolve_preset,
    summarise_configuration,
    validate_configuration,
)
from primesweep.telemetry import TelemetryWriter, build_cli_telemetry_sink

logger = logging.getLogger("primesweep.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Search for primes on every OpenCL device")
    parser.add_argument("--start", type=int, help="First value of the scanned range")
    parser.add_argument("--end", type=int, help="Last value of the scanned range (inclusive)")
    parser.add_argument(
        "--candidates",
        type=str,
        help="Comma separated values to test instead of scanning a range",
    )
    parser.add_argument("--lanes", type=int, help="Parallel lanes per device in range mode")
    parser.add_argument("--poll-interval", type=float, help="Seconds between buffer polls")
    parser.add_argument(
        "--sampling-interval",
        type=int,
        help="Sample device telemetry every N polling ticks",
    )
    parser.add_argument(
        "--status-preview",
        type=int,
        help="Number of lanes shown in each status line",
    )
    parser.add_argument(
        "--preset",
        choices=sorted(PRESETS.keys()),
        help="Load a preset configuration (default, smoke, wide)",
    )
    parser.add_argument(
        "--list-presets",
        action="store_true",
        help="Print the available presets and exit",
    )
    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="Print the OpenCL platforms and devices and exit",
    )
    parser.add_argument(
        "--no-telemetry",
        action="store_true",
        help="Do not query NVML for utilization and temperature",
    )
    parser.add_argument(
        "--telemetry-log",
        type=Path,
        help="Append structured events to this JSONL file",
    )
    parser.add_argument(
        "--show-config",
        action="store_true",
        help="Display the resolved configuration before execution",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging verbosity",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.list_presets:
        print(list_presets())
        return 0

    overrides = merge_overrides(
        vars(args),
        ["start", "end", "candidates", "lanes", "poll_interval", "sampling_interval", "status_preview"],
    )
    try:
        resolved = resolve_preset(args.preset, overrides)
        validate_configuration(resolved)
    except ValueError as exc:
        parser.error(str(exc))
    values = resolved.values

    try:
        if args.candidates is not None:
            work = parse_candidates(args.candidates)
        else:
            work = RangeScan(int(values["start"]), int(values["end"]))
    except SearchConfigurationError as exc:
        parser.error(str(exc))

    if args.show_config:
        print(summarise_configuration(resolved))

    writer: Optional[TelemetryWriter] = None
    if args.telemetry_log is not None:
        writer = build_cli_telemetry_sink(
            output_path=args.telemetry_log,
            component="primesweep",
            header={"work": work.describe(), "lanes": values["lanes"]},
        )

    telemetry: Optional[NvmlTelemetry] = None
    try:
        runtime = SearchRuntime(
            lane_count=int(values["lanes"]),
            log_level=args.log_level,
            telemetry_sinks=[writer] if writer is not None else None,
        )
        if args.list_devices:
            for platform in runtime.diagnostics()["platforms"]:
                print(f"Platform: {platform['name']}")
                for device in platform["devices"]:
                    print(f"  Device {device['index']}: {device['name']}")
            return 0

        runtime.log_devices()
        if not args.no_telemetry:
            telemetry = NvmlTelemetry()
        contexts = runtime.dispatch(work)
        supervisor = SearchSupervisor(
            contexts,
            telemetry=telemetry,
            poll_interval=float(values["poll_interval"]),
            sampling_interval=int(values["sampling_interval"]),
            status_preview=int(values["status_preview"]),
            on_event=runtime.emit,
        )
        supervisor.run()
    except (DeviceSetupError, SearchConfigurationError, TelemetryError) as exc:
        logger.error("Search aborted: %s", exc)
        return 1
    finally:
        if telemetry is not None:
            try:
                telemetry.close()
            except TelemetryError as exc:
                logger.warning("%s", exc)
        if writer is not None:
            writer.close()
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised in tests via main()
    signal.signal(signal.SIGINT, lambda sig, frame: sys.exit(130))
    sys.exit(main())
