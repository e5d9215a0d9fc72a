"""Shared helpers for the primesweep command line entrypoint."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, MutableMapping, Optional

from .runtime import U64_MAX

PRESETS: Mapping[str, Mapping[str, int | float]] = {
    "default": {
        "start": 10_000_000_000_000,
        "end": 10_000_000_000_000 + 1_000_000_000,
        "lanes": 1024,
        "poll_interval": 1.0,
        "sampling_interval": 10,
    },
    "smoke": {
        "start": 10,
        "end": 30,
        "lanes": 1,
        "poll_interval": 0.1,
        "sampling_interval": 10,
    },
    "wide": {
        "start": 10_000_000_000_000,
        "end": 10_000_000_000_000 + 10_000_000_000,
        "lanes": 4096,
        "poll_interval": 1.0,
        "sampling_interval": 10,
    },
}

SUMMARY_FIELDS = ("start", "end", "candidates", "lanes", "poll_interval", "sampling_interval", "status_preview")


@dataclass(slots=True)
class ResolvedConfiguration:
    """Effective configuration derived from preset and CLI overrides."""

    preset: Optional[str]
    values: MutableMapping[str, object]


def list_presets() -> str:
    """Return a formatted table of presets."""

    lines = ["Available presets:"]
    for name, preset in PRESETS.items():
        details = ", ".join(f"{key}={value}" for key, value in preset.items())
        lines.append(f"  - {name}: {details}")
    return "\n".join(lines)


def resolve_preset(preset: Optional[str], overrides: Mapping[str, object]) -> ResolvedConfiguration:
    """Merge preset defaults with explicit overrides."""

    values: MutableMapping[str, object] = dict(overrides)
    base = PRESETS.get(preset or "default")
    if not base:
        raise ValueError(f"Unknown preset '{preset}'. Use --list-presets to inspect options.")
    for key, value in base.items():
        values.setdefault(key, value)
    values.setdefault("status_preview", 10)
    return ResolvedConfiguration(preset=preset or "default", values=values)


def validate_configuration(config: ResolvedConfiguration) -> None:
    """Guard against invalid search values."""

    values = config.values
    lanes = int(values.get("lanes", 0) or 0)
    if lanes <= 0:
        raise ValueError("lanes must be positive.")
    if float(values.get("poll_interval", 0.0)) < 0:
        raise ValueError("poll_interval must not be negative.")
    if int(values.get("sampling_interval", 0) or 0) <= 0:
        raise ValueError("sampling_interval must be positive.")
    if int(values.get("status_preview", 0)) < 0:
        raise ValueError("status_preview must not be negative.")
    if values.get("candidates") is not None:
        return
    start = int(values["start"])
    end = int(values["end"])
    for name, value in (("start", start), ("end", end)):
        if not 0 <= value <= U64_MAX:
            raise ValueError(f"{name} must fit in an unsigned 64-bit integer.")
    if start > end:
        raise ValueError("start must not exceed end.")


def summarise_configuration(config: ResolvedConfiguration) -> str:
    """Generate a human-friendly summary of the configuration."""

    lines = ["Resolved configuration:"]
    if config.preset:
        lines.append(f"  preset: {config.preset}")
    for key in SUMMARY_FIELDS:
        value = config.values.get(key)
        if value is not None:
            lines.append(f"  {key}: {value}")
    return "\n".join(lines)


def merge_overrides(args: Mapping[str, object], fields: Iterable[str]) -> Dict[str, object]:
    """Extract a subset of argparse.Namespace into a dict."""

    return {field: args[field] for field in fields if args.get(field) is not None}
