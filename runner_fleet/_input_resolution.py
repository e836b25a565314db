"""Resolve fleet CLI inputs from options, environment variables and defaults."""

from __future__ import annotations

import math
import os
from collections import abc as cabc
from dataclasses import dataclass
from pathlib import Path

from runner_fleet._fleet_errors import ValidationError

# Upper bound for grace periods; waits stay bounded.
MAX_WAIT_SECONDS = 600


@dataclass(frozen=True, slots=True)
class InputResolution:
    """Configuration for resolving an input from multiple sources."""

    env_key: str
    default: str | Path | None = None
    required: bool = False
    as_path: bool = False


def resolve_input(
    param_value: str | Path | None,
    resolution: InputResolution,
    env: cabc.Mapping[str, str] | None = None,
) -> str | Path | None:
    """Resolve input from parameter, environment variable, or default.

    Examples
    --------
    >>> resolve_input(None, InputResolution("RUNNER_NAME", default="nuc"), env={})
    'nuc'
    >>> resolve_input(None, InputResolution("RUNNER_BASE_DIR", as_path=True), env={"RUNNER_BASE_DIR": "/opt/r"})
    PosixPath('/opt/r')
    """

    if param_value is not None:
        return param_value

    env_value = (env if env is not None else os.environ).get(resolution.env_key)
    if env_value:
        return Path(env_value) if resolution.as_path else env_value

    if resolution.required:
        msg = f"{resolution.env_key} is required"
        raise ValidationError(msg)

    return resolution.default


def parse_labels(value: str | None) -> tuple[str, ...]:
    """Split a comma-separated label list, dropping blanks and duplicates.

    Examples
    --------
    >>> parse_labels("nuc, gpu,,nuc")
    ('nuc', 'gpu')
    >>> parse_labels(None)
    ()
    """

    if not value:
        return ()
    seen: dict[str, None] = {}
    for label in value.split(","):
        label = label.strip()
        if label:
            seen[label] = None
    return tuple(seen)


def parse_positive_int(value: str | int, name: str) -> int:
    """Parse *value* as an integer of at least one.

    Examples
    --------
    >>> parse_positive_int("3", "--count")
    3
    """

    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        msg = f"{name} must be an integer, got: {value!r}"
        raise ValidationError(msg) from exc
    if parsed < 1:
        msg = f"{name} must be at least 1, got: {parsed}"
        raise ValidationError(msg)
    return parsed


def parse_seconds(value: str | float, name: str) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        msg = f"{name} must be a number of seconds, got: {value!r}"
        raise ValidationError(msg) from exc
    if not math.isfinite(parsed):
        raise ValidationError(f"{name} must be a finite number of seconds, got: {value!r}")
    if parsed < 0:
        raise ValidationError(f"{name} must not be negative")
    if parsed > MAX_WAIT_SECONDS:
        raise ValidationError(f"{name} must be at most {MAX_WAIT_SECONDS} seconds")
    return parsed


__all__ = [
    "MAX_WAIT_SECONDS",
    "InputResolution",
    "parse_labels",
    "parse_positive_int",
    "parse_seconds",
    "resolve_input",
]
