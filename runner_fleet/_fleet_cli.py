"""Process-level setup shared by the fleet command-line tools."""

from __future__ import annotations

import logging
import signal
import sys
from types import FrameType

from runner_fleet._input_resolution import InputResolution, resolve_input

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None) -> None:
    """Configure root logging from ``--log-level`` or ``RUNNER_FLEET_LOG_LEVEL``."""

    resolved = resolve_input(
        level,
        InputResolution(env_key="RUNNER_FLEET_LOG_LEVEL", default="INFO"),
    )
    numeric = logging.getLevelName(str(resolved).upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric, format=LOG_FORMAT, stream=sys.stderr)


def _exit_on_signal(signum: int, _frame: FrameType | None) -> None:
    raise SystemExit(128 + signum)


def install_termination_handler() -> None:
    """Turn SIGTERM into ``SystemExit`` so ``with``/``finally`` cleanup still runs."""

    signal.signal(signal.SIGTERM, _exit_on_signal)


def report_error(exc: Exception) -> int:
    print(f"ERROR: {exc}", file=sys.stderr)
    return 1


__all__ = ["configure_logging", "install_termination_handler", "report_error"]
