#!/usr/bin/env -S uv run python
# /// script
# requires-python = ">=3.11"
# dependencies = ["cyclopts>=3", "plumbum"]
# ///
"""Restart GitHub Actions runner services and verify they come back.

Without ``--repo`` and ``--name`` every ``actions.runner.*`` unit on the host
is restarted.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Annotated

from cyclopts import App, Parameter

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from runner_fleet._fleet_cli import configure_logging, report_error
from runner_fleet._fleet_commands import Privileges
from runner_fleet._fleet_errors import FleetError
from runner_fleet._fleet_restart import RESTART_GRACE_SECONDS, FleetRestart
from runner_fleet._fleet_system import SystemdServiceManager
from runner_fleet._input_resolution import parse_seconds

app = App(help="Restart runner services and check they stay active.")


@app.default
def main(
    repo: Annotated[str | None, Parameter(help="Repository as OWNER/REPO.")] = None,
    name: Annotated[str | None, Parameter(help="Runner name.")] = None,
    grace_seconds: Annotated[str | None, Parameter(help="Wait before checking liveness.")] = None,
    log_level: Annotated[str | None, Parameter(help="Logging level.")] = None,
) -> int:
    """Restart runner services; exit non-zero if any did not stay active."""

    configure_logging(log_level)
    restarter = FleetRestart(SystemdServiceManager(Privileges.detect()))
    try:
        grace = parse_seconds(grace_seconds or RESTART_GRACE_SECONDS, "--grace-seconds")
        checks = restarter.restart(restarter.targets(repo, name), grace)
    except FleetError as exc:
        return report_error(exc)

    failed = [check for check in checks if not check.active]
    for check in failed:
        print(f"FAILED: {check.service_name}: {check.detail or 'not active'}", file=sys.stderr)
    if failed:
        print(f"ERROR: {len(failed)} runner(s) failed to restart.", file=sys.stderr)
        return 1
    print(f"\nAll {len(checks)} runner(s) restarted successfully.")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(app())
