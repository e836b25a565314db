#!/usr/bin/env -S uv run python
# /// script
# requires-python = ">=3.11"
# dependencies = ["cyclopts>=3", "plumbum"]
# ///
"""Uninstall every GitHub Actions runner of a fleet and clean up.

Instances are taken from the fleet manifest written by ``setup_runners``;
without one, every runner under ``/opt/actions-runner`` and
``/opt/actions-runner-*`` is detected. Get a removal token from the GitHub
repository settings (Actions > Runners > ... > Remove).
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

from cyclopts import App, Parameter

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from runner_fleet._fleet_cli import configure_logging, report_error
from runner_fleet._fleet_commands import Privileges
from runner_fleet._fleet_errors import FleetError
from runner_fleet._fleet_maintenance import DEFAULT_LOCK_FILE, MaintenanceScheduler
from runner_fleet._fleet_manifest import default_manifest_path
from runner_fleet._fleet_models import DEFAULT_PRINCIPAL
from runner_fleet._fleet_report import format_teardown_summary
from runner_fleet._fleet_system import (
    ConfigScriptRegistration,
    CrontabStore,
    PrivilegedFilesystem,
    SystemdServiceManager,
)
from runner_fleet._fleet_teardown import FleetTeardown
from runner_fleet._input_resolution import InputResolution, resolve_input

app = App(help="Deregister and uninstall every runner instance of a fleet.")

DEFAULT_BASE_DIR = Path("/opt/actions-runner")


@dataclass(frozen=True, slots=True)
class TeardownInputs:
    token: str
    base_directory: Path
    principal: str
    manifest_path: Path
    lock_file: Path


def resolve_teardown_inputs(
    *,
    token: str | None,
    base_dir: Path | None,
    user: str | None,
    manifest: Path | None,
    lock_file: Path | None,
    env: dict[str, str] | None = None,
) -> TeardownInputs:
    resolved_token = resolve_input(
        token, InputResolution(env_key="RUNNER_TOKEN", required=True), env=env
    )
    base_directory = Path(
        resolve_input(
            base_dir,
            InputResolution(env_key="RUNNER_BASE_DIR", default=DEFAULT_BASE_DIR, as_path=True),
            env=env,
        )
    )
    principal = resolve_input(
        user, InputResolution(env_key="RUNNER_USER", default=DEFAULT_PRINCIPAL), env=env
    )
    manifest_path = resolve_input(
        manifest,
        InputResolution(
            env_key="RUNNER_MANIFEST",
            default=default_manifest_path(base_directory),
            as_path=True,
        ),
        env=env,
    )
    lock_path = resolve_input(
        lock_file,
        InputResolution(env_key="RUNNER_LOCK_FILE", default=DEFAULT_LOCK_FILE, as_path=True),
        env=env,
    )
    return TeardownInputs(
        token=str(resolved_token),
        base_directory=base_directory,
        principal=str(principal),
        manifest_path=Path(manifest_path),
        lock_file=Path(lock_path),
    )


def build_teardown(inputs: TeardownInputs, privileges: Privileges | None = None) -> FleetTeardown:
    privileges = privileges or Privileges.detect()
    return FleetTeardown(
        filesystem=PrivilegedFilesystem(privileges),
        registration=ConfigScriptRegistration(privileges),
        services=SystemdServiceManager(privileges),
        scheduler=MaintenanceScheduler(
            CrontabStore(inputs.principal, privileges),
            lock_path=inputs.lock_file,
        ),
        base_directory=inputs.base_directory,
        principal=inputs.principal,
        manifest_path=inputs.manifest_path,
    )


@app.default
def main(
    token: Annotated[str | None, Parameter(help="Runner removal token.")] = None,
    base_dir: Annotated[Path | None, Parameter(help="Base install directory of the fleet.")] = None,
    user: Annotated[str | None, Parameter(help="Account owning the runner crontab.")] = None,
    manifest: Annotated[Path | None, Parameter(help="Fleet manifest location.")] = None,
    lock_file: Annotated[Path | None, Parameter(help="Lock file guarding crontab updates.")] = None,
    log_level: Annotated[str | None, Parameter(help="Logging level.")] = None,
) -> int:
    """Uninstall all discovered runners; exit non-zero if any failed to unregister."""

    configure_logging(log_level)
    try:
        inputs = resolve_teardown_inputs(
            token=token,
            base_dir=base_dir,
            user=user,
            manifest=manifest,
            lock_file=lock_file,
        )
        result = build_teardown(inputs).run(inputs.token)
    except FleetError as exc:
        return report_error(exc)

    if result.attempted == 0:
        print(
            f"ERROR: No runner directories found matching {inputs.base_directory}*",
            file=sys.stderr,
        )
        return 1
    print("\n=== Cleanup complete ===")
    print(format_teardown_summary(result))
    return 1 if result.failed else 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(app())
