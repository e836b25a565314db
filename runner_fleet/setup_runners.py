#!/usr/bin/env -S uv run python
# /// script
# requires-python = ">=3.11"
# dependencies = ["cyclopts>=3", "plumbum"]
# ///
"""Provision a fleet of GitHub Actions self-hosted runners on this host.

This script:
- validates the fleet inputs before touching the host;
- downloads and verifies the runner package once;
- installs, registers and service-wraps each runner instance;
- applies systemd hardening, rolling it back when a service will not start;
- schedules the shared maintenance cron jobs; and
- prints one outcome line per runner.

Registration tokens expire after one hour. Generate the token immediately
before running this script.
"""

from __future__ import annotations

import socket
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

from cyclopts import App, Parameter

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from runner_fleet._fleet_addressing import identities
from runner_fleet._fleet_artifact import ArtifactFetcher
from runner_fleet._fleet_cli import (
    configure_logging,
    install_termination_handler,
    report_error,
)
from runner_fleet._fleet_commands import Privileges
from runner_fleet._fleet_errors import FleetError, ValidationError
from runner_fleet._fleet_hardening import DEFAULT_GRACE_SECONDS, HardeningController
from runner_fleet._fleet_maintenance import DEFAULT_LOCK_FILE, MaintenanceScheduler
from runner_fleet._fleet_manifest import default_manifest_path
from runner_fleet._fleet_models import (
    DEFAULT_PRINCIPAL,
    FleetSpec,
    HardeningPolicy,
    ReleaseSource,
    validate_fleet_spec,
)
from runner_fleet._fleet_orchestrator import FleetOrchestrator
from runner_fleet._fleet_provision import InstanceProvisioner
from runner_fleet._fleet_report import format_next_steps, format_outcome_table
from runner_fleet._fleet_system import (
    ConfigScriptRegistration,
    CrontabStore,
    PrivilegedFilesystem,
    SystemdServiceManager,
    ensure_principal,
)
from runner_fleet._input_resolution import (
    InputResolution,
    parse_labels,
    parse_positive_int,
    parse_seconds,
    resolve_input,
)

app = App(help="Provision GitHub Actions self-hosted runners as systemd services.")

DEFAULT_BASE_DIR = Path("/opt/actions-runner")


@dataclass(frozen=True, slots=True)
class RawSetupInputs:
    """Setup inputs as given on the command line; ``None`` means unset."""

    count: str | None = None
    name: str | None = None
    base_dir: Path | None = None
    labels: str | None = None
    repo: str | None = None
    token: str | None = None
    user: str | None = None
    version: str | None = None
    manifest: Path | None = None
    lock_file: Path | None = None
    hardening_policy: str | None = None
    grace_seconds: str | None = None


@dataclass(frozen=True, slots=True)
class SetupInputs:
    """Fully resolved and validated setup inputs."""

    spec: FleetSpec
    source: ReleaseSource
    manifest_path: Path
    lock_file: Path
    policy: HardeningPolicy
    grace_seconds: float


def _parse_policy(value: str) -> HardeningPolicy:
    try:
        return HardeningPolicy(value.strip().lower())
    except ValueError as exc:
        choices = ", ".join(policy.value for policy in HardeningPolicy)
        msg = f"Unknown hardening policy {value!r}; expected one of: {choices}"
        raise ValidationError(msg) from exc


def resolve_setup_inputs(raw: RawSetupInputs, env: dict[str, str] | None = None) -> SetupInputs:
    """Resolve setup inputs from CLI values, environment and defaults.

    Raises
    ------
    ValidationError
        Raised before any side effect when a value is missing or malformed.
    """

    def resolved(value: str | Path | None, resolution: InputResolution) -> str | Path | None:
        return resolve_input(value, resolution, env=env)

    count = parse_positive_int(
        str(resolved(raw.count, InputResolution(env_key="RUNNER_COUNT", default="1"))),
        "--count",
    )
    repository = resolved(raw.repo, InputResolution(env_key="RUNNER_REPO", required=True))
    token = resolved(raw.token, InputResolution(env_key="RUNNER_TOKEN", required=True))
    name = resolved(
        raw.name, InputResolution(env_key="RUNNER_NAME", default=socket.gethostname())
    )
    base_dir = resolved(
        raw.base_dir,
        InputResolution(env_key="RUNNER_BASE_DIR", default=DEFAULT_BASE_DIR, as_path=True),
    )
    labels = resolved(raw.labels, InputResolution(env_key="RUNNER_LABELS"))
    user = resolved(raw.user, InputResolution(env_key="RUNNER_USER", default=DEFAULT_PRINCIPAL))
    version = resolved(raw.version, InputResolution(env_key="RUNNER_VERSION"))
    base_path = Path(base_dir)
    manifest = resolved(
        raw.manifest,
        InputResolution(
            env_key="RUNNER_MANIFEST",
            default=default_manifest_path(base_path),
            as_path=True,
        ),
    )
    lock_file = resolved(
        raw.lock_file,
        InputResolution(env_key="RUNNER_LOCK_FILE", default=DEFAULT_LOCK_FILE, as_path=True),
    )
    policy = resolved(
        raw.hardening_policy,
        InputResolution(
            env_key="RUNNER_HARDENING_POLICY",
            default=HardeningPolicy.ALLOW_DEGRADED.value,
        ),
    )
    grace = resolved(
        raw.grace_seconds,
        InputResolution(env_key="RUNNER_GRACE_SECONDS", default=str(DEFAULT_GRACE_SECONDS)),
    )

    spec = FleetSpec(
        size=count,
        base_name=str(name),
        base_directory=base_path,
        labels=parse_labels(str(labels) if labels else None),
        repository=str(repository),
        registration_token=str(token),
        principal=str(user),
    )
    validate_fleet_spec(spec)
    return SetupInputs(
        spec=spec,
        source=ReleaseSource(version=str(version) if version else None),
        manifest_path=Path(manifest),
        lock_file=Path(lock_file),
        policy=_parse_policy(str(policy)),
        grace_seconds=parse_seconds(str(grace), "--grace-seconds"),
    )


def build_orchestrator(
    inputs: SetupInputs,
    privileges: Privileges | None = None,
) -> FleetOrchestrator:
    """Wire the command-backed collaborators into a :class:`FleetOrchestrator`."""

    privileges = privileges or Privileges.detect()
    services = SystemdServiceManager(privileges)
    return FleetOrchestrator(
        fetcher=ArtifactFetcher(),
        provisioner=InstanceProvisioner(
            filesystem=PrivilegedFilesystem(privileges),
            registration=ConfigScriptRegistration(privileges),
            services=services,
        ),
        hardening=HardeningController(services),
        scheduler=MaintenanceScheduler(
            CrontabStore(inputs.spec.principal, privileges),
            lock_path=inputs.lock_file,
        ),
        manifest_path=inputs.manifest_path,
        policy=inputs.policy,
        grace_period=inputs.grace_seconds,
        prepare_host=lambda principal: ensure_principal(principal, privileges),
    )


@app.default
def main(
    count: Annotated[str | None, Parameter(help="Number of runner instances (default 1).")] = None,
    name: Annotated[str | None, Parameter(help="Runner name, suffixed with -N for fleets.")] = None,
    base_dir: Annotated[Path | None, Parameter(help="Install directory, suffixed with -N for fleets.")] = None,
    labels: Annotated[str | None, Parameter(help="Comma-separated extra labels.")] = None,
    repo: Annotated[str | None, Parameter(help="Repository as OWNER/REPO.")] = None,
    token: Annotated[str | None, Parameter(help="Runner registration token.")] = None,
    user: Annotated[str | None, Parameter(help="Unprivileged account running the services.")] = None,
    version: Annotated[str | None, Parameter(help="Runner release to install (default latest).")] = None,
    manifest: Annotated[Path | None, Parameter(help="Fleet manifest location.")] = None,
    lock_file: Annotated[Path | None, Parameter(help="Lock file guarding crontab updates.")] = None,
    hardening_policy: Annotated[str | None, Parameter(help="strict or allow-degraded.")] = None,
    grace_seconds: Annotated[str | None, Parameter(help="Wait before liveness checks.")] = None,
    log_level: Annotated[str | None, Parameter(help="Logging level.")] = None,
) -> int:
    """Provision runners and print one outcome line per instance."""

    configure_logging(log_level)
    raw_inputs = RawSetupInputs(
        count=count,
        name=name,
        base_dir=base_dir,
        labels=labels,
        repo=repo,
        token=token,
        user=user,
        version=version,
        manifest=manifest,
        lock_file=lock_file,
        hardening_policy=hardening_policy,
        grace_seconds=grace_seconds,
    )
    try:
        inputs = resolve_setup_inputs(raw_inputs)
    except FleetError as exc:
        return report_error(exc)

    install_termination_handler()
    orchestrator = build_orchestrator(inputs)
    try:
        report = orchestrator.run(inputs.spec, inputs.source)
    except FleetError as exc:
        return report_error(exc)

    print("")
    print(format_outcome_table(report))
    if report.maintenance_error:
        print(f"WARNING: maintenance jobs not scheduled: {report.maintenance_error}", file=sys.stderr)
    if not report.succeeded:
        if report.failed:
            print(f"\n{report.failed} runner(s) did not come up cleanly.", file=sys.stderr)
        return 1

    print("\n=== Setup complete ===")
    print(format_next_steps(inputs.spec, identities(inputs.spec)))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(app())
