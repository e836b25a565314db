"""Provision a whole runner fleet from one fleet spec.

The orchestrator validates the fleet spec, fetches the runner package once, then
provisions and hardens each instance in index order. Validation and artifact
errors abort the run before any instance is touched. From then on every
instance is isolated: its failure becomes an :class:`InstanceOutcome` and the
loop moves on to the next instance. Fleet-wide maintenance jobs are upserted
once after every instance has been attempted.

Examples
--------
>>> orchestrator = FleetOrchestrator(fetcher, provisioner, hardening, scheduler)  # doctest: +SKIP
>>> report = orchestrator.run(spec, ReleaseSource())  # doctest: +SKIP
>>> report.succeeded  # doctest: +SKIP
True
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from runner_fleet._fleet_addressing import identities
from runner_fleet._fleet_artifact import ArtifactFetcher
from runner_fleet._fleet_errors import FleetError
from runner_fleet._fleet_hardening import DEFAULT_GRACE_SECONDS, HardeningController
from runner_fleet._fleet_maintenance import MaintenanceScheduler, fleet_entries
from runner_fleet._fleet_manifest import FleetManifest, load_manifest, save_manifest
from runner_fleet._fleet_models import (
    Artifact,
    FleetReport,
    FleetSpec,
    HardeningPolicy,
    HardeningState,
    InstanceIdentity,
    InstanceOutcome,
    InstanceRecord,
    OutcomeStatus,
    ReleaseSource,
    validate_fleet_spec,
)
from runner_fleet._fleet_provision import InstanceProvisioner

logger = logging.getLogger(__name__)


def _outcome(record: InstanceRecord, status: OutcomeStatus, detail: str = "") -> InstanceOutcome:
    return InstanceOutcome(
        identity=record.identity,
        status=status,
        provisioning_state=record.provisioning_state,
        hardening_state=record.hardening_state,
        detail=detail,
    )


@dataclass(slots=True)
class FleetOrchestrator:
    """Sequence fetch, provisioning, hardening and maintenance for a fleet."""

    fetcher: ArtifactFetcher
    provisioner: InstanceProvisioner
    hardening: HardeningController
    scheduler: MaintenanceScheduler
    manifest_path: Path | None = None
    policy: HardeningPolicy = HardeningPolicy.ALLOW_DEGRADED
    grace_period: float = DEFAULT_GRACE_SECONDS
    prepare_host: Callable[[str], None] | None = field(default=None)

    def _run_instance(
        self,
        identity: InstanceIdentity,
        artifact: Artifact,
        spec: FleetSpec,
    ) -> InstanceOutcome:
        record = self.provisioner.provision(identity, artifact, spec)
        if not record.provisioned:
            return _outcome(record, OutcomeStatus.FAILED, str(record.error))
        try:
            self.hardening.harden(record, self.grace_period)
        except FleetError as exc:
            logger.error("Hardening %s failed: %s", identity.name, exc)
            return _outcome(record, OutcomeStatus.FAILED, str(exc))

        match record.hardening_state:
            case HardeningState.VERIFIED:
                return _outcome(record, OutcomeStatus.VERIFIED)
            case HardeningState.ROLLED_BACK:
                return _outcome(
                    record, OutcomeStatus.DEGRADED, "hardening rolled back; running unhardened"
                )
            case _:
                if record.service_active:
                    return _outcome(
                        record, OutcomeStatus.DEGRADED, "service unit not found; hardening skipped"
                    )
                return _outcome(record, OutcomeStatus.FAILED, "service is not active")

    def _record_manifest(self, spec: FleetSpec, instances: Sequence[InstanceIdentity]) -> None:
        if self.manifest_path is None:
            return
        tracked = list(instances)
        try:
            previous = load_manifest(self.manifest_path)
        except FleetError as exc:
            logger.warning("Ignoring unreadable fleet manifest: %s", exc)
            previous = None
        if previous is not None and not previous.belongs_to(spec.base_directory):
            logger.error(
                "Fleet manifest %s belongs to the fleet at %s; not overwritten, "
                "teardown will scan directories",
                self.manifest_path,
                previous.base_directory,
            )
            return
        if previous is not None:
            current = {identity.directory for identity in instances}
            leftovers = [i for i in previous.instances if i.directory not in current]
            for identity in leftovers:
                logger.warning(
                    "Instance %s from an earlier run is still tracked in %s",
                    identity.name,
                    self.manifest_path,
                )
            tracked.extend(leftovers)
        manifest = FleetManifest(
            repository=spec.repository,
            principal=spec.principal,
            base_directory=spec.base_directory,
            instances=tracked,
        )
        try:
            save_manifest(self.manifest_path, manifest)
        except FleetError as exc:
            logger.error("Fleet manifest not written; teardown will scan directories: %s", exc)

    def run(self, spec: FleetSpec, source: ReleaseSource) -> FleetReport:
        """Provision every instance of *spec* and return the per-instance report.

        Raises
        ------
        ValidationError
            Raised before any side effect when *spec* is invalid.
        ResolutionError, IntegrityError
            Raised when the runner package cannot be fetched or verified.
        """

        validate_fleet_spec(spec)
        instances = identities(spec)
        if self.prepare_host is not None:
            self.prepare_host(spec.principal)

        outcomes: list[InstanceOutcome] = []
        with self.fetcher.fetch(source) as artifact:
            for identity in instances:
                outcomes.append(self._run_instance(identity, artifact, spec))

        self._record_manifest(spec, instances)

        maintenance_error = None
        print("=== Setting up maintenance cron jobs ===")
        try:
            self.scheduler.upsert(*fleet_entries(instances))
        except FleetError as exc:
            logger.error("Maintenance jobs not scheduled: %s", exc)
            maintenance_error = str(exc)
        return FleetReport(
            outcomes=tuple(outcomes),
            policy=self.policy,
            maintenance_error=maintenance_error,
        )


__all__ = ["FleetOrchestrator"]
