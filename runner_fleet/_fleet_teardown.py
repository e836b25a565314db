"""Discover and tear down every runner instance of a fleet.

Discovery reads the fleet manifest when one exists. Without a manifest it
scans for the bare base directory and every ``{base}-{k}`` sibling holding a
runner (``config.sh`` present), ordered by ``k``; index gaps do not end the
scan. Each instance is stopped, uninstalled and deregistered independently,
so one refused removal token never prevents the remaining instances from
being attempted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from runner_fleet._fleet_addressing import identity_for_directory, instance_index
from runner_fleet._fleet_errors import FleetError, ValidationError
from runner_fleet._fleet_maintenance import MAINTENANCE_TAGS, MaintenanceScheduler
from runner_fleet._fleet_manifest import FleetManifest, load_manifest, remove_manifest
from runner_fleet._fleet_models import (
    DEFAULT_PRINCIPAL,
    InstanceIdentity,
    TeardownFailure,
    TeardownResult,
)
from runner_fleet._fleet_system import (
    InstanceFilesystem,
    RegistrationService,
    ServiceManager,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FleetTeardown:
    """Deregister and uninstall the runner instances rooted at ``base_directory``."""

    filesystem: InstanceFilesystem
    registration: RegistrationService
    services: ServiceManager
    scheduler: MaintenanceScheduler
    base_directory: Path
    principal: str = DEFAULT_PRINCIPAL
    manifest_path: Path | None = None

    def _load_manifest(self) -> FleetManifest | None:
        if self.manifest_path is None:
            return None
        try:
            manifest = load_manifest(self.manifest_path)
        except FleetError as exc:
            logger.warning("Falling back to a directory scan: %s", exc)
            return None
        if manifest is not None and not manifest.belongs_to(self.base_directory):
            logger.warning(
                "Ignoring %s: it describes the fleet at %s, not %s",
                self.manifest_path,
                manifest.base_directory,
                self.base_directory,
            )
            return None
        return manifest

    def _from_manifest(self, manifest: FleetManifest) -> list[InstanceIdentity]:
        found = []
        for identity in sorted(manifest.instances, key=lambda item: item.index):
            if not self.filesystem.has_marker(identity.directory):
                logger.warning(
                    "Runner %s is listed in the manifest but %s holds no runner",
                    identity.name,
                    identity.directory,
                )
                continue
            found.append(identity)
        return found

    def _scan(self) -> list[InstanceIdentity]:
        base = self.base_directory
        found = []
        if self.filesystem.has_marker(base):
            found.append(identity_for_directory(base, index=0))
        indexed = []
        for candidate in base.parent.glob(f"{base.name}-*"):
            index = instance_index(base, candidate)
            if index is None or not candidate.is_dir():
                continue
            if not self.filesystem.has_marker(candidate):
                logger.info("Skipping %s: no runner installed there", candidate)
                continue
            indexed.append((index, candidate))
        for index, candidate in sorted(indexed):
            found.append(identity_for_directory(candidate, index=index))
        return found

    def _discover(self, manifest: FleetManifest | None) -> list[InstanceIdentity]:
        if manifest is not None:
            return self._from_manifest(manifest)
        return self._scan()

    def discover(self) -> list[InstanceIdentity]:
        """Return the provisioned instances, manifest first, directory scan second."""

        return self._discover(self._load_manifest())

    def _teardown_instance(
        self,
        identity: InstanceIdentity,
        removal_token: str,
    ) -> TeardownFailure | None:
        print(f"=== Uninstalling runner in {identity.directory} ===")
        try:
            self.services.uninstall_service(identity)
        except FleetError as exc:
            logger.warning("Service removal for %s failed: %s", identity.name, exc)

        print("--- Removing runner registration ---")
        try:
            self.registration.remove(identity, principal=self.principal, token=removal_token)
        except FleetError as exc:
            logger.warning("Failed to unregister runner in %s: %s", identity.directory, exc)
            return TeardownFailure(identity=identity, reason=str(exc))
        return None

    def run(self, removal_token: str) -> TeardownResult:
        """Tear down every discovered instance and retract the maintenance jobs.

        Raises
        ------
        ValidationError
            Raised before any side effect when no removal token is supplied,
            or when the manifest names a different service account than the
            one whose crontab is cleaned up.
        """

        if not removal_token.strip():
            raise ValidationError("A removal token is required")
        manifest = self._load_manifest()
        if manifest is not None and manifest.principal != self.principal:
            msg = (
                f"Fleet at {self.base_directory} runs as {manifest.principal!r}, "
                f"not {self.principal!r}; pass --user {manifest.principal}"
            )
            raise ValidationError(msg)
        instances = self._discover(manifest)
        if not instances:
            logger.error("No runner directories found matching %s*", self.base_directory)
            return TeardownResult(attempted=0)

        print(f"Found {len(instances)} runner instance(s) to uninstall:")
        for identity in instances:
            print(f"  - {identity.directory}")

        failures = []
        for identity in instances:
            failure = self._teardown_instance(identity, removal_token)
            if failure is not None:
                failures.append(failure)

        maintenance_error = None
        try:
            self.scheduler.retract(*MAINTENANCE_TAGS)
        except FleetError as exc:
            logger.error("Maintenance jobs were not removed: %s", exc)
            maintenance_error = str(exc)

        if manifest is not None and not failures and self.manifest_path is not None:
            try:
                remove_manifest(self.manifest_path)
            except FleetError as exc:
                logger.warning("Stale fleet manifest left behind: %s", exc)
        return TeardownResult(
            attempted=len(instances),
            failures=tuple(failures),
            instances=tuple(instances),
            maintenance_error=maintenance_error,
        )


__all__ = ["FleetTeardown"]
