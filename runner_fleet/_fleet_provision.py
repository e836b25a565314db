"""Drive a single runner instance through install, register and service-wrap.

Every step is safe to re-run. A failing step stops the instance where it is
and the returned record carries the furthest state reached plus the error;
earlier steps are not undone because re-running the provisioner is the
recovery path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from runner_fleet._fleet_errors import FleetError
from runner_fleet._fleet_models import (
    Artifact,
    FleetSpec,
    InstanceIdentity,
    InstanceRecord,
    ProvisioningState,
)
from runner_fleet._fleet_system import (
    InstanceFilesystem,
    RegistrationService,
    ServiceManager,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class InstanceProvisioner:
    """Provision runner instances from a shared, already verified artifact."""

    filesystem: InstanceFilesystem
    registration: RegistrationService
    services: ServiceManager

    def _prepare(self, record: InstanceRecord, artifact: Artifact, principal: str) -> None:
        identity = record.identity
        self.filesystem.ensure_directory(identity.directory, principal)
        # The running listener holds the binaries open; tar cannot replace them.
        if self.services.exists(identity.service_name):
            logger.info("Stopping %s before upgrading its files", identity.service_name)
            self.services.stop(identity.service_name)
        self.filesystem.extract(artifact, identity.directory, principal)
        record.provisioning_state = ProvisioningState.EXTRACTED

    def _register(self, record: InstanceRecord, spec: FleetSpec) -> None:
        # config.sh refuses a configured directory; --replace only covers the
        # server side, so drop the local settings first.
        self.filesystem.clear_registration(record.identity.directory)
        self.registration.register(
            record.identity,
            principal=spec.principal,
            repository=spec.repository,
            token=spec.registration_token,
            labels=spec.labels,
            replace=True,
        )
        record.provisioning_state = ProvisioningState.REGISTERED

    def _install_service(self, record: InstanceRecord, principal: str) -> None:
        identity = record.identity
        if self.services.exists(identity.service_name):
            logger.info("Service %s already installed; restarting", identity.service_name)
            self.services.restart(identity.service_name)
        else:
            self.services.install_service(identity, principal)
            self.services.start(identity.service_name)
        record.provisioning_state = ProvisioningState.SERVICE_INSTALLED
        record.service_active = self.services.is_active(identity.service_name)

    def provision(
        self,
        identity: InstanceIdentity,
        artifact: Artifact,
        spec: FleetSpec,
    ) -> InstanceRecord:
        """Install, register and start one instance.

        Parameters
        ----------
        identity : InstanceIdentity
            Instance to provision.
        artifact : Artifact
            Verified runner package shared by the whole run.
        spec : FleetSpec
            Fleet settings carrying the repository, labels, token and principal.

        Returns
        -------
        InstanceRecord
            ``SERVICE_INSTALLED`` on success, otherwise the furthest state
            reached with ``error`` set.
        """

        record = InstanceRecord(identity=identity)
        print(f"=== Provisioning runner {identity.name} in {identity.directory} ===")
        try:
            self._prepare(record, artifact, spec.principal)
            self._register(record, spec)
            self._install_service(record, spec.principal)
        except FleetError as exc:
            logger.error(
                "Provisioning %s stopped at %s: %s",
                identity.name,
                record.provisioning_state.name,
                exc,
            )
            record.error = exc
        return record


__all__ = ["InstanceProvisioner"]
