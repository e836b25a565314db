"""Restart runner services and confirm they stay up."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from runner_fleet._fleet_addressing import SERVICE_PREFIX, service_name
from runner_fleet._fleet_errors import FleetError, ValidationError
from runner_fleet._fleet_system import ServiceManager

logger = logging.getLogger(__name__)

RESTART_GRACE_SECONDS = 3.0


@dataclass(frozen=True, slots=True)
class ServiceCheck:
    service_name: str
    active: bool
    detail: str = ""


@dataclass(slots=True)
class FleetRestart:
    """Restart one named runner service or every ``actions.runner.*`` unit."""

    services: ServiceManager
    sleep: Callable[[float], None] = field(default=time.sleep)

    def targets(self, repository: str | None = None, name: str | None = None) -> list[str]:
        if repository and name:
            return [service_name(repository, name)]
        if repository or name:
            raise ValidationError("--repo and --name must be given together")
        found = self.services.list_services(f"{SERVICE_PREFIX}*")
        if not found:
            msg = "No actions.runner.* service found. Use --repo and --name to specify explicitly."
            raise ValidationError(msg)
        print(f"Auto-detected {len(found)} runner service(s).")
        return found

    def _restart_one(self, name: str, grace_period: float) -> ServiceCheck:
        if not self.services.exists(name):
            logger.warning("Service not found: %s", name)
            return ServiceCheck(name, active=False, detail="service not found")
        print(f"=== Restarting {name} ===")
        try:
            self.services.restart(name)
        except FleetError as exc:
            logger.warning("Restart of %s failed: %s", name, exc)
        self.sleep(grace_period)
        if self.services.is_active(name):
            print(f"OK: {name} restarted successfully.")
            return ServiceCheck(name, active=True)
        logger.error("%s did not stay active after restart.", name)
        return ServiceCheck(name, active=False, detail=self.services.describe(name))

    def restart(
        self,
        names: Sequence[str],
        grace_period: float = RESTART_GRACE_SECONDS,
    ) -> list[ServiceCheck]:
        return [self._restart_one(name, grace_period) for name in names]


__all__ = ["RESTART_GRACE_SECONDS", "FleetRestart", "ServiceCheck"]
