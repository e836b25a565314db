"""Apply a systemd hardening drop-in to a runner service and verify it survives.

Some hosts (containerised ones in particular) reject individual sandboxing
directives, which leaves the unit unable to start. The controller therefore
restarts the service after applying the profile, checks liveness after a grace
period, and removes the drop-in again when the service did not come back.
Running unhardened is preferred over not running at all.

State transitions per instance::

    NOT_APPLIED -> APPLIED -> VERIFIED
                           -> ROLLED_BACK
                -> ROLLED_BACK    (drop-in could not be written)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from runner_fleet._fleet_errors import HardeningFailure, ServiceError
from runner_fleet._fleet_models import HardeningState, InstanceRecord
from runner_fleet._fleet_system import ServiceManager

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 5.0

HARDENING_PROFILE = """\
[Service]
NoNewPrivileges=true
PrivateTmp=true
ProtectControlGroups=true
ProtectKernelModules=true
ProtectKernelTunables=true
RestrictSUIDSGID=true
"""


@dataclass(slots=True)
class HardeningController:
    """Apply, verify and, when needed, roll back a service hardening profile."""

    services: ServiceManager
    profile: str = HARDENING_PROFILE
    sleep: Callable[[float], None] = field(default=time.sleep)

    def apply(self, record: InstanceRecord) -> None:
        """Write the drop-in, reload systemd and restart the service.

        The drop-in is overwritten as a whole, so applying twice leaves the
        same end state. Units unknown to systemd are left untouched.
        """

        name = record.identity.service_name
        if not self.services.exists(name):
            logger.warning(
                "Runner systemd service %s not found. Skipping hardening drop-in.", name
            )
            return
        print(f"=== Applying systemd hardening to {name} ===")
        try:
            self.services.apply_override(name, self.profile)
        except ServiceError as exc:
            # The drop-in may be half written; never leave it behind.
            self._roll_back(record, f"writing the hardening drop-in for {name} failed: {exc}")
            return
        record.hardening_state = HardeningState.APPLIED
        self._reload_and_restart(name)

    def _reload_and_restart(self, name: str) -> None:
        # A unit that refuses to start makes restart exit non-zero; the
        # liveness check in verify() decides what happens next.
        try:
            self.services.reload_config()
            self.services.restart(name)
        except ServiceError as exc:
            logger.warning("Restarting %s failed: %s", name, exc)

    def _roll_back(self, record: InstanceRecord, reason: str) -> None:
        name = record.identity.service_name
        logger.warning("Rolling back hardening: %s", reason)
        try:
            self.services.remove_override(name)
        except ServiceError as exc:
            msg = f"Hardening drop-in for {name} could not be removed: {exc}"
            raise HardeningFailure(msg) from exc
        record.hardening_state = HardeningState.ROLLED_BACK
        self._reload_and_restart(name)

    def _confirm_unhardened(self, record: InstanceRecord, grace_period: float) -> bool:
        name = record.identity.service_name
        self.sleep(grace_period)
        record.service_active = self.services.is_active(name)
        if not record.service_active:
            detail = self.services.describe(name)
            msg = f"{name} is not active even without hardening"
            if detail:
                msg = f"{msg}:\n{detail}"
            raise HardeningFailure(msg)
        return False

    def verify(self, record: InstanceRecord, grace_period: float = DEFAULT_GRACE_SECONDS) -> bool:
        """Confirm the service survived hardening, rolling back when it did not.

        Returns
        -------
        bool
            ``True`` when the hardened service is active, ``False`` when the
            profile had to be rolled back and the unhardened service is active.

        Raises
        ------
        HardeningFailure
            Raised when the service is still inactive after the rollback. The
            drop-in has already been removed at that point.
        """

        if record.hardening_state is HardeningState.ROLLED_BACK:
            return self._confirm_unhardened(record, grace_period)
        if record.hardening_state is not HardeningState.APPLIED:
            return record.hardening_state is HardeningState.VERIFIED
        name = record.identity.service_name
        self.sleep(grace_period)
        if self.services.is_active(name):
            record.hardening_state = HardeningState.VERIFIED
            record.service_active = True
            return True

        self._roll_back(record, f"{name} is not active with hardening applied")
        return self._confirm_unhardened(record, grace_period)

    def harden(self, record: InstanceRecord, grace_period: float = DEFAULT_GRACE_SECONDS) -> bool:
        self.apply(record)
        return self.verify(record, grace_period)


__all__ = ["DEFAULT_GRACE_SECONDS", "HARDENING_PROFILE", "HardeningController"]
