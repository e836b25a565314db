"""Tests for the service hardening apply/verify/rollback cycle."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from runner_fleet._fleet_errors import HardeningFailure, ServiceError  # imported after sys.path mutation
from runner_fleet._fleet_hardening import (  # imported after sys.path mutation
    HARDENING_PROFILE,
    HardeningController,
)
from runner_fleet._fleet_models import (  # imported after sys.path mutation
    HardeningState,
    InstanceIdentity,
    InstanceRecord,
    ProvisioningState,
)

SERVICE = "actions.runner.octo-widgets.nuc.service"


def _record() -> InstanceRecord:
    identity = InstanceIdentity(1, "nuc", Path("/opt/runner"), SERVICE)
    return InstanceRecord(
        identity=identity,
        provisioning_state=ProvisioningState.SERVICE_INSTALLED,
        service_active=True,
    )


@pytest.fixture
def running_service(services):
    services.installed.add(SERVICE)
    services.running[SERVICE] = True
    return services


def test_hardening_is_verified_when_service_survives(running_service) -> None:
    sleeps: list[float] = []
    controller = HardeningController(running_service, sleep=sleeps.append)
    record = _record()

    assert controller.harden(record, grace_period=5.0) is True

    assert record.hardening_state is HardeningState.VERIFIED
    assert running_service.overrides[SERVICE] == HARDENING_PROFILE
    assert running_service.reloads == 1
    assert ("restart", SERVICE) in running_service.calls
    assert sleeps == [5.0]


def test_rejected_profile_is_rolled_back_and_service_kept_running(running_service) -> None:
    running_service.rejects_hardening.add(SERVICE)
    controller = HardeningController(running_service, sleep=lambda _: None)
    record = _record()

    assert controller.harden(record) is False

    assert record.hardening_state is HardeningState.ROLLED_BACK
    assert record.service_active
    assert SERVICE not in running_service.overrides
    assert running_service.is_active(SERVICE)
    assert running_service.reloads == 2


def test_service_dead_without_hardening_raises(running_service) -> None:
    running_service.broken.add(SERVICE)
    controller = HardeningController(running_service, sleep=lambda _: None)
    record = _record()

    with pytest.raises(HardeningFailure, match="not active even without hardening"):
        controller.harden(record)

    assert record.hardening_state is HardeningState.ROLLED_BACK
    assert SERVICE not in running_service.overrides


def test_failing_restart_still_reaches_rollback(running_service, monkeypatch) -> None:
    running_service.rejects_hardening.add(SERVICE)
    original_restart = running_service.restart

    def restart(service_name: str) -> None:
        original_restart(service_name)
        if service_name in running_service.overrides:
            raise ServiceError("Job for the unit failed")

    monkeypatch.setattr(running_service, "restart", restart)
    controller = HardeningController(running_service, sleep=lambda _: None)
    record = _record()

    assert controller.harden(record) is False
    assert record.hardening_state is HardeningState.ROLLED_BACK


def test_applying_twice_leaves_same_end_state(running_service) -> None:
    controller = HardeningController(running_service, sleep=lambda _: None)
    first = _record()
    second = _record()

    controller.harden(first)
    overrides_after_first = dict(running_service.overrides)
    controller.harden(second)

    assert running_service.overrides == overrides_after_first
    assert first.hardening_state is second.hardening_state is HardeningState.VERIFIED


def test_unknown_unit_is_skipped(services) -> None:
    controller = HardeningController(services, sleep=lambda _: None)
    record = _record()

    assert controller.harden(record) is False

    assert record.hardening_state is HardeningState.NOT_APPLIED
    assert services.overrides == {}


def test_verify_is_a_no_op_once_verified(running_service) -> None:
    sleeps: list[float] = []
    controller = HardeningController(running_service, sleep=sleeps.append)
    record = _record()
    record.hardening_state = HardeningState.VERIFIED

    assert controller.verify(record) is True
    assert sleeps == []


def test_failed_drop_in_write_is_removed_and_service_kept_running(running_service) -> None:
    running_service.failing_override.add(SERVICE)
    sleeps: list[float] = []
    controller = HardeningController(running_service, sleep=sleeps.append)
    record = _record()

    assert controller.harden(record, grace_period=2.0) is False

    assert record.hardening_state is HardeningState.ROLLED_BACK
    assert record.service_active
    assert SERVICE not in running_service.overrides
    assert ("remove_override", SERVICE) in running_service.calls
    assert running_service.reloads == 1
    assert sleeps == [2.0]


def test_failed_drop_in_write_on_dead_service_raises(running_service) -> None:
    running_service.failing_override.add(SERVICE)
    running_service.broken.add(SERVICE)
    controller = HardeningController(running_service, sleep=lambda _: None)
    record = _record()

    with pytest.raises(HardeningFailure, match="not active even without hardening"):
        controller.harden(record)

    assert SERVICE not in running_service.overrides


def test_drop_in_that_cannot_be_removed_raises(running_service, monkeypatch) -> None:
    running_service.failing_override.add(SERVICE)

    def remove_override(service_name: str) -> None:
        raise ServiceError("rm: cannot remove: Read-only file system")

    monkeypatch.setattr(running_service, "remove_override", remove_override)
    controller = HardeningController(running_service, sleep=lambda _: None)

    with pytest.raises(HardeningFailure, match="could not be removed"):
        controller.harden(_record())
