"""Tests for fleet-wide provisioning runs."""

from __future__ import annotations

import sys
from collections.abc import Sequence
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from runner_fleet._fleet_addressing import identities  # imported after sys.path mutation
from runner_fleet._fleet_errors import (  # imported after sys.path mutation
    ResolutionError,
    ScheduleError,
    ValidationError,
)
from runner_fleet._fleet_hardening import HardeningController  # imported after sys.path mutation
from runner_fleet._fleet_maintenance import (  # imported after sys.path mutation
    DOCKER_CLEANUP_TAG,
    WORKSPACE_CLEANUP_TAG,
    MaintenanceScheduler,
)
from runner_fleet._fleet_manifest import (  # imported after sys.path mutation
    FleetManifest,
    load_manifest,
    save_manifest,
)
from runner_fleet._fleet_models import (  # imported after sys.path mutation
    HardeningPolicy,
    OutcomeStatus,
    ReleaseSource,
)
from runner_fleet._fleet_orchestrator import FleetOrchestrator  # imported after sys.path mutation
from runner_fleet._fleet_provision import InstanceProvisioner  # imported after sys.path mutation


class BrokenScheduleStore:
    def list(self) -> list[str]:
        return []

    def replace_all(self, lines: Sequence[str]) -> None:
        raise ScheduleError("crontab: permission denied")


@pytest.fixture
def build(tmp_path: Path, fetcher, filesystem, registration, services, schedule_store):
    prepared: list[str] = []

    def _build(
        policy: HardeningPolicy = HardeningPolicy.ALLOW_DEGRADED,
        store=schedule_store,
        lock_path: Path | None = None,
    ) -> FleetOrchestrator:
        return FleetOrchestrator(
            fetcher=fetcher,
            provisioner=InstanceProvisioner(filesystem, registration, services),
            hardening=HardeningController(services, sleep=lambda _: None),
            scheduler=MaintenanceScheduler(store, lock_path=lock_path or tmp_path / "crontab.lock"),
            manifest_path=tmp_path / "state" / "fleet.json",
            policy=policy,
            grace_period=0.0,
            prepare_host=prepared.append,
        )

    _build.prepared = prepared
    return _build


def test_fleet_of_three_fetches_once_and_schedules_once(
    build, make_spec, fetcher, registration, schedule_store
) -> None:
    spec = make_spec(size=3, labels=("nuc",))

    report = build().run(spec, ReleaseSource(version="2.321.0"))

    assert fetcher.fetches == 1
    assert fetcher.released == 1
    assert registration.calls == [
        ("register", "nuc-1"),
        ("register", "nuc-2"),
        ("register", "nuc-3"),
    ]
    assert [outcome.status for outcome in report.outcomes] == [OutcomeStatus.VERIFIED] * 3
    assert report.succeeded
    assert schedule_store.writes == 1
    (sweep,) = [line for line in schedule_store.lines if line.endswith(f"# {WORKSPACE_CLEANUP_TAG}")]
    for identity in identities(spec):
        assert str(identity.work_directory) in sweep
    assert [line for line in schedule_store.lines if line.endswith(f"# {DOCKER_CLEANUP_TAG}")]
    assert build.prepared == ["runner"]


def test_failed_instance_does_not_stop_later_instances(build, make_spec, registration) -> None:
    spec = make_spec(size=3)
    registration.refuse_register.add("nuc-2")

    report = build().run(spec, ReleaseSource())

    statuses = [outcome.status for outcome in report.outcomes]
    assert statuses == [OutcomeStatus.VERIFIED, OutcomeStatus.FAILED, OutcomeStatus.VERIFIED]
    assert "refused" in report.outcomes[1].detail
    assert "nuc-3" in registration.registered
    assert report.failed == 1
    assert not report.succeeded


@pytest.mark.parametrize(
    ("policy", "failed"),
    [(HardeningPolicy.ALLOW_DEGRADED, 0), (HardeningPolicy.STRICT, 1)],
)
def test_rolled_back_instance_is_judged_by_policy(
    build, make_spec, services, policy: HardeningPolicy, failed: int
) -> None:
    spec = make_spec(size=2)
    services.rejects_hardening.add(identities(spec)[0].service_name)

    report = build(policy=policy).run(spec, ReleaseSource())

    assert report.outcomes[0].status is OutcomeStatus.DEGRADED
    assert report.outcomes[1].status is OutcomeStatus.VERIFIED
    assert report.failed == failed


def test_service_dead_after_rollback_fails_only_that_instance(build, make_spec, services) -> None:
    spec = make_spec(size=2)
    services.broken.add(identities(spec)[1].service_name)

    report = build().run(spec, ReleaseSource())

    assert report.outcomes[0].status is OutcomeStatus.VERIFIED
    assert report.outcomes[1].status is OutcomeStatus.FAILED
    assert "even without hardening" in report.outcomes[1].detail


def test_invalid_spec_aborts_before_side_effects(build, make_spec, fetcher, registration) -> None:
    with pytest.raises(ValidationError):
        build().run(make_spec(repository="not-a-repo"), ReleaseSource())

    assert fetcher.fetches == 0
    assert registration.calls == []
    assert build.prepared == []


def test_artifact_failure_aborts_the_run(build, make_spec, fetcher, registration, schedule_store) -> None:
    fetcher.fail_with = ResolutionError("no such release")

    with pytest.raises(ResolutionError):
        build().run(make_spec(size=2), ReleaseSource(version="9.9.9"))

    assert registration.calls == []
    assert schedule_store.writes == 0


def test_manifest_records_instances_and_keeps_earlier_ones(
    tmp_path: Path, build, make_spec
) -> None:
    manifest_path = tmp_path / "state" / "fleet.json"
    earlier = make_spec(size=3)
    save_manifest(
        manifest_path,
        FleetManifest(
            repository=earlier.repository,
            principal=earlier.principal,
            base_directory=earlier.base_directory,
            instances=identities(earlier),
        ),
    )

    build().run(make_spec(size=2), ReleaseSource())

    manifest = load_manifest(manifest_path)
    assert manifest is not None
    assert [identity.name for identity in manifest.instances] == ["nuc-1", "nuc-2", "nuc-3"]


def test_schedule_failure_is_reported_without_failing_instances(build, make_spec) -> None:
    report = build(store=BrokenScheduleStore()).run(make_spec(), ReleaseSource())

    assert report.failed == 0
    assert report.maintenance_error == "crontab: permission denied"
    assert not report.succeeded


def test_manifest_of_another_fleet_is_not_merged_or_overwritten(
    tmp_path: Path, build, make_spec
) -> None:
    manifest_path = tmp_path / "state" / "fleet.json"
    other = make_spec(size=2, base_directory=tmp_path / "srv" / "runner")
    save_manifest(
        manifest_path,
        FleetManifest(
            repository=other.repository,
            principal=other.principal,
            base_directory=other.base_directory,
            instances=identities(other),
        ),
    )

    report = build().run(make_spec(size=1), ReleaseSource())

    assert report.failed == 0
    manifest = load_manifest(manifest_path)
    assert manifest is not None
    assert manifest.base_directory == other.base_directory
    assert [identity.directory for identity in manifest.instances] == [
        identity.directory for identity in identities(other)
    ]


def test_unusable_lock_file_is_reported_after_every_instance(
    tmp_path: Path, build, make_spec, schedule_store
) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("", encoding="utf-8")

    report = build(lock_path=blocker / "crontab.lock").run(make_spec(size=2), ReleaseSource())

    assert [outcome.status for outcome in report.outcomes] == [OutcomeStatus.VERIFIED] * 2
    assert "crontab lock" in report.maintenance_error
    assert schedule_store.writes == 0
    assert not report.succeeded


@pytest.mark.parametrize(
    ("policy", "failed"),
    [(HardeningPolicy.ALLOW_DEGRADED, 0), (HardeningPolicy.STRICT, 1)],
)
def test_unwritable_drop_in_is_judged_by_policy(
    build, make_spec, services, policy: HardeningPolicy, failed: int
) -> None:
    spec = make_spec(size=2)
    first = identities(spec)[0].service_name
    services.failing_override.add(first)

    report = build(policy=policy).run(spec, ReleaseSource())

    assert report.outcomes[0].status is OutcomeStatus.DEGRADED
    assert first not in services.overrides
    assert report.outcomes[1].status is OutcomeStatus.VERIFIED
    assert report.failed == failed
