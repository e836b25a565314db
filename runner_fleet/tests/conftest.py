from __future__ import annotations

import fnmatch
import json
import sys
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from runner_fleet._fleet_errors import (  # imported after sys.path mutation
    FilesystemError,
    RegistrationError,
    ServiceError,
)
from runner_fleet._fleet_models import (  # imported after sys.path mutation
    Artifact,
    FleetSpec,
    InstanceIdentity,
    ReleaseSource,
)


@dataclass
class FakeServiceManager:
    """In-memory systemd: units, running flags and drop-in overrides."""

    installed: set[str] = field(default_factory=set)
    running: dict[str, bool] = field(default_factory=dict)
    overrides: dict[str, str] = field(default_factory=dict)
    rejects_hardening: set[str] = field(default_factory=set)
    broken: set[str] = field(default_factory=set)
    failing_uninstall: set[str] = field(default_factory=set)
    failing_override: set[str] = field(default_factory=set)
    calls: list[tuple[str, str]] = field(default_factory=list)
    reloads: int = 0

    def exists(self, service_name: str) -> bool:
        return service_name in self.installed

    def install_service(self, identity: InstanceIdentity, principal: str) -> None:
        self.calls.append(("install", identity.service_name))
        if identity.service_name in self.installed:
            raise ServiceError(f"{identity.service_name} already exists")
        self.installed.add(identity.service_name)

    def uninstall_service(self, identity: InstanceIdentity) -> None:
        self.calls.append(("uninstall", identity.name))
        if identity.name in self.failing_uninstall:
            raise ServiceError(f"svc.sh uninstall failed for {identity.name}")
        self.installed.discard(identity.service_name)
        self.running.pop(identity.service_name, None)

    def _launch(self, service_name: str) -> None:
        self.running[service_name] = service_name in self.installed

    def start(self, service_name: str) -> None:
        self.calls.append(("start", service_name))
        self._launch(service_name)

    def stop(self, service_name: str) -> None:
        self.calls.append(("stop", service_name))
        self.running[service_name] = False

    def restart(self, service_name: str) -> None:
        self.calls.append(("restart", service_name))
        self._launch(service_name)

    def is_active(self, service_name: str) -> bool:
        if service_name in self.broken:
            return False
        if service_name in self.overrides and service_name in self.rejects_hardening:
            return False
        return self.running.get(service_name, False)

    def apply_override(self, service_name: str, profile: str) -> None:
        self.calls.append(("apply_override", service_name))
        self.overrides[service_name] = profile
        if service_name in self.failing_override:
            raise ServiceError(f"tee: write error: No space left on device ({service_name})")

    def remove_override(self, service_name: str) -> None:
        self.calls.append(("remove_override", service_name))
        self.overrides.pop(service_name, None)

    def reload_config(self) -> None:
        self.reloads += 1

    def list_services(self, pattern: str) -> list[str]:
        return sorted(name for name in self.installed if fnmatch.fnmatch(name, pattern))

    def describe(self, service_name: str) -> str:
        return f"{service_name}: inactive (dead)"


@dataclass
class FakeRegistration:
    """Registers like config.sh: an already configured directory is refused."""

    registered: dict[str, tuple[str, ...]] = field(default_factory=dict)
    refuse_register: set[str] = field(default_factory=set)
    refuse_remove: set[str] = field(default_factory=set)
    calls: list[tuple[str, str]] = field(default_factory=list)
    replace_flags: list[bool] = field(default_factory=list)

    def register(
        self,
        identity: InstanceIdentity,
        *,
        principal: str,
        repository: str,
        token: str,
        labels: Sequence[str],
        replace: bool = True,
    ) -> None:
        self.calls.append(("register", identity.name))
        self.replace_flags.append(replace)
        if identity.name in self.refuse_register:
            raise RegistrationError(f"Registration of {identity.name!r} was refused: token expired")
        settings = identity.directory / ".runner"
        if settings.exists():
            raise RegistrationError(
                f"Registration of {identity.name!r} was refused: "
                "Cannot configure the runner because it is already configured."
            )
        settings.write_text(json.dumps({"agentName": identity.name}), encoding="utf-8")
        self.registered[identity.name] = tuple(labels)

    def remove(self, identity: InstanceIdentity, *, principal: str, token: str) -> None:
        self.calls.append(("remove", identity.name))
        if identity.name in self.refuse_remove:
            raise RegistrationError(f"Removal of {identity.name!r} was refused: bad credentials")
        self.registered.pop(identity.name, None)


@dataclass
class FakeFilesystem:
    """Creates real directories under ``tmp_path`` and a ``config.sh`` marker."""

    failing: set[Path] = field(default_factory=set)
    extracted: dict[Path, str] = field(default_factory=dict)

    def ensure_directory(self, path: Path, principal: str) -> None:
        if path in self.failing:
            raise FilesystemError(f"install -d {path}: Permission denied")
        (path / "logs").mkdir(parents=True, exist_ok=True)

    def extract(self, artifact: Artifact, directory: Path, principal: str) -> None:
        (directory / "config.sh").write_text("#!/bin/sh\n", encoding="utf-8")
        self.extracted[directory] = artifact.version

    def clear_registration(self, directory: Path) -> None:
        for name in (".runner", ".credentials", ".credentials_rsaparams"):
            (directory / name).unlink(missing_ok=True)

    def has_marker(self, directory: Path) -> bool:
        return (directory / "config.sh").is_file()


@dataclass
class FakeScheduleStore:
    lines: list[str] = field(default_factory=list)
    writes: int = 0

    def list(self) -> list[str]:
        return list(self.lines)

    def replace_all(self, lines: Sequence[str]) -> None:
        self.writes += 1
        self.lines = list(lines)


@dataclass
class FakeFetcher:
    artifact_path: Path
    fail_with: Exception | None = None
    fetches: int = 0
    released: int = 0

    @contextmanager
    def fetch(self, source: ReleaseSource) -> Iterator[Artifact]:
        self.fetches += 1
        if self.fail_with is not None:
            raise self.fail_with
        try:
            yield Artifact(
                url="https://example.invalid/runner.tar.gz",
                expected_checksum="0" * 64,
                local_path=self.artifact_path,
                version=source.version or "2.321.0",
            )
        finally:
            self.released += 1


@pytest.fixture
def services() -> FakeServiceManager:
    return FakeServiceManager()


@pytest.fixture
def registration() -> FakeRegistration:
    return FakeRegistration()


@pytest.fixture
def filesystem() -> FakeFilesystem:
    return FakeFilesystem()


@pytest.fixture
def schedule_store() -> FakeScheduleStore:
    return FakeScheduleStore()


@pytest.fixture
def fetcher(tmp_path: Path) -> FakeFetcher:
    return FakeFetcher(artifact_path=tmp_path / "runner.tar.gz")


@pytest.fixture
def make_spec(tmp_path: Path):
    def _make_spec(**overrides: object) -> FleetSpec:
        defaults: dict[str, object] = {
            "size": 1,
            "base_name": "nuc",
            "base_directory": tmp_path / "opt" / "runner",
            "labels": ("nuc",),
            "repository": "octo/widgets",
            "registration_token": "AAAREG",
        }
        defaults.update(overrides)
        return FleetSpec(**defaults)

    return _make_spec

