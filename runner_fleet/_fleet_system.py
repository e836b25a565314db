"""Host collaborators used by the fleet lifecycle engine.

The engine never calls ``systemctl``, ``config.sh`` or ``crontab`` directly.
It talks to the handles declared here so the provisioning, hardening,
maintenance and teardown logic can be exercised with in-memory fakes, while
the command-backed implementations drive the real host through
:func:`runner_fleet._fleet_commands.run_command`.

Examples
--------
>>> services = SystemdServiceManager(Privileges(use_sudo=False))
>>> services.override_path("actions.runner.octo-widgets.nuc.service").name
'hardening.conf'
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from runner_fleet._fleet_commands import (
    CommandContext,
    Privileges,
    probe_command,
    run_command,
)
from runner_fleet._fleet_errors import (
    CommandError,
    FilesystemError,
    RegistrationError,
    ScheduleError,
    ServiceError,
)
from runner_fleet._fleet_models import Artifact, InstanceIdentity

logger = logging.getLogger(__name__)

SYSTEMD_UNIT_DIR = Path("/etc/systemd/system")
OVERRIDE_FILE_NAME = "hardening.conf"
GITHUB_URL = "https://github.com"
REGISTRATION_TIMEOUT_SECONDS = 300
# Local settings written by config.sh; it refuses to configure over them.
LOCAL_CONFIG_FILES = (".runner", ".credentials", ".credentials_rsaparams")


class ServiceManager(Protocol):
    """Operating system service manager capability."""

    def exists(self, service_name: str) -> bool: ...

    def install_service(self, identity: InstanceIdentity, principal: str) -> None: ...

    def uninstall_service(self, identity: InstanceIdentity) -> None: ...

    def start(self, service_name: str) -> None: ...

    def stop(self, service_name: str) -> None: ...

    def restart(self, service_name: str) -> None: ...

    def is_active(self, service_name: str) -> bool: ...

    def apply_override(self, service_name: str, profile: str) -> None: ...

    def remove_override(self, service_name: str) -> None: ...

    def reload_config(self) -> None: ...

    def list_services(self, pattern: str) -> list[str]: ...

    def describe(self, service_name: str) -> str: ...


class RegistrationService(Protocol):
    """Remote dispatch service capability (issue and revoke runner credentials)."""

    def register(
        self,
        identity: InstanceIdentity,
        *,
        principal: str,
        repository: str,
        token: str,
        labels: Sequence[str],
        replace: bool = True,
    ) -> None: ...

    def remove(self, identity: InstanceIdentity, *, principal: str, token: str) -> None: ...


class InstanceFilesystem(Protocol):
    """Privileged filesystem operations on instance directories."""

    def ensure_directory(self, path: Path, principal: str) -> None: ...

    def extract(self, artifact: Artifact, directory: Path, principal: str) -> None: ...

    def clear_registration(self, directory: Path) -> None: ...

    def has_marker(self, directory: Path) -> bool: ...


class ScheduleStore(Protocol):
    """Periodic job store supporting whole-set replacement."""

    def list(self) -> list[str]: ...

    def replace_all(self, lines: Sequence[str]) -> None: ...


@dataclass(slots=True)
class SystemdServiceManager:
    """Service manager backed by ``systemctl`` and the runner's ``svc.sh``."""

    privileges: Privileges = field(default_factory=Privileges.detect)
    unit_directory: Path = SYSTEMD_UNIT_DIR

    def _root(self, command: str, *args: str, cwd: Path | None = None) -> str:
        name, argv = self.privileges.as_root(command, *args)
        try:
            return run_command(name, *argv, context=CommandContext(cwd=cwd))
        except CommandError as exc:
            raise ServiceError(str(exc)) from exc

    def override_path(self, service_name: str) -> Path:
        return self.unit_directory / f"{service_name}.d" / OVERRIDE_FILE_NAME

    def exists(self, service_name: str) -> bool:
        result = probe_command(
            "systemctl", "show", service_name, "--property=LoadState"
        )
        if not result.success:
            return False
        return result.stdout.strip() not in {"LoadState=not-found", ""}

    def _svc(self, identity: InstanceIdentity, *args: str) -> None:
        # svc.sh resolves the runner root from its working directory.
        script = str(identity.directory / "svc.sh")
        self._root(script, *args, cwd=identity.directory)

    def install_service(self, identity: InstanceIdentity, principal: str) -> None:
        self._svc(identity, "install", principal)

    def uninstall_service(self, identity: InstanceIdentity) -> None:
        try:
            self._svc(identity, "stop")
        except ServiceError as exc:
            logger.warning("Stopping runner in %s failed: %s", identity.directory, exc)
        self._svc(identity, "uninstall")

    def start(self, service_name: str) -> None:
        self._root("systemctl", "start", service_name)

    def stop(self, service_name: str) -> None:
        self._root("systemctl", "stop", service_name)

    def restart(self, service_name: str) -> None:
        self._root("systemctl", "restart", service_name)

    def is_active(self, service_name: str) -> bool:
        result = probe_command("systemctl", "is-active", service_name)
        return result.success and result.stdout.strip() == "active"

    def apply_override(self, service_name: str, profile: str) -> None:
        path = self.override_path(service_name)
        self._root("install", "-d", "-m", "0755", str(path.parent))
        name, argv = self.privileges.as_root("tee", str(path))
        try:
            run_command(name, *argv, context=CommandContext(stdin=profile))
        except CommandError as exc:
            raise ServiceError(f"Failed to write {path}: {exc}") from exc

    def remove_override(self, service_name: str) -> None:
        self._root("rm", "-f", str(self.override_path(service_name)))

    def reload_config(self) -> None:
        self._root("systemctl", "daemon-reload")

    def list_services(self, pattern: str) -> list[str]:
        stdout = run_command(
            "systemctl",
            "list-units",
            "--type=service",
            "--all",
            "--no-legend",
            "--plain",
            pattern,
        )
        return [line.split()[0] for line in stdout.splitlines() if line.strip()]

    def describe(self, service_name: str) -> str:
        result = probe_command(
            "systemctl", "status", service_name, "--no-pager", "--lines=10"
        )
        return result.stdout.strip()


@dataclass(slots=True)
class ConfigScriptRegistration:
    """Registration service driven through the runner's ``config.sh``."""

    privileges: Privileges = field(default_factory=Privileges.detect)
    timeout: int = REGISTRATION_TIMEOUT_SECONDS

    def _as_principal(self, identity: InstanceIdentity, principal: str, *args: str) -> None:
        script = str(identity.directory / "config.sh")
        name, argv = self.privileges.as_user(principal, script, *args)
        run_command(
            name,
            *argv,
            context=CommandContext(cwd=identity.directory, timeout=self.timeout),
        )

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
        args = [
            "--url",
            f"{GITHUB_URL}/{repository}",
            "--token",
            token,
            "--name",
            identity.name,
        ]
        if labels:
            args.extend(["--labels", ",".join(labels)])
        args.append("--unattended")
        if replace:
            args.append("--replace")
        try:
            self._as_principal(identity, principal, *args)
        except CommandError as exc:
            msg = f"Registration of {identity.name!r} was refused: {exc}"
            raise RegistrationError(msg) from exc

    def remove(self, identity: InstanceIdentity, *, principal: str, token: str) -> None:
        try:
            self._as_principal(identity, principal, "remove", "--token", token)
        except CommandError as exc:
            msg = f"Removal of {identity.name!r} was refused: {exc}"
            raise RegistrationError(msg) from exc


@dataclass(slots=True)
class PrivilegedFilesystem:
    """Instance directory operations run through ``install``, ``tar`` and ``chown``."""

    privileges: Privileges = field(default_factory=Privileges.detect)
    marker: str = "config.sh"

    def _root(self, command: str, *args: str) -> None:
        name, argv = self.privileges.as_root(command, *args)
        try:
            run_command(name, *argv)
        except CommandError as exc:
            raise FilesystemError(str(exc)) from exc

    def ensure_directory(self, path: Path, principal: str) -> None:
        for directory in (path, path / "logs"):
            self._root(
                "install", "-d", "-m", "0750", "-o", principal, "-g", principal,
                str(directory),
            )

    def extract(self, artifact: Artifact, directory: Path, principal: str) -> None:
        self._root(
            "tar", "xzf", str(artifact.local_path), "-C", str(directory),
            "--overwrite", "--no-same-owner",
        )
        self._root("chown", "-R", f"{principal}:{principal}", str(directory))

    def clear_registration(self, directory: Path) -> None:
        self._root("rm", "-f", *(str(directory / name) for name in LOCAL_CONFIG_FILES))

    def has_marker(self, directory: Path) -> bool:
        return (directory / self.marker).is_file()


@dataclass(slots=True)
class CrontabStore:
    """The principal's crontab, replaced as a whole on every write."""

    principal: str
    privileges: Privileges = field(default_factory=Privileges.detect)

    def list(self) -> list[str]:
        name, argv = self.privileges.as_user(self.principal, "crontab", "-l")
        try:
            result = probe_command(name, *argv)
        except CommandError as exc:
            raise ScheduleError(str(exc)) from exc
        if result.success:
            return result.stdout.splitlines()
        if "no crontab" in result.stderr.lower():
            return []
        msg = f"crontab -l failed for {self.principal}: {result.stderr.strip()}"
        raise ScheduleError(msg)

    def replace_all(self, lines: Sequence[str]) -> None:
        content = "".join(f"{line}\n" for line in lines)
        name, argv = self.privileges.as_user(self.principal, "crontab", "-")
        try:
            run_command(name, *argv, context=CommandContext(stdin=content))
        except CommandError as exc:
            raise ScheduleError(f"Failed to replace crontab: {exc}") from exc


def principal_exists(principal: str) -> bool:
    return probe_command("id", "-u", principal).success


def ensure_principal(
    principal: str,
    privileges: Privileges,
    *,
    groups: Iterable[str] = ("docker",),
) -> None:
    """Create the unprivileged service account and add it to *groups*.

    Groups that do not exist on the host are skipped.
    """

    def root(command: str, *args: str) -> None:
        name, argv = privileges.as_root(command, *args)
        try:
            run_command(name, *argv)
        except CommandError as exc:
            raise FilesystemError(f"Failed to prepare {principal!r}: {exc}") from exc

    if not principal_exists(principal):
        logger.info("Creating service account %s", principal)
        root("useradd", "-m", "-s", "/bin/bash", principal)
    for group in groups:
        if not probe_command("getent", "group", group).success:
            logger.warning("Group %s not found; skipping membership for %s", group, principal)
            continue
        root("usermod", "-aG", group, principal)


__all__ = [
    "ConfigScriptRegistration",
    "CrontabStore",
    "InstanceFilesystem",
    "PrivilegedFilesystem",
    "RegistrationService",
    "ScheduleStore",
    "ServiceManager",
    "SystemdServiceManager",
    "ensure_principal",
    "principal_exists",
]
