"""Deterministic naming for runner instances.

A fleet of one keeps the legacy unsuffixed name and directory so hosts set up
before multi-instance support keep working. Larger fleets suffix both with the
1-based instance index. Teardown relies on :func:`instance_index` to invert
the directory convention when no fleet manifest is available.

Examples
--------
>>> from pathlib import Path
>>> from runner_fleet._fleet_models import FleetSpec
>>> spec = FleetSpec(3, "nuc", Path("/opt/runner"), (), "octo/widgets", "t")
>>> [(i.name, str(i.directory)) for i in identities(spec)]
[('nuc-1', '/opt/runner-1'), ('nuc-2', '/opt/runner-2'), ('nuc-3', '/opt/runner-3')]
"""

from __future__ import annotations

import json
from pathlib import Path

from runner_fleet._fleet_models import FleetSpec, InstanceIdentity

SERVICE_PREFIX = "actions.runner."
RUNNER_SETTINGS_FILE = ".runner"
RUNNER_SERVICE_FILE = ".service"


def service_name(repository: str, name: str) -> str:
    """Return the systemd unit name ``svc.sh`` installs for a runner.

    Examples
    --------
    >>> service_name("octo/widgets", "nuc-1")
    'actions.runner.octo-widgets.nuc-1.service'
    """

    return f"{SERVICE_PREFIX}{repository.replace('/', '-')}.{name}.service"


def instance_path(base_directory: Path, index: int, size: int) -> Path:
    if size == 1:
        return base_directory
    return base_directory.with_name(f"{base_directory.name}-{index}")


def instance_name(base_name: str, index: int, size: int) -> str:
    if size == 1:
        return base_name
    return f"{base_name}-{index}"


def identities(spec: FleetSpec) -> list[InstanceIdentity]:
    """Return the identities of every instance in *spec*, in index order.

    The result depends only on *spec*; calling it twice yields equal lists.
    """

    return [
        InstanceIdentity(
            index=index,
            name=instance_name(spec.base_name, index, spec.size),
            directory=instance_path(spec.base_directory, index, spec.size),
            service_name=service_name(
                spec.repository, instance_name(spec.base_name, index, spec.size)
            ),
        )
        for index in range(1, spec.size + 1)
    ]


def instance_index(base_directory: Path, candidate: Path) -> int | None:
    """Invert the directory convention for *candidate*.

    Returns ``0`` for the bare base directory, ``k`` for ``{base}-{k}``, and
    ``None`` for anything that is not part of the convention.

    Examples
    --------
    >>> base = Path("/opt/runner")
    >>> instance_index(base, Path("/opt/runner")), instance_index(base, Path("/opt/runner-12"))
    (0, 12)
    >>> instance_index(base, Path("/opt/runner-old")) is None
    True
    """

    if candidate.parent != base_directory.parent:
        return None
    if candidate.name == base_directory.name:
        return 0
    prefix = f"{base_directory.name}-"
    if not candidate.name.startswith(prefix):
        return None
    suffix = candidate.name[len(prefix):]
    if not suffix.isdigit() or suffix.startswith("0"):
        return None
    return int(suffix)


def _registered_agent_name(directory: Path) -> str | None:
    """Read the runner name recorded by ``config.sh`` in *directory*."""

    settings = directory / RUNNER_SETTINGS_FILE
    try:
        # config.sh writes this file with a UTF-8 BOM.
        payload = json.loads(settings.read_text(encoding="utf-8-sig"))
    except (OSError, json.JSONDecodeError):
        return None
    name = payload.get("agentName") if isinstance(payload, dict) else None
    return name if isinstance(name, str) and name else None


def _installed_service_name(directory: Path) -> str | None:
    """Read the unit name ``svc.sh install`` recorded in *directory*."""

    try:
        content = (directory / RUNNER_SERVICE_FILE).read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return content or None


def identity_for_directory(directory: Path, *, index: int) -> InstanceIdentity:
    """Rebuild the identity of an instance found on disk.

    The runner's own settings win over the naming convention so a renamed
    runner is still addressed correctly. The service name is empty when the
    runner was never wrapped as a service.
    """

    name = _registered_agent_name(directory) or directory.name
    return InstanceIdentity(
        index=index,
        name=name,
        directory=directory,
        service_name=_installed_service_name(directory) or "",
    )


__all__ = [
    "SERVICE_PREFIX",
    "identities",
    "identity_for_directory",
    "instance_index",
    "instance_name",
    "instance_path",
    "service_name",
]
