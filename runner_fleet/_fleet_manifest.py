"""Persisted record of the instances a fleet run provisioned.

Teardown prefers this manifest over scanning directory names, which avoids
missing instances after index gaps or a custom base directory. Each manifest
is bound to the absolute base directory of its fleet.
"""

from __future__ import annotations

import hashlib
import json
import os
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from runner_fleet._fleet_errors import FilesystemError
from runner_fleet._fleet_models import InstanceIdentity

MANIFEST_VERSION = 1
DEFAULT_MANIFEST_DIR = Path("/var/lib/runner-fleet")


def _absolute(path: Path) -> Path:
    return Path(os.path.abspath(path))


def default_manifest_path(base_directory: Path) -> Path:
    """Return the manifest location for the fleet rooted at *base_directory*.

    The file name spells out the whole base path and a short digest of it, so
    fleets sharing a directory name under different parents never collide.

    Examples
    --------
    >>> default_manifest_path(Path("/opt/actions-runner"))
    PosixPath('/var/lib/runner-fleet/opt-actions-runner-76529281.json')
    """

    absolute = _absolute(base_directory)
    slug = "-".join(absolute.parts[1:]) or "root"
    digest = hashlib.sha256(str(absolute).encode("utf-8")).hexdigest()[:8]
    return DEFAULT_MANIFEST_DIR / f"{slug}-{digest}.json"


@dataclass(slots=True)
class FleetManifest:
    """Instances, repository binding and principal of one fleet."""

    repository: str
    principal: str
    base_directory: Path
    instances: list[InstanceIdentity] = field(default_factory=list)

    def belongs_to(self, base_directory: Path) -> bool:
        return _absolute(self.base_directory) == _absolute(base_directory)

    def to_mapping(self) -> dict[str, Any]:
        return {
            "version": MANIFEST_VERSION,
            "repository": self.repository,
            "principal": self.principal,
            "base_directory": str(self.base_directory),
            "instances": [
                {
                    "index": identity.index,
                    "name": identity.name,
                    "directory": str(identity.directory),
                    "service_name": identity.service_name,
                }
                for identity in self.instances
            ],
        }


def _require_str(payload: dict[str, Any], key: str, path: Path) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        msg = f"Manifest {path} field {key!r} must be a string"
        raise FilesystemError(msg)
    return value


def _parse_instance(item: Any, path: Path) -> InstanceIdentity:
    if not isinstance(item, dict):
        raise FilesystemError(f"Manifest {path} has a malformed instance entry")
    index = item.get("index")
    if isinstance(index, bool) or not isinstance(index, int):
        raise FilesystemError(f"Manifest {path} instance index must be an integer")
    return InstanceIdentity(
        index=index,
        name=_require_str(item, "name", path),
        directory=Path(_require_str(item, "directory", path)),
        service_name=_require_str(item, "service_name", path),
    )


def load_manifest(path: Path) -> FleetManifest | None:
    """Load the manifest at *path*, or return ``None`` when there is none."""

    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        msg = f"Failed to read fleet manifest {path}: {exc}"
        raise FilesystemError(msg) from exc
    if not isinstance(payload, dict):
        raise FilesystemError(f"Manifest {path} root must be an object")
    instances = payload.get("instances", [])
    if not isinstance(instances, list):
        raise FilesystemError(f"Manifest {path} field 'instances' must be a list")
    return FleetManifest(
        repository=_require_str(payload, "repository", path),
        principal=_require_str(payload, "principal", path),
        base_directory=Path(_require_str(payload, "base_directory", path)),
        instances=[_parse_instance(item, path) for item in instances],
    )


def save_manifest(path: Path, manifest: FleetManifest) -> None:
    """Write *manifest* to ``path`` atomically."""

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        payload = json.dumps(manifest.to_mapping(), indent=2)

        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
        except Exception:
            with suppress(FileNotFoundError):
                os.unlink(tmp_path)
            raise

        tmp_path.replace(path)
        os.chmod(path, 0o600)
    except OSError as exc:
        raise FilesystemError(f"Failed to write fleet manifest {path}: {exc}") from exc


def remove_manifest(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        raise FilesystemError(f"Failed to remove fleet manifest {path}: {exc}") from exc


__all__ = [
    "DEFAULT_MANIFEST_DIR",
    "FleetManifest",
    "default_manifest_path",
    "load_manifest",
    "remove_manifest",
    "save_manifest",
]
