"""Tagged periodic maintenance jobs in the runner principal's crontab.

Each job line ends with ``# <tag>``. Writing a job removes every existing
line carrying the same tag before appending the new one, so repeated
provisioning runs never accumulate duplicates and a changed instance set
replaces the old path list. The read-modify-write cycle runs under an
exclusive ``fcntl`` lock and the crontab is replaced as a whole.

Examples
--------
>>> entry = MaintenanceEntry("nightly", "0 1 * * *", "true")
>>> merge_entries(["0 1 * * * false # nightly", "MAILTO=ops"], [entry])
['MAILTO=ops', '0 1 * * * true # nightly']
"""

from __future__ import annotations

import fcntl
import logging
import shlex
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from runner_fleet._fleet_errors import ScheduleError
from runner_fleet._fleet_models import (
    InstanceIdentity,
    MaintenanceEntry,
    MaintenanceScope,
)
from runner_fleet._fleet_system import ScheduleStore

logger = logging.getLogger(__name__)

DOCKER_CLEANUP_TAG = "runner-docker-cleanup"
WORKSPACE_CLEANUP_TAG = "runner-workspace-cleanup"
MAINTENANCE_TAGS = (DOCKER_CLEANUP_TAG, WORKSPACE_CLEANUP_TAG)
DEFAULT_LOCK_FILE = Path("/run/lock/runner-fleet-crontab.lock")


def line_has_tag(line: str, tag: str) -> bool:
    return line.rstrip().endswith(f"# {tag}")


def merge_entries(lines: Sequence[str], entries: Iterable[MaintenanceEntry]) -> list[str]:
    """Return *lines* with each entry's tag replaced by the entry itself."""

    merged = list(lines)
    for entry in entries:
        merged = [line for line in merged if not line_has_tag(line, entry.tag)]
        merged.append(entry.render())
    return merged


def drop_tags(lines: Sequence[str], tags: Iterable[str]) -> list[str]:
    tag_list = list(tags)
    return [line for line in lines if not any(line_has_tag(line, tag) for tag in tag_list)]


def docker_prune_entry(log_directory: Path) -> MaintenanceEntry:
    """Weekly prune of unused Docker images, containers and build cache."""

    log_file = shlex.quote(str(log_directory / "docker-cleanup.log"))
    return MaintenanceEntry(
        tag=DOCKER_CLEANUP_TAG,
        schedule="0 3 * * 0",
        command=f'docker system prune -af --filter "until=168h" >> {log_file} 2>&1',
        scope=MaintenanceScope.SHARED,
    )


def workspace_sweep_entry(instances: Sequence[InstanceIdentity]) -> MaintenanceEntry:
    """Monthly sweep of stale ``_temp`` directories across every instance.

    Examples
    --------
    >>> from pathlib import Path
    >>> ids = [InstanceIdentity(i, f"r-{i}", Path(f"/opt/r-{i}"), "") for i in (1, 2)]
    >>> workspace_sweep_entry(ids).command.split(" -maxdepth")[0]
    'find /opt/r-1/_work /opt/r-2/_work'
    """

    if not instances:
        raise ValueError("workspace sweep needs at least one instance")
    work_paths = " ".join(shlex.quote(str(identity.work_directory)) for identity in instances)
    log_file = shlex.quote(str(instances[0].log_directory / "workspace-cleanup.log"))
    return MaintenanceEntry(
        tag=WORKSPACE_CLEANUP_TAG,
        schedule="0 4 1 * *",
        command=(
            f'find {work_paths} -maxdepth 2 -name "_temp" -type d -mtime +30 '
            f"-exec rm -rf {{}} + >> {log_file} 2>&1"
        ),
        scope=MaintenanceScope.PER_INSTANCE_UNION,
    )


def fleet_entries(instances: Sequence[InstanceIdentity]) -> list[MaintenanceEntry]:
    return [
        docker_prune_entry(instances[0].log_directory),
        workspace_sweep_entry(instances),
    ]


@contextmanager
def exclusive_lock(lock_path: Path) -> Iterator[None]:
    """Hold an exclusive ``flock`` on *lock_path* for the duration of the block."""

    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = lock_path.open("a+", encoding="utf-8")
    except OSError as exc:
        raise ScheduleError(f"Failed to open crontab lock {lock_path}: {exc}") from exc
    with handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        except OSError as exc:
            raise ScheduleError(f"Failed to lock {lock_path}: {exc}") from exc
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@dataclass(slots=True)
class MaintenanceScheduler:
    """Upsert and retract tagged jobs in a :class:`ScheduleStore`."""

    store: ScheduleStore
    lock_path: Path = DEFAULT_LOCK_FILE

    def upsert(self, *entries: MaintenanceEntry) -> None:
        with exclusive_lock(self.lock_path):
            current = self.store.list()
            updated = merge_entries(current, entries)
            if updated != current:
                self.store.replace_all(updated)
        for entry in entries:
            logger.info("Scheduled maintenance job %s (%s)", entry.tag, entry.schedule)

    def retract(self, *tags: str) -> list[str]:
        """Remove every job carrying one of *tags*; return the tags that were present."""

        with exclusive_lock(self.lock_path):
            current = self.store.list()
            present = [tag for tag in tags if any(line_has_tag(line, tag) for line in current)]
            if present:
                self.store.replace_all(drop_tags(current, tags))
        for tag in present:
            print(f"=== Removed maintenance job {tag} ===")
        return present


__all__ = [
    "DEFAULT_LOCK_FILE",
    "DOCKER_CLEANUP_TAG",
    "MAINTENANCE_TAGS",
    "WORKSPACE_CLEANUP_TAG",
    "MaintenanceScheduler",
    "docker_prune_entry",
    "drop_tags",
    "exclusive_lock",
    "fleet_entries",
    "line_has_tag",
    "merge_entries",
    "workspace_sweep_entry",
]
