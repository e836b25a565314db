"""Data models for the runner fleet lifecycle.

These models give the addressing, provisioning, hardening, maintenance, and
teardown helpers a small, typed contract so data flow stays explicit across
module boundaries.

Examples
--------
>>> from pathlib import Path
>>> spec = FleetSpec(
...     size=2,
...     base_name="nuc",
...     base_directory=Path("/opt/actions-runner"),
...     labels=("nuc",),
...     repository="octo/widgets",
...     registration_token="token",
... )
>>> validate_fleet_spec(spec)
>>> spec.size
2
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from pathlib import Path

from runner_fleet._fleet_errors import ValidationError

NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
REPOSITORY_PATTERN = re.compile(r"^[A-Za-z0-9._-]+/[A-Za-z0-9._-]+$")
DEFAULT_PRINCIPAL = "runner"


@dataclass(frozen=True, slots=True)
class FleetSpec:
    """Description of the fleet an operator asked for.

    Attributes
    ----------
    size
        Number of runner instances to provision (at least one).
    base_name
        Runner name used verbatim for a single instance, or as the prefix of
        ``{base_name}-{index}`` for larger fleets.
    base_directory
        Install directory for a single instance, or the prefix of
        ``{base_directory}-{index}`` for larger fleets.
    labels
        Extra labels attached to every runner in the fleet.
    repository
        ``OWNER/REPO`` identifier the runners register against.
    registration_token
        Short-lived registration token; never rendered in ``repr``.
    principal
        Unprivileged account that owns the instance directories and runs the
        services.
    """

    size: int
    base_name: str
    base_directory: Path
    labels: tuple[str, ...]
    repository: str
    registration_token: str = field(repr=False)
    principal: str = DEFAULT_PRINCIPAL


def validate_fleet_spec(spec: FleetSpec) -> None:
    """Reject a spec that would be unsafe or ambiguous to act upon.

    Raises
    ------
    ValidationError
        Raised with a message naming the first invalid field.

    Examples
    --------
    >>> from pathlib import Path
    >>> validate_fleet_spec(FleetSpec(0, "nuc", Path("/opt/r"), (), "o/r", "t"))
    Traceback (most recent call last):
    ...
    runner_fleet._fleet_errors.ValidationError: Fleet size must be at least 1, got 0
    """

    if isinstance(spec.size, bool) or not isinstance(spec.size, int) or spec.size < 1:
        msg = f"Fleet size must be at least 1, got {spec.size!r}"
        raise ValidationError(msg)
    if not NAME_PATTERN.fullmatch(spec.base_name):
        msg = (
            f"Invalid runner name {spec.base_name!r}. "
            "Allowed characters: letters, digits, ., _, -"
        )
        raise ValidationError(msg)
    for label in spec.labels:
        if not NAME_PATTERN.fullmatch(label):
            msg = (
                f"Invalid label {label!r}. "
                "Allowed characters: letters, digits, ., _, -"
            )
            raise ValidationError(msg)
    if not REPOSITORY_PATTERN.fullmatch(spec.repository):
        msg = f"Invalid repository {spec.repository!r}. Expected OWNER/REPO"
        raise ValidationError(msg)
    if not spec.base_directory.is_absolute():
        msg = f"Base directory must be absolute, got {spec.base_directory}"
        raise ValidationError(msg)
    if not NAME_PATTERN.fullmatch(spec.base_directory.name):
        msg = f"Base directory name {spec.base_directory.name!r} is not a valid runner path"
        raise ValidationError(msg)
    if not spec.registration_token.strip():
        raise ValidationError("A registration token is required")
    if not NAME_PATTERN.fullmatch(spec.principal):
        msg = f"Invalid service principal {spec.principal!r}"
        raise ValidationError(msg)


@dataclass(frozen=True, slots=True)
class InstanceIdentity:
    """Deterministic identity of one runner instance."""

    index: int
    name: str
    directory: Path
    service_name: str

    @property
    def log_directory(self) -> Path:
        return self.directory / "logs"

    @property
    def work_directory(self) -> Path:
        return self.directory / "_work"


@dataclass(frozen=True, slots=True)
class ReleaseSource:
    """Which runner release to fetch; ``version=None`` selects the latest."""

    version: str | None = None
    platform: str = "linux-x64"


@dataclass(frozen=True, slots=True)
class Artifact:
    """A downloaded and verified runner package shared by every instance."""

    url: str
    expected_checksum: str
    local_path: Path
    version: str


class ProvisioningState(enum.IntEnum):
    """Furthest provisioning step an instance has reached."""

    UNPROVISIONED = 0
    EXTRACTED = 1
    REGISTERED = 2
    SERVICE_INSTALLED = 3


class HardeningState(enum.Enum):
    """Hardening lifecycle: ``NOT_APPLIED -> APPLIED -> VERIFIED | ROLLED_BACK``."""

    NOT_APPLIED = "not-applied"
    APPLIED = "applied"
    VERIFIED = "verified"
    ROLLED_BACK = "rolled-back"


@dataclass(slots=True)
class InstanceRecord:
    """Mutable per-run record of one instance's progress.

    The record is owned by whichever component is currently acting on the
    instance and is discarded at the end of the run.
    """

    identity: InstanceIdentity
    provisioning_state: ProvisioningState = ProvisioningState.UNPROVISIONED
    service_active: bool = False
    hardening_state: HardeningState = HardeningState.NOT_APPLIED
    error: Exception | None = None

    @property
    def provisioned(self) -> bool:
        return (
            self.error is None
            and self.provisioning_state is ProvisioningState.SERVICE_INSTALLED
        )


class MaintenanceScope(enum.Enum):
    """Whether a maintenance job is host-wide or spans every instance path."""

    SHARED = "shared"
    PER_INSTANCE_UNION = "per-instance-union"


@dataclass(frozen=True, slots=True)
class MaintenanceEntry:
    """A tagged periodic job; at most one live entry exists per tag."""

    tag: str
    schedule: str
    command: str
    scope: MaintenanceScope = MaintenanceScope.SHARED

    def render(self) -> str:
        """Return the crontab line for this entry.

        Examples
        --------
        >>> MaintenanceEntry("t", "0 3 * * 0", "true").render()
        '0 3 * * 0 true # t'
        """

        return f"{self.schedule} {self.command} # {self.tag}"


class HardeningPolicy(enum.Enum):
    """How a rolled-back (running but unhardened) instance is judged."""

    STRICT = "strict"
    ALLOW_DEGRADED = "allow-degraded"


class OutcomeStatus(enum.Enum):
    VERIFIED = "verified"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class InstanceOutcome:
    """Final result for one instance of an orchestration run."""

    identity: InstanceIdentity
    status: OutcomeStatus
    provisioning_state: ProvisioningState
    hardening_state: HardeningState
    detail: str = ""


@dataclass(frozen=True, slots=True)
class FleetReport:
    """Per-instance outcomes of one orchestration run."""

    outcomes: tuple[InstanceOutcome, ...]
    policy: HardeningPolicy = HardeningPolicy.ALLOW_DEGRADED
    maintenance_error: str | None = None

    def is_success(self, outcome: InstanceOutcome) -> bool:
        if outcome.status is OutcomeStatus.VERIFIED:
            return True
        if outcome.status is OutcomeStatus.DEGRADED:
            return self.policy is HardeningPolicy.ALLOW_DEGRADED
        return False

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if not self.is_success(outcome))

    @property
    def succeeded(self) -> bool:
        return self.failed == 0 and self.maintenance_error is None


@dataclass(frozen=True, slots=True)
class TeardownFailure:
    identity: InstanceIdentity
    reason: str


@dataclass(frozen=True, slots=True)
class TeardownResult:
    """Summary of one teardown run."""

    attempted: int
    failures: tuple[TeardownFailure, ...] = ()
    instances: tuple[InstanceIdentity, ...] = ()
    maintenance_error: str | None = None

    @property
    def failed(self) -> int:
        return len(self.failures)


__all__ = [
    "DEFAULT_PRINCIPAL",
    "Artifact",
    "FleetReport",
    "FleetSpec",
    "HardeningPolicy",
    "HardeningState",
    "InstanceIdentity",
    "InstanceOutcome",
    "InstanceRecord",
    "MaintenanceEntry",
    "MaintenanceScope",
    "OutcomeStatus",
    "ProvisioningState",
    "ReleaseSource",
    "TeardownFailure",
    "TeardownResult",
    "validate_fleet_spec",
]
