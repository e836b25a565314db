"""Shared runner fleet error types.

This module defines the exception hierarchy used by the fleet lifecycle
helpers. Fleet-wide prerequisites (validation and artifact acquisition) raise
errors that abort a run; the per-instance errors are caught by the
orchestrator and recorded against the instance that raised them.

Exceptions
----------
FleetError
ValidationError
ResolutionError
IntegrityError
CommandError
RegistrationError
FilesystemError
ServiceError
HardeningFailure
ScheduleError
"""

from __future__ import annotations


class FleetError(Exception):
    """Base error for runner fleet operations."""


class ValidationError(FleetError):
    """Raised when fleet inputs are invalid, before any mutation happens."""


class ResolutionError(FleetError):
    """Raised when the requested runner release or asset cannot be located."""


class IntegrityError(FleetError):
    """Raised when a downloaded artifact does not match its checksum."""


class CommandError(FleetError):
    """Raised when an external command exits unsuccessfully."""


class RegistrationError(FleetError):
    """Raised when the dispatch service refuses to register or remove a runner.

    Registration tokens expire after about an hour, so this error is never
    retried automatically.
    """


class FilesystemError(FleetError):
    """Raised when an instance directory cannot be prepared."""


class ServiceError(FleetError):
    """Raised when the service manager rejects an operation."""


class HardeningFailure(FleetError):
    """Raised when a service stays inactive even after hardening is rolled back."""


class ScheduleError(FleetError):
    """Raised when the periodic job store cannot be read or replaced."""


__all__ = [
    "CommandError",
    "FilesystemError",
    "FleetError",
    "HardeningFailure",
    "IntegrityError",
    "RegistrationError",
    "ResolutionError",
    "ScheduleError",
    "ServiceError",
    "ValidationError",
]
