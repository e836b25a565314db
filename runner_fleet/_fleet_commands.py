"""Command helpers for driving host tooling from the fleet helpers."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from plumbum import local
from plumbum.commands.processes import (
    CommandNotFound,
    ProcessExecutionError,
    ProcessTimedOut,
)

from runner_fleet._fleet_errors import CommandError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandContext:
    """Execution options for :func:`run_command`."""

    env: dict[str, str] | None = None
    stdin: str | None = None
    timeout: int | None = None
    cwd: Path | None = None


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Exit status and captured output of a command that may fail."""

    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.return_code == 0


def _bind(command: str, args: tuple[str, ...], ctx: CommandContext):
    try:
        bound = local[command][list(args)]
    except CommandNotFound as exc:
        msg = f"Command {command!r} is not available on PATH"
        raise CommandError(msg) from exc
    if ctx.stdin is not None:
        bound = bound << ctx.stdin
    return bound


def run_command(
    command: str,
    *args: str,
    context: CommandContext | None = None,
) -> str:
    """Execute an external command and return its standard output.

    Raises
    ------
    CommandError
        Raised when the command is missing, times out, or exits non-zero.

    Examples
    --------
    >>> run_command("printf", "hello")
    'hello'
    """

    ctx = context or CommandContext()
    bound = _bind(command, args, ctx)
    logger.debug("Running %s (cwd=%s)", command, ctx.cwd)
    try:
        _, stdout, _ = bound.run(env=ctx.env, timeout=ctx.timeout, cwd=ctx.cwd)
    except ProcessTimedOut as exc:
        msg = f"Command {command!r} timed out after {ctx.timeout}s"
        raise CommandError(msg) from exc
    except ProcessExecutionError as exc:
        msg = f"Command {command!r} failed: {str(exc.stderr).strip()}"
        raise CommandError(msg) from exc
    return stdout


def probe_command(
    command: str,
    *args: str,
    context: CommandContext | None = None,
) -> CommandResult:
    """Execute a command whose non-zero exit status is an answer, not an error.

    Examples
    --------
    >>> probe_command("false").success
    False
    """

    ctx = context or CommandContext()
    bound = _bind(command, args, ctx)
    try:
        return_code, stdout, stderr = bound.run(
            retcode=None, env=ctx.env, timeout=ctx.timeout, cwd=ctx.cwd
        )
    except ProcessTimedOut as exc:
        msg = f"Command {command!r} timed out after {ctx.timeout}s"
        raise CommandError(msg) from exc
    return CommandResult(return_code=return_code, stdout=stdout, stderr=stderr)


@dataclass(frozen=True, slots=True)
class Privileges:
    """How root-level and principal-level commands are prefixed.

    Root commands gain a ``sudo`` prefix unless the process already runs as
    root. Principal commands always switch user through ``sudo -u``.
    """

    use_sudo: bool = True

    @classmethod
    def detect(cls) -> Privileges:
        return cls(use_sudo=os.geteuid() != 0)

    def as_root(self, command: str, *args: str) -> tuple[str, tuple[str, ...]]:
        """Return ``(command, args)`` for running *command* as root.

        Examples
        --------
        >>> Privileges().as_root("systemctl", "daemon-reload")
        ('sudo', ('systemctl', 'daemon-reload'))
        >>> Privileges(use_sudo=False).as_root("systemctl", "daemon-reload")
        ('systemctl', ('daemon-reload',))
        """

        if self.use_sudo:
            return "sudo", (command, *args)
        return command, args

    def as_user(
        self, principal: str, command: str, *args: str
    ) -> tuple[str, tuple[str, ...]]:
        """Return ``(command, args)`` for running *command* as *principal*.

        Examples
        --------
        >>> Privileges().as_user("runner", "crontab", "-l")
        ('sudo', ('-u', 'runner', 'crontab', '-l'))
        """

        return "sudo", ("-u", principal, command, *args)


__all__ = [
    "CommandContext",
    "CommandResult",
    "Privileges",
    "probe_command",
    "run_command",
]
