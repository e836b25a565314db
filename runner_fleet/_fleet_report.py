"""Render run summaries for the fleet command-line tools."""

from __future__ import annotations

from collections.abc import Sequence

from runner_fleet._fleet_models import (
    FleetReport,
    FleetSpec,
    InstanceIdentity,
    TeardownResult,
)

_HEADERS = ("RUNNER", "DIRECTORY", "PROVISIONING", "HARDENING", "RESULT", "DETAIL")


def _table(rows: Sequence[Sequence[str]]) -> str:
    widths = [max(len(row[col]) for row in rows) for col in range(len(rows[0]) - 1)]
    lines = []
    for row in rows:
        cells = [cell.ljust(width) for cell, width in zip(row, widths)]
        lines.append("  ".join([*cells, row[-1]]).rstrip())
    return "\n".join(lines)


def format_outcome_table(report: FleetReport) -> str:
    """Return one line per instance, failed ones included.

    Examples
    --------
    >>> print(format_outcome_table(FleetReport(outcomes=())))
    RUNNER  DIRECTORY  PROVISIONING  HARDENING  RESULT  DETAIL
    """

    rows = [_HEADERS]
    for outcome in report.outcomes:
        result = outcome.status.value
        if not report.is_success(outcome):
            result = f"{result} (FAIL)"
        detail = outcome.detail.splitlines()[0] if outcome.detail else ""
        rows.append(
            (
                outcome.identity.name,
                str(outcome.identity.directory),
                outcome.provisioning_state.name.lower(),
                outcome.hardening_state.value,
                result,
                detail,
            )
        )
    return _table(rows)


def format_next_steps(spec: FleetSpec, instances: Sequence[InstanceIdentity]) -> str:
    labels = ["self-hosted", *spec.labels]
    rendered = ", ".join(f'"{label}"' for label in labels)
    lines = [
        f"Runners registered for {spec.repository} with labels: {','.join(labels)}",
        "",
        "Next steps:",
        f"  1. Set the GitHub repo variable RUNNER_LABELS to: [{rendered}]",
        f"     Go to: https://github.com/{spec.repository}/settings/variables/actions",
        "  2. Push a commit or trigger a workflow to verify the runners pick up jobs",
        "  3. Monitor:",
    ]
    lines.extend(f"       sudo journalctl -u {identity.service_name} -f" for identity in instances)
    return "\n".join(lines)


def format_teardown_summary(result: TeardownResult) -> str:
    lines = []
    for failure in result.failures:
        lines.append(f"FAILED: {failure.identity.name} ({failure.identity.directory}): {failure.reason}")
    if result.failed:
        lines.append(f"WARNING: {result.failed} runner(s) failed to unregister.")
    if result.maintenance_error:
        lines.append(f"WARNING: maintenance jobs were not removed: {result.maintenance_error}")
    lines.append(
        f"Unregistered {result.attempted - result.failed} of {result.attempted} runner(s). "
        "You can now delete the directories if desired:"
    )
    lines.extend(f"  sudo rm -rf {identity.directory}" for identity in result.instances)
    lines.append("")
    lines.append("Remember to clear the RUNNER_LABELS variable in GitHub repo settings.")
    return "\n".join(lines)


__all__ = ["format_next_steps", "format_outcome_table", "format_teardown_summary"]
