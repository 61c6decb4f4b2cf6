"""Run report formatting functions.

Provides human-readable and machine-readable output for sync runs:

- ``format_run_report`` -- post-run summary.
- ``format_plan_preview`` -- dry-run preview grouped by classification.
- ``format_history`` -- one line per past run.
- ``result_to_json`` -- structured dict for MCP tool output.
"""

from __future__ import annotations

from collections import defaultdict

from .models import Classification, PlanEntry, RunResult, SyncRun

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_run_report(result: RunResult) -> str:
    """Format a finished run as human-readable text.

    Sections are only included when they contain at least one item.

    Args:
        result: The orchestrator's run result.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    run = result.run

    header = f"Sync run {result.history_id} for team '{result.team_id}'"
    if result.dry_run:
        header += " (DRY RUN)"
    lines.append(header)
    status = result.status.value
    if result.abort_reason:
        status += f" ({result.abort_reason.value})"
    lines.append(f"Status: {status}")
    if run is not None:
        lines.append(f"Started: {run.started_at.isoformat()}")
        if run.finished_at:
            lines.append(f"Finished: {run.finished_at.isoformat()}")
    lines.append("")

    counts = result.result
    lines.append(
        f"{counts.created} created, {counts.updated} updated, "
        f"{counts.deleted} deleted, {counts.skipped} skipped, "
        f"{counts.error_count} errors"
    )
    lines.append("")

    if run is None:
        return "\n".join(lines).rstrip()

    if run.superseded:
        lines.append("Superseded (lost last-writer-wins):")
        for change in run.superseded:
            lines.append(
                f"  {change.record_ref} @ {change.modified_at.isoformat()} "
                f"-> kept {change.winner_ref} @ "
                f"{change.winner_modified_at.isoformat()}"
            )
        lines.append("")

    errors = [e for e in run.errors if e.level == "error"]
    warnings = [e for e in run.errors if e.level == "warning"]
    for label, items in (("Errors:", errors), ("Warnings:", warnings)):
        if not items:
            continue
        lines.append(label)
        for e in items:
            prefix = f"{e.record_ref}: " if e.record_ref else ""
            lines.append(f"  [{e.kind}] {prefix}{e.message}")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Dry-run preview
# ------------------------------------------------------------------


def _describe(entry: PlanEntry) -> str:
    target = entry.target_system.value
    if entry.counterpart_id:
        target += f":{entry.counterpart_id}"
    title = f" '{entry.record.title}'" if entry.record.title else ""
    text = f"{entry.record.ref}{title} -> {target}"
    if entry.payload and entry.classification is Classification.UPDATE_OPPOSITE:
        text += f" [{', '.join(sorted(entry.payload))}]"
    return text


def format_plan_preview(result: RunResult) -> str:
    """Format a dry-run plan grouped by classification.

    Args:
        result: A dry-run result (``dry_run=True``).

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    lines.append("DRY RUN -- No changes will be made")
    lines.append(f"Team: {result.team_id}")
    lines.append("")

    groups: dict[Classification, list[PlanEntry]] = defaultdict(list)
    for entry in result.plan:
        groups[entry.classification].append(entry)

    display_order = [
        Classification.CREATE_OPPOSITE,
        Classification.UPDATE_OPPOSITE,
        Classification.DELETE_OPPOSITE,
        Classification.SUPERSEDED,
        Classification.LINK_VIOLATION,
    ]
    for classification in display_order:
        if classification not in groups:
            continue
        label = classification.value.upper().replace("_", " ")
        lines.append(f"[{label}]")
        for entry in groups[classification]:
            line = f"  {_describe(entry)}"
            if entry.reason and classification is not Classification.UPDATE_OPPOSITE:
                line += f" ({entry.reason})"
            lines.append(line)
        lines.append("")

    skip_count = len(groups.get(Classification.NO_OP, []))
    if skip_count > 0:
        lines.append(f"Skipped: {skip_count} records (no-op)")
        lines.append("")

    if not any(c is not Classification.NO_OP for c in groups):
        lines.append("No changes needed.")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# History
# ------------------------------------------------------------------


def format_history(runs: list[SyncRun]) -> str:
    """Format past runs, one per line, newest first."""
    if not runs:
        return "No runs recorded."
    lines = []
    for run in runs:
        status = run.status.value
        if run.abort_reason:
            status += f"({run.abort_reason.value})"
        flag = " dry-run" if run.dry_run else ""
        lines.append(
            f"{run.started_at.isoformat()} {run.history_id} {run.trigger}"
            f"{flag} {status}: +{run.created} ~{run.updated} -{run.deleted} "
            f"={run.skipped} !{run.error_count}"
        )
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def result_to_json(result: RunResult) -> dict:
    """Convert a run result to a structured dict for JSON serialisation.

    Suitable for MCP ``structuredContent`` output.  The plan is reduced to
    one summary per entry.
    """
    plan = []
    for entry in result.plan:
        item: dict = {
            "position": entry.position,
            "classification": entry.classification.value,
            "record": entry.record.ref,
            "target": entry.target_system.value,
        }
        if entry.counterpart_id:
            item["counterpart_id"] = entry.counterpart_id
        if entry.payload:
            item["fields"] = sorted(entry.payload)
        if entry.reason:
            item["reason"] = entry.reason
        plan.append(item)

    data: dict = {
        "history_id": result.history_id,
        "team_id": result.team_id,
        "status": result.status.value,
        "abort_reason": result.abort_reason.value if result.abort_reason else None,
        "dry_run": result.dry_run,
        "result": result.result.model_dump(),
        "plan": plan,
    }
    if result.run is not None:
        data["errors"] = [e.model_dump() for e in result.run.errors]
        data["superseded"] = [
            s.model_dump(mode="json") for s in result.run.superseded
        ]
    return data
