"""MCP tool handlers for Azure DevOps <-> Notion sync.

Defines three tools:

- ``sync_run`` -- run a team's sync now (with optional dry-run).
- ``sync_webhook`` -- feed one webhook delivery through the sync.
- ``sync_history`` -- list a team's recent runs.
"""

from __future__ import annotations

import logging
from typing import Any

import mcp.types as types

from ...sync.models import SourceSystem, SyncDirection
from ...sync.orchestrator import SyncOrchestrator
from ...sync.reporter import (
    format_history,
    format_plan_preview,
    format_run_report,
    result_to_json,
)
from .errors import build_error_response
from .registry import ToolSpec

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 10


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


SYNC_RUN_TOOL = types.Tool(
    name="sync_run",
    description=(
        "Synchronize a team's Azure DevOps work items with its Notion "
        "database. Pulls changes since the last run on both sides, "
        "resolves conflicts by last-writer-wins and applies the plan. "
        "Use dry_run to preview."
    ),
    annotations=types.ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
    ),
    inputSchema={
        "type": "object",
        "properties": {
            "team_id": {
                "type": "string",
                "description": "Team id from the 'teams' config section",
            },
            "direction": {
                "type": "string",
                "enum": [d.value for d in SyncDirection],
                "description": "Override the team's configured direction",
            },
            "dry_run": {
                "type": "boolean",
                "default": False,
                "description": "Preview the plan without writing anything",
            },
        },
        "required": ["team_id"],
    },
)

SYNC_WEBHOOK_TOOL = types.Tool(
    name="sync_webhook",
    description=(
        "Process one webhook delivery (ADO service hook or Notion webhook) "
        "for a team. Duplicate deliveries are ignored."
    ),
    annotations=types.ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
    ),
    inputSchema={
        "type": "object",
        "properties": {
            "team_id": {"type": "string"},
            "system": {
                "type": "string",
                "enum": [s.value for s in SourceSystem],
                "description": "System that sent the webhook",
            },
            "payload": {
                "type": "object",
                "description": "Raw webhook JSON body",
            },
            "dry_run": {"type": "boolean", "default": False},
        },
        "required": ["team_id", "system", "payload"],
    },
)

SYNC_HISTORY_TOOL = types.Tool(
    name="sync_history",
    description=(
        "List a team's recent sync runs with counts, newest first. "
        "Pass history_id to show one run in detail."
    ),
    annotations=types.ToolAnnotations(
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    ),
    inputSchema={
        "type": "object",
        "properties": {
            "team_id": {"type": "string"},
            "limit": {
                "type": "integer",
                "default": DEFAULT_HISTORY_LIMIT,
                "minimum": 1,
                "maximum": 200,
            },
            "history_id": {
                "type": "string",
                "description": "Show errors and superseded changes of this run",
            },
        },
        "required": ["team_id"],
    },
)

SYNC_TOOLS: list[types.Tool] = [
    SYNC_RUN_TOOL,
    SYNC_WEBHOOK_TOOL,
    SYNC_HISTORY_TOOL,
]


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _require(args: dict[str, Any], key: str) -> Any:
    value = args.get(key)
    if value in (None, ""):
        raise ValueError(f"{key} is required")
    return value


async def _handle_sync_run(
    orchestrator: SyncOrchestrator, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``sync_run`` tool."""
    team_id = _require(args, "team_id")
    dry_run = bool(args.get("dry_run", False))
    direction = args.get("direction")
    if direction is not None:
        direction = SyncDirection(direction)

    result = await orchestrator.run(
        team_id, direction=direction, dry_run=dry_run, trigger="mcp"
    )
    text = format_plan_preview(result) if dry_run else format_run_report(result)
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        structuredContent=result_to_json(result),
    )


async def _handle_sync_webhook(
    orchestrator: SyncOrchestrator, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``sync_webhook`` tool."""
    team_id = _require(args, "team_id")
    system = SourceSystem(_require(args, "system"))
    payload = _require(args, "payload")
    if not isinstance(payload, dict):
        raise ValueError("payload must be a JSON object")

    result = await orchestrator.handle_webhook(
        team_id, system, payload, dry_run=bool(args.get("dry_run", False))
    )
    return types.CallToolResult(
        content=[
            types.TextContent(type="text", text=format_run_report(result))
        ],
        structuredContent=result_to_json(result),
    )


async def _handle_sync_history(
    orchestrator: SyncOrchestrator, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``sync_history`` tool."""
    team_id = _require(args, "team_id")
    repository = orchestrator.repository
    # Unknown teams raise TeamNotConfiguredError
    repository.load_config(team_id)

    history_id = args.get("history_id")
    if history_id:
        runs = repository.list_runs(team_id, limit=200)
        run = next((r for r in runs if r.history_id == history_id), None)
        if run is None:
            return build_error_response(
                "not_found",
                f"Run '{history_id}' not found for team '{team_id}'.",
                "Call sync_history without history_id to list recent runs.",
            )
        lines = [format_history([run])]
        for error in run.errors:
            ref = f"{error.record_ref}: " if error.record_ref else ""
            lines.append(f"  {error.level} [{error.kind}] {ref}{error.message}")
        for change in run.superseded:
            lines.append(
                f"  superseded {change.record_ref} -> kept {change.winner_ref}"
            )
        return types.CallToolResult(
            content=[types.TextContent(type="text", text="\n".join(lines))],
            structuredContent=run.model_dump(mode="json"),
        )

    limit = int(args.get("limit", DEFAULT_HISTORY_LIMIT))
    runs = repository.list_runs(team_id, limit=limit)
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=format_history(runs))],
        structuredContent={
            "team_id": team_id,
            "runs": [
                r.model_dump(mode="json", exclude={"errors", "superseded", "logs"})
                for r in runs
            ],
        },
    )


SYNC_SPECS: list[ToolSpec] = [
    ToolSpec(tool=SYNC_RUN_TOOL, handler=_handle_sync_run),
    ToolSpec(tool=SYNC_WEBHOOK_TOOL, handler=_handle_sync_webhook),
    ToolSpec(tool=SYNC_HISTORY_TOOL, handler=_handle_sync_history),
]
