"""Error response builders for MCP tool handlers.

Structured error responses carry a corrective action so an agent can
recover without human intervention.
"""

import mcp.types as types

from ...sync.errors import SyncError


def build_error_response(
    error_type: str, message: str, corrective_action: str
) -> types.CallToolResult:
    """Build a structured error response with corrective action.

    Args:
        error_type: Error category (not_found, validation_error,
            credential_expired, remote_error, server_error)
        message: Human-readable error description
        corrective_action: Specific action the agent can take to resolve the error

    Returns:
        CallToolResult with isError=True

    Examples:
        >>> build_error_response("not_found", "Team 'x' is not configured", "Use sync_history with a configured team.")
        CallToolResult(content=[TextContent(...)], isError=True)
    """
    error_text = f"Error ({error_type}): {message}\n\nAction: {corrective_action}"

    return types.CallToolResult(
        content=[types.TextContent(type="text", text=error_text)],
        isError=True,
    )


# ---------------------------------------------------------------------------
# Sync error translation
# ---------------------------------------------------------------------------

_CORRECTIVE_ACTIONS: dict[str, tuple[str, str]] = {
    "team_not_configured": (
        "not_found",
        "Add the team under 'teams' in .atpar/config.yml (or teams.d/<team>.yml).",
    ),
    "credential_expired": (
        "credential_expired",
        "Reconnect the account or update the team's token, then retry.",
    ),
    "already_running": (
        "already_running",
        "Another run for this team is active; retry after it finishes.",
    ),
    "transient_remote": (
        "remote_error",
        "The remote service is unavailable or throttling; retry later.",
    ),
    "remote_rejected": (
        "remote_error",
        "Check the team's field mappings against the target schema.",
    ),
    "not_found": (
        "not_found",
        "The record no longer exists remotely; check the link in sync_history.",
    ),
    "link_violation": (
        "link_violation",
        "Inspect the records named in the message and fix their link properties.",
    ),
}


def translate_sync_error(error: SyncError) -> types.CallToolResult:
    """Translate a ``SyncError`` to a structured error response."""
    match _CORRECTIVE_ACTIONS.get(error.kind):
        case (error_type, action):
            return build_error_response(error_type, str(error), action)
        case _:
            return build_error_response(
                "server_error",
                str(error),
                "Check the sync service log and retry.",
            )
