"""Tests for MCP sync tool definitions and handlers.

Covers:
- Tool definitions have valid schemas
- sync_run passes direction and dry_run through and picks the report format
- sync_webhook validation
- sync_history listing and single-run detail
- Registry dispatch turns sync errors into structured responses
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import mcp.types as types
import pytest

from atpar_sync.mcp.tools import ALL_SPECS, ToolRegistry
from atpar_sync.mcp.tools.sync import SYNC_TOOLS
from atpar_sync.sync.errors import TeamNotConfiguredError
from atpar_sync.sync.models import (
    RunError,
    RunResult,
    RunStatus,
    SourceSystem,
    SyncDirection,
    SyncRun,
)

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _text(result: types.CallToolResult) -> str:
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    return content.text


def _result(dry_run=False) -> RunResult:
    return RunResult(
        history_id="h1",
        team_id="alpha",
        status=RunStatus.COMPLETED,
        dry_run=dry_run,
    )


@pytest.fixture
def orchestrator(repository):
    orchestrator = MagicMock()
    orchestrator.repository = repository
    orchestrator.run = AsyncMock(return_value=_result())
    orchestrator.handle_webhook = AsyncMock(return_value=_result())
    return orchestrator


@pytest.fixture
def registry():
    return ToolRegistry(ALL_SPECS)


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


class TestToolDefinitions:
    """Schemas and annotations."""

    def test_tool_names(self):
        assert [t.name for t in SYNC_TOOLS] == [
            "sync_run",
            "sync_webhook",
            "sync_history",
        ]

    def test_team_id_required_everywhere(self):
        for tool in SYNC_TOOLS:
            assert "team_id" in tool.inputSchema["required"]

    def test_direction_enum(self):
        schema = SYNC_TOOLS[0].inputSchema["properties"]["direction"]
        assert schema["enum"] == ["ado-to-notion", "notion-to-ado", "both"]

    def test_history_is_read_only(self):
        assert SYNC_TOOLS[2].annotations.readOnlyHint is True
        assert SYNC_TOOLS[0].annotations.readOnlyHint is False


# ---------------------------------------------------------------------------
# sync_run
# ---------------------------------------------------------------------------


class TestSyncRun:
    async def test_run_report(self, registry, orchestrator):
        result = await registry.call_tool(
            "sync_run", {"team_id": "alpha"}, orchestrator
        )

        orchestrator.run.assert_awaited_once_with(
            "alpha", direction=None, dry_run=False, trigger="mcp"
        )
        assert "Sync run h1 for team 'alpha'" in _text(result)
        assert result.structuredContent["status"] == "completed"

    async def test_dry_run_preview(self, registry, orchestrator):
        orchestrator.run.return_value = _result(dry_run=True)

        result = await registry.call_tool(
            "sync_run",
            {"team_id": "alpha", "dry_run": True, "direction": "ado-to-notion"},
            orchestrator,
        )

        kwargs = orchestrator.run.call_args.kwargs
        assert kwargs["dry_run"] is True
        assert kwargs["direction"] is SyncDirection.ADO_TO_NOTION
        assert _text(result).startswith("DRY RUN")

    async def test_missing_team_id(self, registry, orchestrator):
        result = await registry.call_tool("sync_run", {}, orchestrator)

        assert result.isError is True
        assert "Error (validation_error): team_id is required" in _text(result)

    async def test_invalid_direction(self, registry, orchestrator):
        result = await registry.call_tool(
            "sync_run", {"team_id": "alpha", "direction": "sideways"}, orchestrator
        )

        assert result.isError is True
        orchestrator.run.assert_not_awaited()

    async def test_unknown_team(self, registry, orchestrator):
        orchestrator.run.side_effect = TeamNotConfiguredError(
            "Team 'x' is not configured"
        )

        result = await registry.call_tool("sync_run", {"team_id": "x"}, orchestrator)

        assert result.isError is True
        assert "Error (not_found)" in _text(result)
        assert "teams.d" in _text(result)


# ---------------------------------------------------------------------------
# sync_webhook
# ---------------------------------------------------------------------------


class TestSyncWebhook:
    async def test_dispatches_payload(self, registry, orchestrator):
        payload = {"id": "evt-1", "eventType": "workitem.updated"}

        result = await registry.call_tool(
            "sync_webhook",
            {"team_id": "alpha", "system": "ado", "payload": payload},
            orchestrator,
        )

        orchestrator.handle_webhook.assert_awaited_once_with(
            "alpha", SourceSystem.ADO, payload, dry_run=False
        )
        assert result.isError is not True

    async def test_payload_must_be_object(self, registry, orchestrator):
        result = await registry.call_tool(
            "sync_webhook",
            {"team_id": "alpha", "system": "notion", "payload": [1, 2]},
            orchestrator,
        )

        assert result.isError is True
        assert "payload must be a JSON object" in _text(result)

    async def test_unknown_system(self, registry, orchestrator):
        result = await registry.call_tool(
            "sync_webhook",
            {"team_id": "alpha", "system": "jira", "payload": {}},
            orchestrator,
        )

        assert result.isError is True


# ---------------------------------------------------------------------------
# sync_history
# ---------------------------------------------------------------------------


class TestSyncHistory:
    def _record_run(self, repository, **kwargs) -> str:
        data = {
            "history_id": "",
            "team_id": "alpha",
            "started_at": T0,
            "status": RunStatus.COMPLETED,
        }
        data.update(kwargs)
        return repository.append_run_record(SyncRun(**data))

    async def test_lists_runs(self, registry, orchestrator, repository):
        history_id = self._record_run(repository, created=3)

        result = await registry.call_tool(
            "sync_history", {"team_id": "alpha"}, orchestrator
        )

        assert history_id in _text(result)
        runs = result.structuredContent["runs"]
        assert runs[0]["created"] == 3
        assert "errors" not in runs[0]

    async def test_empty_history(self, registry, orchestrator):
        result = await registry.call_tool(
            "sync_history", {"team_id": "alpha"}, orchestrator
        )
        assert _text(result) == "No runs recorded."

    async def test_run_detail(self, registry, orchestrator, repository):
        history_id = self._record_run(
            repository,
            errors=[
                RunError(record_ref="ado:3", message="rejected", kind="remote_rejected")
            ],
        )

        result = await registry.call_tool(
            "sync_history",
            {"team_id": "alpha", "history_id": history_id},
            orchestrator,
        )

        assert "error [remote_rejected] ado:3: rejected" in _text(result)
        assert result.structuredContent["history_id"] == history_id

    async def test_unknown_run(self, registry, orchestrator):
        result = await registry.call_tool(
            "sync_history", {"team_id": "alpha", "history_id": "nope"}, orchestrator
        )

        assert result.isError is True
        assert "Run 'nope' not found" in _text(result)

    async def test_unknown_team(self, registry, orchestrator):
        result = await registry.call_tool(
            "sync_history", {"team_id": "missing"}, orchestrator
        )

        assert result.isError is True
        assert "Error (not_found)" in _text(result)
