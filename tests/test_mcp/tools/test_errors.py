"""Tests for mcp/tools/errors.py error response builders.

Covers:
- build_error_response() structure and format
- translate_sync_error() mapping from error kinds to corrective actions
"""

import mcp.types as types
import pytest

from atpar_sync.mcp.tools.errors import (
    build_error_response,
    translate_sync_error,
)
from atpar_sync.sync.errors import (
    LinkInvariantViolationError,
    MappingUnresolvableError,
    RecordNotFoundError,
    RemoteRejectedError,
    TeamNotConfiguredError,
    TransientRemoteError,
)


def _get_error_text(result: types.CallToolResult) -> str:
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    return content.text


# ---------------------------------------------------------------------------
# build_error_response tests
# ---------------------------------------------------------------------------


class TestBuildErrorResponse:
    """Tests for build_error_response()."""

    def test_is_error_flag(self):
        result = build_error_response("not_found", "Not found", "Try again")
        assert isinstance(result, types.CallToolResult)
        assert result.isError is True

    def test_single_text_content(self):
        result = build_error_response("not_found", "Not found", "Try again")
        assert len(result.content) == 1
        assert result.content[0].type == "text"

    def test_error_format(self):
        """Text format is 'Error ({type}): {message}\\n\\nAction: {action}'."""
        result = build_error_response(
            "not_found", "Run missing", "Use sync_history"
        )
        assert (
            _get_error_text(result)
            == "Error (not_found): Run missing\n\nAction: Use sync_history"
        )


# ---------------------------------------------------------------------------
# translate_sync_error tests
# ---------------------------------------------------------------------------


class TestTranslateSyncError:
    """Each error kind maps to an error type and an action."""

    @pytest.mark.parametrize(
        ("error", "error_type", "action_fragment"),
        [
            (TeamNotConfiguredError("x"), "not_found", "config.yml"),
            (TransientRemoteError("503"), "remote_error", "retry later"),
            (RemoteRejectedError("400"), "remote_error", "field mappings"),
            (RecordNotFoundError("gone"), "not_found", "sync_history"),
            (LinkInvariantViolationError("dup"), "link_violation", "link"),
        ],
    )
    def test_known_kinds(self, error, error_type, action_fragment):
        text = _get_error_text(translate_sync_error(error))

        assert text.startswith(f"Error ({error_type}): {error}")
        assert action_fragment in text.split("Action:")[1]

    def test_unmapped_kind_is_server_error(self):
        text = _get_error_text(
            translate_sync_error(MappingUnresolvableError("no match"))
        )

        assert text.startswith("Error (server_error): no match")
