"""Connector interface shared by the Azure DevOps and Notion connectors.

A connector is a blocking, per-run object: the orchestrator builds one per
system after the token guard has produced a valid credential, and calls it
from worker threads via ``run_sync``.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Protocol

from ..sync.errors import MappingUnresolvableError
from ..sync.models import CanonicalRecord, SourceSystem

_FRACTION_RE = re.compile(r"\.(\d+)")


class Connector(Protocol):
    """Operations the sync core needs from a remote system."""

    system: SourceSystem

    def list_changed(
        self, cursor: str | None
    ) -> tuple[list[CanonicalRecord], str | None]:
        """Return records modified at or after *cursor* and the new cursor.

        Re-invoking with the same cursor yields a superset of the previous
        result.  ``None`` lists everything.
        """
        ...

    def get_by_id(self, external_id: str) -> CanonicalRecord | None:
        """Fetch one record, or ``None`` if it does not exist."""
        ...

    def create(self, record: CanonicalRecord, fields: dict[str, Any]) -> str:
        """Create the counterpart of *record* with native *fields*.

        Returns the new external id.  The created record carries
        ``record.external_id`` as its counterpart hint.
        """
        ...

    def update(self, external_id: str, fields: dict[str, Any]) -> None:
        """Apply a native field delta to an existing record."""
        ...

    def prepare_write(
        self, fields: dict[str, Any]
    ) -> tuple[dict[str, Any], list[MappingUnresolvableError]]:
        """Return the part of *fields* that can be written as-is.

        Values the system cannot represent (a person with no account) are
        left out and reported as warnings carrying their canonical key.
        """
        ...

    def delete(self, external_id: str) -> None:
        """Delete (recycle or archive) a record."""
        ...

    def translate_delta_event(
        self, payload: dict[str, Any]
    ) -> CanonicalRecord | None:
        """Turn a pushed change event into a record, or ``None`` to ignore it."""
        ...

    def event_id(self, payload: dict[str, Any]) -> str | None:
        """Return the delivery id used to suppress replays, if any."""
        ...


def parse_remote_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp from either API into an aware datetime.

    Handles a trailing ``Z`` and fractional seconds of any length (ADO
    sends up to seven digits).
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(
        lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1
    )
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_cursor(value: datetime) -> str:
    """Format a timestamp as a UTC cursor string."""
    return (
        value.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def max_cursor(records: list[CanonicalRecord], current: str | None) -> str | None:
    """Return the newest ``last_modified_at`` of *records* as a cursor."""
    if not records:
        return current
    newest = max(r.last_modified_at for r in records)
    if current and parse_remote_timestamp(current) >= newest:
        return current
    return format_cursor(newest)
