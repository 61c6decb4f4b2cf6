"""Identity map between ADO work items and Notion pages.

Links are only ever created from an explicit create-on-opposite or from
the id a record carries about its counterpart; there is no matching by
title or content.  Links are never erased: when a counterpart disappears
the link is marked ``broken`` so the record is not re-created.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any

from .mapper import normalize_values
from .models import Link, SourceSystem
from .repository import SyncRepository

logger = logging.getLogger(__name__)


class LinkStore:
    """Team-partitioned identity map backed by a ``SyncRepository``."""

    def __init__(self, repository: SyncRepository) -> None:
        self._repository = repository

    def find(
        self, team_id: str, system: SourceSystem, external_id: str
    ) -> Link | None:
        """Return the link that pairs *external_id* on *system*, if any."""
        return self._repository.find_link(team_id, system, external_id)

    def upsert(self, link: Link) -> None:
        """Persist *link*.

        Raises:
            LinkInvariantViolationError: If either id is already paired
                with a different counterpart.
        """
        self._repository.upsert_link(link)

    def record_sync(
        self,
        team_id: str,
        ado_id: str,
        notion_id: str,
        values: dict[str, Any],
        existing: Link | None = None,
    ) -> Link:
        """Create or refresh the link after a successful apply.

        Stores the fingerprint and normalised values of what both sides
        now hold.
        """
        now = datetime.now(timezone.utc)
        normalised = normalize_values(values)
        link = Link(
            team_id=team_id,
            ado_id=ado_id,
            notion_id=notion_id,
            last_synced_fingerprint=self.fingerprint(normalised),
            last_synced_values=normalised,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self.upsert(link)
        return link

    def mark_broken(self, link: Link, reason: str) -> Link:
        """Flag *link* as broken; it stays in the map."""
        logger.warning(
            "Marking link ado:%s <-> notion:%s broken: %s",
            link.ado_id,
            link.notion_id,
            reason,
        )
        broken = link.model_copy(
            update={
                "broken": True,
                "broken_reason": reason,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        self.upsert(broken)
        return broken

    @staticmethod
    def fingerprint(values: dict[str, Any]) -> str:
        """Compute a SHA-256 hex digest of canonical *values*.

        Values are normalised first (strings stripped, blank strings and
        empty lists treated as missing, lists sorted, integral floats
        as ints) and serialised with sorted keys, so semantically equal
        records always hash the same.
        """
        normalised = normalize_values(values)
        payload = json.dumps(
            normalised, sort_keys=True, separators=(",", ":"), default=str
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()
