"""Change collection for one side of a run.

Two ways to produce changes, one output shape:

* ``pull()`` -- ask the connector for everything modified since the
  stored cursor.
* ``from_webhook()`` -- translate one pushed event, skipping deliveries
  already processed.

Nothing is persisted here.  The cursor and the event id travel in the
``ChangeSet`` and are written by ``commit()`` only once the orchestrator
decides the run succeeded for this side.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..connectors.base import Connector
from .models import CanonicalRecord, SourceSystem
from .repository import SyncRepository

logger = logging.getLogger(__name__)


@dataclass
class ChangeSet:
    """Changed records of one system plus what to persist on success."""

    system: SourceSystem
    records: list[CanonicalRecord] = field(default_factory=list)
    new_cursor: str | None = None
    event_id: str | None = None


def dedupe_latest(records: list[CanonicalRecord]) -> list[CanonicalRecord]:
    """Keep one record per external id (the most recently modified).

    The surviving records keep the position of the id's first occurrence.
    """
    latest: dict[str, CanonicalRecord] = {}
    for record in records:
        current = latest.get(record.external_id)
        if current is None or record.last_modified_at >= current.last_modified_at:
            latest[record.external_id] = record
    return list(latest.values())


class ChangeCollector:
    """Collect changed records of one system for one team."""

    def __init__(
        self,
        connector: Connector,
        repository: SyncRepository,
        team_id: str,
    ) -> None:
        self.connector = connector
        self.repository = repository
        self.team_id = team_id

    @property
    def system(self) -> SourceSystem:
        return self.connector.system

    def pull(self) -> ChangeSet:
        cursor = self.repository.get_cursor(self.team_id, self.system)
        records, new_cursor = self.connector.list_changed(cursor)
        unique = dedupe_latest(records)
        logger.info(
            "Collected %d changed %s records for team %s (cursor %s)",
            len(unique),
            self.system.value,
            self.team_id,
            cursor or "initial",
        )
        return ChangeSet(self.system, unique, new_cursor=new_cursor)

    def from_webhook(self, payload: dict[str, Any]) -> ChangeSet:
        event_id = self.connector.event_id(payload)
        if event_id and self.repository.has_seen_event(self.team_id, event_id):
            logger.info(
                "Skipping already processed %s event %s",
                self.system.value,
                event_id,
            )
            return ChangeSet(self.system)

        record = self.connector.translate_delta_event(payload)
        if record is None:
            return ChangeSet(self.system, event_id=event_id)
        return ChangeSet(self.system, [record], event_id=event_id)

    def commit(self, change_set: ChangeSet) -> None:
        """Persist the cursor and/or event id carried by *change_set*."""
        if change_set.new_cursor:
            self.repository.save_cursor(
                self.team_id, self.system, change_set.new_cursor
            )
        if change_set.event_id:
            self.repository.remember_event(self.team_id, change_set.event_id)
