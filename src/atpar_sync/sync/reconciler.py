"""Reconciler: classify changed records into an ordered plan.

Given the changes collected from both systems, produce one ``PlanEntry``
per change.  The rules are applied in this order:

1. No link and no counterpart hint -> create on the opposite side (a
   deleted record with no link is a no-op).
2. No link but a counterpart hint naming an unlinked record -> adopt the
   pair (a no-op that records the link).  A hint naming a record already
   paired elsewhere is a link violation.
3. Link marked broken -> no-op with a warning.
4. Hint disagreeing with the link -> link violation.
5. Deleted -> delete on the opposite side if the team propagates
   deletes, otherwise a no-op.
6. Fingerprint equal to the last synced one -> no-op.
7. Otherwise an update carrying only the changed fields.

When both sides of one link changed in the same run the later
modification wins, ties go to the team's primary system, and the loser
is reported as superseded.  The winner's update then carries every field
on which the two sides differ, so the loser's edits are overwritten
rather than merged.  Writes the run direction forbids are
downgraded to no-ops.

The reconciler never writes anything; it only reads the link store.
"""

from __future__ import annotations

import logging
from typing import Any

from ..config_schema import TeamSyncConfig
from .links import LinkStore
from .mapper import FieldMapper
from .models import (
    CanonicalRecord,
    Classification,
    PlanEntry,
    SourceSystem,
    SyncDirection,
)

logger = logging.getLogger(__name__)


class Reconciler:
    """Build the plan for one run of one team.

    Args:
        team_id: Team being synced.
        team: The team's configuration (primary system, delete policy).
        link_store: Identity map to classify against.
        mapper: Field mapper used to build target payloads.
        direction: Which way this run may write.
    """

    def __init__(
        self,
        team_id: str,
        team: TeamSyncConfig,
        link_store: LinkStore,
        mapper: FieldMapper,
        direction: SyncDirection = SyncDirection.BOTH,
    ) -> None:
        self.team_id = team_id
        self.team = team
        self.link_store = link_store
        self.mapper = mapper
        self.direction = direction

    @property
    def primary(self) -> SourceSystem:
        return SourceSystem(self.team.primary_system)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def reconcile(
        self,
        ado_changes: list[CanonicalRecord],
        notion_changes: list[CanonicalRecord],
    ) -> list[PlanEntry]:
        """Classify every change.

        Positions number the ADO changes first, then the Notion ones; the
        returned plan is sorted by position.
        """
        changes = list(ado_changes) + list(notion_changes)
        hinted = self._hinted_ids(changes)

        entries: list[PlanEntry] = []
        for position, record in enumerate(changes):
            entries.append(self._classify(position, record, hinted))

        entries = self._resolve_conflicts(entries)
        entries = [self._apply_direction(entry) for entry in entries]
        entries.sort(key=lambda e: e.position)

        logger.info(
            "Reconciled %d changes for team %s: %s",
            len(entries),
            self.team_id,
            _summary(entries),
        )
        return entries

    # ------------------------------------------------------------------
    # Per-record classification
    # ------------------------------------------------------------------

    def _hinted_ids(
        self, changes: list[CanonicalRecord]
    ) -> dict[tuple[SourceSystem, str], str]:
        """Map ``(system, id)`` of unlinked records named by a hint.

        The value is the id of the hinting record, so the named record can
        be skipped in favour of the adoption.
        """
        hinted: dict[tuple[SourceSystem, str], str] = {}
        for record in changes:
            if not record.counterpart_hint:
                continue
            if self.link_store.find(
                self.team_id, record.source_system, record.external_id
            ):
                continue
            key = (record.source_system.opposite, record.counterpart_hint)
            hinted.setdefault(key, record.external_id)
        return hinted

    def _entry(
        self,
        position: int,
        record: CanonicalRecord,
        classification: Classification,
        **kwargs: Any,
    ) -> PlanEntry:
        values = record.canonical_values()
        return PlanEntry(
            position=position,
            classification=classification,
            source_system=record.source_system,
            target_system=record.source_system.opposite,
            record=record,
            fingerprint=LinkStore.fingerprint(values),
            values=values,
            **kwargs,
        )

    def _classify(
        self,
        position: int,
        record: CanonicalRecord,
        hinted: dict[tuple[SourceSystem, str], str],
    ) -> PlanEntry:
        system = record.source_system
        target = system.opposite
        link = self.link_store.find(self.team_id, system, record.external_id)

        if link is None:
            return self._classify_unlinked(position, record, hinted)

        counterpart_id = link.id_for(target)
        if link.broken:
            return self._entry(
                position,
                record,
                Classification.NO_OP,
                link=link,
                counterpart_id=counterpart_id,
                reason=f"link broken: {link.broken_reason or 'counterpart missing'}",
            )

        if record.counterpart_hint and record.counterpart_hint != counterpart_id:
            return self._entry(
                position,
                record,
                Classification.LINK_VIOLATION,
                link=link,
                counterpart_id=counterpart_id,
                reason=(
                    f"{record.ref} names {target.value}:{record.counterpart_hint} "
                    f"but is linked to {target.value}:{counterpart_id}"
                ),
            )

        if record.deleted:
            if not self.team.propagate_deletes:
                logger.info(
                    "Not deleting %s:%s for %s: delete propagation is disabled "
                    "for team %s",
                    target.value,
                    counterpart_id,
                    record.ref,
                    self.team_id,
                )
                return self._entry(
                    position,
                    record,
                    Classification.NO_OP,
                    link=link,
                    counterpart_id=counterpart_id,
                    reason="deleted; delete propagation disabled",
                )
            return self._entry(
                position,
                record,
                Classification.DELETE_OPPOSITE,
                link=link,
                counterpart_id=counterpart_id,
            )

        values = record.canonical_values()
        if LinkStore.fingerprint(values) == link.last_synced_fingerprint:
            return self._entry(
                position,
                record,
                Classification.NO_OP,
                link=link,
                counterpart_id=counterpart_id,
                reason="unchanged since last sync",
            )

        keys = None
        if link.last_synced_values:
            keys = FieldMapper.delta(values, link.last_synced_values) or None
        return self._entry(
            position,
            record,
            Classification.UPDATE_OPPOSITE,
            link=link,
            counterpart_id=counterpart_id,
            payload=self.mapper.from_canonical(record, target, keys),
        )

    def _classify_unlinked(
        self,
        position: int,
        record: CanonicalRecord,
        hinted: dict[tuple[SourceSystem, str], str],
    ) -> PlanEntry:
        system = record.source_system
        target = system.opposite

        if record.deleted:
            return self._entry(
                position,
                record,
                Classification.NO_OP,
                reason="deleted before it was ever synced",
            )

        hint = record.counterpart_hint
        if hint:
            existing = self.link_store.find(self.team_id, target, hint)
            if existing is not None:
                return self._entry(
                    position,
                    record,
                    Classification.LINK_VIOLATION,
                    link=existing,
                    counterpart_id=hint,
                    reason=(
                        f"{record.ref} names {target.value}:{hint}, which is "
                        f"already linked to {system.value}:"
                        f"{existing.id_for(system)}"
                    ),
                )
            return self._entry(
                position,
                record,
                Classification.NO_OP,
                counterpart_id=hint,
                refresh_link=True,
                reason=f"linked to {target.value}:{hint} by counterpart hint",
            )

        hinting_id = hinted.get((system, record.external_id))
        if hinting_id is not None:
            return self._entry(
                position,
                record,
                Classification.NO_OP,
                counterpart_id=hinting_id,
                reason=f"named by {target.value}:{hinting_id}",
            )

        return self._entry(
            position,
            record,
            Classification.CREATE_OPPOSITE,
            payload=self.mapper.from_canonical(record, target),
        )

    # ------------------------------------------------------------------
    # Conflicts and direction
    # ------------------------------------------------------------------

    def _resolve_conflicts(self, entries: list[PlanEntry]) -> list[PlanEntry]:
        """Apply last-writer-wins to links changed on both sides."""
        by_link: dict[str, list[int]] = {}
        for index, entry in enumerate(entries):
            if entry.link is not None and entry.is_mutating:
                by_link.setdefault(entry.link.ado_id, []).append(index)

        resolved = list(entries)
        for indexes in by_link.values():
            systems = {entries[i].source_system for i in indexes}
            if len(indexes) < 2 or len(systems) < 2:
                continue
            pair = [entries[i] for i in indexes]
            ado_entry = next(
                e for e in pair if e.source_system is SourceSystem.ADO
            )
            notion_entry = next(
                e for e in pair if e.source_system is SourceSystem.NOTION
            )

            if (
                not ado_entry.record.deleted
                and not notion_entry.record.deleted
                and ado_entry.fingerprint == notion_entry.fingerprint
            ):
                # Both sides already agree; only the link is stale.
                first, second = sorted(pair, key=lambda e: e.position)
                resolved[entries.index(first)] = first.model_copy(
                    update={
                        "classification": Classification.NO_OP,
                        "payload": {},
                        "refresh_link": True,
                        "reason": "both sides changed to the same values",
                    }
                )
                resolved[entries.index(second)] = second.model_copy(
                    update={
                        "classification": Classification.NO_OP,
                        "payload": {},
                        "reason": "both sides changed to the same values",
                    }
                )
                continue

            winner, loser = self._pick_winner(ado_entry, notion_entry)
            logger.info(
                "Conflict on ado:%s <-> notion:%s: %s wins over %s",
                ado_entry.link.ado_id,
                ado_entry.link.notion_id,
                winner.record.ref,
                loser.record.ref,
            )
            if (
                winner.classification is Classification.UPDATE_OPPOSITE
                and not loser.record.deleted
            ):
                resolved[entries.index(winner)] = self._overwrite_loser(
                    winner, loser
                )
            resolved[entries.index(loser)] = loser.model_copy(
                update={
                    "classification": Classification.SUPERSEDED,
                    "payload": {},
                    "winner": winner.record,
                    "reason": f"superseded by {winner.record.ref}",
                }
            )
        return resolved

    def _overwrite_loser(self, winner: PlanEntry, loser: PlanEntry) -> PlanEntry:
        """Rebuild the winner's payload against the loser's current values.

        The loser's side must end up holding every winning value, including
        fields only the loser edited.
        """
        keys = FieldMapper.delta(winner.values, loser.values)
        return winner.model_copy(
            update={
                "payload": self.mapper.from_canonical(
                    winner.record, winner.target_system, keys
                )
            }
        )

    def _pick_winner(
        self, ado_entry: PlanEntry, notion_entry: PlanEntry
    ) -> tuple[PlanEntry, PlanEntry]:
        ado_at = ado_entry.record.last_modified_at
        notion_at = notion_entry.record.last_modified_at
        if ado_at > notion_at:
            return ado_entry, notion_entry
        if notion_at > ado_at:
            return notion_entry, ado_entry
        if self.primary is SourceSystem.ADO:
            return ado_entry, notion_entry
        return notion_entry, ado_entry

    def _apply_direction(self, entry: PlanEntry) -> PlanEntry:
        if not entry.is_mutating or self.direction.allows_target(
            entry.target_system
        ):
            return entry
        return entry.model_copy(
            update={
                "classification": Classification.NO_OP,
                "payload": {},
                "reason": (
                    f"direction {self.direction.value} does not write to "
                    f"{entry.target_system.value}"
                ),
            }
        )


def _summary(entries: list[PlanEntry]) -> str:
    counts: dict[str, int] = {}
    for entry in entries:
        counts[entry.classification.value] = (
            counts.get(entry.classification.value, 0) + 1
        )
    return ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "nothing"


def link_for_entry(entry: PlanEntry) -> tuple[str, str] | None:
    """Return ``(ado_id, notion_id)`` for an entry whose pair is known."""
    if entry.counterpart_id is None:
        return None
    if entry.source_system is SourceSystem.ADO:
        return entry.record.external_id, entry.counterpart_id
    return entry.counterpart_id, entry.record.external_id


__all__ = ["Reconciler", "link_for_entry"]
