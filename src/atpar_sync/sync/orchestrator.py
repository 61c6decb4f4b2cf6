"""Sync orchestrator: the per-run state machine.

A run moves through ``pending -> locking -> collecting -> reconciling ->
applying -> finalizing`` and ends ``completed`` or ``aborted``.  The same
machine serves scheduled/manual runs (cursor-based pull) and webhook
deliveries (one translated delta); only change production differs.

Guarantees:

* At most one active run per team (repository lease lock).  A run that
  finds the lock held ends ``aborted(already_running)`` without queueing.
* Each plan entry's failure is isolated: counted, recorded and the next
  entry proceeds.  Links are written right after each successful write.
* Dry runs stop after reconciling and write nothing but the run record.
* The run record is finalized whatever the outcome.
* Cursors and webhook event ids are only committed for completed,
  non-dry runs, per side, when no entry sourced from that side failed.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from ..config import RuntimeConfig
from ..config_schema import Credential, TeamSyncConfig
from ..connectors import build_connector
from ..connectors.base import Connector
from ..core.async_utils import run_sync
from .collector import ChangeCollector, ChangeSet
from .errors import CredentialExpiredError, RecordNotFoundError, SyncError
from .links import LinkStore
from .mapper import FieldMapper
from .models import (
    AbortReason,
    Classification,
    PlanEntry,
    RunCounts,
    RunError,
    RunPhase,
    RunResult,
    RunStatus,
    SourceSystem,
    SupersededChange,
    SyncDirection,
    SyncRun,
)
from .reconciler import Reconciler, link_for_entry
from .repository import SyncRepository
from .token_guard import TokenGuard

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[..., Connector]
Collect = Callable[
    [dict[SourceSystem, ChangeCollector]], Awaitable[list[ChangeSet]]
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _RunAborted(Exception):
    """Internal signal: stop the run with *reason*."""

    def __init__(self, reason: AbortReason) -> None:
        super().__init__(reason.value)
        self.reason = reason


@dataclass
class _RunState:
    """Mutable bookkeeping for one run.

    Apply lanes run in worker threads, so counters and lists are only
    touched under ``lock``.
    """

    team_id: str
    history_id: str
    deadline: float
    clock: Callable[[], float]
    phase: RunPhase = RunPhase.PENDING
    counts: dict[str, int] = field(
        default_factory=lambda: dict.fromkeys(
            ("created", "updated", "deleted", "skipped", "error_count"), 0
        )
    )
    errors: list[RunError] = field(default_factory=list)
    superseded: list[SupersededChange] = field(default_factory=list)
    logs: list[str] = field(default_factory=list)
    failed_sources: set[SourceSystem] = field(default_factory=set)
    timed_out: bool = False
    credential_expired: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)

    def enter(self, phase: RunPhase) -> None:
        self.phase = phase
        logger.debug(
            "Run %s entering %s",
            self.history_id,
            phase.value,
            extra={"team_id": self.team_id, "history_id": self.history_id},
        )

    def log(self, message: str) -> None:
        with self.lock:
            self.logs.append(message)
        logger.info(
            message,
            extra={"team_id": self.team_id, "history_id": self.history_id},
        )

    def count(self, name: str) -> None:
        with self.lock:
            self.counts[name] += 1

    def error(
        self,
        entry: PlanEntry | None,
        message: str,
        kind: str = "sync_error",
        level: str = "error",
    ) -> None:
        error = RunError(
            record_ref=entry.record.ref if entry else None,
            title=entry.record.title if entry else None,
            message=message,
            kind=kind,
            level=level,
        )
        with self.lock:
            self.errors.append(error)
            if level == "error":
                self.counts["error_count"] += 1
        log = logger.warning if level == "warning" else logger.error
        log(
            "%s%s",
            f"{error.record_ref}: " if error.record_ref else "",
            message,
            extra={"team_id": self.team_id, "history_id": self.history_id},
        )

    def past_deadline(self) -> bool:
        if self.clock() >= self.deadline:
            self.timed_out = True
        return self.timed_out

    def should_stop(self) -> bool:
        return self.credential_expired or self.past_deadline()


class SyncOrchestrator:
    """Run syncs for any configured team.

    Args:
        repository: Persistence for config, links, cursors, locks, history.
        config: Runtime knobs (timeouts, retry policy, OAuth client).
        connector_factory: Builds a connector for ``(team, system,
            credential, mapper)``.  Defaults to ``build_connector``.
        token_guard: Credential guard; built from *config* if omitted.
        clock: Monotonic clock used for the run deadline.
    """

    def __init__(
        self,
        repository: SyncRepository,
        config: RuntimeConfig,
        connector_factory: ConnectorFactory | None = None,
        token_guard: TokenGuard | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.config = config
        self.connector_factory = connector_factory or build_connector
        self.token_guard = token_guard or TokenGuard(repository, config)
        self.link_store = LinkStore(repository)
        self.clock = clock

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def run(
        self,
        team_id: str,
        direction: SyncDirection | str | None = None,
        dry_run: bool = False,
        trigger: str = "manual",
    ) -> RunResult:
        """Pull changes since the stored cursors and sync them.

        Args:
            team_id: Team to sync.
            direction: Override the team's configured direction.
            dry_run: Compute and return the plan without writing.
            trigger: Label stored in the run history (``manual``,
                ``schedule``).

        Raises:
            TeamNotConfiguredError: If *team_id* has no configuration.
        """

        async def collect(
            collectors: dict[SourceSystem, ChangeCollector],
        ) -> list[ChangeSet]:
            return list(
                await asyncio.gather(
                    *(run_sync(c.pull) for c in collectors.values())
                )
            )

        return await self._execute(
            team_id, direction, dry_run, trigger, collect, pull=True
        )

    async def handle_webhook(
        self,
        team_id: str,
        system: SourceSystem | str,
        payload: dict[str, Any],
        dry_run: bool = False,
    ) -> RunResult:
        """Sync the single change carried by a webhook *payload*.

        Raises:
            TeamNotConfiguredError: If *team_id* has no configuration.
        """
        source = SourceSystem(system)

        async def collect(
            collectors: dict[SourceSystem, ChangeCollector],
        ) -> list[ChangeSet]:
            return [await run_sync(collectors[source].from_webhook, payload)]

        return await self._execute(
            team_id, None, dry_run, f"webhook:{source.value}", collect, pull=False
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _execute(
        self,
        team_id: str,
        direction: SyncDirection | str | None,
        dry_run: bool,
        trigger: str,
        collect: Collect,
        pull: bool,
    ) -> RunResult:
        team = await run_sync(self.repository.load_config, team_id)
        run_direction = SyncDirection(direction or team.direction)

        record = SyncRun(
            history_id="",
            team_id=team_id,
            trigger=trigger,
            direction=run_direction,
            dry_run=dry_run,
            started_at=_utcnow(),
        )
        history_id = await run_sync(self.repository.append_run_record, record)
        record = record.model_copy(update={"history_id": history_id})
        state = _RunState(
            team_id=team_id,
            history_id=history_id,
            deadline=self.clock() + self.config.run_timeout,
            clock=self.clock,
        )

        state.enter(RunPhase.LOCKING)
        acquired = await run_sync(
            self.repository.acquire_lock,
            team_id,
            history_id,
            self.config.lock_ttl,
        )
        if not acquired:
            state.log(f"Team {team_id} already has an active run; skipping")
            return await self._finalize(
                state, record, AbortReason.ALREADY_RUNNING, []
            )

        plan: list[PlanEntry] = []
        collected: dict[SourceSystem, tuple[ChangeCollector, ChangeSet]] = {}
        abort_reason: AbortReason | None = None
        try:
            plan, collected = await self._collect_and_apply(
                state, team, run_direction, dry_run, collect, pull
            )
            if state.credential_expired:
                abort_reason = AbortReason.CREDENTIAL_EXPIRED
            elif state.timed_out:
                abort_reason = AbortReason.TIMEOUT
        except _RunAborted as exc:
            abort_reason = exc.reason
        except Exception as exc:
            logger.exception("Run %s for team %s failed", history_id, team_id)
            state.error(None, f"Internal error: {exc}", kind="internal")
            abort_reason = AbortReason.INTERNAL_ERROR
        finally:
            await run_sync(self.repository.release_lock, team_id, history_id)

        if abort_reason is None and not dry_run:
            await self._commit_cursors(state, collected)
        return await self._finalize(state, record, abort_reason, plan)

    async def _collect_and_apply(
        self,
        state: _RunState,
        team: TeamSyncConfig,
        direction: SyncDirection,
        dry_run: bool,
        collect: Collect,
        pull: bool,
    ) -> tuple[
        list[PlanEntry], dict[SourceSystem, tuple[ChangeCollector, ChangeSet]]
    ]:
        mapper = FieldMapper(team)

        # Collecting
        state.enter(RunPhase.COLLECTING)
        connectors = await self._connect(state, team, mapper)
        sources = direction.sources if pull else tuple(SourceSystem)
        collectors = {
            system: ChangeCollector(connectors[system], self.repository, state.team_id)
            for system in sources
        }
        try:
            change_sets = await collect(collectors)
        except CredentialExpiredError as exc:
            state.error(None, str(exc), kind=exc.kind)
            raise _RunAborted(AbortReason.CREDENTIAL_EXPIRED) from exc
        except Exception as exc:
            logger.exception("Change collection failed for team %s", state.team_id)
            state.error(
                None,
                f"Change collection failed: {exc}",
                kind=getattr(exc, "kind", "collector_failed"),
            )
            raise _RunAborted(AbortReason.COLLECTOR_FAILED) from exc

        collected = {cs.system: (collectors[cs.system], cs) for cs in change_sets}
        if state.past_deadline():
            raise _RunAborted(AbortReason.TIMEOUT)

        # Reconciling
        state.enter(RunPhase.RECONCILING)
        ado_set = collected.get(SourceSystem.ADO)
        notion_set = collected.get(SourceSystem.NOTION)
        reconciler = Reconciler(
            state.team_id, team, self.link_store, mapper, direction
        )
        plan = await run_sync(
            reconciler.reconcile,
            ado_set[1].records if ado_set else [],
            notion_set[1].records if notion_set else [],
        )
        for warning in mapper.drain_warnings():
            state.error(None, str(warning), kind=warning.kind, level=warning.level)
        state.log(
            f"Planned {len(plan)} entries for team {state.team_id}"
            + (" (dry run)" if dry_run else "")
        )

        if dry_run:
            self._count_plan(state, plan)
            return plan, collected
        if state.past_deadline():
            raise _RunAborted(AbortReason.TIMEOUT)

        # Applying
        state.enter(RunPhase.APPLYING)
        await self._apply(state, team, plan, connectors)
        return plan, collected

    async def _connect(
        self,
        state: _RunState,
        team: TeamSyncConfig,
        mapper: FieldMapper,
    ) -> dict[SourceSystem, Connector]:
        """Validate both credentials, then build both connectors."""
        connectors: dict[SourceSystem, Connector] = {}
        for system in SourceSystem:
            try:
                credential: Credential = await run_sync(
                    self.token_guard.ensure_valid,
                    state.team_id,
                    system,
                    team.credential_for(system.value),
                )
            except CredentialExpiredError as exc:
                state.error(None, str(exc), kind=exc.kind)
                raise _RunAborted(AbortReason.CREDENTIAL_EXPIRED) from exc
            try:
                connectors[system] = self.connector_factory(
                    team,
                    system,
                    credential,
                    mapper,
                    retry_attempts=self.config.retry_attempts,
                    backoff=(
                        self.config.retry_backoff_min,
                        self.config.retry_backoff_max,
                    ),
                )
            except ValueError as exc:
                state.error(None, str(exc), kind="collector_failed")
                raise _RunAborted(AbortReason.COLLECTOR_FAILED) from exc
        return connectors

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    @staticmethod
    def _note_superseded(state: _RunState, entry: PlanEntry) -> None:
        if entry.classification is Classification.SUPERSEDED and entry.winner:
            with state.lock:
                state.superseded.append(
                    SupersededChange(
                        record_ref=entry.record.ref,
                        system=entry.source_system,
                        modified_at=entry.record.last_modified_at,
                        winner_ref=entry.winner.ref,
                        winner_modified_at=entry.winner.last_modified_at,
                    )
                )

    @classmethod
    def _count_plan(cls, state: _RunState, plan: list[PlanEntry]) -> None:
        names = {
            Classification.CREATE_OPPOSITE: "created",
            Classification.UPDATE_OPPOSITE: "updated",
            Classification.DELETE_OPPOSITE: "deleted",
            Classification.NO_OP: "skipped",
            Classification.SUPERSEDED: "skipped",
        }
        for entry in plan:
            if entry.classification is Classification.LINK_VIOLATION:
                state.error(
                    entry, entry.reason or "link violation", kind="link_violation"
                )
                continue
            state.count(names[entry.classification])
            cls._note_superseded(state, entry)
            if (
                entry.classification is Classification.CREATE_OPPOSITE
                and entry.record.subtask_ids
            ):
                state.log(
                    f"{entry.record.ref}: {len(entry.record.subtask_ids)} "
                    "subtask task(s) would be created"
                )

    async def _apply(
        self,
        state: _RunState,
        team: TeamSyncConfig,
        plan: list[PlanEntry],
        connectors: dict[SourceSystem, Connector],
    ) -> None:
        lanes: dict[SourceSystem, list[PlanEntry]] = {s: [] for s in SourceSystem}
        for entry in plan:
            if entry.is_mutating:
                lanes[entry.target_system].append(entry)
            else:
                await run_sync(self._settle, state, entry)

        await asyncio.gather(
            *(
                run_sync(self._apply_lane, state, entries, connectors)
                for entries in lanes.values()
                if entries
            )
        )

    def _settle(self, state: _RunState, entry: PlanEntry) -> None:
        """Account for a non-mutating entry."""
        if entry.classification is Classification.LINK_VIOLATION:
            state.error(
                entry, entry.reason or "link violation", kind="link_violation"
            )
            return

        state.count("skipped")
        self._note_superseded(state, entry)
        if (
            entry.classification is not Classification.SUPERSEDED
            and entry.link is not None
            and entry.link.broken
        ):
            state.error(entry, entry.reason or "link broken", level="warning")

        if entry.refresh_link:
            pair = link_for_entry(entry)
            if pair is None:
                return
            try:
                self.link_store.record_sync(
                    state.team_id, pair[0], pair[1], entry.values, existing=entry.link
                )
            except SyncError as exc:
                state.error(entry, str(exc), kind=exc.kind)

    def _apply_lane(
        self,
        state: _RunState,
        entries: list[PlanEntry],
        connectors: dict[SourceSystem, Connector],
    ) -> None:
        """Apply one target system's entries in plan order (worker thread)."""
        for entry in entries:
            if state.should_stop():
                state.log(
                    f"Stopped before {entry.record.ref}: "
                    + ("credential expired" if state.credential_expired else "timeout")
                )
                return
            self._apply_entry(state, entry, connectors)

    def _apply_entry(
        self,
        state: _RunState,
        entry: PlanEntry,
        connectors: dict[SourceSystem, Connector],
    ) -> None:
        connector = connectors[entry.target_system]
        try:
            if entry.classification is Classification.DELETE_OPPOSITE:
                connector.delete(entry.counterpart_id)
                self.link_store.mark_broken(
                    entry.link, f"deleted on {entry.source_system.value}"
                )
                state.count("deleted")
                return

            payload, unresolved = connector.prepare_write(entry.payload)
            for warning in unresolved:
                state.error(entry, str(warning), kind=warning.kind, level="warning")
            # The link holds what was written, so the echo compares equal.
            values = {
                **entry.values,
                **{w.key: None for w in unresolved if w.key},
            }
            if entry.classification is Classification.CREATE_OPPOSITE:
                new_id = connector.create(entry.record, payload)
                if entry.source_system is SourceSystem.ADO:
                    ado_id, notion_id = entry.record.external_id, new_id
                else:
                    ado_id, notion_id = new_id, entry.record.external_id
                self.link_store.record_sync(state.team_id, ado_id, notion_id, values)
                state.count("created")
                if entry.source_system is SourceSystem.NOTION:
                    self._link_back(state, entry, connectors, ado_id)
            elif entry.classification is Classification.UPDATE_OPPOSITE:
                connector.update(entry.counterpart_id, payload)
                self.link_store.record_sync(
                    state.team_id,
                    entry.link.ado_id,
                    entry.link.notion_id,
                    values,
                    existing=entry.link,
                )
                state.count("updated")
        except CredentialExpiredError as exc:
            state.credential_expired = True
            state.failed_sources.add(entry.source_system)
            state.error(entry, str(exc), kind=exc.kind)
        except RecordNotFoundError as exc:
            state.failed_sources.add(entry.source_system)
            state.error(entry, str(exc), kind=exc.kind)
            if entry.link is not None:
                self.link_store.mark_broken(
                    entry.link,
                    f"{entry.target_system.value}:{entry.counterpart_id} not found",
                )
        except SyncError as exc:
            state.failed_sources.add(entry.source_system)
            state.error(entry, str(exc), kind=exc.kind, level=exc.level)
        except Exception as exc:
            logger.exception("Unexpected failure applying %s", entry.record.ref)
            state.failed_sources.add(entry.source_system)
            state.error(entry, f"Unexpected error: {exc}", kind="internal")

    def _link_back(
        self,
        state: _RunState,
        entry: PlanEntry,
        connectors: dict[SourceSystem, Connector],
        ado_id: str,
    ) -> None:
        """Follow up a work item created from a Notion page.

        The page gets the new id and URL, and each of its subtasks becomes
        a child task.  The link is already stored, so failures here are
        warnings.
        """
        page_id = entry.record.external_id
        notion = connectors[SourceSystem.NOTION]
        ado = connectors[SourceSystem.ADO]
        try:
            notion.set_counterpart(page_id, ado_id)
        except CredentialExpiredError:
            raise
        except SyncError as exc:
            state.error(
                entry,
                f"Created ado:{ado_id} but could not write it back: {exc}",
                kind=exc.kind,
                level="warning",
            )

        if not entry.record.subtask_ids:
            return
        try:
            subtasks = notion.get_subtasks(entry.record.subtask_ids)
        except CredentialExpiredError:
            raise
        except SyncError as exc:
            state.error(
                entry, f"Could not read subtasks: {exc}", kind=exc.kind, level="warning"
            )
            return
        for subtask_id, title in subtasks:
            try:
                task_id = ado.create_task(title, ado_id, subtask_id)
            except CredentialExpiredError:
                raise
            except SyncError as exc:
                state.error(
                    entry,
                    f"Could not create task for subtask '{title}': {exc}",
                    kind=exc.kind,
                    level="warning",
                )
                continue
            state.log(f"Created task ado:{task_id} under ado:{ado_id}: {title}")

    # ------------------------------------------------------------------
    # Finalizing
    # ------------------------------------------------------------------

    async def _commit_cursors(
        self,
        state: _RunState,
        collected: dict[SourceSystem, tuple[ChangeCollector, ChangeSet]],
    ) -> None:
        for system, (collector, change_set) in collected.items():
            if system in state.failed_sources:
                state.log(
                    f"Keeping {system.value} cursor: some of its changes failed"
                )
                continue
            await run_sync(collector.commit, change_set)

    async def _finalize(
        self,
        state: _RunState,
        record: SyncRun,
        abort_reason: AbortReason | None,
        plan: list[PlanEntry],
    ) -> RunResult:
        state.enter(RunPhase.FINALIZING)
        status = RunStatus.COMPLETED if abort_reason is None else RunStatus.ABORTED
        if abort_reason is not None and abort_reason is not AbortReason.ALREADY_RUNNING:
            state.log(f"Run aborted: {abort_reason.value}")

        counts = RunCounts(**state.counts)
        final = record.model_copy(
            update={
                "status": status,
                "abort_reason": abort_reason,
                "finished_at": _utcnow(),
                **state.counts,
                "errors": list(state.errors),
                "superseded": list(state.superseded),
                "logs": list(state.logs),
            }
        )
        await run_sync(self.repository.finalize_run_record, final)
        state.enter(
            RunPhase.COMPLETED if abort_reason is None else RunPhase.ABORTED
        )
        logger.info(
            "Run %s for team %s %s: created=%d updated=%d deleted=%d "
            "skipped=%d errors=%d",
            state.history_id,
            state.team_id,
            status.value,
            counts.created,
            counts.updated,
            counts.deleted,
            counts.skipped,
            counts.error_count,
            extra={"team_id": state.team_id, "history_id": state.history_id},
        )
        return RunResult(
            history_id=state.history_id,
            team_id=state.team_id,
            status=status,
            abort_reason=abort_reason,
            dry_run=record.dry_run,
            result=counts,
            plan=plan,
            run=final,
        )
