"""Pydantic models for the reconciliation and sync engine.

Defines the core data contracts used across all sync modules:

- ``SourceSystem``, ``SyncDirection``: which side a record lives on and
  which way a run may write.
- ``CanonicalRecord``: system-neutral view of one remote record.
- ``Link``: one entry of the identity map.
- ``Classification`` and ``PlanEntry``: reconciler output.
- ``RunError``, ``SupersededChange``, ``SyncRun``, ``RunResult``: run
  history and the result returned to triggers.

Value objects are frozen.  ``Link`` and ``SyncRun`` are replaced with
``model_copy(update=...)`` rather than mutated.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SourceSystem(str, Enum):
    """The two systems kept in sync."""

    ADO = "ado"
    NOTION = "notion"

    @property
    def opposite(self) -> SourceSystem:
        return SourceSystem.NOTION if self is SourceSystem.ADO else SourceSystem.ADO


class SyncDirection(str, Enum):
    """Which way a run propagates changes."""

    ADO_TO_NOTION = "ado-to-notion"
    NOTION_TO_ADO = "notion-to-ado"
    BOTH = "both"

    def allows_target(self, target: SourceSystem) -> bool:
        """Return ``True`` if writes to *target* are permitted."""
        if self is SyncDirection.BOTH:
            return True
        if self is SyncDirection.ADO_TO_NOTION:
            return target is SourceSystem.NOTION
        return target is SourceSystem.ADO

    @property
    def sources(self) -> tuple[SourceSystem, ...]:
        """Systems whose changes are collected, in plan order."""
        if self is SyncDirection.ADO_TO_NOTION:
            return (SourceSystem.ADO,)
        if self is SyncDirection.NOTION_TO_ADO:
            return (SourceSystem.NOTION,)
        return (SourceSystem.ADO, SourceSystem.NOTION)


class CanonicalRecord(BaseModel):
    """System-neutral representation of one work item or page.

    Attributes:
        source_system: System the record was read from.
        external_id: Id of the record in ``source_system``.
        title: Record title.
        state: Workflow state in the canonical (ADO) vocabulary.
        description: Plain-text description.
        field_values: Remaining mapped fields keyed by canonical key.
        last_modified_at: Remote modification timestamp (timezone-aware).
        deleted: True if the record was deleted or archived remotely.
        counterpart_hint: Opposite-side id the record itself carries
            (``notion-id:`` tag or "ADO ID" property), if any.
        url: Browser URL of the record.
        subtask_ids: Notion pages related as subtasks.  Not part of the
            canonical values, so they never affect the fingerprint.
    """

    source_system: SourceSystem
    external_id: str
    title: str | None = None
    state: str | None = None
    description: str | None = None
    field_values: dict[str, Any] = Field(default_factory=dict)
    last_modified_at: datetime
    deleted: bool = False
    counterpart_hint: str | None = None
    url: str | None = None
    subtask_ids: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def ref(self) -> str:
        """Short reference used in logs and run history."""
        return f"{self.source_system.value}:{self.external_id}"

    def canonical_values(self) -> dict[str, Any]:
        """Return every mapped value keyed by canonical key."""
        values = dict(self.field_values)
        values["title"] = self.title
        values["state"] = self.state
        values["description"] = self.description
        return values


class Link(BaseModel):
    """Identity-map entry pairing one ADO item with one Notion page.

    ``last_synced_values`` holds the canonical values written at the last
    successful sync so updates can carry only the changed fields.
    """

    team_id: str
    ado_id: str
    notion_id: str
    last_synced_fingerprint: str | None = None
    last_synced_values: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    broken: bool = False
    broken_reason: str | None = None

    model_config = {"frozen": True}

    def id_for(self, system: SourceSystem) -> str:
        return self.ado_id if system is SourceSystem.ADO else self.notion_id


class Classification(str, Enum):
    """Reconciler verdict for one changed record."""

    CREATE_OPPOSITE = "create_opposite"
    UPDATE_OPPOSITE = "update_opposite"
    DELETE_OPPOSITE = "delete_opposite"
    SUPERSEDED = "superseded"
    NO_OP = "no_op"
    LINK_VIOLATION = "link_violation"


MUTATING = frozenset(
    {
        Classification.CREATE_OPPOSITE,
        Classification.UPDATE_OPPOSITE,
        Classification.DELETE_OPPOSITE,
    }
)


class PlanEntry(BaseModel):
    """One classified change, ready to be applied against ``target_system``.

    Attributes:
        position: Index of the change in the combined input sequence.
        classification: What to do.
        source_system: System the change was observed on.
        target_system: System that will be written.
        record: The changed record.
        link: Existing identity-map entry, if any.
        payload: Native field set for the target (delta for updates).
        fingerprint: Fingerprint of the record's canonical values.
        values: The record's canonical values.
        counterpart_id: Id of the paired record in ``target_system``, when
            one is known (from the link or the record's own hint).
        reason: Human-readable explanation for non-mutating entries.
        refresh_link: Rewrite the link fingerprint without touching a remote.
        winner: For superseded entries, the change that won.
    """

    position: int
    classification: Classification
    source_system: SourceSystem
    target_system: SourceSystem
    record: CanonicalRecord
    link: Link | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    fingerprint: str | None = None
    values: dict[str, Any] = Field(default_factory=dict)
    counterpart_id: str | None = None
    reason: str | None = None
    refresh_link: bool = False
    winner: CanonicalRecord | None = None

    @property
    def is_mutating(self) -> bool:
        return self.classification in MUTATING

    model_config = {"frozen": True}


class RunPhase(str, Enum):
    PENDING = "pending"
    LOCKING = "locking"
    COLLECTING = "collecting"
    RECONCILING = "reconciling"
    APPLYING = "applying"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    ABORTED = "aborted"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class AbortReason(str, Enum):
    ALREADY_RUNNING = "already_running"
    CREDENTIAL_EXPIRED = "credential_expired"
    COLLECTOR_FAILED = "collector_failed"
    TIMEOUT = "timeout"
    INTERNAL_ERROR = "internal_error"


class RunError(BaseModel):
    """One error or warning recorded during a run."""

    record_ref: str | None = None
    title: str | None = None
    message: str
    kind: str = "sync_error"
    level: str = "error"

    model_config = {"frozen": True}


class SupersededChange(BaseModel):
    """A change that lost a last-writer-wins conflict."""

    record_ref: str
    system: SourceSystem
    modified_at: datetime
    winner_ref: str
    winner_modified_at: datetime

    model_config = {"frozen": True}


class SyncRun(BaseModel):
    """Persisted history record of one run."""

    history_id: str
    team_id: str
    trigger: str = "manual"
    direction: SyncDirection = SyncDirection.BOTH
    dry_run: bool = False
    status: RunStatus = RunStatus.RUNNING
    abort_reason: AbortReason | None = None
    started_at: datetime
    finished_at: datetime | None = None
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    error_count: int = 0
    errors: list[RunError] = Field(default_factory=list)
    superseded: list[SupersededChange] = Field(default_factory=list)
    logs: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class RunCounts(BaseModel):
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    error_count: int = 0

    model_config = {"frozen": True}


class RunResult(BaseModel):
    """What a trigger gets back from the orchestrator."""

    history_id: str
    team_id: str
    status: RunStatus
    abort_reason: AbortReason | None = None
    dry_run: bool = False
    result: RunCounts = Field(default_factory=RunCounts)
    plan: list[PlanEntry] = Field(default_factory=list)
    run: SyncRun | None = None

    model_config = {"frozen": True}
