"""Unified configuration schema for atpar_sync.

Defines Pydantic models for the unified config structure with dedicated
sections for the service runtime, retry policy, OAuth refresh, per-team
sync settings and logging.  Includes an adapter that turns the unified
config into the ``RuntimeConfig`` dataclass used at startup.

Usage:
    from atpar_sync.config_schema import (
        UnifiedConfig, build_config, to_runtime_config,
    )

    raw = load_hierarchical_config()
    unified = build_config(raw)
    runtime = to_runtime_config(unified, cli_overrides={"state_dir": "..."})
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import RuntimeConfig

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Service-wide sections
# ---------------------------------------------------------------------------


class ServiceConfig(BaseModel):
    """Process-wide runtime settings.

    All fields have defaults so the section may be omitted entirely.
    """

    state_dir: str = Field(
        default=".atpar/state",
        description="Directory holding links, cursors, locks and run history",
    )
    lock_ttl_seconds: int = Field(
        default=900,
        ge=30,
        le=86400,
        description="Lease duration of the per-team run lock",
    )
    run_timeout_seconds: int = Field(
        default=600,
        ge=1,
        le=86400,
        description="Wall-clock budget of a single sync run",
    )
    max_parallel_runs: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum concurrent team runs started by the scheduler",
    )

    model_config = {"frozen": True}


class RetryConfig(BaseModel):
    """Retry budget for transient remote failures."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_min: float = Field(default=1.0, ge=0)
    backoff_max: float = Field(default=10.0, ge=0)

    model_config = {"frozen": True}


class OAuthConfig(BaseModel):
    """OAuth client used to refresh Azure DevOps access tokens."""

    client_id: str | None = None
    client_secret: str | None = None
    token_url: str = (
        "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    )
    scope: str = "499b84ac-1321-427f-aa17-267ca6975798/.default offline_access"
    refresh_margin_seconds: int = Field(default=300, ge=0)

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: ``text`` or ``json``.
    """

    level: str | None = Field(
        default=None, description="Log level (defaults depend on the mode)"
    )
    file: str | None = Field(default=None, description="Log file path")
    format: Literal["text", "json"] = "text"

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Per-team sections
# ---------------------------------------------------------------------------


class Credential(BaseModel):
    """Credential for one remote system.

    ``pat`` and ``integration`` tokens never expire from our point of view;
    ``oauth`` tokens carry ``expires_at`` and a ``refresh_token``.
    """

    kind: Literal["pat", "oauth", "integration"] = "pat"
    token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None

    model_config = {"frozen": True}

    @field_validator("expires_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class AdoSettings(BaseModel):
    """Azure DevOps project the team syncs with."""

    org_url: str = Field(description="e.g. https://dev.azure.com/contoso")
    project: str
    work_item_type: str = "Product Backlog Item"
    initial_state: str = Field(
        default="New",
        description="State ADO assigns on creation; other states need a follow-up update",
    )
    area_path: str | None = None
    work_type_field: str | None = None
    work_type: str | None = None
    task_work_item_type: str = Field(
        default="Task",
        description="Type of the child items created for Notion subtasks",
    )
    credential: Credential = Field(default_factory=Credential)

    model_config = {"frozen": True}


class NotionSettings(BaseModel):
    """Notion database the team syncs with."""

    database_id: str
    ado_id_property: str = "ADO ID"
    ado_url_property: str | None = "PBI"
    subtask_property: str | None = Field(
        default="Subtask",
        description="Relation property listing subtask pages; None disables subtasks",
    )
    credential: Credential = Field(
        default_factory=lambda: Credential(kind="integration")
    )

    model_config = {"frozen": True}


FieldKind = Literal[
    "text",
    "html",
    "enum",
    "path",
    "list",
    "number",
    "bool",
    "date",
    "person",
]

NotionPropertyType = Literal[
    "title",
    "rich_text",
    "select",
    "status",
    "multi_select",
    "number",
    "checkbox",
    "date",
    "people",
    "email",
    "url",
]


class FieldMappingEntry(BaseModel):
    """Pairing of one ADO field with one Notion property.

    ``value_translation`` maps ADO values to Notion values.  When
    ``reverse_translation`` is omitted the inverse of the forward table is
    used; for a Notion value reached from several ADO values the first
    ADO value listed wins.
    """

    key: str
    ado_field: str
    notion_property: str
    notion_type: NotionPropertyType = "rich_text"
    kind: FieldKind = "text"
    value_translation: dict[str, str] = Field(default_factory=dict)
    reverse_translation: dict[str, str] | None = None

    model_config = {"frozen": True}

    def reverse_table(self) -> dict[str, str]:
        """Return the Notion -> ADO translation table."""
        if self.reverse_translation is not None:
            return dict(self.reverse_translation)
        table: dict[str, str] = {}
        for ado_value, notion_value in self.value_translation.items():
            table.setdefault(notion_value, ado_value)
        return table


def _default_field_mappings() -> list[FieldMappingEntry]:
    return [
        FieldMappingEntry(
            key="title",
            ado_field="System.Title",
            notion_property="Name",
            notion_type="title",
        ),
        FieldMappingEntry(
            key="state",
            ado_field="System.State",
            notion_property="Status",
            notion_type="status",
            kind="enum",
            value_translation={
                "New": "Not started",
                "Active": "In progress",
                "Resolved": "Done",
            },
        ),
        FieldMappingEntry(
            key="description",
            ado_field="System.Description",
            notion_property="Description",
            notion_type="rich_text",
            kind="html",
        ),
    ]


class ScheduleConfig(BaseModel):
    """When the scheduler should start a run for the team (UTC)."""

    kind: Literal["manual", "hourly", "daily"] = "manual"
    hour: int = Field(default=0, ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)

    model_config = {"frozen": True}


class TeamSyncConfig(BaseModel):
    """Sync settings for one team.

    Read-only to the sync core, except that the token guard persists
    refreshed credentials separately through the repository.
    """

    direction: Literal["ado-to-notion", "notion-to-ado", "both"] = "both"
    primary_system: Literal["ado", "notion"] = Field(
        default="ado",
        description="Wins last-writer-wins ties between simultaneous edits",
    )
    propagate_deletes: bool = False
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    ado: AdoSettings
    notion: NotionSettings
    field_mappings: list[FieldMappingEntry] = Field(
        default_factory=_default_field_mappings
    )

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_unique_mappings(self) -> TeamSyncConfig:
        for attr in ("key", "ado_field", "notion_property"):
            seen: set[str] = set()
            for entry in self.field_mappings:
                value = getattr(entry, attr)
                if value in seen:
                    raise ValueError(
                        f"Duplicate {attr} '{value}' in field_mappings"
                    )
                seen.add(value)
        if not any(e.key == "title" for e in self.field_mappings):
            raise ValueError("field_mappings must include a 'title' entry")
        return self

    def mapping_for(self, key: str) -> FieldMappingEntry | None:
        """Return the mapping entry with canonical *key*, if any."""
        for entry in self.field_mappings:
            if entry.key == key:
                return entry
        return None

    def credential_for(self, system: str) -> Credential:
        """Return the configured credential for ``ado`` or ``notion``."""
        if system == "ado":
            return self.ado.credential
        if system == "notion":
            return self.notion.credential
        raise ValueError(f"Unknown system: {system}")


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Aggregates all config sections. Every section has sensible defaults,
    so ``UnifiedConfig()`` (zero-config) is always valid.
    """

    service: ServiceConfig = Field(default_factory=ServiceConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    teams: dict[str, TeamSyncConfig] = Field(default_factory=dict)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully -- anything absent gets defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


# ---------------------------------------------------------------------------
# Adapter: UnifiedConfig -> RuntimeConfig dataclass
# ---------------------------------------------------------------------------


def to_runtime_config(
    unified: UnifiedConfig,
    cli_overrides: dict | None = None,
) -> RuntimeConfig:
    """Convert a ``UnifiedConfig`` into the ``RuntimeConfig`` dataclass,
    applying CLI overrides on top.

    The precedence applied here is:
        CLI override > unified config value

    CLI overrides dict keys: state_dir, run_timeout, debug.

    Args:
        unified: The unified config produced by ``build_config()``.
        cli_overrides: Optional dict of CLI argument values.

    Returns:
        ``RuntimeConfig`` instance (NOT validated -- caller should run
        ``validate_config()`` separately if needed).
    """
    overrides = cli_overrides or {}

    return RuntimeConfig(
        state_dir=overrides.get("state_dir") or unified.service.state_dir,
        run_timeout=float(
            overrides.get("run_timeout")
            or unified.service.run_timeout_seconds
        ),
        lock_ttl=float(unified.service.lock_ttl_seconds),
        max_parallel_runs=unified.service.max_parallel_runs,
        retry_attempts=unified.retry.max_attempts,
        retry_backoff_min=unified.retry.backoff_min,
        retry_backoff_max=unified.retry.backoff_max,
        oauth_client_id=unified.oauth.client_id,
        oauth_client_secret=unified.oauth.client_secret,
        oauth_token_url=unified.oauth.token_url,
        oauth_scope=unified.oauth.scope,
        refresh_margin=float(unified.oauth.refresh_margin_seconds),
        debug=bool(overrides.get("debug", False)),
    )
