"""Service assembly shared by the MCP server and the scheduler.

``build_service`` resolves configuration with the usual precedence
(CLI > environment / .env > YAML > defaults), then wires the repository,
token guard and orchestrator together.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .config import RuntimeConfig, load_config
from .config_loader import discover_config_files, load_hierarchical_config
from .config_schema import (
    TeamSyncConfig,
    UnifiedConfig,
    build_config,
    to_runtime_config,
)
from .sync.orchestrator import SyncOrchestrator
from .sync.repository import JsonFileRepository

logger = logging.getLogger(__name__)


@dataclass
class Service:
    """Everything a trigger needs to start runs."""

    config: RuntimeConfig
    unified: UnifiedConfig
    repository: JsonFileRepository
    orchestrator: SyncOrchestrator
    sources: list[str]


def load_unified_config() -> UnifiedConfig:
    """Load the unified config from the hierarchical config system."""
    return build_config(load_hierarchical_config())


def _current_teams() -> dict[str, TeamSyncConfig]:
    # Re-read on every lookup so team edits apply without a restart.
    return load_unified_config().teams


def build_service(config_overrides: dict[str, Any] | None = None) -> Service:
    """Load configuration and build the orchestrator.

    Args:
        config_overrides: CLI values (``state_dir``, ``run_timeout``,
            ``debug``).

    Raises:
        ValueError: If the configuration is invalid.
    """
    # .env first so ${VAR} interpolation in YAML sees its values
    load_dotenv()

    overrides = config_overrides or {}
    sources: list[str] = []
    config_files = discover_config_files()
    unified = load_unified_config()
    yaml_fallbacks: dict[str, Any] | None = None
    if config_files:
        yaml_fallbacks = {
            k: v
            for k, v in dataclasses.asdict(to_runtime_config(unified)).items()
            if v is not None
        }
        sources.append(f"config file: {config_files[0]}")

    config = load_config(
        state_dir=overrides.get("state_dir"),
        run_timeout=overrides.get("run_timeout"),
        debug=overrides.get("debug", False),
        yaml_fallbacks=yaml_fallbacks,
    )
    if overrides:
        sources.append("CLI arguments")
    sources.append("environment variables")

    teams = _current_teams if config_files else unified.teams
    repository = JsonFileRepository(Path(config.state_dir), teams)
    orchestrator = SyncOrchestrator(repository, config)
    logger.info(
        "Service configured with %d teams, state in %s",
        len(unified.teams),
        config.state_dir,
    )
    return Service(config, unified, repository, orchestrator, sources)
