"""Lifespan management for MCP server startup and shutdown."""

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from ..core.async_utils import init_semaphore
from ..service import build_service

logger = logging.getLogger(__name__)


def _stderr_print(msg: str) -> None:
    """Print message to stderr for user feedback (safe in MCP mode)."""
    print(msg, file=sys.stderr, flush=True)


@asynccontextmanager
async def server_lifespan(
    config_overrides: dict[str, Any] | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Manage server startup and shutdown lifecycle.

    On startup:
    - Load .env and the YAML config, merge with CLI overrides
      (CLI > env vars > .env > YAML > defaults)
    - Build the repository and orchestrator
    - Size the run semaphore
    - Fail fast on invalid configuration

    Args:
        config_overrides: Optional dict with config values from CLI (state_dir, run_timeout, debug)

    Yields:
        Dict with 'orchestrator' and 'service' keys

    Raises:
        RuntimeError: If configuration is invalid.
    """
    logger.info("MCP server starting...")
    _stderr_print("atpar-sync MCP server starting...")

    try:
        service = build_service(config_overrides)
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        _stderr_print(f"ERROR: Configuration error: {e}")
        _stderr_print(
            "  Check .atpar/config.yml and the ATPAR_* environment variables."
        )
        raise RuntimeError(f"Configuration error: {e}") from e

    source_desc = ", ".join(service.sources)
    logger.info("Configuration loaded from: %s", source_desc)
    _stderr_print(f"  Configuration loaded from: {source_desc}")
    teams = sorted(service.unified.teams)
    _stderr_print(
        f"  Teams: {', '.join(teams) if teams else '(none configured)'}"
    )
    _stderr_print(f"  State directory: {service.config.state_dir}")

    init_semaphore(service.config.max_parallel_runs)
    _stderr_print(f"  Parallel runs: {service.config.max_parallel_runs}")
    _stderr_print("Server ready. Waiting for MCP client connection...")

    yield {"orchestrator": service.orchestrator, "service": service}

    logger.info("MCP server shutting down")
    _stderr_print("atpar-sync MCP server shutting down.")
