"""Shared pytest fixtures for atpar-sync tests."""

import pytest

from atpar_sync.config import RuntimeConfig
from atpar_sync.config_schema import (
    AdoSettings,
    Credential,
    NotionSettings,
    TeamSyncConfig,
)
from atpar_sync.sync.repository import JsonFileRepository

TEAM_ID = "alpha"


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require live Azure DevOps and Notion access",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring live remote systems"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


@pytest.fixture
def team_config():
    """A team syncing both ways with the default field mappings."""
    return TeamSyncConfig(
        ado=AdoSettings(
            org_url="https://dev.azure.com/contoso",
            project="Atlas",
            credential=Credential(kind="pat", token="ado-pat"),
        ),
        notion=NotionSettings(
            database_id="db-1",
            credential=Credential(kind="integration", token="secret_x"),
        ),
    )


@pytest.fixture
def runtime_config(tmp_path):
    """RuntimeConfig with fast retries and a private state directory."""
    return RuntimeConfig(
        state_dir=str(tmp_path / "state"),
        run_timeout=60.0,
        lock_ttl=120.0,
        retry_attempts=1,
        retry_backoff_min=0.0,
        retry_backoff_max=0.0,
    )


@pytest.fixture
def repository(tmp_path, team_config):
    """File repository holding one configured team, ``alpha``."""
    return JsonFileRepository(tmp_path / "state", {TEAM_ID: team_config})
