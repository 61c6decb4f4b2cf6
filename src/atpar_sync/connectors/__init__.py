"""Remote system connectors.

``build_connector`` is the default connector factory used by the
orchestrator; tests substitute their own factory returning fakes.
"""

from __future__ import annotations

from ..config_schema import Credential, TeamSyncConfig
from ..sync.mapper import FieldMapper
from ..sync.models import SourceSystem
from .ado import AdoConnector
from .base import Connector
from .notion import NotionConnector


def build_connector(
    team: TeamSyncConfig,
    system: SourceSystem,
    credential: Credential,
    mapper: FieldMapper,
    retry_attempts: int = 3,
    backoff: tuple[float, float] = (1.0, 10.0),
) -> Connector:
    """Build the connector for *system* with a credential checked by the token guard."""
    if system is SourceSystem.ADO:
        return AdoConnector(
            team.ado,
            credential,
            mapper,
            retry_attempts=retry_attempts,
            backoff=backoff,
        )
    org = team.ado.org_url.rstrip("/")
    project = team.ado.project
    return NotionConnector(
        team.notion,
        credential,
        mapper,
        retry_attempts=retry_attempts,
        backoff=backoff,
        ado_url_for=lambda ado_id: AdoConnector.url_for(org, project, ado_id),
    )


__all__ = [
    "AdoConnector",
    "Connector",
    "NotionConnector",
    "build_connector",
]
