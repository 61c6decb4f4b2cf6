"""Credential guard run before any connector call.

OAuth credentials that expire within the safety margin are refreshed with
the ``refresh_token`` grant and saved back through the repository.  PAT
and integration tokens do not expire on a schedule and pass through.
A credential that cannot be made valid raises ``CredentialExpiredError``
so the run aborts before its first remote call instead of failing with
401 halfway through.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import requests

from ..config import RuntimeConfig
from ..config_schema import Credential
from .errors import CredentialExpiredError
from .models import SourceSystem
from .repository import SyncRepository

logger = logging.getLogger(__name__)


class TokenGuard:
    """Refresh expiring OAuth credentials.

    Args:
        repository: Where refreshed credentials are saved.
        config: Runtime config carrying the OAuth client and margin.
        session: Optional ``requests.Session`` (tests inject a mock).
    """

    def __init__(
        self,
        repository: SyncRepository,
        config: RuntimeConfig,
        session: requests.Session | None = None,
    ) -> None:
        self.repository = repository
        self.config = config
        self.session = session or requests.Session()

    def needs_refresh(
        self, credential: Credential, now: datetime | None = None
    ) -> bool:
        if credential.kind != "oauth" or credential.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        margin = timedelta(seconds=self.config.refresh_margin)
        return credential.expires_at - now <= margin

    def ensure_valid(
        self, team_id: str, system: SourceSystem, credential: Credential
    ) -> Credential:
        """Return a credential that stays valid for at least the margin.

        Raises:
            CredentialExpiredError: If the token is missing, or an
                expiring OAuth token cannot be refreshed.
        """
        if not credential.token:
            raise CredentialExpiredError(
                f"No {system.value} credential configured for team '{team_id}'"
            )
        if not self.needs_refresh(credential):
            return credential

        logger.info(
            "Refreshing %s OAuth token for team %s",
            system.value,
            team_id,
            extra={"team_id": team_id, "system": system.value},
        )
        refreshed = self._refresh(system, credential)
        self.repository.save_credential(team_id, system, refreshed)
        return refreshed

    def _refresh(
        self, system: SourceSystem, credential: Credential
    ) -> Credential:
        if not credential.refresh_token:
            raise CredentialExpiredError(
                f"{system.value} token is expiring and has no refresh token"
            )
        if not self.config.oauth_client_id:
            raise CredentialExpiredError(
                f"{system.value} token is expiring and no OAuth client is configured"
            )

        data = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "client_id": self.config.oauth_client_id,
            "client_secret": self.config.oauth_client_secret or "",
            "scope": self.config.oauth_scope,
        }
        try:
            response = self.session.post(
                self.config.oauth_token_url, data=data, timeout=30
            )
        except requests.RequestException as exc:
            raise CredentialExpiredError(
                f"Could not reach the OAuth token endpoint: {exc}"
            ) from exc

        if response.status_code != 200:
            raise CredentialExpiredError(
                f"{system.value} token refresh failed with HTTP "
                f"{response.status_code}"
            )
        try:
            body = response.json()
            token = body["access_token"]
            expires_in = int(body.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as exc:
            raise CredentialExpiredError(
                f"Malformed {system.value} token refresh response"
            ) from exc

        return credential.model_copy(
            update={
                "token": token,
                "refresh_token": body.get("refresh_token")
                or credential.refresh_token,
                "expires_at": datetime.now(timezone.utc)
                + timedelta(seconds=expires_in),
            }
        )
