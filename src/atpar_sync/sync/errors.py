"""Error taxonomy for the sync core.

Errors fall into two scopes:

* **Record-level** -- ``TransientRemoteError`` (after retries are exhausted),
  ``RemoteRejectedError``, ``RecordNotFoundError``,
  ``MappingUnresolvableError`` and ``LinkInvariantViolationError``.  They
  are recorded against one plan entry and never abort the run.
* **Run-level** -- ``AlreadyRunningError`` and ``CredentialExpiredError``.
  They abort the rest of the run without undoing links already written.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by the sync core.

    Attributes:
        kind: Stable machine-readable error category, stored in run history.
        level: ``"error"`` or ``"warning"``.
    """

    kind = "sync_error"
    level = "error"


class TransientRemoteError(SyncError):
    """Network failure, timeout, HTTP 429 or 5xx.  Retried with backoff."""

    kind = "transient_remote"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteRejectedError(SyncError):
    """The remote refused the payload (4xx other than 401/404).  Never retried."""

    kind = "remote_rejected"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RecordNotFoundError(SyncError):
    """The addressed record no longer exists on the remote."""

    kind = "not_found"


class CredentialExpiredError(SyncError):
    """A credential is expired and could not be refreshed."""

    kind = "credential_expired"


class AlreadyRunningError(SyncError):
    """Another run holds the team lock."""

    kind = "already_running"


class MappingUnresolvableError(SyncError):
    """A value (enum option, person) has no equivalent on the other side.

    Attributes:
        key: Canonical key of the affected field, when known.
    """

    kind = "mapping_unresolvable"
    level = "warning"

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class LinkInvariantViolationError(SyncError):
    """A link would pair an external id that is already paired elsewhere."""

    kind = "link_violation"


class TeamNotConfiguredError(SyncError):
    """No sync configuration exists for the requested team."""

    kind = "team_not_configured"
