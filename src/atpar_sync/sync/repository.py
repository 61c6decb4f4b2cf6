"""Persistence layer for links, cursors, credentials, locks and run history.

``SyncRepository`` is the interface the sync core depends on.
``JsonFileRepository`` is the shipped implementation: one JSON document
per team (``team_{team_id}.json``) holding links, pull cursors, refreshed
credentials, recently seen webhook event ids and the last scheduled start,
plus a history document (``history_{team_id}.json``) and a lease file
(``team_{team_id}.lock``).

Key design choices:

* **Atomic writes** -- documents are written to a temp file and moved into
  place with ``os.replace()`` so a crash never leaves a half-written file.
* **Per-entry persistence** -- every link upsert is written immediately,
  so links already applied survive a crash mid-run.
* **Lease locks** -- the lock file records an owner and an expiry and is
  created with an atomic hard link.  An expired lease is renamed away and
  re-created, so a crashed process cannot block a team forever and two
  processes never both win the takeover.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

from ..config_schema import Credential, TeamSyncConfig
from .errors import LinkInvariantViolationError, TeamNotConfiguredError
from .models import Link, SourceSystem, SyncRun

logger = logging.getLogger(__name__)

MAX_SEEN_EVENTS = 1000
MAX_HISTORY = 200


class SyncRepository(Protocol):
    """Storage operations required by the sync core."""

    def load_config(self, team_id: str) -> TeamSyncConfig: ...

    def find_link(
        self, team_id: str, system: SourceSystem, external_id: str
    ) -> Link | None: ...

    def upsert_link(self, link: Link) -> None: ...

    def list_links(self, team_id: str) -> list[Link]: ...

    def append_run_record(self, run: SyncRun) -> str: ...

    def finalize_run_record(self, run: SyncRun) -> None: ...

    def list_runs(self, team_id: str, limit: int = 20) -> list[SyncRun]: ...

    def acquire_lock(self, team_id: str, owner: str, ttl: float) -> bool: ...

    def release_lock(self, team_id: str, owner: str) -> None: ...

    def get_cursor(self, team_id: str, system: SourceSystem) -> str | None: ...

    def save_cursor(
        self, team_id: str, system: SourceSystem, cursor: str
    ) -> None: ...

    def save_credential(
        self, team_id: str, system: SourceSystem, credential: Credential
    ) -> None: ...

    def has_seen_event(self, team_id: str, event_id: str) -> bool: ...

    def remember_event(self, team_id: str, event_id: str) -> None: ...

    def last_scheduled_at(self, team_id: str) -> datetime | None: ...

    def mark_scheduled(self, team_id: str, started_at: datetime) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JsonFileRepository:
    """File-backed ``SyncRepository``.

    Args:
        state_dir: Directory for the JSON documents and lock files.
        teams: Team configs by id, or a callable returning them (so config
            edits are picked up without a restart).
    """

    def __init__(
        self,
        state_dir: Path,
        teams: dict[str, TeamSyncConfig]
        | Callable[[], dict[str, TeamSyncConfig]],
    ) -> None:
        self._state_dir = Path(state_dir)
        self._teams = teams
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def team_ids(self) -> list[str]:
        return sorted(self._team_configs())

    def _team_configs(self) -> dict[str, TeamSyncConfig]:
        return self._teams() if callable(self._teams) else self._teams

    def load_config(self, team_id: str) -> TeamSyncConfig:
        """Return the team's config with persisted credentials applied.

        Raises:
            TeamNotConfiguredError: If the team is unknown.
        """
        team = self._team_configs().get(team_id)
        if team is None:
            raise TeamNotConfiguredError(
                f"No sync configuration for team '{team_id}'"
            )

        saved = self._load_team(team_id).get("credentials", {})
        updates: dict[str, Any] = {}
        for system in ("ado", "notion"):
            if system in saved:
                settings = getattr(team, system)
                updates[system] = settings.model_copy(
                    update={
                        "credential": Credential.model_validate(saved[system])
                    }
                )
        return team.model_copy(update=updates) if updates else team

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def find_link(
        self, team_id: str, system: SourceSystem, external_id: str
    ) -> Link | None:
        key = "ado_id" if system is SourceSystem.ADO else "notion_id"
        for raw in self._load_team(team_id).get("links", []):
            if raw.get(key) == external_id:
                return Link.model_validate(raw)
        return None

    def list_links(self, team_id: str) -> list[Link]:
        return [
            Link.model_validate(raw)
            for raw in self._load_team(team_id).get("links", [])
        ]

    def upsert_link(self, link: Link) -> None:
        """Insert or replace the link for ``(team_id, ado_id)``.

        Raises:
            LinkInvariantViolationError: If another link already pairs
                either id.
        """
        with self._lock:
            doc = self._load_team(link.team_id)
            links = doc.setdefault("links", [])
            index = None
            for i, raw in enumerate(links):
                same_ado = raw.get("ado_id") == link.ado_id
                same_notion = raw.get("notion_id") == link.notion_id
                if same_ado and same_notion:
                    index = i
                elif same_ado or same_notion:
                    raise LinkInvariantViolationError(
                        f"ado:{link.ado_id} / notion:{link.notion_id} "
                        f"conflicts with existing link "
                        f"ado:{raw.get('ado_id')} / notion:{raw.get('notion_id')}"
                    )
            data = link.model_dump(mode="json")
            if index is None:
                links.append(data)
            else:
                links[index] = data
            self._save_team(link.team_id, doc)

    # ------------------------------------------------------------------
    # Cursors, credentials and webhook replay suppression
    # ------------------------------------------------------------------

    def get_cursor(self, team_id: str, system: SourceSystem) -> str | None:
        return self._load_team(team_id).get("cursors", {}).get(system.value)

    def save_cursor(
        self, team_id: str, system: SourceSystem, cursor: str
    ) -> None:
        with self._lock:
            doc = self._load_team(team_id)
            doc.setdefault("cursors", {})[system.value] = cursor
            self._save_team(team_id, doc)

    def save_credential(
        self, team_id: str, system: SourceSystem, credential: Credential
    ) -> None:
        with self._lock:
            doc = self._load_team(team_id)
            doc.setdefault("credentials", {})[system.value] = (
                credential.model_dump(mode="json")
            )
            self._save_team(team_id, doc)

    def last_scheduled_at(self, team_id: str) -> datetime | None:
        """Return when the scheduler last started a run for the team."""
        value = self._load_team(team_id).get("last_scheduled_at")
        return datetime.fromisoformat(value) if value else None

    def mark_scheduled(self, team_id: str, started_at: datetime) -> None:
        with self._lock:
            doc = self._load_team(team_id)
            doc["last_scheduled_at"] = started_at.isoformat()
            self._save_team(team_id, doc)

    def has_seen_event(self, team_id: str, event_id: str) -> bool:
        return event_id in self._load_team(team_id).get("seen_events", [])

    def remember_event(self, team_id: str, event_id: str) -> None:
        with self._lock:
            doc = self._load_team(team_id)
            seen = doc.setdefault("seen_events", [])
            if event_id not in seen:
                seen.append(event_id)
                del seen[:-MAX_SEEN_EVENTS]
            self._save_team(team_id, doc)

    # ------------------------------------------------------------------
    # Run history
    # ------------------------------------------------------------------

    def append_run_record(self, run: SyncRun) -> str:
        """Persist a new run record and return its ``history_id``."""
        history_id = run.history_id or uuid.uuid4().hex
        record = run.model_copy(update={"history_id": history_id})
        with self._lock:
            runs = self._load_history(run.team_id)
            runs.append(record.model_dump(mode="json"))
            del runs[:-MAX_HISTORY]
            self._write_json(self._history_path(run.team_id), runs)
        return history_id

    def finalize_run_record(self, run: SyncRun) -> None:
        with self._lock:
            runs = self._load_history(run.team_id)
            data = run.model_dump(mode="json")
            for i, raw in enumerate(runs):
                if raw.get("history_id") == run.history_id:
                    runs[i] = data
                    break
            else:
                runs.append(data)
            self._write_json(self._history_path(run.team_id), runs)

    def list_runs(self, team_id: str, limit: int = 20) -> list[SyncRun]:
        """Return the most recent runs, newest first."""
        runs = self._load_history(team_id)
        return [SyncRun.model_validate(raw) for raw in reversed(runs)][:limit]

    # ------------------------------------------------------------------
    # Lease lock
    # ------------------------------------------------------------------

    def acquire_lock(self, team_id: str, owner: str, ttl: float) -> bool:
        """Try to take the team's lease.  Returns ``False`` if it is held.

        The lease is written to a temp file and hard-linked into place, so
        it appears complete or not at all and only one process can create
        it.  An expired lease is renamed away first; every contender then
        retries the exclusive create and at most one of them succeeds.
        """
        self._state_dir.mkdir(parents=True, exist_ok=True)
        path = self._lock_path(team_id)
        lease = json.dumps(
            {
                "owner": owner,
                "expires_at": (_utcnow() + timedelta(seconds=ttl)).isoformat(),
            }
        )
        with self._lock:
            for _ in range(3):
                if self._create_lease(path, lease):
                    return True
                text = self._read_lease_text(path)
                if text is None:
                    # Released or retired between the create and the read
                    continue
                current = self._parse_lease(text)
                expires = current.get("expires_at")
                if expires and datetime.fromisoformat(expires) > _utcnow():
                    return False
                if not self._retire_lease(path, text):
                    return False
                logger.warning(
                    "Retired expired lock for team %s (owner %s)",
                    team_id,
                    current.get("owner"),
                )
            return False

    def release_lock(self, team_id: str, owner: str) -> None:
        path = self._lock_path(team_id)
        with self._lock:
            text = self._read_lease_text(path)
            if text is None:
                return
            if self._parse_lease(text).get("owner") != owner:
                logger.warning(
                    "Not releasing lock for team %s: held by another owner",
                    team_id,
                )
                return
            path.unlink(missing_ok=True)

    def _create_lease(self, path: Path, lease: str) -> bool:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._state_dir), suffix=".lease"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(lease)
            try:
                os.link(tmp_path, path)
            except FileExistsError:
                return False
            return True
        finally:
            os.unlink(tmp_path)

    @staticmethod
    def _retire_lease(path: Path, expected: str) -> bool:
        """Move the expired lease *expected* out of the way.

        Returns ``False`` if the file at *path* turned out to be a newer
        lease; that lease is put back.
        """
        stale = path.with_name(f"{path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(path, stale)
        except FileNotFoundError:
            # Another contender retired it first.
            return True
        try:
            if stale.read_text(encoding="utf-8") == expected:
                return True
            try:
                os.link(stale, path)
            except FileExistsError:
                pass
            return False
        finally:
            stale.unlink(missing_ok=True)

    @staticmethod
    def _read_lease_text(path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    @staticmethod
    def _parse_lease(text: str) -> dict[str, Any]:
        try:
            return json.loads(text)
        except ValueError:
            # Unreadable lease: treat as expired.
            return {}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _team_path(self, team_id: str) -> Path:
        return self._state_dir / f"team_{team_id}.json"

    def _history_path(self, team_id: str) -> Path:
        return self._state_dir / f"history_{team_id}.json"

    def _lock_path(self, team_id: str) -> Path:
        return self._state_dir / f"team_{team_id}.lock"

    def _load_team(self, team_id: str) -> dict[str, Any]:
        path = self._team_path(team_id)
        if not path.exists():
            return {"version": 1, "team_id": team_id, "links": []}
        with open(path, encoding="utf-8") as fh:
            return json.load(fh)

    def _save_team(self, team_id: str, doc: dict[str, Any]) -> None:
        doc["updated_at"] = _utcnow().isoformat()
        self._write_json(self._team_path(team_id), doc)

    def _load_history(self, team_id: str) -> list[dict[str, Any]]:
        path = self._history_path(team_id)
        if not path.exists():
            return []
        with open(path, encoding="utf-8") as fh:
            return json.load(fh)

    def _write_json(self, target: Path, data: Any) -> None:
        self._write_text(target, json.dumps(data, indent=2))

    def _write_text(self, target: Path, text: str) -> None:
        self._state_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._state_dir), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
            os.replace(tmp_path, target)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
