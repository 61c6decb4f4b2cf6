"""Azure DevOps work-item connector (REST API 7.1).

Change listing is a two-step pull: a WIQL query returns the ids of items
of the configured work-item type changed since the cursor, then the items
are fetched in batches of 200.  Deleted items never appear in WIQL
results; deletions arrive through service-hook events only.

Created items carry the ``from_notion`` and ``notion-id:<page id>`` tags,
which is how a later read recovers the counterpart id.  Subtasks of a
Notion page become child items of the configured task type, tagged
``notion-subtask:<page id>`` and linked to their parent.
"""

from __future__ import annotations

import base64
import logging
from typing import Any
from urllib.parse import quote

from ..config_schema import AdoSettings, Credential
from ..core.http import JSON_PATCH, RestClient
from ..sync.errors import (
    MappingUnresolvableError,
    RecordNotFoundError,
    RemoteRejectedError,
)
from ..sync.mapper import NOTION_ID_TAG_PREFIX, RESERVED_TAG, FieldMapper
from ..sync.models import CanonicalRecord, SourceSystem
from .base import max_cursor, parse_remote_timestamp

logger = logging.getLogger(__name__)

API_VERSION = "7.1"
BATCH_SIZE = 200

STATE_FIELD = "System.State"
TAGS_FIELD = "System.Tags"
AREA_FIELD = "System.AreaPath"
CHANGED_FIELD = "System.ChangedDate"
PROJECT_FIELD = "System.TeamProject"
TYPE_FIELD = "System.WorkItemType"

NOTION_SUBTASK_TAG_PREFIX = "notion-subtask:"
PARENT_RELATION = "System.LinkTypes.Hierarchy-Reverse"

HANDLED_EVENTS = {
    "workitem.created",
    "workitem.updated",
    "workitem.deleted",
    "workitem.restored",
}


def auth_header(credential: Credential) -> str:
    """Build the Authorization header for a PAT or OAuth credential."""
    if not credential.token:
        raise ValueError("ADO credential has no token")
    if credential.kind == "pat":
        encoded = base64.b64encode(f":{credential.token}".encode()).decode()
        return f"Basic {encoded}"
    return f"Bearer {credential.token}"


def _wiql_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def split_tags(raw: str | None) -> list[str]:
    return [t.strip() for t in (raw or "").split(";") if t.strip()]


def notion_id_from_tags(raw: str | None) -> str | None:
    """Extract the Notion page id from ``notion-id:<id>`` tags."""
    for tag in split_tags(raw):
        if tag.startswith(NOTION_ID_TAG_PREFIX):
            return tag[len(NOTION_ID_TAG_PREFIX) :].strip() or None
    return None


class AdoConnector:
    """Connector for one Azure DevOps project.

    Args:
        settings: The team's ADO settings.
        credential: Valid credential (already checked by the token guard).
        mapper: Field mapper for the team.
        client: Optional pre-built ``RestClient`` (tests inject a mock).
        retry_attempts: Transient retry budget for the default client.
        backoff: ``(min, max)`` exponential backoff bounds in seconds.
    """

    system = SourceSystem.ADO

    def __init__(
        self,
        settings: AdoSettings,
        credential: Credential,
        mapper: FieldMapper,
        client: RestClient | None = None,
        retry_attempts: int = 3,
        backoff: tuple[float, float] = (1.0, 10.0),
    ) -> None:
        self.settings = settings
        self.mapper = mapper
        self.org_url = settings.org_url.rstrip("/")
        self.client = client or RestClient(
            f"{self.org_url}/{quote(settings.project)}/_apis/wit",
            auth_header(credential),
            retry_attempts=retry_attempts,
            backoff_min=backoff[0],
            backoff_max=backoff[1],
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def url_for(org_url: str, project: str, work_item_id: str | int) -> str:
        return (
            f"{org_url.rstrip('/')}/{quote(project)}"
            f"/_workitems/edit/{work_item_id}"
        )

    def work_item_url(self, work_item_id: str | int) -> str:
        return self.url_for(self.org_url, self.settings.project, work_item_id)

    def _field_names(self) -> list[str]:
        names = {m.ado_field for m in self.mapper.mappings}
        names.update(
            {STATE_FIELD, TAGS_FIELD, CHANGED_FIELD, PROJECT_FIELD, TYPE_FIELD}
        )
        return sorted(names)

    def _to_record(
        self, work_item_id: Any, fields: dict[str, Any], deleted: bool = False
    ) -> CanonicalRecord:
        return self.mapper.to_canonical(
            SourceSystem.ADO,
            str(work_item_id),
            fields,
            last_modified_at=parse_remote_timestamp(fields[CHANGED_FIELD]),
            deleted=deleted,
            counterpart_hint=notion_id_from_tags(fields.get(TAGS_FIELD)),
            url=self.work_item_url(work_item_id),
        )

    def _in_scope(self, fields: dict[str, Any]) -> bool:
        project = fields.get(PROJECT_FIELD)
        item_type = fields.get(TYPE_FIELD)
        if project and project.casefold() != self.settings.project.casefold():
            return False
        if item_type and item_type != self.settings.work_item_type:
            return False
        area = self.settings.area_path
        if area and fields.get(AREA_FIELD):
            current = fields[AREA_FIELD].casefold()
            if current != area.casefold() and not current.startswith(
                area.casefold() + "\\"
            ):
                return False
        return True

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def build_wiql(self, cursor: str | None) -> str:
        clauses = [
            "[System.TeamProject] = @project",
            f"[System.WorkItemType] = {_wiql_quote(self.settings.work_item_type)}",
        ]
        if self.settings.area_path:
            clauses.append(
                f"[System.AreaPath] UNDER {_wiql_quote(self.settings.area_path)}"
            )
        if cursor:
            clauses.append(f"[System.ChangedDate] >= {_wiql_quote(cursor)}")
        return (
            "SELECT [System.Id] FROM WorkItems WHERE "
            + " AND ".join(clauses)
            + " ORDER BY [System.ChangedDate] ASC"
        )

    def list_changed(
        self, cursor: str | None
    ) -> tuple[list[CanonicalRecord], str | None]:
        result = self.client.post(
            "wiql",
            params={"api-version": API_VERSION, "timePrecision": "true"},
            json={"query": self.build_wiql(cursor)},
        )
        ids = [item["id"] for item in (result or {}).get("workItems", [])]
        logger.info("ADO query returned %d changed work items", len(ids))

        records: list[CanonicalRecord] = []
        fields = ",".join(self._field_names())
        for start in range(0, len(ids), BATCH_SIZE):
            batch = ids[start : start + BATCH_SIZE]
            response = self.client.get(
                "workitems",
                params={
                    "ids": ",".join(str(i) for i in batch),
                    "fields": fields,
                    "errorPolicy": "omit",
                    "api-version": API_VERSION,
                },
            )
            for item in (response or {}).get("value", []):
                if item is None:
                    # errorPolicy=omit returns null for items deleted
                    # between the query and the fetch
                    continue
                records.append(self._to_record(item["id"], item["fields"]))

        return records, max_cursor(records, cursor)

    def get_by_id(self, external_id: str) -> CanonicalRecord | None:
        try:
            item = self.client.get(
                f"workitems/{external_id}",
                params={"api-version": API_VERSION},
            )
        except RecordNotFoundError:
            return None
        return self._to_record(item["id"], item["fields"])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def _patch_ops(fields: dict[str, Any]) -> list[dict[str, Any]]:
        return [
            {
                "op": "add",
                "path": f"/fields/{name}",
                "value": "" if value is None else value,
            }
            for name, value in fields.items()
        ]

    def create(self, record: CanonicalRecord, fields: dict[str, Any]) -> str:
        """Create a work item mirroring the Notion page *record*.

        The item is created in its initial state; a different target state
        is applied with a second request.  If that request is rejected the
        item still counts as created and a warning is logged.
        """
        payload = {k: v for k, v in fields.items() if v is not None}
        state = payload.pop(STATE_FIELD, None)

        tags = [RESERVED_TAG, f"{NOTION_ID_TAG_PREFIX}{record.external_id}"]
        tags.extend(split_tags(payload.pop(TAGS_FIELD, None)))
        payload[TAGS_FIELD] = "; ".join(tags)

        if self.settings.area_path and AREA_FIELD not in payload:
            payload[AREA_FIELD] = self.settings.area_path
        if self.settings.work_type_field and self.settings.work_type:
            payload.setdefault(
                self.settings.work_type_field, self.settings.work_type
            )

        item = self.client.post(
            f"workitems/${quote(self.settings.work_item_type)}",
            params={"api-version": API_VERSION},
            json=self._patch_ops(payload),
            content_type=JSON_PATCH,
        )
        work_item_id = str(item["id"])
        logger.info(
            "Created ADO work item %s from notion:%s",
            work_item_id,
            record.external_id,
        )

        if state and state.casefold() != self.settings.initial_state.casefold():
            try:
                self.update(work_item_id, {STATE_FIELD: state})
            except RemoteRejectedError as exc:
                logger.warning(
                    "Created work item %s but could not set state to '%s': %s",
                    work_item_id,
                    state,
                    exc,
                )
        return work_item_id

    def create_task(self, title: str, parent_id: str, notion_id: str) -> str:
        """Create a child task of work item *parent_id* for a Notion subtask."""
        ops = self._patch_ops(
            {
                "System.Title": title,
                TAGS_FIELD: f"{RESERVED_TAG}; {NOTION_SUBTASK_TAG_PREFIX}{notion_id}",
            }
        )
        if self.settings.area_path:
            ops.extend(self._patch_ops({AREA_FIELD: self.settings.area_path}))
        ops.append(
            {
                "op": "add",
                "path": "/relations/-",
                "value": {
                    "rel": PARENT_RELATION,
                    "url": f"{self.org_url}/_apis/wit/workItems/{parent_id}",
                },
            }
        )
        item = self.client.post(
            f"workitems/${quote(self.settings.task_work_item_type)}",
            params={"api-version": API_VERSION},
            json=ops,
            content_type=JSON_PATCH,
        )
        logger.info(
            "Created ADO task %s under %s from notion:%s",
            item["id"],
            parent_id,
            notion_id,
        )
        return str(item["id"])

    def prepare_write(
        self, fields: dict[str, Any]
    ) -> tuple[dict[str, Any], list[MappingUnresolvableError]]:
        return dict(fields), []

    def update(self, external_id: str, fields: dict[str, Any]) -> None:
        if not fields:
            return
        payload = dict(fields)
        if TAGS_FIELD in payload:
            # Keep the link tags the mapper hides from the canonical value
            current = self.client.get(
                f"workitems/{external_id}",
                params={"fields": TAGS_FIELD, "api-version": API_VERSION},
            )
            reserved = [
                t
                for t in split_tags(current["fields"].get(TAGS_FIELD))
                if t == RESERVED_TAG or t.startswith(NOTION_ID_TAG_PREFIX)
            ]
            payload[TAGS_FIELD] = "; ".join(
                reserved + split_tags(payload[TAGS_FIELD])
            )
        self.client.patch(
            f"workitems/{external_id}",
            params={"api-version": API_VERSION},
            json=self._patch_ops(payload),
            content_type=JSON_PATCH,
        )

    def delete(self, external_id: str) -> None:
        """Move the work item to the recycle bin."""
        self.client.delete(
            f"workitems/{external_id}",
            params={"api-version": API_VERSION},
        )

    # ------------------------------------------------------------------
    # Service hooks
    # ------------------------------------------------------------------

    def event_id(self, payload: dict[str, Any]) -> str | None:
        return payload.get("id")

    def translate_delta_event(
        self, payload: dict[str, Any]
    ) -> CanonicalRecord | None:
        """Translate a ``workitem.*`` service-hook notification.

        Returns ``None`` for other event types and for items outside the
        configured project, work-item type or area path.
        """
        event_type = payload.get("eventType")
        if event_type not in HANDLED_EVENTS:
            logger.debug("Ignoring ADO event type %s", event_type)
            return None

        resource = payload.get("resource") or {}
        if event_type == "workitem.updated":
            revision = resource.get("revision") or {}
            work_item_id = resource.get("workItemId") or revision.get("id")
            fields = dict(revision.get("fields") or {})
        else:
            work_item_id = resource.get("id")
            fields = dict(resource.get("fields") or {})

        if work_item_id is None or not self._in_scope(fields):
            logger.debug("Ignoring out-of-scope ADO event %s", payload.get("id"))
            return None

        if CHANGED_FIELD not in fields:
            fields[CHANGED_FIELD] = payload.get("createdDate")
        return self._to_record(
            work_item_id, fields, deleted=event_type == "workitem.deleted"
        )
