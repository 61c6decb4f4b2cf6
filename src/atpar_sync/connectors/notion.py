"""Notion database connector (API version 2022-06-28).

Pages of one database are the records.  Change listing queries the
database filtered on ``last_edited_time`` (which Notion rounds to the
minute, so the ``on_or_after`` filter may return pages seen before).
Archived pages are reported as deleted.

Each synced page carries its ADO counterpart in two properties: the
"ADO ID" property and, optionally, a URL property pointing at the work
item.  Either one is enough to recover the link hint.  Pages created from
ADO get both at creation; pages that produced a work item get them
written back with ``set_counterpart``.

People are written by Notion user id, resolved from the email the mapper
produces.  An email with no Notion user is left out of the write and
reported by ``prepare_write`` so the caller can record the warning.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from ..config_schema import Credential, NotionSettings
from ..core.http import RestClient
from ..sync.errors import MappingUnresolvableError, RecordNotFoundError
from ..sync.mapper import FieldMapper
from ..sync.models import CanonicalRecord, SourceSystem
from .base import max_cursor, parse_remote_timestamp

logger = logging.getLogger(__name__)

NOTION_API = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"
PAGE_SIZE = 100

HANDLED_EVENTS = {
    "page.created",
    "page.properties_updated",
    "page.content_updated",
    "page.deleted",
    "page.undeleted",
}

_WORK_ITEM_URL_RE = re.compile(r"_workitems/edit/(\d+)")


def _plain_id(value: str | None) -> str:
    return (value or "").replace("-", "").lower()


class NotionConnector:
    """Connector for one Notion database.

    Args:
        settings: The team's Notion settings.
        credential: Integration or OAuth token.
        mapper: Field mapper for the team.
        client: Optional pre-built ``RestClient`` (tests inject a mock).
        retry_attempts: Transient retry budget for the default client.
        backoff: ``(min, max)`` exponential backoff bounds in seconds.
        ado_url_for: Builds the work-item URL written to the URL property.
    """

    system = SourceSystem.NOTION

    def __init__(
        self,
        settings: NotionSettings,
        credential: Credential,
        mapper: FieldMapper,
        client: RestClient | None = None,
        retry_attempts: int = 3,
        backoff: tuple[float, float] = (1.0, 10.0),
        ado_url_for=None,
    ) -> None:
        if client is None and not credential.token:
            raise ValueError("Notion credential has no token")
        self.settings = settings
        self.mapper = mapper
        self.client = client or RestClient(
            NOTION_API,
            f"Bearer {credential.token}",
            extra_headers={"Notion-Version": NOTION_VERSION},
            retry_attempts=retry_attempts,
            backoff_min=backoff[0],
            backoff_max=backoff[1],
        )
        self._ado_url_for = ado_url_for
        self._property_types: dict[str, str] | None = None
        self._users_by_email: dict[str, str] | None = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _ado_id_from_page(self, properties: dict[str, Any]) -> str | None:
        prop = properties.get(self.settings.ado_id_property) or {}
        value: Any = None
        if prop.get("type") == "number":
            number = prop.get("number")
            value = str(int(number)) if number is not None else None
        elif prop.get("type") in ("rich_text", "title"):
            parts = prop.get(prop["type"]) or []
            value = "".join(p.get("plain_text", "") for p in parts).strip()
        if value:
            return value

        if self.settings.ado_url_property:
            url_prop = properties.get(self.settings.ado_url_property) or {}
            match = _WORK_ITEM_URL_RE.search(url_prop.get("url") or "")
            if match:
                return match.group(1)
        return None

    def _subtask_ids(self, properties: dict[str, Any]) -> list[str]:
        if not self.settings.subtask_property:
            return []
        prop = properties.get(self.settings.subtask_property) or {}
        if prop.get("type") != "relation":
            return []
        return [r["id"] for r in prop.get("relation") or [] if r.get("id")]

    def _to_record(self, page: dict[str, Any]) -> CanonicalRecord:
        properties = page.get("properties") or {}
        record = self.mapper.to_canonical(
            SourceSystem.NOTION,
            page["id"],
            properties,
            last_modified_at=parse_remote_timestamp(page["last_edited_time"]),
            deleted=bool(page.get("archived") or page.get("in_trash")),
            counterpart_hint=self._ado_id_from_page(properties),
            url=page.get("url"),
        )
        subtask_ids = self._subtask_ids(properties)
        if subtask_ids:
            record = record.model_copy(update={"subtask_ids": subtask_ids})
        return record

    def list_changed(
        self, cursor: str | None
    ) -> tuple[list[CanonicalRecord], str | None]:
        body: dict[str, Any] = {
            "page_size": PAGE_SIZE,
            "sorts": [
                {"timestamp": "last_edited_time", "direction": "ascending"}
            ],
        }
        if cursor:
            body["filter"] = {
                "timestamp": "last_edited_time",
                "last_edited_time": {"on_or_after": cursor},
            }

        records: list[CanonicalRecord] = []
        while True:
            result = self.client.post(
                f"databases/{self.settings.database_id}/query", json=body
            )
            for page in result.get("results", []):
                records.append(self._to_record(page))
            if not result.get("has_more"):
                break
            body["start_cursor"] = result["next_cursor"]

        logger.info("Notion query returned %d changed pages", len(records))
        return records, max_cursor(records, cursor)

    def get_by_id(self, external_id: str) -> CanonicalRecord | None:
        try:
            page = self.client.get(f"pages/{external_id}")
        except RecordNotFoundError:
            return None
        return self._to_record(page)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def property_types(self) -> dict[str, str]:
        """Return ``{property name: type}`` for the database (cached)."""
        if self._property_types is None:
            database = self.client.get(
                f"databases/{self.settings.database_id}"
            )
            self._property_types = {
                name: prop.get("type", "")
                for name, prop in (database.get("properties") or {}).items()
            }
        return self._property_types

    def _user_id(self, email: str) -> str | None:
        if self._users_by_email is None:
            users: dict[str, str] = {}
            params: dict[str, Any] = {"page_size": PAGE_SIZE}
            while True:
                result = self.client.get("users", params=params)
                for user in result.get("results", []):
                    user_email = (user.get("person") or {}).get("email")
                    if user.get("type") == "person" and user_email:
                        users[user_email.lower()] = user["id"]
                if not result.get("has_more"):
                    break
                params["start_cursor"] = result["next_cursor"]
            self._users_by_email = users
        return self._users_by_email.get(email.lower())

    def prepare_write(
        self, fields: dict[str, Any]
    ) -> tuple[dict[str, Any], list[MappingUnresolvableError]]:
        """Resolve people-by-email entries to Notion user ids.

        Returns:
            The writable properties and one warning per email that has no
            Notion user.  Those people are left out of the write.
        """
        keys = {m.notion_property: m.key for m in self.mapper.mappings}
        resolved: dict[str, Any] = {}
        unresolved: list[MappingUnresolvableError] = []
        for name, prop in fields.items():
            if "people" not in prop:
                resolved[name] = prop
                continue
            people = []
            for person in prop["people"] or []:
                if person.get("id"):
                    people.append({"object": "user", "id": person["id"]})
                    continue
                email = (person.get("person") or {}).get("email", "")
                user_id = self._user_id(email)
                if user_id is None:
                    logger.warning(
                        "No Notion user with email %s; leaving %s unassigned",
                        email,
                        name,
                    )
                    unresolved.append(
                        MappingUnresolvableError(
                            f"No Notion user with email '{email}'; "
                            f"{name} left unassigned",
                            key=keys.get(name),
                        )
                    )
                    continue
                people.append({"object": "user", "id": user_id})
            resolved[name] = {"people": people}
        return resolved, unresolved

    def _link_properties(self, ado_id: str) -> dict[str, Any]:
        props: dict[str, Any] = {}
        id_type = self.property_types().get(
            self.settings.ado_id_property, "rich_text"
        )
        if id_type == "number":
            props[self.settings.ado_id_property] = {"number": int(ado_id)}
        else:
            props[self.settings.ado_id_property] = {
                "rich_text": [{"type": "text", "text": {"content": ado_id}}]
            }
        if self.settings.ado_url_property and self._ado_url_for is not None:
            props[self.settings.ado_url_property] = {
                "url": self._ado_url_for(ado_id)
            }
        return props

    def create(self, record: CanonicalRecord, fields: dict[str, Any]) -> str:
        """Create a page mirroring the ADO work item *record*."""
        properties, _ = self.prepare_write(fields)
        properties.update(self._link_properties(record.external_id))
        page = self.client.post(
            "pages",
            json={
                "parent": {"database_id": self.settings.database_id},
                "properties": properties,
            },
        )
        logger.info(
            "Created Notion page %s from ado:%s", page["id"], record.external_id
        )
        return page["id"]

    def update(self, external_id: str, fields: dict[str, Any]) -> None:
        if not fields:
            return
        properties, _ = self.prepare_write(fields)
        self.client.patch(
            f"pages/{external_id}", json={"properties": properties}
        )

    def set_counterpart(self, external_id: str, ado_id: str) -> None:
        """Write the ADO id (and work-item URL) onto an existing page."""
        self.client.patch(
            f"pages/{external_id}",
            json={"properties": self._link_properties(ado_id)},
        )
        logger.info("Linked Notion page %s to ado:%s", external_id, ado_id)

    def delete(self, external_id: str) -> None:
        """Archive the page."""
        self.client.patch(f"pages/{external_id}", json={"archived": True})

    def get_subtasks(self, page_ids: list[str]) -> list[tuple[str, str]]:
        """Return ``(page id, title)`` for each readable subtask page.

        Subtask pages may live in another database, so the title is taken
        from whichever property has the ``title`` type.  Missing pages and
        pages without a title are skipped.
        """
        subtasks: list[tuple[str, str]] = []
        for page_id in page_ids:
            try:
                page = self.client.get(f"pages/{page_id}")
            except RecordNotFoundError:
                logger.warning("Subtask page %s not found; skipping", page_id)
                continue
            title = None
            for prop in (page.get("properties") or {}).values():
                if prop.get("type") == "title":
                    title = "".join(
                        p.get("plain_text", "") for p in prop.get("title") or []
                    ).strip()
                    break
            if title:
                subtasks.append((page_id, title))
        return subtasks

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def event_id(self, payload: dict[str, Any]) -> str | None:
        return payload.get("id")

    def translate_delta_event(
        self, payload: dict[str, Any]
    ) -> CanonicalRecord | None:
        """Translate a Notion webhook event.

        Notion events only name the page, so the page is fetched.
        Verification handshakes, non-page events and pages of other
        databases are ignored.
        """
        if "verification_token" in payload:
            logger.info("Ignoring Notion webhook verification request")
            return None

        event_type = payload.get("type")
        if event_type not in HANDLED_EVENTS:
            logger.debug("Ignoring Notion event type %s", event_type)
            return None

        parent = (payload.get("data") or {}).get("parent") or {}
        if _plain_id(parent.get("id")) != _plain_id(self.settings.database_id):
            logger.debug("Ignoring Notion event for another parent")
            return None

        page_id = (payload.get("entity") or {}).get("id")
        if not page_id:
            return None

        if event_type == "page.deleted":
            return CanonicalRecord(
                source_system=SourceSystem.NOTION,
                external_id=page_id,
                last_modified_at=parse_remote_timestamp(payload["timestamp"]),
                deleted=True,
            )

        record = self.get_by_id(page_id)
        if record is None:
            logger.info("Notion page %s vanished before it could be read", page_id)
        return record
