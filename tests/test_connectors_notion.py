"""Tests for the Notion connector."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from atpar_sync.config_schema import Credential, FieldMappingEntry
from atpar_sync.connectors.ado import AdoConnector
from atpar_sync.connectors.notion import NotionConnector
from atpar_sync.sync.errors import RecordNotFoundError
from atpar_sync.sync.mapper import FieldMapper
from atpar_sync.sync.models import CanonicalRecord, SourceSystem

DB_ID = "db-1"


def _page(page_id="n1", title="Fix login", edited="2026-03-01T09:00:00.000Z", **props):
    properties = {
        "Name": {"type": "title", "title": [{"plain_text": title}]},
        "Status": {"type": "status", "status": {"name": "In progress"}},
    }
    properties.update(props)
    return {
        "id": page_id,
        "last_edited_time": edited,
        "archived": False,
        "url": f"https://www.notion.so/{page_id}",
        "properties": properties,
    }


class FakeNotionApi:
    """Routes ``client.get`` calls by path."""

    def __init__(self, pages=None, property_types=None, users=None):
        self.pages = pages or {}
        self.property_types = property_types or {"ADO ID": "rich_text"}
        self.users = users or []

    def get(self, path, params=None):
        if path.startswith("pages/"):
            page_id = path.split("/", 1)[1]
            if page_id not in self.pages:
                raise RecordNotFoundError(page_id)
            return self.pages[page_id]
        if path == f"databases/{DB_ID}":
            return {
                "properties": {
                    name: {"type": kind}
                    for name, kind in self.property_types.items()
                }
            }
        if path == "users":
            return {"results": self.users, "has_more": False}
        raise AssertionError(f"unexpected GET {path}")


@pytest.fixture
def api():
    return FakeNotionApi()


@pytest.fixture
def client(api):
    client = MagicMock()
    client.get.side_effect = api.get
    return client


@pytest.fixture
def connector(team_config, client):
    return NotionConnector(
        team_config.notion,
        team_config.notion.credential,
        FieldMapper(team_config),
        client=client,
        ado_url_for=lambda i: AdoConnector.url_for(
            team_config.ado.org_url, team_config.ado.project, i
        ),
    )


def _ado_record(external_id="42"):
    return CanonicalRecord(
        source_system=SourceSystem.ADO,
        external_id=external_id,
        title="Fix login",
        state="Active",
        last_modified_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
    )


class TestConstruction:
    def test_token_required_without_client(self, team_config):
        with pytest.raises(ValueError, match="no token"):
            NotionConnector(
                team_config.notion,
                Credential(kind="integration"),
                FieldMapper(team_config),
            )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestListChanged:
    """Database queries filtered on last_edited_time, with pagination."""

    def test_paginates_and_maps(self, connector, client):
        client.post.side_effect = [
            {"results": [_page("n1")], "has_more": True, "next_cursor": "c2"},
            {
                "results": [_page("n2", "Other", "2026-03-01T10:05:00.000Z")],
                "has_more": False,
            },
        ]

        records, cursor = connector.list_changed("2026-03-01T08:00:00.000Z")

        assert [r.external_id for r in records] == ["n1", "n2"]
        assert records[0].state == "Active"
        assert cursor == "2026-03-01T10:05:00.000Z"
        first_body = client.post.call_args_list[0].kwargs["json"]
        assert first_body["filter"]["last_edited_time"] == {
            "on_or_after": "2026-03-01T08:00:00.000Z"
        }
        assert client.post.call_args_list[1].kwargs["json"]["start_cursor"] == "c2"

    def test_no_cursor_has_no_filter(self, connector, client):
        client.post.return_value = {"results": [], "has_more": False}

        records, cursor = connector.list_changed(None)

        assert records == [] and cursor is None
        assert "filter" not in client.post.call_args.kwargs["json"]

    def test_archived_page_is_deleted(self, connector, client):
        page = _page()
        page["archived"] = True
        client.post.return_value = {"results": [page], "has_more": False}

        records, _ = connector.list_changed(None)

        assert records[0].deleted is True


class TestCounterpartHint:
    """The ADO id is read from the id property, then the URL property."""

    def _hint(self, connector, api, **props):
        api.pages["n1"] = _page(**props)
        return connector.get_by_id("n1").counterpart_hint

    def test_rich_text_id(self, connector, api):
        prop = {"type": "rich_text", "rich_text": [{"plain_text": " 42 "}]}
        assert self._hint(connector, api, **{"ADO ID": prop}) == "42"

    def test_number_id(self, connector, api):
        prop = {"type": "number", "number": 42.0}
        assert self._hint(connector, api, **{"ADO ID": prop}) == "42"

    def test_url_fallback(self, connector, api):
        url = "https://dev.azure.com/contoso/Atlas/_workitems/edit/77"
        prop = {"type": "url", "url": url}
        assert self._hint(connector, api, PBI=prop) == "77"

    def test_no_hint(self, connector, api):
        assert self._hint(connector, api) is None

    def test_missing_page(self, connector):
        assert connector.get_by_id("gone") is None


class TestSubtasks:
    """Subtask relations are read from the page and resolved to titles."""

    def test_relation_ids_on_record(self, connector, api):
        relation = {"type": "relation", "relation": [{"id": "s1"}, {"id": "s2"}]}
        api.pages["n1"] = _page(Subtask=relation)

        record = connector.get_by_id("n1")

        assert record.subtask_ids == ["s1", "s2"]
        assert "subtask_ids" not in record.canonical_values()

    def test_disabled_subtask_property(self, team_config, client, api):
        settings = team_config.notion.model_copy(update={"subtask_property": None})
        connector = NotionConnector(
            settings, settings.credential, FieldMapper(team_config), client=client
        )
        relation = {"type": "relation", "relation": [{"id": "s1"}]}
        api.pages["n1"] = _page(Subtask=relation)

        assert connector.get_by_id("n1").subtask_ids == []

    def test_get_subtasks_reads_any_title_property(self, connector, api):
        api.pages["s1"] = {
            "id": "s1",
            "properties": {
                "Task": {"type": "title", "title": [{"plain_text": "Write tests"}]}
            },
        }
        api.pages["s2"] = {"id": "s2", "properties": {}}

        subtasks = connector.get_subtasks(["s1", "s2", "missing"])

        assert subtasks == [("s1", "Write tests")]


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestWrites:
    """Page creation carries the link properties; people are resolved."""

    def test_create_adds_link_properties(self, connector, client):
        client.post.return_value = {"id": "page-9"}

        new_id = connector.create(
            _ado_record(), {"Name": {"title": [{"text": {"content": "Fix"}}]}}
        )

        assert new_id == "page-9"
        body = client.post.call_args.kwargs["json"]
        assert body["parent"] == {"database_id": DB_ID}
        props = body["properties"]
        assert props["ADO ID"]["rich_text"][0]["text"]["content"] == "42"
        assert props["PBI"]["url"] == (
            "https://dev.azure.com/contoso/Atlas/_workitems/edit/42"
        )

    def test_numeric_id_property(self, connector, client, api):
        api.property_types = {"ADO ID": "number"}
        client.post.return_value = {"id": "page-9"}

        connector.create(_ado_record(), {})

        props = client.post.call_args.kwargs["json"]["properties"]
        assert props["ADO ID"] == {"number": 42}

    def test_people_resolved_by_email(self, connector, client, api):
        api.users = [
            {"id": "u1", "type": "person", "person": {"email": "Ana@contoso.com"}},
            {"id": "bot", "type": "bot"},
        ]
        fields = {
            "Owner": {
                "people": [
                    {"object": "user", "person": {"email": "ana@contoso.com"}},
                    {"object": "user", "person": {"email": "nobody@contoso.com"}},
                ]
            }
        }

        connector.update("n1", fields)

        body = client.patch.call_args.kwargs["json"]
        assert body == {"properties": {"Owner": {"people": [
            {"object": "user", "id": "u1"}
        ]}}}

    def test_unknown_email_reported_with_canonical_key(
        self, team_config, client, api
    ):
        api.users = [
            {"id": "u1", "type": "person", "person": {"email": "ana@contoso.com"}}
        ]
        assignee = FieldMappingEntry(
            key="assignee",
            ado_field="System.AssignedTo",
            notion_property="Owner",
            notion_type="people",
            kind="person",
        )
        team = team_config.model_copy(
            update={"field_mappings": [*team_config.field_mappings, assignee]}
        )
        connector = NotionConnector(
            team.notion, team.notion.credential, FieldMapper(team), client=client
        )
        fields = {
            "Name": {"title": [{"text": {"content": "Fix"}}]},
            "Owner": {
                "people": [
                    {"object": "user", "person": {"email": "nobody@contoso.com"}}
                ]
            },
        }

        writable, unresolved = connector.prepare_write(fields)

        assert writable["Owner"] == {"people": []}
        assert writable["Name"] == fields["Name"]
        assert len(unresolved) == 1
        assert unresolved[0].key == "assignee"
        assert unresolved[0].level == "warning"
        assert "nobody@contoso.com" in str(unresolved[0])

    def test_set_counterpart_writes_id_and_url(self, connector, client):
        connector.set_counterpart("n1", "77")

        assert client.patch.call_args.args[0] == "pages/n1"
        props = client.patch.call_args.kwargs["json"]["properties"]
        assert props["ADO ID"]["rich_text"][0]["text"]["content"] == "77"
        assert props["PBI"] == {
            "url": "https://dev.azure.com/contoso/Atlas/_workitems/edit/77"
        }

    def test_empty_update_is_noop(self, connector, client):
        connector.update("n1", {})
        client.patch.assert_not_called()

    def test_delete_archives(self, connector, client):
        connector.delete("n1")

        assert client.patch.call_args.args[0] == "pages/n1"
        assert client.patch.call_args.kwargs["json"] == {"archived": True}


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


def _event(event_type="page.properties_updated", parent=DB_ID, page_id="n1"):
    return {
        "id": "evt-1",
        "type": event_type,
        "timestamp": "2026-03-01T11:00:00.000Z",
        "entity": {"id": page_id, "type": "page"},
        "data": {"parent": {"id": parent, "type": "database"}},
    }


class TestWebhooks:
    """Notion events name a page; the page is fetched."""

    def test_update_fetches_page(self, connector, api):
        api.pages["n1"] = _page(title="Renamed")

        record = connector.translate_delta_event(_event())

        assert record.title == "Renamed"
        assert connector.event_id(_event()) == "evt-1"

    def test_parent_id_compared_without_dashes(self, connector, api, team_config):
        connector.settings = team_config.notion.model_copy(
            update={"database_id": "ABCD-1234"}
        )
        api.pages["n1"] = _page()

        assert connector.translate_delta_event(_event(parent="abcd1234"))

    def test_deleted_page(self, connector):
        record = connector.translate_delta_event(_event("page.deleted"))

        assert record.deleted is True
        assert record.external_id == "n1"

    def test_vanished_page(self, connector):
        assert connector.translate_delta_event(_event(page_id="gone")) is None

    @pytest.mark.parametrize(
        "payload",
        [
            {"verification_token": "abc"},
            {"type": "database.created"},
            _event(parent="other-db"),
        ],
    )
    def test_ignored(self, connector, payload):
        assert connector.translate_delta_event(payload) is None
