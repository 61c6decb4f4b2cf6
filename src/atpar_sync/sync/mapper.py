"""Config-driven field mapper between ADO work items and Notion pages.

Translates native payloads to ``CanonicalRecord`` and back using the
team's ``field_mappings``.  The canonical vocabulary for enumerated values
is the Azure DevOps one, so ADO values pass through unchanged and Notion
values are translated on the way in and out.

Per-kind conversion rules:

* **text** -- plain strings, Notion rich text is concatenated.
* **html** -- ADO HTML is reduced to plain text; plain text is written
  back as escaped ``<p>`` paragraphs.
* **enum** -- translated by name through the equivalence table,
  case-insensitively.  Unmapped values pass through and a
  ``MappingUnresolvableError`` warning is queued in ``warnings``.
* **path** -- ``Project\\Area\\Team`` is flattened to ``Project/Area/Team``.
* **list** -- ADO ``a; b`` tags and Notion multi-select, order-insensitive.
  The link tags written by the ADO connector are hidden.
* **person** -- ADO unique names and Notion people emails.
* **number**, **bool**, **date** -- coerced scalars.
"""

from __future__ import annotations

import html
import logging
import re
from datetime import datetime
from typing import Any, Iterable

from ..config_schema import FieldMappingEntry, TeamSyncConfig
from .errors import MappingUnresolvableError
from .models import CanonicalRecord, SourceSystem

logger = logging.getLogger(__name__)

FIRST_CLASS_KEYS = ("title", "state", "description")

RESERVED_TAG = "from_notion"
NOTION_ID_TAG_PREFIX = "notion-id:"

_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_END_RE = re.compile(r"(?i)<br\s*/?>|</(p|div|li|h[1-6]|tr)>")

# Notion rejects rich text items longer than this.
NOTION_TEXT_CHUNK = 2000


# ---------------------------------------------------------------------------
# Normalisation shared with the identity map
# ---------------------------------------------------------------------------


def normalize_value(value: Any) -> Any:
    """Normalise a canonical value for comparison and fingerprinting.

    Blank strings become ``None``, strings are stripped, lists are sorted,
    integral floats become ints and datetimes become ISO strings.
    """
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple, set)):
        items = [normalize_value(v) for v in value]
        items = [v for v in items if v is not None]
        return sorted(items, key=str) or None
    return value


def normalize_values(values: dict[str, Any]) -> dict[str, Any]:
    return {key: normalize_value(value) for key, value in values.items()}


def html_to_text(value: str) -> str:
    """Reduce ADO rich-text HTML to plain text."""
    text = _BLOCK_END_RE.sub("\n", value)
    text = html.unescape(_TAG_RE.sub("", text))
    lines = [line.rstrip() for line in text.replace("\r\n", "\n").split("\n")]
    return "\n".join(lines).strip()


def text_to_html(value: str) -> str:
    return "".join(
        f"<p>{html.escape(line)}</p>" for line in value.split("\n")
    )


def _lookup(table: dict[str, str], value: str) -> str | None:
    """Case-insensitive lookup of *value* in *table*."""
    if value in table:
        return table[value]
    folded = value.casefold()
    for key, mapped in table.items():
        if key.casefold() == folded:
            return mapped
    return None


class FieldMapper:
    """Convert between native payloads and ``CanonicalRecord``.

    Args:
        team: The team's sync configuration (field mappings).
    """

    def __init__(self, team: TeamSyncConfig) -> None:
        self._team = team
        self._mappings = list(team.field_mappings)
        self._reverse = {m.key: m.reverse_table() for m in self._mappings}
        self.warnings: list[MappingUnresolvableError] = []

    @property
    def mappings(self) -> list[FieldMappingEntry]:
        return list(self._mappings)

    @property
    def keys(self) -> list[str]:
        return [m.key for m in self._mappings]

    def drain_warnings(self) -> list[MappingUnresolvableError]:
        """Return queued warnings (deduplicated) and clear the queue."""
        seen: set[str] = set()
        drained: list[MappingUnresolvableError] = []
        for warning in self.warnings:
            if str(warning) not in seen:
                seen.add(str(warning))
                drained.append(warning)
        self.warnings = []
        return drained

    # ------------------------------------------------------------------
    # Native -> canonical
    # ------------------------------------------------------------------

    def to_canonical(
        self,
        system: SourceSystem,
        external_id: str,
        payload: dict[str, Any],
        *,
        last_modified_at: datetime,
        deleted: bool = False,
        counterpart_hint: str | None = None,
        url: str | None = None,
    ) -> CanonicalRecord:
        """Build a ``CanonicalRecord`` from a native field set.

        Args:
            system: System *payload* was read from.
            external_id: Record id in *system*.
            payload: ADO ``fields`` dict or Notion ``properties`` dict.
            last_modified_at: Remote modification timestamp.
            deleted: Whether the record is deleted/archived.
            counterpart_hint: Opposite-side id carried by the record.
            url: Browser URL of the record.
        """
        values: dict[str, Any] = {}
        for mapping in self._mappings:
            if system is SourceSystem.ADO:
                values[mapping.key] = self._from_ado(
                    mapping, payload.get(mapping.ado_field)
                )
            else:
                values[mapping.key] = self._from_notion(
                    mapping, payload.get(mapping.notion_property)
                )

        extra = {k: v for k, v in values.items() if k not in FIRST_CLASS_KEYS}
        return CanonicalRecord(
            source_system=system,
            external_id=str(external_id),
            title=values.get("title"),
            state=values.get("state"),
            description=values.get("description"),
            field_values=extra,
            last_modified_at=last_modified_at,
            deleted=deleted,
            counterpart_hint=counterpart_hint,
            url=url,
        )

    def _from_ado(self, mapping: FieldMappingEntry, raw: Any) -> Any:
        if raw is None:
            return [] if mapping.kind == "list" else None
        kind = mapping.kind
        if kind == "html":
            return html_to_text(str(raw)) or None
        if kind == "path":
            return str(raw).replace("\\", "/")
        if kind == "list":
            tags = [t.strip() for t in str(raw).split(";")]
            return sorted(
                t
                for t in tags
                if t
                and t != RESERVED_TAG
                and not t.startswith(NOTION_ID_TAG_PREFIX)
            )
        if kind == "person":
            if isinstance(raw, dict):
                raw = raw.get("uniqueName") or raw.get("displayName")
            return str(raw).strip() or None
        if kind == "number":
            return float(raw)
        if kind == "bool":
            return bool(raw)
        return str(raw) if not isinstance(raw, str) else raw

    def _from_notion(self, mapping: FieldMappingEntry, prop: Any) -> Any:
        value = _extract_notion_value(prop, mapping.notion_type)
        kind = mapping.kind
        if kind == "list":
            if value is None:
                return []
            items = value if isinstance(value, list) else [value]
            return sorted(str(v) for v in items)
        if isinstance(value, list):
            value = value[0] if value else None
        if value is None:
            return None
        if kind in ("enum", "person"):
            translated = _lookup(self._reverse[mapping.key], str(value))
            if translated is not None:
                return translated
            if kind == "enum":
                self._warn(mapping, str(value), SourceSystem.ADO)
            return str(value)
        if kind == "number":
            return float(value)
        if kind == "bool":
            return bool(value)
        return value

    # ------------------------------------------------------------------
    # Canonical -> native
    # ------------------------------------------------------------------

    def from_canonical(
        self,
        record: CanonicalRecord,
        target: SourceSystem,
        keys: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        """Build the native field set for *target*.

        Args:
            record: Record to convert.
            target: System that will receive the payload.
            keys: Restrict the payload to these canonical keys (a delta).

        Returns:
            ADO ``{reference_name: value}`` dict or Notion ``properties``
            dict.
        """
        values = record.canonical_values()
        wanted = set(keys) if keys is not None else None
        native: dict[str, Any] = {}
        for mapping in self._mappings:
            if wanted is not None and mapping.key not in wanted:
                continue
            value = values.get(mapping.key)
            if target is SourceSystem.ADO:
                native[mapping.ado_field] = self._to_ado(mapping, value)
            else:
                native[mapping.notion_property] = self._to_notion(
                    mapping, value
                )
        return native

    def _to_ado(self, mapping: FieldMappingEntry, value: Any) -> Any:
        if value is None or value == []:
            return None
        kind = mapping.kind
        if kind == "html":
            return text_to_html(str(value))
        if kind == "path":
            return str(value).replace("/", "\\")
        if kind == "list":
            return "; ".join(sorted(str(v) for v in value))
        return value

    def _to_notion(self, mapping: FieldMappingEntry, value: Any) -> dict:
        if mapping.kind in ("enum", "person") and value is not None:
            translated = _lookup(mapping.value_translation, str(value))
            if translated is not None:
                value = translated
            elif mapping.kind == "enum":
                self._warn(mapping, str(value), SourceSystem.NOTION)
        return _build_notion_property(mapping.notion_type, value)

    def _warn(
        self, mapping: FieldMappingEntry, value: str, target: SourceSystem
    ) -> None:
        message = (
            f"No {target.value} equivalent for {mapping.key} value "
            f"'{value}'; passing it through unchanged"
        )
        logger.warning(message)
        self.warnings.append(MappingUnresolvableError(message, key=mapping.key))

    # ------------------------------------------------------------------
    # Deltas
    # ------------------------------------------------------------------

    @staticmethod
    def delta(
        values: dict[str, Any], last_values: dict[str, Any]
    ) -> list[str]:
        """Return canonical keys whose normalised value changed."""
        return [
            key
            for key, value in values.items()
            if normalize_value(value) != normalize_value(last_values.get(key))
        ]


# ---------------------------------------------------------------------------
# Notion property helpers
# ---------------------------------------------------------------------------


def _rich_text_content(items: list[dict[str, Any]]) -> str | None:
    parts = []
    for item in items or []:
        text = item.get("plain_text")
        if text is None:
            text = item.get("text", {}).get("content", "")
        parts.append(text)
    joined = "".join(parts)
    return joined or None


def _extract_notion_value(prop: Any, prop_type: str) -> Any:
    """Extract a Python value from a Notion property value dict."""
    if not isinstance(prop, dict):
        return None

    if prop_type in ("title", "rich_text"):
        return _rich_text_content(prop.get(prop_type, []))
    if prop_type in ("select", "status"):
        option = prop.get(prop_type)
        return option.get("name") if option else None
    if prop_type == "multi_select":
        return [o.get("name") for o in prop.get("multi_select") or []]
    if prop_type == "date":
        date_val = prop.get("date")
        return date_val.get("start") if date_val else None
    if prop_type == "people":
        emails = []
        for person in prop.get("people") or []:
            email = (person.get("person") or {}).get("email")
            if email:
                emails.append(email)
        return emails
    # number, checkbox, email, url
    return prop.get(prop_type)


def _chunk_text(value: str) -> list[dict[str, Any]]:
    return [
        {"type": "text", "text": {"content": value[i : i + NOTION_TEXT_CHUNK]}}
        for i in range(0, len(value), NOTION_TEXT_CHUNK)
    ]


def _build_notion_property(prop_type: str, value: Any) -> dict[str, Any]:
    """Wrap *value* in the Notion API structure for *prop_type*."""
    if prop_type in ("title", "rich_text"):
        return {prop_type: _chunk_text(str(value)) if value else []}
    if prop_type in ("select", "status"):
        return {prop_type: {"name": str(value)} if value else None}
    if prop_type == "multi_select":
        return {"multi_select": [{"name": str(v)} for v in value or []]}
    if prop_type == "date":
        if value is None:
            return {"date": None}
        start = value if isinstance(value, str) else value.isoformat()
        return {"date": {"start": start}}
    if prop_type == "people":
        if not value:
            return {"people": []}
        emails = value if isinstance(value, list) else [value]
        # The Notion connector resolves emails to user ids before writing.
        return {
            "people": [
                {"object": "user", "person": {"email": e}} for e in emails
            ]
        }
    if prop_type == "number":
        return {"number": float(value) if value is not None else None}
    if prop_type == "checkbox":
        return {"checkbox": bool(value)}
    return {prop_type: value}
