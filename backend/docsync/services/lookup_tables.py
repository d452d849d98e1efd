"""Lookup-table references in recipe code and their resolution.

Recipes frequently translate codes through Workato lookup tables. The table
contents are not part of the recipe, so documentation would otherwise only
say "looks up a value". Here we find the tables a set of recipes refers to
and fetch their columns plus a few sample rows.
"""
from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Set, Union

from docsync.errors import DocSyncError
from docsync.services.recipe_definition import RecipeDefinition
from docsync.services.ai.ai_client import LookupTableContext
from docsync.models.workato import WorkatoLookupTable
from docsync.utils.logger import logger


MAX_SAMPLE_ROWS = 5

TABLE_NAME_KEYS = ("table_name", "lookup_table_name")
TABLE_ID_KEYS = ("table_id", "lookup_table_id")

# Fallback patterns for recipe code that is not valid JSON. Key quotes are
# optional so both `"table_id": 7` and `lookup_table_id: "7"` match.
_NAME_RE = re.compile(
    r"""["']?\b(?:lookup_)?table_name["']?\s*[:=]>?\s*["']([^"']+)["']""",
    re.IGNORECASE,
)
_ID_RE = re.compile(
    r"""["']?\b(?:lookup_)?table_id["']?\s*[:=]>?\s*["']?(\d+)""",
    re.IGNORECASE,
)


@dataclass
class LookupTableRefs:
    names: Set[str] = field(default_factory=set)
    ids: Set[int] = field(default_factory=set)

    @property
    def is_empty(self) -> bool:
        return not self.names and not self.ids

    def update(self, other: "LookupTableRefs") -> None:
        self.names |= other.names
        self.ids |= other.ids


def _as_table_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float) and value.is_integer():
        return int(value) if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
        return number if number > 0 else None
    return None


def extract_lookup_table_references(code: Union[str, dict, list, None]) -> LookupTableRefs:
    """Collect lookup-table names and ids referenced anywhere in recipe code.

    Accepts the raw JSON string or an already parsed structure. Code that does
    not parse is scanned with regular expressions instead of failing.
    """
    refs = LookupTableRefs()
    if code is None or code == "":
        return refs

    definition = code if isinstance(code, RecipeDefinition) else RecipeDefinition.from_raw(code)

    if definition.parse_error is not None:
        text = definition.text()
        for match in _NAME_RE.finditer(text):
            refs.names.add(match.group(1))
        for match in _ID_RE.finditer(text):
            table_id = _as_table_id(match.group(1))
            if table_id is not None:
                refs.ids.add(table_id)
        return refs

    for key, value in definition.walk():
        if key in TABLE_NAME_KEYS and isinstance(value, str) and value:
            refs.names.add(value)
        elif key in TABLE_ID_KEYS:
            table_id = _as_table_id(value)
            if table_id is not None:
                refs.ids.add(table_id)
    return refs


def extract_lookup_table_references_from_recipes(recipes: Iterable[Any]) -> LookupTableRefs:
    combined = LookupTableRefs()
    for recipe in recipes:
        code = recipe.get("code") if isinstance(recipe, dict) else getattr(recipe, "code", None)
        combined.update(extract_lookup_table_references(code))
    return combined


def parse_schema_columns(schema: Union[str, list, None]) -> List[str]:
    """Column names from a lookup table ``schema`` field.

    Usually a JSON array of strings; column objects contribute their
    ``label``/``name``. Non-JSON text is read as a comma-separated list.
    """
    if not schema:
        return []
    parsed: Any = schema
    if isinstance(schema, str):
        try:
            parsed = json.loads(schema)
        except ValueError:
            return [part.strip() for part in schema.split(",") if part.strip()]
    if not isinstance(parsed, list):
        return []
    columns: List[str] = []
    for column in parsed:
        if isinstance(column, dict):
            column = column.get("label") or column.get("name")
        if column is None:
            continue
        text = str(column).strip()
        if text:
            columns.append(text)
    return columns


async def resolve_lookup_tables(client, tenant_id: Union[str, int], refs: LookupTableRefs) -> List[LookupTableContext]:
    """Fetch schema and sample rows for every table matching ``refs``.

    Tables match by id or by case-insensitive name. A failing row fetch
    leaves that table with no sample rows; listing failures propagate.
    """
    if refs.is_empty:
        return []

    tables: List[WorkatoLookupTable] = await client.list_lookup_tables(tenant_id)
    lower_names = {name.lower() for name in refs.names}
    matched = [
        table for table in tables
        if table.id in refs.ids or (table.name or "").lower() in lower_names
    ]
    if not matched:
        logger.info(f"No lookup tables matched tenant={tenant_id} names={sorted(refs.names)} ids={sorted(refs.ids)}")
        return []

    async def _build(table: WorkatoLookupTable) -> LookupTableContext:
        sample_rows = []
        try:
            rows = await client.list_lookup_table_rows(tenant_id, table.id, per_page=MAX_SAMPLE_ROWS)
            sample_rows = [row.data for row in rows[:MAX_SAMPLE_ROWS]]
        except DocSyncError as exc:
            logger.warning(
                "Lookup table rows unavailable tenant=%s table_id=%s: %s", tenant_id, table.id, exc
            )
        return LookupTableContext(
            id=table.id,
            name=table.name,
            columns=parse_schema_columns(table.table_schema),
            sample_rows=sample_rows,
        )

    # One task per matched table; the match set is small.
    return list(await asyncio.gather(*(_build(table) for table in matched)))
