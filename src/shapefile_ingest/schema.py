"""Destination schema inference from .dbf field descriptors.

The auto-detected schema maps each attribute field to a column and appends
one geometry column. A manual schema replaces the auto-detected columns
entirely; only the geometry column is enforced on top of it.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from .dbf import semantic_type
from .errors import SchemaConflict
from .models import (
    AutoSchema,
    ColumnType,
    FieldDescriptor,
    FieldMode,
    GeometryKind,
    ManualSchema,
    SchemaField,
)

logger = logging.getLogger(__name__)

GEOMETRY_COLUMN = "geometry"

_INVALID_CHARS = re.compile(r"[^a-z0-9_]")


def sanitize_name(name: str) -> str:
    """Lower-case, replace non-alphanumerics with ``_`` and prefix a leading digit."""
    cleaned = _INVALID_CHARS.sub("_", name.strip().lower())
    if not cleaned:
        return "field"
    if cleaned[0].isdigit():
        cleaned = "_" + cleaned
    return cleaned


class NameAllocator:
    """Hands out unique column names, suffixing collisions in first-seen order."""

    def __init__(self, reserved: Iterable[str] = ()):
        self._taken = set(reserved)

    def allocate(self, name: str) -> str:
        base = sanitize_name(name)
        candidate = base
        counter = 1
        while candidate in self._taken:
            candidate = f"{base}_{counter}"
            counter += 1
        self._taken.add(candidate)
        return candidate


def parse_integer_columns(value: str | Iterable[str] | None) -> set[str]:
    """Normalize an "integer columns" option (comma separated or a list)."""
    if not value:
        return set()
    if isinstance(value, str):
        value = value.split(",")
    return {sanitize_name(v) for v in value if v and v.strip()}


def geometry_field(geometry_type: GeometryKind | None, has_null_geometry: bool) -> SchemaField:
    label = geometry_type.value if geometry_type else "Unknown"
    return SchemaField(
        name=GEOMETRY_COLUMN,
        type=ColumnType.GEOGRAPHY,
        mode=FieldMode.NULLABLE if has_null_geometry else FieldMode.REQUIRED,
        auto_detected=True,
        description=f"{label} geometry",
    )


def infer_schema(
    fields: list[FieldDescriptor],
    geometry_type: GeometryKind | None,
    *,
    has_null_geometry: bool = False,
    required: Iterable[str] = (),
    integer_columns: str | Iterable[str] | None = None,
) -> AutoSchema:
    """Propose a column list from the attribute field descriptors.

    Args:
        fields: Field descriptors in .dbf order.
        geometry_type: Dataset geometry kind from the .shp header.
        has_null_geometry: Whether any Null record was seen; makes the
            geometry column nullable.
        required: Attribute names (raw or sanitized) to mark REQUIRED.
        integer_columns: Attribute names forced to INTEGER.
    """
    required_names = {sanitize_name(r) for r in required}
    integer_names = parse_integer_columns(integer_columns)
    allocator = NameAllocator(reserved=[GEOMETRY_COLUMN])

    columns: list[SchemaField] = []
    for field in fields:
        name = allocator.allocate(field.name)
        matches = {name, sanitize_name(field.name)}
        column_type = ColumnType.INTEGER if matches & integer_names else semantic_type(field)
        columns.append(
            SchemaField(
                name=name,
                type=column_type,
                mode=FieldMode.REQUIRED if matches & required_names else FieldMode.NULLABLE,
                auto_detected=True,
                source_name=field.key,
                description=f"Attribute field: {field.name}",
            )
        )
    columns.append(geometry_field(geometry_type, has_null_geometry))

    logger.debug("inferred %d columns from %d attribute fields", len(columns), len(fields))
    return AutoSchema(fields=columns)


def apply_manual_schema(
    manual: list[SchemaField],
    attribute_fields: list[FieldDescriptor],
    geometry_type: GeometryKind | None,
    *,
    has_null_geometry: bool = False,
) -> ManualSchema:
    """Resolve a user-supplied column list against the parsed attribute fields.

    The manual list is authoritative: auto-detected columns it does not name
    are dropped. A geometry column is appended when missing.
    """
    by_raw = {f.key: f for f in attribute_fields}
    by_sanitized = {sanitize_name(f.key): f for f in attribute_fields}
    allocator = NameAllocator(reserved=[GEOMETRY_COLUMN])

    resolved: list[SchemaField] = []
    has_geometry = False
    for field in manual:
        if sanitize_name(field.name) == GEOMETRY_COLUMN and field.source_name is None:
            if has_geometry:
                raise SchemaConflict(f"column '{GEOMETRY_COLUMN}' is declared twice")
            if field.type is not ColumnType.GEOGRAPHY:
                raise SchemaConflict(f"column '{GEOMETRY_COLUMN}' must be GEOGRAPHY, got {field.type.value}")
            if field.required and has_null_geometry:
                raise SchemaConflict(f"column '{GEOMETRY_COLUMN}' cannot be REQUIRED: the file has Null shapes")
            has_geometry = True
            resolved.append(field.model_copy(update={"name": GEOMETRY_COLUMN, "auto_detected": False}))
            continue

        source = _match_source(field, by_raw, by_sanitized)
        if source is None and field.type is ColumnType.GEOGRAPHY:
            raise SchemaConflict(
                f"GEOGRAPHY column '{field.name}' matches no attribute field; "
                f"the geometry column is '{GEOMETRY_COLUMN}'"
            )
        if source is None and field.required:
            raise SchemaConflict(f"required column '{field.name}' matches no attribute field")
        resolved.append(
            field.model_copy(
                update={
                    "name": allocator.allocate(field.name),
                    "source_name": source.key if source else None,
                    "auto_detected": False,
                }
            )
        )

    if not has_geometry:
        resolved.append(geometry_field(geometry_type, has_null_geometry))

    return ManualSchema(fields=resolved)


def _match_source(
    field: SchemaField,
    by_raw: dict[str, FieldDescriptor],
    by_sanitized: dict[str, FieldDescriptor],
) -> FieldDescriptor | None:
    if field.source_name is not None:
        source = by_raw.get(field.source_name) or by_sanitized.get(sanitize_name(field.source_name))
        if source is None:
            raise SchemaConflict(f"column '{field.name}' references unknown attribute '{field.source_name}'")
        return source
    return by_sanitized.get(sanitize_name(field.name))
