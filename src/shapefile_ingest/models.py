"""Pydantic data models for the shapefile ingest pipeline."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ComponentKind(str, Enum):
    SHP = "shp"
    SHX = "shx"
    DBF = "dbf"
    PRJ = "prj"


REQUIRED_COMPONENTS = (ComponentKind.SHP, ComponentKind.SHX, ComponentKind.DBF)


class ShapefileComponent(BaseModel):
    """One stored file of a shapefile bundle."""

    model_config = ConfigDict(frozen=True)

    kind: ComponentKind
    size: int
    location: str
    bundle_id: str
    original_name: str


class GeometryKind(str, Enum):
    NULL = "Null"
    POINT = "Point"
    POLYLINE = "PolyLine"
    POLYGON = "Polygon"
    MULTIPOINT = "MultiPoint"


class GeometryRecord(BaseModel):
    """A single decoded .shp record.

    ``points`` holds the x/y pairs; ``z`` and ``m`` are parallel sequences
    present only for Z/M shape types. ``parts`` are start offsets into
    ``points`` for PolyLine and Polygon records.
    """

    kind: GeometryKind
    shape_type: int
    record_number: int = 0
    bbox: tuple[float, float, float, float] | None = None
    parts: list[int] = Field(default_factory=list)
    points: list[tuple[float, float]] = Field(default_factory=list)
    z: list[float] | None = None
    m: list[float | None] | None = None

    @model_validator(mode="after")
    def _check_layout(self) -> GeometryRecord:
        if self.kind is GeometryKind.NULL:
            if self.points or self.parts:
                raise ValueError("a Null record carries no coordinates")
            return self

        n = len(self.points)
        previous = -1
        for offset in self.parts:
            if offset <= previous or offset >= n:
                raise ValueError(f"part offsets {self.parts} invalid for {n} points")
            previous = offset
        if self.parts and self.parts[0] != 0:
            raise ValueError(f"first part offset must be 0, got {self.parts[0]}")
        for name, values in (("z", self.z), ("m", self.m)):
            if values is not None and len(values) != n:
                raise ValueError(f"{name} has {len(values)} values for {n} points")
        return self

    @property
    def coordinates(self) -> list[tuple[float | None, ...]]:
        """Coordinate tuples in ``(x, y[, z][, m])`` form."""
        coords = []
        for i, (x, y) in enumerate(self.points):
            c: tuple[float | None, ...] = (x, y)
            if self.z is not None:
                c += (self.z[i],)
            if self.m is not None:
                c += (self.m[i],)
            coords.append(c)
        return coords

    def part_slices(self) -> list[list[tuple[float, float]]]:
        """Split ``points`` into one list per part."""
        if not self.parts:
            return [list(self.points)] if self.points else []
        bounds = list(self.parts) + [len(self.points)]
        return [self.points[bounds[i] : bounds[i + 1]] for i in range(len(self.parts))]


class FieldDescriptor(BaseModel):
    """A .dbf field descriptor.

    ``key`` is unique within a table and is what attribute values are keyed
    by. It equals ``name`` unless an earlier field has the same name.
    """

    name: str
    type_code: str
    length: int
    decimals: int = 0
    key: str = ""

    @model_validator(mode="after")
    def _default_key(self) -> FieldDescriptor:
        if not self.key:
            self.key = self.name
        return self


class AttributeRecord(BaseModel):
    ordinal: int
    deleted: bool = False
    values: dict[str, Any] = Field(default_factory=dict)


class Feature(BaseModel):
    """A geometry paired with its attributes, keyed by file position."""

    ordinal: int
    geometry: GeometryRecord
    attributes: dict[str, Any] = Field(default_factory=dict)

    @property
    def kind(self) -> GeometryKind:
        return self.geometry.kind


class ColumnType(str, Enum):
    STRING = "STRING"
    INTEGER = "INTEGER"
    FLOAT = "FLOAT"
    NUMERIC = "NUMERIC"
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"
    DATETIME = "DATETIME"
    TIMESTAMP = "TIMESTAMP"
    GEOGRAPHY = "GEOGRAPHY"
    JSON = "JSON"
    BYTES = "BYTES"


class FieldMode(str, Enum):
    NULLABLE = "NULLABLE"
    REQUIRED = "REQUIRED"


class SchemaField(BaseModel):
    """A proposed or confirmed destination column."""

    name: str
    type: ColumnType
    mode: FieldMode = FieldMode.NULLABLE
    auto_detected: bool = True
    source_name: str | None = None
    description: str | None = None

    @property
    def required(self) -> bool:
        return self.mode is FieldMode.REQUIRED


class AutoSchema(BaseModel):
    kind: Literal["auto"] = "auto"
    fields: list[SchemaField]


class ManualSchema(BaseModel):
    kind: Literal["manual"] = "manual"
    fields: list[SchemaField]


ResolvedSchema = Annotated[Union[AutoSchema, ManualSchema], Field(discriminator="kind")]


_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,1023}$")
_PROJECT_RE = re.compile(r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$")


class DestinationConfig(BaseModel):
    """Where the rows of a session are loaded."""

    project_id: str
    dataset_id: str
    table_name: str

    @field_validator("project_id")
    @classmethod
    def validate_project_id(cls, v: str) -> str:
        if not _PROJECT_RE.match(v):
            raise ValueError(
                "project_id must be 6-30 lowercase letters, digits or hyphens, "
                "start with a letter and not end with a hyphen"
            )
        return v

    @field_validator("dataset_id", "table_name")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        if not _TABLE_RE.match(v):
            raise ValueError("must start with a letter or underscore and contain only letters, digits, underscores")
        return v

    @property
    def table_id(self) -> str:
        return f"{self.project_id}.{self.dataset_id}.{self.table_name}"


class SessionStatus(str, Enum):
    PENDING = "pending"
    PARSING = "parsing"
    PARSED = "parsed"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = frozenset({SessionStatus.PARSING, SessionStatus.UPLOADING})
TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IngestionSession(BaseModel):
    """The aggregate tracking one bundle's parse-and-upload lifecycle."""

    id: str
    status: SessionStatus = SessionStatus.PENDING
    total_features: int = 0
    processed_features: int = 0
    geometry_type: GeometryKind | None = None
    has_null_geometry: bool = False
    error_message: str | None = None
    error_kind: str | None = None
    failed_offset: int | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    components: list[ShapefileComponent] = Field(default_factory=list)
    attribute_fields: list[FieldDescriptor] = Field(default_factory=list)
    resolved_schema: ResolvedSchema | None = None
    destination: DestinationConfig | None = None

    crs_epsg: int | None = None
    crs_name: str | None = None
    is_projected: bool | None = None
    preview: list[dict[str, Any]] = Field(default_factory=list)

    def component(self, kind: ComponentKind) -> ShapefileComponent | None:
        for c in self.components:
            if c.kind is kind:
                return c
        return None

    def missing_components(self) -> list[ComponentKind]:
        return [k for k in REQUIRED_COMPONENTS if self.component(k) is None]
