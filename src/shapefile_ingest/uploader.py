"""Batch uploader: Features -> destination rows -> sink, with retry/backoff.

Batches are pulled lazily from the feature iterator, one at a time, so the
decoders never run more than one batch ahead of the sink. Batch N is
committed before batch N+1 is built.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable, Iterator
from datetime import date, datetime
from itertools import islice
from typing import Any

from pydantic import BaseModel
from shapely.errors import GEOSException
from shapely.geometry import LinearRing, LineString, MultiLineString, MultiPoint, MultiPolygon, Point, Polygon
from shapely.geometry.base import BaseGeometry

from .errors import Cancelled, RowCoercionError, SinkPermanent, SinkTransient
from .models import ColumnType, Feature, GeometryKind, GeometryRecord, SchemaField
from .schema import GEOMETRY_COLUMN
from .sinks import DestinationSink

logger = logging.getLogger(__name__)

TRUE_STRINGS = {"true", "t", "yes", "y", "1"}
FALSE_STRINGS = {"false", "f", "no", "n", "0"}


# -- geometry -----------------------------------------------------------------


def to_shape(record: GeometryRecord) -> BaseGeometry | None:
    """Build a 2D shapely geometry from a decoded record (None for Null/empty)."""
    if record.kind is GeometryKind.NULL or not record.points:
        return None
    if record.kind is GeometryKind.POINT:
        return Point(record.points[0])
    if record.kind is GeometryKind.MULTIPOINT:
        return MultiPoint(record.points)

    parts = record.part_slices()
    if record.kind is GeometryKind.POLYLINE:
        if len(parts) == 1:
            return LineString(parts[0])
        return MultiLineString(parts)

    polygons = _group_rings(parts)
    if len(polygons) == 1:
        return polygons[0]
    return MultiPolygon(polygons)


def _group_rings(rings: list[list[tuple[float, float]]]) -> list[Polygon]:
    """Clockwise rings start a polygon, counter-clockwise rings are its holes."""
    groups: list[tuple[list, list]] = []
    for ring in rings:
        if LinearRing(ring).is_ccw and groups:
            groups[-1][1].append(ring)
        else:
            groups.append((ring, []))
    return [Polygon(shell, holes) for shell, holes in groups]


def encode_geometry(record: GeometryRecord) -> str | None:
    """WKT for the sink's geography column."""
    try:
        shape = to_shape(record)
    except (ValueError, GEOSException) as e:
        raise RowCoercionError(f"record {record.record_number} has invalid {record.kind.value} geometry: {e}") from e
    return None if shape is None else shape.wkt


# -- attributes ---------------------------------------------------------------


def coerce_value(value: Any, column_type: ColumnType) -> Any:
    """Coerce a decoded attribute to a column type; raises ValueError/TypeError."""
    if value is None:
        return None

    if column_type in (ColumnType.STRING, ColumnType.GEOGRAPHY):
        return value.isoformat() if isinstance(value, date) else str(value)

    if column_type is ColumnType.INTEGER:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError(f"{value} is not a whole number")
            return int(value)
        if isinstance(value, str):
            text = value.strip()
            return int(text) if text else None
        return int(value)

    if column_type in (ColumnType.FLOAT, ColumnType.NUMERIC):
        if isinstance(value, str) and not value.strip():
            return None
        return float(value)

    if column_type is ColumnType.BOOLEAN:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in TRUE_STRINGS:
            return True
        if text in FALSE_STRINGS:
            return False
        if not text:
            return None
        raise ValueError(f"{value!r} is not a boolean")

    if column_type is ColumnType.DATE:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        return date.fromisoformat(str(value).strip())

    if column_type in (ColumnType.DATETIME, ColumnType.TIMESTAMP):
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        return datetime.fromisoformat(str(value).strip())

    if column_type is ColumnType.JSON:
        return json.dumps(value, default=str)

    if column_type is ColumnType.BYTES:
        return value if isinstance(value, bytes) else str(value).encode()

    raise TypeError(f"unhandled column type {column_type}")


def is_geometry_column(field: SchemaField) -> bool:
    return field.name == GEOMETRY_COLUMN and field.source_name is None


def feature_to_row(feature: Feature, fields: list[SchemaField]) -> dict[str, Any]:
    """Convert a Feature to the destination row shape."""
    row: dict[str, Any] = {}
    for field in fields:
        if is_geometry_column(field):
            value = encode_geometry(feature.geometry)
        elif field.source_name is not None:
            raw = feature.attributes.get(field.source_name)
            try:
                value = coerce_value(raw, field.type)
            except (ValueError, TypeError) as e:
                raise RowCoercionError(
                    f"feature {feature.ordinal}: cannot coerce {field.source_name}={raw!r} "
                    f"to {field.type.value}: {e}"
                ) from e
        else:
            value = None
        if value is None and field.required:
            raise RowCoercionError(f"feature {feature.ordinal}: required column '{field.name}' is null")
        row[field.name] = value
    return row


# -- batching -----------------------------------------------------------------


class RetryPolicy(BaseModel):
    """Exponential backoff for transient sink errors."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


def batched(features: Iterable[Feature], size: int) -> Iterator[list[Feature]]:
    iterator = iter(features)
    while batch := list(islice(iterator, size)):
        yield batch


class BatchUploader:
    """Submits features to a sink in fixed-size batches.

    ``on_commit`` is called with the batch size after the sink confirms a
    batch; ``should_stop`` is polled before each batch is built. When a batch
    fails terminally, ``failed_offset`` holds the number of features that were
    committed before it.
    """

    def __init__(
        self,
        sink: DestinationSink,
        fields: list[SchemaField],
        *,
        batch_size: int = 1000,
        retry: RetryPolicy | None = None,
        on_commit: Callable[[int], None] | None = None,
        should_stop: Callable[[], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.sink = sink
        self.fields = fields
        self.batch_size = batch_size
        self.retry = retry or RetryPolicy()
        self.on_commit = on_commit
        self.should_stop = should_stop
        self.sleep = sleep
        self.committed = 0
        self.failed_offset: int | None = None

    def run(self, features: Iterable[Feature]) -> int:
        """Upload every feature; returns the number of committed rows."""
        for batch in batched(features, self.batch_size):
            if self.should_stop is not None and self.should_stop():
                raise Cancelled(f"upload cancelled after {self.committed} features")
            try:
                rows = [feature_to_row(f, self.fields) for f in batch]
                self._submit(rows)
            except (SinkTransient, SinkPermanent):
                self.failed_offset = self.committed
                raise
            self.committed += len(batch)
            if self.on_commit is not None:
                self.on_commit(len(batch))
        return self.committed

    def _submit(self, rows: list[dict[str, Any]]) -> None:
        attempt = 1
        while True:
            try:
                committed = self.sink.insert_batch(rows)
                break
            except SinkTransient as e:
                if attempt >= self.retry.max_attempts:
                    raise SinkTransient(
                        f"batch at offset {self.committed} failed after {attempt} attempts: {e}"
                    ) from e
                delay = self.retry.delay(attempt)
                logger.warning(
                    "transient sink error at offset %d (attempt %d/%d), retrying in %.1fs: %s",
                    self.committed,
                    attempt,
                    self.retry.max_attempts,
                    delay,
                    e,
                )
                self.sleep(delay)
                attempt += 1

        if committed < len(rows):
            raise SinkPermanent(f"sink committed {committed} of {len(rows)} rows at offset {self.committed}")
        logger.debug("committed batch of %d rows at offset %d", len(rows), self.committed)
