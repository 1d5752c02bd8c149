"""Shapefile decode-and-ingest pipeline library."""

from .assembler import BundleReader, assemble
from .dbf import DbfReader
from .errors import IngestError
from .models import (
    AutoSchema,
    ColumnType,
    Feature,
    FieldMode,
    GeometryKind,
    GeometryRecord,
    IngestionSession,
    ManualSchema,
    SchemaField,
    SessionStatus,
)
from .pipeline import IngestionPipeline
from .projection import detect_crs
from .schema import apply_manual_schema, infer_schema, sanitize_name
from .session import MemorySessionStore
from .shp import ShpReader
from .sinks import DuckDBSink, MemoryWarehouse
from .storage import LocalComponentStore
from .uploader import BatchUploader, RetryPolicy

__all__ = [
    "AutoSchema",
    "BatchUploader",
    "BundleReader",
    "ColumnType",
    "DbfReader",
    "DuckDBSink",
    "Feature",
    "FieldMode",
    "GeometryKind",
    "GeometryRecord",
    "IngestError",
    "IngestionPipeline",
    "IngestionSession",
    "LocalComponentStore",
    "ManualSchema",
    "MemorySessionStore",
    "MemoryWarehouse",
    "RetryPolicy",
    "SchemaField",
    "SessionStatus",
    "ShpReader",
    "apply_manual_schema",
    "assemble",
    "detect_crs",
    "infer_schema",
    "sanitize_name",
]
