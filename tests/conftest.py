import struct
from pathlib import Path

import pytest
import shapefile
from pyproj import CRS

from shapefile_ingest.config import Settings
from shapefile_ingest.models import ComponentKind
from shapefile_ingest.pipeline import IngestionPipeline
from shapefile_ingest.session import MemorySessionStore
from shapefile_ingest.sinks import MemoryWarehouse
from shapefile_ingest.storage import LocalComponentStore

CITIES = [
    ("Springfield", 30720, (-89.65, 39.80)),
    ("Shelbyville", 15440, (-88.79, 39.41)),
    ("Capital City", 116250, (-89.40, 40.12)),
]

DESTINATION = {"project_id": "geo-project", "dataset_id": "gis", "table_name": "cities"}


# -- raw byte builders for malformed inputs -----------------------------------


def point_content(x: float, y: float) -> bytes:
    return struct.pack("<i2d", 1, x, y)


def null_content() -> bytes:
    return struct.pack("<i", 0)


def shp_bytes(shape_type: int, contents: list[bytes], *, file_code: int = 9994, declared_length=None) -> bytes:
    body = b"".join(struct.pack(">2i", i + 1, len(c) // 2) + c for i, c in enumerate(contents))
    length = declared_length if declared_length is not None else 100 + len(body)
    header = (
        struct.pack(">i20xi", file_code, length // 2)
        + struct.pack("<2i", 1000, shape_type)
        + struct.pack("<8d", *([0.0] * 8))
    )
    return header + body


def shx_bytes(shape_type: int, contents: list[bytes]) -> bytes:
    entries = b""
    offset = 50
    for c in contents:
        entries += struct.pack(">2i", offset, len(c) // 2)
        offset += 4 + len(c) // 2
    length = 100 + len(entries)
    header = (
        struct.pack(">i20xi", 9994, length // 2)
        + struct.pack("<2i", 1000, shape_type)
        + struct.pack("<8d", *([0.0] * 8))
    )
    return header + entries


def dbf_bytes(fields, rows, *, record_length=None, record_count=None, terminated=True) -> bytes:
    """Build a dBASE III table; ``fields`` are (name, type, length, decimals),
    ``rows`` are (deleted, [cell text, ...])."""
    width = 1 + sum(f[2] for f in fields)
    header_length = 32 + 32 * len(fields) + 1
    head = struct.pack(
        "<4BIHH20x",
        3,
        124,
        1,
        15,
        len(rows) if record_count is None else record_count,
        header_length,
        width if record_length is None else record_length,
    )
    descriptors = b"".join(
        name.encode().ljust(11, b"\x00") + code.encode() + b"\x00" * 4 + bytes([length, decimals]) + b"\x00" * 14
        for name, code, length, decimals in fields
    )
    body = b""
    for deleted, cells in rows:
        body += b"*" if deleted else b" "
        for (_, _, length, _), cell in zip(fields, cells):
            body += cell.encode().ljust(length)[:length]
    return head + descriptors + (b"\r" if terminated else b"") + body + b"\x1a"


# -- bundles on disk -----------------------------------------------------------


@pytest.fixture
def point_bundle(tmp_path) -> Path:
    """Three-point Point shapefile with ``name:C`` and ``pop:N(0)`` attributes."""
    base = tmp_path / "cities"
    with shapefile.Writer(str(base), shapeType=shapefile.POINT) as w:
        w.field("name", "C", size=20)
        w.field("pop", "N", size=10, decimal=0)
        for name, pop, (x, y) in CITIES:
            w.point(x, y)
            w.record(name, pop)
    base.with_suffix(".prj").write_text(CRS.from_epsg(4326).to_wkt())
    return base


def write_points(base: Path, count: int) -> Path:
    with shapefile.Writer(str(base), shapeType=shapefile.POINT) as w:
        w.field("name", "C", size=20)
        w.field("pop", "N", size=10, decimal=0)
        for i in range(count):
            w.point(float(i), float(-i))
            w.record(f"p{i}", i * 10)
    return base


@pytest.fixture
def five_point_bundle(tmp_path) -> Path:
    return write_points(tmp_path / "five", 5)


@pytest.fixture
def polygon_bundle(tmp_path) -> Path:
    base = tmp_path / "parcels"
    with shapefile.Writer(str(base), shapeType=shapefile.POLYGON) as w:
        w.field("PARCEL-ID", "C", size=12)
        w.field("AREA", "N", size=12, decimal=2)
        w.field("SURVEYED", "D")
        w.field("VACANT", "L")
        w.poly([[(0, 0), (0, 10), (10, 10), (10, 0), (0, 0)], [(2, 2), (4, 2), (4, 4), (2, 4), (2, 2)]])
        w.record("A-1", 96.0, "20240115", True)
        w.null()
        w.record("A-2", None, None, None)
    return base


# -- pipeline wiring -----------------------------------------------------------


class RecordingStore(MemorySessionStore):
    """Session store that remembers every processed-count it hands out."""

    def __init__(self):
        super().__init__()
        self.progress: list[int] = []
        self.after_increment = None

    def increment_processed(self, session_id, count):
        snapshot = super().increment_processed(session_id, count)
        self.progress.append(snapshot.processed_features)
        if self.after_increment is not None:
            self.after_increment(session_id)
        return snapshot


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        storage_dir=tmp_path / "store",
        duckdb_path=tmp_path / "ingest.duckdb",
        batch_size=2,
        max_attempts=3,
        retry_base_delay=0.5,
    )


@pytest.fixture
def warehouse() -> MemoryWarehouse:
    return MemoryWarehouse()


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def pipeline(store, warehouse, settings, sleeps) -> IngestionPipeline:
    return IngestionPipeline(
        store=store,
        components=LocalComponentStore(settings.storage_dir),
        sink_factory=warehouse.sink,
        settings=settings,
        sleep=sleeps.append,
    )


def add_bundle(pipeline: IngestionPipeline, session_id: str, base: Path, kinds=None) -> None:
    for kind in kinds or ComponentKind:
        path = base.with_suffix(f".{kind.value}")
        if path.exists():
            pipeline.add_component(session_id, kind, path.name, path.read_bytes())


def add_raw_bundle(pipeline: IngestionPipeline, session_id: str, shp: bytes, shx: bytes, dbf: bytes) -> None:
    pipeline.add_component(session_id, ComponentKind.SHP, "raw.shp", shp)
    pipeline.add_component(session_id, ComponentKind.SHX, "raw.shx", shx)
    pipeline.add_component(session_id, ComponentKind.DBF, "raw.dbf", dbf)
