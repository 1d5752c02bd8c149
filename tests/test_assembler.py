"""Tests for joining geometry and attribute records into Features."""

import io

import pytest

from shapefile_ingest.assembler import BundleReader
from shapefile_ingest.errors import MalformedHeader, RecordCountMismatch
from shapefile_ingest.models import GeometryKind

from .conftest import dbf_bytes, null_content, point_content, shp_bytes, shx_bytes

FIELDS = [("NAME", "C", 8, 0)]


def _bundle(contents, rows, *, shx_contents=None, shx_type=1):
    shx = shx_bytes(shx_type, contents if shx_contents is None else shx_contents)
    return BundleReader(
        io.BytesIO(shp_bytes(1, contents)),
        io.BytesIO(dbf_bytes(FIELDS, rows)),
        io.BytesIO(shx),
    )


def _rows(n, deleted=()):
    return [(i in deleted, [f"r{i}"]) for i in range(n)]


class TestAssembly:
    def test_pairs_by_position(self, point_bundle):
        paths = {ext: point_bundle.with_suffix(f".{ext}") for ext in ("shp", "shx", "dbf")}
        with open(paths["shp"], "rb") as shp, open(paths["dbf"], "rb") as dbf, open(paths["shx"], "rb") as shx:
            reader = BundleReader(shp, dbf, shx)
            features = list(reader.features())
        assert reader.geometry_type is GeometryKind.POINT
        assert [f.ordinal for f in features] == [0, 1, 2]
        assert features[1].attributes["name"] == "Shelbyville"
        assert features[1].geometry.points == [(-88.79, 39.41)]

    def test_deleted_rows_drop_their_geometry(self):
        contents = [point_content(i, i) for i in range(4)]
        features = list(_bundle(contents, _rows(4, deleted={1, 2})).features())
        assert [f.ordinal for f in features] == [0, 3]
        assert features[1].geometry.points == [(3.0, 3.0)]
        assert features[1].attributes == {"NAME": "r3"}

    def test_null_record_keeps_header_label(self):
        contents = [point_content(0, 0), null_content()]
        reader = _bundle(contents, _rows(2))
        features = list(reader.features())
        assert reader.geometry_type is GeometryKind.POINT
        assert [f.kind for f in features] == [GeometryKind.POINT, GeometryKind.NULL]


class TestCountMismatch:
    def test_ten_shapes_nine_rows(self):
        contents = [point_content(i, i) for i in range(10)]
        reader = BundleReader(
            io.BytesIO(shp_bytes(1, contents)),
            io.BytesIO(dbf_bytes(FIELDS, _rows(9))),
        )
        with pytest.raises(RecordCountMismatch):
            list(reader.features())

    def test_fewer_shapes_than_rows(self):
        contents = [point_content(i, i) for i in range(2)]
        reader = BundleReader(
            io.BytesIO(shp_bytes(1, contents)),
            io.BytesIO(dbf_bytes(FIELDS, _rows(3))),
        )
        with pytest.raises(RecordCountMismatch, match="declares 3"):
            list(reader.features())

    def test_index_disagrees_with_dbf(self):
        contents = [point_content(i, i) for i in range(10)]
        with pytest.raises(RecordCountMismatch, match=".shx indexes 10"):
            _bundle(contents, _rows(9))

    def test_index_disagrees_with_shp(self):
        contents = [point_content(i, i) for i in range(3)]
        reader = _bundle(contents[:2], _rows(3), shx_contents=contents)
        with pytest.raises(RecordCountMismatch):
            list(reader.features())

    def test_index_shape_type_must_match(self):
        contents = [point_content(0, 0)]
        with pytest.raises(MalformedHeader, match="shape type"):
            _bundle(contents, _rows(1), shx_type=5)
