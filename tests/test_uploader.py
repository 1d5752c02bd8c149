"""Tests for row conversion and the batch uploader."""

from datetime import date

import pytest
from shapely import wkt

from shapefile_ingest.errors import Cancelled, RowCoercionError, SinkPermanent, SinkTransient
from shapefile_ingest.models import (
    ColumnType,
    DestinationConfig,
    Feature,
    FieldMode,
    GeometryKind,
    GeometryRecord,
    SchemaField,
)
from shapefile_ingest.uploader import BatchUploader, RetryPolicy, coerce_value, encode_geometry, feature_to_row

FIELDS = [
    SchemaField(name="name", type=ColumnType.STRING, source_name="name"),
    SchemaField(name="pop", type=ColumnType.INTEGER, source_name="pop"),
    SchemaField(name="geometry", type=ColumnType.GEOGRAPHY, mode=FieldMode.REQUIRED),
]


def _point_feature(ordinal, x=1.0, y=2.0, **attributes):
    geometry = GeometryRecord(kind=GeometryKind.POINT, shape_type=1, record_number=ordinal + 1, points=[(x, y)])
    return Feature(ordinal=ordinal, geometry=geometry, attributes={"name": f"p{ordinal}", "pop": ordinal, **attributes})


class FlakySink:
    """Sink double that fails according to a script of outcomes."""

    def __init__(self, script=()):
        self.script = list(script)
        self.batches: list[list[dict]] = []
        self.calls = 0

    def ensure_table(self, fields):
        pass

    def insert_batch(self, rows):
        self.calls += 1
        outcome = self.script.pop(0) if self.script else None
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, int):
            self.batches.append(rows[:outcome])
            return outcome
        self.batches.append(list(rows))
        return len(rows)

    def close(self):
        pass


class TestGeometry:
    def test_point_wkt(self):
        assert encode_geometry(_point_feature(0, -89.65, 39.8).geometry) == "POINT (-89.65 39.8)"

    def test_null_encodes_to_none(self):
        record = GeometryRecord(kind=GeometryKind.NULL, shape_type=0)
        assert encode_geometry(record) is None

    def test_polygon_hole_is_grouped_with_shell(self):
        shell = [(0.0, 0.0), (0.0, 10.0), (10.0, 10.0), (10.0, 0.0), (0.0, 0.0)]
        hole = [(2.0, 2.0), (4.0, 2.0), (4.0, 4.0), (2.0, 4.0), (2.0, 2.0)]
        record = GeometryRecord(
            kind=GeometryKind.POLYGON, shape_type=5, parts=[0, 5], points=shell + hole
        )
        shape = wkt.loads(encode_geometry(record))
        assert shape.geom_type == "Polygon"
        assert len(shape.interiors) == 1
        assert shape.area == pytest.approx(96.0)

    def test_two_shells_make_a_multipolygon(self):
        first = [(0.0, 0.0), (0.0, 1.0), (1.0, 1.0), (1.0, 0.0), (0.0, 0.0)]
        second = [(5.0, 5.0), (5.0, 6.0), (6.0, 6.0), (6.0, 5.0), (5.0, 5.0)]
        record = GeometryRecord(kind=GeometryKind.POLYGON, shape_type=5, parts=[0, 5], points=first + second)
        shape = wkt.loads(encode_geometry(record))
        assert shape.geom_type == "MultiPolygon"
        assert len(shape.geoms) == 2

    def test_polyline_parts(self):
        record = GeometryRecord(
            kind=GeometryKind.POLYLINE,
            shape_type=3,
            parts=[0, 2],
            points=[(0.0, 0.0), (1.0, 1.0), (5.0, 5.0), (6.0, 5.0)],
        )
        assert wkt.loads(encode_geometry(record)).geom_type == "MultiLineString"

    def test_degenerate_line_is_a_coercion_error(self):
        record = GeometryRecord(kind=GeometryKind.POLYLINE, shape_type=3, parts=[0], points=[(0.0, 0.0)])
        with pytest.raises(RowCoercionError):
            encode_geometry(record)


class TestRows:
    def test_feature_to_row(self):
        row = feature_to_row(_point_feature(0, -89.65, 39.8), FIELDS)
        assert row == {"name": "p0", "pop": 0, "geometry": "POINT (-89.65 39.8)"}

    def test_only_the_geometry_column_takes_the_shape(self):
        fields = [
            SchemaField(name="geom", type=ColumnType.GEOGRAPHY, source_name="wkt"),
            SchemaField(name="geometry", type=ColumnType.GEOGRAPHY),
        ]
        row = feature_to_row(_point_feature(0, 3.0, 4.0, wkt="POINT (0 0)"), fields)
        assert row == {"geom": "POINT (0 0)", "geometry": "POINT (3 4)"}

    def test_uncoercible_value(self):
        feature = _point_feature(3, pop="lots")
        with pytest.raises(RowCoercionError, match="feature 3"):
            feature_to_row(feature, FIELDS)

    def test_required_null_is_rejected(self):
        feature = Feature(ordinal=1, geometry=GeometryRecord(kind=GeometryKind.NULL, shape_type=0))
        with pytest.raises(RowCoercionError, match="required column 'geometry'"):
            feature_to_row(feature, FIELDS)

    @pytest.mark.parametrize(
        "value,column_type,expected",
        [
            (12.0, ColumnType.INTEGER, 12),
            ("7", ColumnType.INTEGER, 7),
            (3, ColumnType.FLOAT, 3.0),
            ("Y", ColumnType.BOOLEAN, True),
            ("2024-01-15", ColumnType.DATE, date(2024, 1, 15)),
            (date(2024, 1, 15), ColumnType.STRING, "2024-01-15"),
            (None, ColumnType.INTEGER, None),
        ],
    )
    def test_coerce_value(self, value, column_type, expected):
        assert coerce_value(value, column_type) == expected

    def test_fractional_integer_is_rejected(self):
        with pytest.raises(ValueError):
            coerce_value(1.5, ColumnType.INTEGER)


class TestRetryPolicy:
    def test_exponential_backoff_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
        assert [policy.delay(a) for a in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]


class TestBatchUploader:
    def _uploader(self, sink, sleeps=None, **kwargs):
        sleeps = [] if sleeps is None else sleeps
        return BatchUploader(
            sink,
            FIELDS,
            batch_size=2,
            retry=RetryPolicy(max_attempts=3, base_delay=0.5),
            sleep=sleeps.append,
            **kwargs,
        )

    def test_batches_of_two_then_one(self):
        sink = FlakySink()
        commits = []
        uploader = self._uploader(sink, on_commit=commits.append)
        assert uploader.run(_point_feature(i) for i in range(3)) == 3
        assert [len(b) for b in sink.batches] == [2, 1]
        assert commits == [2, 1]
        assert uploader.failed_offset is None

    def test_transient_error_is_retried(self):
        sink = FlakySink([None, SinkTransient("timeout"), SinkTransient("timeout")])
        sleeps = []
        uploader = self._uploader(sink, sleeps)
        assert uploader.run(_point_feature(i) for i in range(3)) == 3
        assert sleeps == [0.5, 1.0]
        assert sink.calls == 4

    def test_retries_exhausted(self):
        sink = FlakySink([None] + [SinkTransient("down")] * 3)
        sleeps = []
        uploader = self._uploader(sink, sleeps)
        with pytest.raises(SinkTransient, match="after 3 attempts"):
            uploader.run(_point_feature(i) for i in range(5))
        assert uploader.committed == 2
        assert uploader.failed_offset == 2
        assert sleeps == [0.5, 1.0]

    def test_permanent_error_is_not_retried(self):
        sink = FlakySink([SinkPermanent("bad row")])
        uploader = self._uploader(sink)
        with pytest.raises(SinkPermanent):
            uploader.run(_point_feature(i) for i in range(3))
        assert sink.calls == 1
        assert uploader.failed_offset == 0

    def test_partial_commit_is_permanent(self):
        sink = FlakySink([1])
        uploader = self._uploader(sink)
        with pytest.raises(SinkPermanent, match="committed 1 of 2"):
            uploader.run(_point_feature(i) for i in range(2))

    def test_coercion_failure_marks_offset(self):
        sink = FlakySink()
        uploader = self._uploader(sink)
        features = [_point_feature(0), _point_feature(1), _point_feature(2, pop="x")]
        with pytest.raises(RowCoercionError):
            uploader.run(features)
        assert uploader.failed_offset == 2
        assert [len(b) for b in sink.batches] == [2]

    def test_stop_is_checked_between_batches(self):
        sink = FlakySink()
        commits = []
        uploader = self._uploader(sink, on_commit=commits.append, should_stop=lambda: bool(commits))
        with pytest.raises(Cancelled):
            uploader.run(_point_feature(i) for i in range(5))
        assert uploader.committed == 2

    def test_features_are_pulled_lazily(self):
        pulled = []

        def features():
            for i in range(6):
                pulled.append(i)
                yield _point_feature(i)

        class Watching(FlakySink):
            def insert_batch(self, rows):
                assert len(pulled) <= len(self.batches) * 2 + 2
                return super().insert_batch(rows)

        self._uploader(Watching()).run(features())
        assert pulled == list(range(6))

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValueError):
            BatchUploader(FlakySink(), FIELDS, batch_size=0)


def test_destination_table_id():
    config = DestinationConfig(project_id="geo-project", dataset_id="gis", table_name="cities")
    assert config.table_id == "geo-project.gis.cities"
