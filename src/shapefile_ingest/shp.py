"""Streaming decoder for ESRI .shp geometry files (and the .shx header).

The 100-byte main header stores the file code and file length big-endian and
everything after them little-endian. Each record starts with an 8-byte
big-endian header (record number, content length in 16-bit words) followed by
a little-endian payload whose first int is the record's own shape type.
"""

from __future__ import annotations

import io
import logging
import os
import struct
from collections.abc import Iterator
from typing import BinaryIO

from pydantic import BaseModel, ValidationError

from .errors import MalformedHeader, MalformedRecord, TruncatedRecord, UnsupportedGeometryType
from .models import GeometryKind, GeometryRecord

logger = logging.getLogger(__name__)

FILE_CODE = 9994
HEADER_SIZE = 100
RECORD_HEADER_SIZE = 8
SHX_ENTRY_SIZE = 8

# Measures below this value mean "no data".
M_NO_DATA = -1e38

SHAPE_TYPES: dict[int, GeometryKind] = {
    0: GeometryKind.NULL,
    1: GeometryKind.POINT,
    3: GeometryKind.POLYLINE,
    5: GeometryKind.POLYGON,
    8: GeometryKind.MULTIPOINT,
    11: GeometryKind.POINT,
    13: GeometryKind.POLYLINE,
    15: GeometryKind.POLYGON,
    18: GeometryKind.MULTIPOINT,
    21: GeometryKind.POINT,
    23: GeometryKind.POLYLINE,
    25: GeometryKind.POLYGON,
    28: GeometryKind.MULTIPOINT,
}

SHAPE_TYPE_NAMES: dict[int, str] = {
    0: "NULL",
    1: "POINT",
    3: "POLYLINE",
    5: "POLYGON",
    8: "MULTIPOINT",
    11: "POINTZ",
    13: "POLYLINEZ",
    15: "POLYGONZ",
    18: "MULTIPOINTZ",
    21: "POINTM",
    23: "POLYLINEM",
    25: "POLYGONM",
    28: "MULTIPOINTM",
    31: "MULTIPATCH",
}

Z_TYPES = frozenset({11, 13, 15, 18})
M_TYPES = frozenset({21, 23, 25, 28})


class ShpHeader(BaseModel):
    """The fixed 100-byte header shared by .shp and .shx files."""

    file_length: int
    version: int
    shape_type: int
    bbox: tuple[float, float, float, float]
    z_range: tuple[float, float]
    m_range: tuple[float, float]

    @property
    def kind(self) -> GeometryKind:
        return SHAPE_TYPES[self.shape_type]

    @property
    def shape_type_name(self) -> str:
        return SHAPE_TYPE_NAMES[self.shape_type]

    @property
    def has_z(self) -> bool:
        return self.shape_type in Z_TYPES


def stream_size(stream: BinaryIO) -> int | None:
    """Byte size of a stream without moving its read position, if knowable."""
    try:
        return os.fstat(stream.fileno()).st_size
    except (AttributeError, OSError, io.UnsupportedOperation):
        pass
    if isinstance(stream, io.BytesIO):
        return len(stream.getbuffer())
    return None


def read_header(stream: BinaryIO, size: int | None = None) -> ShpHeader:
    """Read and validate the 100-byte main file header.

    Args:
        stream: Binary stream positioned at byte 0.
        size: Actual byte count of the file. Looked up from the stream when
            omitted; the declared file length must match it.
    """
    raw = stream.read(HEADER_SIZE)
    if len(raw) < HEADER_SIZE:
        raise MalformedHeader(f"header is {len(raw)} bytes, expected {HEADER_SIZE}")

    file_code, file_length_words = struct.unpack_from(">i20xi", raw, 0)
    if file_code != FILE_CODE:
        raise MalformedHeader(f"bad file code {file_code}, expected {FILE_CODE}")

    version, shape_type = struct.unpack_from("<2i", raw, 28)
    xmin, ymin, xmax, ymax, zmin, zmax, mmin, mmax = struct.unpack_from("<8d", raw, 36)

    file_length = file_length_words * 2
    if size is None:
        size = stream_size(stream)
    if size is None:
        logger.debug("stream size unknown, skipping declared length check")
    elif file_length != size:
        raise MalformedHeader(f"header declares {file_length} bytes but file has {size}")

    if shape_type not in SHAPE_TYPES:
        name = SHAPE_TYPE_NAMES.get(shape_type, "unknown")
        raise UnsupportedGeometryType(f"shape type {shape_type} ({name}) is not supported")

    return ShpHeader(
        file_length=file_length,
        version=version,
        shape_type=shape_type,
        bbox=(xmin, ymin, xmax, ymax),
        z_range=(zmin, zmax),
        m_range=(mmin, mmax),
    )


def read_shx_record_count(stream: BinaryIO, size: int | None = None) -> tuple[ShpHeader, int]:
    """Validate a .shx header and return it with the number of index entries."""
    header = read_header(stream, size)
    body = header.file_length - HEADER_SIZE
    if body < 0 or body % SHX_ENTRY_SIZE:
        raise MalformedHeader(f".shx body of {body} bytes is not a whole number of entries")
    return header, body // SHX_ENTRY_SIZE


class ShpReader:
    """Single-pass reader over a .shp stream.

    The header is read on construction; ``records()`` yields one
    :class:`GeometryRecord` at a time and can only be consumed once.
    """

    def __init__(self, stream: BinaryIO, size: int | None = None):
        self._stream = stream
        self.header = read_header(stream, size)
        self.records_read = 0
        self._started = False

    def records(self) -> Iterator[GeometryRecord]:
        if self._started:
            raise RuntimeError("ShpReader records can only be iterated once")
        self._started = True
        return self._iter_records()

    def _iter_records(self) -> Iterator[GeometryRecord]:
        offset = HEADER_SIZE
        while True:
            head = self._stream.read(RECORD_HEADER_SIZE)
            if not head:
                break
            if len(head) < RECORD_HEADER_SIZE:
                raise TruncatedRecord(
                    f"record header at byte {offset} has {len(head)} of {RECORD_HEADER_SIZE} bytes"
                )
            number, words = struct.unpack(">2i", head)
            if words < 2:
                raise MalformedRecord(f"record {number} declares content length of {words} words")
            content = self._stream.read(words * 2)
            if len(content) < words * 2:
                raise TruncatedRecord(
                    f"record {number} declares {words * 2} content bytes, {len(content)} remain"
                )
            offset += RECORD_HEADER_SIZE + words * 2
            self.records_read += 1
            yield parse_record(number, content)


def parse_record(number: int, content: bytes) -> GeometryRecord:
    """Decode one record payload according to its own shape type code."""
    (code,) = struct.unpack_from("<i", content, 0)
    kind = SHAPE_TYPES.get(code)
    if kind is None:
        name = SHAPE_TYPE_NAMES.get(code, "unknown")
        raise UnsupportedGeometryType(f"record {number} has shape type {code} ({name})")

    try:
        if kind is GeometryKind.NULL:
            return GeometryRecord(kind=kind, shape_type=code, record_number=number)
        if kind is GeometryKind.POINT:
            return _parse_point(number, code, content)
        if kind is GeometryKind.MULTIPOINT:
            return _parse_multipoint(number, code, content)
        return _parse_multipart(number, code, kind, content)
    except struct.error as e:
        raise TruncatedRecord(f"record {number} payload is too short: {e}") from e
    except ValidationError as e:
        raise MalformedRecord(f"record {number}: {e.errors()[0]['msg']}") from e


def _measure(value: float) -> float | None:
    return None if value < M_NO_DATA else value


def _parse_point(number: int, code: int, content: bytes) -> GeometryRecord:
    x, y = struct.unpack_from("<2d", content, 4)
    z = m = None
    if code in Z_TYPES:
        (zv,) = struct.unpack_from("<d", content, 20)
        z = [zv]
        if len(content) >= 36:
            m = [_measure(struct.unpack_from("<d", content, 28)[0])]
    elif code in M_TYPES and len(content) >= 28:
        m = [_measure(struct.unpack_from("<d", content, 20)[0])]
    return GeometryRecord(
        kind=GeometryKind.POINT,
        shape_type=code,
        record_number=number,
        bbox=(x, y, x, y),
        points=[(x, y)],
        z=z,
        m=m,
    )


def _read_points(content: bytes, offset: int, n: int) -> tuple[list[tuple[float, float]], int]:
    flat = struct.unpack_from(f"<{2 * n}d", content, offset)
    return list(zip(flat[0::2], flat[1::2])), offset + 16 * n


def _read_extras(code: int, content: bytes, offset: int, n: int):
    """Read the optional Z block then the optional M block that trail the points."""
    z = m = None
    if code in Z_TYPES:
        z = list(struct.unpack_from(f"<16x{n}d", content, offset))
        offset += 16 + 8 * n
    if code in Z_TYPES or code in M_TYPES:
        # M is optional in both Z and M files.
        if len(content) >= offset + 16 + 8 * n:
            m = [_measure(v) for v in struct.unpack_from(f"<16x{n}d", content, offset)]
            offset += 16 + 8 * n
    return z, m, offset


def _parse_multipoint(number: int, code: int, content: bytes) -> GeometryRecord:
    bbox = struct.unpack_from("<4d", content, 4)
    (n,) = struct.unpack_from("<i", content, 36)
    if n < 0:
        raise MalformedRecord(f"record {number} declares {n} points")
    points, offset = _read_points(content, 40, n)
    z, m, _ = _read_extras(code, content, offset, n)
    return GeometryRecord(
        kind=GeometryKind.MULTIPOINT,
        shape_type=code,
        record_number=number,
        bbox=bbox,
        points=points,
        z=z,
        m=m,
    )


def _parse_multipart(number: int, code: int, kind: GeometryKind, content: bytes) -> GeometryRecord:
    bbox = struct.unpack_from("<4d", content, 4)
    num_parts, num_points = struct.unpack_from("<2i", content, 36)
    if num_parts < 0 or num_points < 0:
        raise MalformedRecord(f"record {number} declares {num_parts} parts and {num_points} points")
    parts = list(struct.unpack_from(f"<{num_parts}i", content, 44))
    points, offset = _read_points(content, 44 + 4 * num_parts, num_points)
    z, m, _ = _read_extras(code, content, offset, num_points)
    return GeometryRecord(
        kind=kind,
        shape_type=code,
        record_number=number,
        bbox=bbox,
        parts=parts,
        points=points,
        z=z,
        m=m,
    )
