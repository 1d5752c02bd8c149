"""Streaming decoder for dBASE III/IV .dbf attribute tables."""

from __future__ import annotations

import logging
import struct
from collections.abc import Iterator
from datetime import date
from typing import Any, BinaryIO

from pydantic import BaseModel

from .errors import MalformedHeader, TruncatedRecord
from .models import AttributeRecord, ColumnType, FieldDescriptor

logger = logging.getLogger(__name__)

HEADER_PREFIX_SIZE = 32
DESCRIPTOR_SIZE = 32
TERMINATOR = 0x0D
DELETED_FLAG = 0x2A  # "*"

TRUE_FLAGS = b"YyTt"
FALSE_FLAGS = b"NnFf"


class DbfHeader(BaseModel):
    version: int
    last_update: date | None = None
    record_count: int
    header_length: int
    record_length: int
    fields: list[FieldDescriptor]


def semantic_type(field: FieldDescriptor) -> ColumnType:
    """Map a dBASE type code to its destination column type."""
    code = field.type_code.upper()
    if code in ("N", "F"):
        return ColumnType.INTEGER if field.decimals == 0 else ColumnType.FLOAT
    if code == "D":
        return ColumnType.DATE
    if code == "L":
        return ColumnType.BOOLEAN
    return ColumnType.STRING


def read_header(stream: BinaryIO) -> DbfHeader:
    """Read the table header and field descriptor array.

    Leaves the stream positioned at the first record.
    """
    raw = stream.read(HEADER_PREFIX_SIZE)
    if len(raw) < HEADER_PREFIX_SIZE:
        raise MalformedHeader(f"dbf header is {len(raw)} bytes, expected {HEADER_PREFIX_SIZE}")
    version, yy, mm, dd, record_count, header_length, record_length = struct.unpack_from("<4BIHH", raw, 0)
    if header_length < HEADER_PREFIX_SIZE + 1:
        raise MalformedHeader(f"dbf header length {header_length} is too small")

    fields: list[FieldDescriptor] = []
    consumed = HEADER_PREFIX_SIZE
    while True:
        first = stream.read(1)
        if not first:
            raise MalformedHeader("field descriptor array is not terminated")
        consumed += 1
        if first[0] == TERMINATOR:
            break
        rest = stream.read(DESCRIPTOR_SIZE - 1)
        consumed += len(rest)
        if len(rest) < DESCRIPTOR_SIZE - 1 or consumed > header_length:
            raise MalformedHeader(
                f"field descriptor {len(fields)} runs past the declared header length {header_length}"
            )
        fields.append(_parse_descriptor(first + rest))

    if consumed > header_length:
        raise MalformedHeader(f"descriptor terminator at byte {consumed} exceeds header length {header_length}")
    padding = header_length - consumed
    if padding and len(stream.read(padding)) < padding:
        raise MalformedHeader(f"file ends inside the {header_length}-byte header")

    try:
        last_update = date(1900 + yy, mm, dd)
    except ValueError:
        last_update = None

    return DbfHeader(
        version=version,
        last_update=last_update,
        record_count=record_count,
        header_length=header_length,
        record_length=record_length,
        fields=_assign_keys(fields),
    )


def _assign_keys(fields: list[FieldDescriptor]) -> list[FieldDescriptor]:
    """Give repeated field names a ``_N`` suffix so no column overwrites another."""
    taken = {f.name for f in fields}
    seen: set[str] = set()
    keyed = []
    for field in fields:
        key = field.name
        if key in seen:
            counter = 1
            while f"{field.name}_{counter}" in taken:
                counter += 1
            key = f"{field.name}_{counter}"
            taken.add(key)
        seen.add(field.name)
        keyed.append(field.model_copy(update={"key": key}))
    return keyed


def _parse_descriptor(raw: bytes) -> FieldDescriptor:
    name = raw[:11].split(b"\x00", 1)[0].decode("ascii", errors="replace").strip()
    return FieldDescriptor(
        name=name,
        type_code=chr(raw[11]),
        length=raw[16],
        decimals=raw[17],
    )


class DbfReader:
    """Single-pass reader over a .dbf stream.

    ``records()`` yields every declared record, deleted ones included, so that
    ordinals stay aligned with the .shp file; callers filter on ``deleted``.
    """

    def __init__(self, stream: BinaryIO, encoding: str = "utf-8"):
        self._stream = stream
        self.encoding = encoding
        self.header = read_header(stream)
        self._started = False

    @property
    def fields(self) -> list[FieldDescriptor]:
        return self.header.fields

    def records(self) -> Iterator[AttributeRecord]:
        if self._started:
            raise RuntimeError("DbfReader records can only be iterated once")
        self._started = True
        return self._iter_records()

    def _iter_records(self) -> Iterator[AttributeRecord]:
        size = self.header.record_length
        width = 1 + sum(f.length for f in self.header.fields)
        for ordinal in range(self.header.record_count):
            if size < width:
                raise TruncatedRecord(
                    f"dbf record {ordinal} is {size} bytes but its fields span {width}"
                )
            raw = self._stream.read(size)
            if len(raw) < size:
                raise TruncatedRecord(
                    f"dbf record {ordinal} needs {size} bytes, {len(raw)} remain"
                )
            yield AttributeRecord(
                ordinal=ordinal,
                deleted=raw[0] == DELETED_FLAG,
                values=self._decode_values(raw),
            )

    def _decode_values(self, raw: bytes) -> dict[str, Any]:
        values = {}
        pos = 1
        for field in self.header.fields:
            values[field.key] = decode_value(field, raw[pos : pos + field.length], self.encoding)
            pos += field.length
        return values


def decode_value(field: FieldDescriptor, raw: bytes, encoding: str = "utf-8") -> Any:
    """Decode one fixed-width cell. Blank numerics, dates and logicals are None."""
    code = field.type_code.upper()

    if code in ("N", "F"):
        text = raw.strip(b" \x00*").decode("ascii", errors="replace")
        if not text:
            return None
        try:
            if field.decimals == 0:
                try:
                    return int(text)
                except ValueError:
                    return int(float(text))
            return float(text)
        except ValueError:
            logger.debug("unparseable numeric %r in field %s", text, field.name)
            return None

    if code == "D":
        text = raw.strip(b" \x00").decode("ascii", errors="replace")
        if not text or text == "00000000":
            return None
        try:
            return date(int(text[:4]), int(text[4:6]), int(text[6:8]))
        except ValueError:
            logger.debug("unparseable date %r in field %s", text, field.name)
            return None

    if code == "L":
        flag = raw.strip()[:1]
        if flag and flag in TRUE_FLAGS:
            return True
        if flag and flag in FALSE_FLAGS:
            return False
        return None

    return raw.decode(encoding, errors="replace").rstrip(" \x00")
