"""Join .shp geometry records and .dbf attribute records into Features."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import BinaryIO

from .dbf import DbfReader
from .errors import MalformedHeader, RecordCountMismatch
from .models import Feature, FieldDescriptor, GeometryKind
from .shp import ShpReader, read_shx_record_count

logger = logging.getLogger(__name__)


class BundleReader:
    """Decoders for one shapefile triplet, consumed in lockstep.

    Each instance is a single pass: it wraps freshly opened streams and its
    ``features()`` iterator can be consumed once. A second pass opens the
    components again and builds a new reader.
    """

    def __init__(
        self,
        shp: BinaryIO,
        dbf: BinaryIO,
        shx: BinaryIO | None = None,
        *,
        shp_size: int | None = None,
        shx_size: int | None = None,
        encoding: str = "utf-8",
    ):
        self.shp = ShpReader(shp, shp_size)
        self.dbf = DbfReader(dbf, encoding)
        self.index_count: int | None = None

        if shx is not None:
            shx_header, self.index_count = read_shx_record_count(shx, shx_size)
            if shx_header.shape_type != self.shp.header.shape_type:
                raise MalformedHeader(
                    f".shx shape type {shx_header.shape_type} differs from .shp shape type "
                    f"{self.shp.header.shape_type}"
                )
            if self.index_count != self.dbf.header.record_count:
                raise RecordCountMismatch(
                    f".shx indexes {self.index_count} records but .dbf declares "
                    f"{self.dbf.header.record_count}"
                )

    @property
    def geometry_type(self) -> GeometryKind:
        """Dataset-level geometry kind, taken from the .shp header."""
        return self.shp.header.kind

    @property
    def fields(self) -> list[FieldDescriptor]:
        return self.dbf.fields

    def features(self) -> Iterator[Feature]:
        return assemble(self.shp, self.dbf, self.index_count)


def assemble(shp: ShpReader, dbf: DbfReader, index_count: int | None = None) -> Iterator[Feature]:
    """Yield Features by pairing records position by position.

    Deleted .dbf rows drop their paired geometry but keep ordinals aligned.
    A side that runs out before the other raises RecordCountMismatch.
    """
    geometries = shp.records()
    attributes = dbf.records()
    declared = dbf.header.record_count
    ordinal = 0
    deleted = 0

    while True:
        geometry = next(geometries, None)
        attrs = next(attributes, None)
        if geometry is None and attrs is None:
            break
        if geometry is None:
            raise RecordCountMismatch(f".shp has {ordinal} records but .dbf declares {declared}")
        if attrs is None:
            raise RecordCountMismatch(f".shp has more than {declared} records declared by .dbf")

        if attrs.deleted:
            deleted += 1
        else:
            yield Feature(ordinal=ordinal, geometry=geometry, attributes=attrs.values)
        ordinal += 1

    if index_count is not None and index_count != ordinal:
        raise RecordCountMismatch(f".shx indexes {index_count} records but .shp has {ordinal}")
    logger.debug("assembled %d records, %d deleted", ordinal, deleted)
