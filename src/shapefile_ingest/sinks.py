"""Destination sinks: the columnar tables features are loaded into.

A sink is bound to one destination table. ``insert_batch`` either commits the
whole batch and returns the committed row count, or raises
:class:`SinkTransient` / :class:`SinkPermanent` having committed nothing.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

import duckdb

from .errors import SchemaConflict, SinkPermanent, SinkTransient
from .models import ColumnType, DestinationConfig, SchemaField

logger = logging.getLogger(__name__)


class DestinationSink(Protocol):
    def ensure_table(self, fields: list[SchemaField]) -> None: ...

    def insert_batch(self, rows: list[dict[str, Any]]) -> int: ...

    def close(self) -> None: ...


SinkFactory = Callable[[DestinationConfig], DestinationSink]


def _column_signature(fields: list[SchemaField]) -> list[tuple[str, ColumnType, bool]]:
    return [(f.name, f.type, f.required) for f in fields]


class MemoryTable:
    def __init__(self, fields: list[SchemaField]):
        self.fields = list(fields)
        self.rows: list[dict[str, Any]] = []


class MemoryWarehouse:
    """In-process tables keyed by table id, shared by the sinks it creates."""

    def __init__(self):
        self.tables: dict[str, MemoryTable] = {}
        self.submissions: list[int] = []
        self.lock = threading.Lock()

    def sink(self, destination: DestinationConfig) -> MemorySink:
        return MemorySink(self, destination)

    def rows(self, table_id: str) -> list[dict[str, Any]]:
        return list(self.tables[table_id].rows)


class MemorySink:
    def __init__(self, warehouse: MemoryWarehouse, destination: DestinationConfig):
        self.warehouse = warehouse
        self.table_id = destination.table_id

    def ensure_table(self, fields: list[SchemaField]) -> None:
        with self.warehouse.lock:
            table = self.warehouse.tables.get(self.table_id)
            if table is None:
                self.warehouse.tables[self.table_id] = MemoryTable(fields)
                return
            if _column_signature(table.fields) != _column_signature(fields):
                raise SchemaConflict(f"table {self.table_id} exists with different columns")

    def insert_batch(self, rows: list[dict[str, Any]]) -> int:
        with self.warehouse.lock:
            self.warehouse.submissions.append(len(rows))
            table = self.warehouse.tables.get(self.table_id)
            if table is None:
                raise SinkPermanent(f"table {self.table_id} does not exist")
            names = {f.name for f in table.fields}
            required = [f.name for f in table.fields if f.required]
            for row in rows:
                unknown = set(row) - names
                if unknown:
                    raise SinkPermanent(f"row has unknown columns {sorted(unknown)}")
                missing = [name for name in required if row.get(name) is None]
                if missing:
                    raise SinkPermanent(f"row is missing required columns {missing}")
            table.rows.extend(dict(r) for r in rows)
            return len(rows)

    def close(self) -> None:
        pass


DUCKDB_TYPES: dict[ColumnType, str] = {
    ColumnType.STRING: "VARCHAR",
    ColumnType.INTEGER: "BIGINT",
    ColumnType.FLOAT: "DOUBLE",
    ColumnType.NUMERIC: "DECIMAL(38,9)",
    ColumnType.BOOLEAN: "BOOLEAN",
    ColumnType.DATE: "DATE",
    ColumnType.DATETIME: "TIMESTAMP",
    ColumnType.TIMESTAMP: "TIMESTAMP WITH TIME ZONE",
    # WKT text; the spatial extension can cast it with ST_GeomFromText.
    ColumnType.GEOGRAPHY: "VARCHAR",
    ColumnType.JSON: "VARCHAR",
    ColumnType.BYTES: "BLOB",
}


def qi(name: str) -> str:
    """Quote identifier for DuckDB."""
    return '"' + name.replace('"', '""') + '"'


class DuckDBSink:
    """Loads rows into ``<dataset>.<table>`` of a DuckDB database file."""

    def __init__(self, destination: DestinationConfig, db_path: str | Path):
        self.destination = destination
        self.db_path = Path(db_path)
        self._con: duckdb.DuckDBPyConnection | None = None
        self._columns: list[str] = []

    @property
    def table(self) -> str:
        return f"{qi(self.destination.dataset_id)}.{qi(self.destination.table_name)}"

    def _connect(self) -> duckdb.DuckDBPyConnection:
        if self._con is None:
            try:
                self._con = duckdb.connect(str(self.db_path))
            except duckdb.IOException as e:
                raise SinkTransient(f"duckdb connect failed db='{self.db_path}': {e}") from e
        return self._con

    def ensure_table(self, fields: list[SchemaField]) -> None:
        con = self._connect()
        self._columns = [f.name for f in fields]
        existing = con.execute(
            "SELECT column_name, data_type, is_nullable FROM information_schema.columns "
            "WHERE table_schema = ? AND table_name = ? ORDER BY ordinal_position",
            [self.destination.dataset_id, self.destination.table_name],
        ).fetchall()

        if existing:
            expected = [(f.name, DUCKDB_TYPES[f.type], "NO" if f.required else "YES") for f in fields]
            actual = [(name, dtype, nullable) for name, dtype, nullable in existing]
            if actual != expected:
                raise SchemaConflict(
                    f"table {self.destination.table_id} exists with columns {actual}, expected {expected}"
                )
            logger.info("appending to existing table %s", self.destination.table_id)
            return

        columns = ", ".join(
            f"{qi(f.name)} {DUCKDB_TYPES[f.type]}{' NOT NULL' if f.required else ''}" for f in fields
        )
        con.execute(f"CREATE SCHEMA IF NOT EXISTS {qi(self.destination.dataset_id)}")
        con.execute(f"CREATE TABLE {self.table} ({columns})")
        logger.info("created table %s with %d columns", self.destination.table_id, len(fields))

    def insert_batch(self, rows: list[dict[str, Any]]) -> int:
        if not rows:
            return 0
        con = self._connect()
        placeholders = ", ".join("?" for _ in self._columns)
        names = ", ".join(qi(c) for c in self._columns)
        values = [[row.get(c) for c in self._columns] for row in rows]
        try:
            con.execute("BEGIN TRANSACTION")
            con.executemany(f"INSERT INTO {self.table} ({names}) VALUES ({placeholders})", values)
            con.execute("COMMIT")
        except (duckdb.IOException, duckdb.TransactionException) as e:
            self._rollback()
            raise SinkTransient(str(e)) from e
        except duckdb.Error as e:
            self._rollback()
            raise SinkPermanent(str(e)) from e
        return len(rows)

    def _rollback(self) -> None:
        try:
            self._con.execute("ROLLBACK")
        except duckdb.Error:
            logger.debug("rollback after failed insert raised", exc_info=True)

    def close(self) -> None:
        if self._con is not None:
            self._con.close()
            self._con = None
