from __future__ import annotations

from typing import Any, Protocol

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .errors import MetadataAccessError, RemediationError
from .models import HeapTable, PhysicalStats



class MetadataGateway(Protocol):
    """Read-only view of a store's catalog + statistics."""

    def list_heap_tables(self, store: str) -> list[HeapTable]: ...

    def physical_stats(self, store: str, object_id: int) -> PhysicalStats | None: ...

    def secondary_index_count(self, store: str, object_id: int) -> int: ...

    def has_lob_columns(self, store: str, object_id: int) -> bool: ...

    def find_table(self, store: str, schema_name: str, table_name: str) -> HeapTable | None: ...

    def edition(self) -> str: ...

    def configured_max_dop(self) -> int: ...


class CommandIssuer(Protocol):
    def issue(self, command_text: str) -> None: ...


def quote_name(name: str) -> str:
    """Bracket-quote an identifier the way QUOTENAME() does."""
    return "[" + str(name).replace("]", "]]") + "]"


# system_type_id: text, ntext, image, xml, CLR (geography/geometry/hierarchyid)
_LOB_TYPE_IDS = (34, 35, 99, 241, 240)
# varchar, nvarchar, varbinary; only (max) variants count
_MAX_TYPE_IDS = (167, 231, 165)


class SqlServerStore:
    """Metadata gateway + command issuer backed by a SQLAlchemy engine.

    One instance talks to one SQL Server instance; the store (database) name is
    passed per call and always bracket-quoted into the statement text.
    """

    backend_name = "mssql"

    def __init__(self, engine: Engine):
        self.engine = engine

    def _fetch(self, sql: str, params: dict[str, Any] | None = None) -> list[Any]:
        try:
            with self.engine.connect() as conn:
                return list(conn.execute(text(sql), params or {}).fetchall())
        except SQLAlchemyError as e:
            raise MetadataAccessError(f"Metadata query failed: {e}") from e

    def list_heap_tables(self, store: str) -> list[HeapTable]:
        db = quote_name(store)
        rows = self._fetch(
            f"""
            SELECT i.object_id, s.name AS schema_name, o.name AS table_name
            FROM {db}.sys.indexes AS i
            INNER JOIN {db}.sys.objects AS o ON o.object_id = i.object_id
            INNER JOIN {db}.sys.schemas AS s ON s.schema_id = o.schema_id
            WHERE i.type_desc = 'HEAP' AND o.type_desc = 'USER_TABLE'
            ORDER BY s.name, o.name
            """
        )
        return [HeapTable(int(r.object_id), str(r.schema_name), str(r.table_name)) for r in rows]

    def physical_stats(self, store: str, object_id: int) -> PhysicalStats | None:
        rows = self._fetch(
            """
            SELECT SUM(p.page_count) AS page_count,
                   SUM(p.record_count) AS record_count,
                   SUM(p.forwarded_record_count) AS forwarded_record_count
            FROM sys.dm_db_index_physical_stats(DB_ID(:db), :oid, 0, NULL, 'DETAILED') AS p
            WHERE p.alloc_unit_type_desc = 'IN_ROW_DATA'
            """,
            {"db": store, "oid": object_id},
        )
        if not rows or rows[0].page_count is None:
            return None
        r = rows[0]
        return PhysicalStats(
            page_count=int(r.page_count),
            record_count=int(r.record_count or 0),
            forwarded_record_count=int(r.forwarded_record_count or 0),
        )

    def secondary_index_count(self, store: str, object_id: int) -> int:
        rows = self._fetch(
            f"SELECT COUNT(*) AS n FROM {quote_name(store)}.sys.indexes WHERE object_id = :oid AND index_id > 0",
            {"oid": object_id},
        )
        return int(rows[0].n) if rows else 0

    def has_lob_columns(self, store: str, object_id: int) -> bool:
        lob = ", ".join(str(t) for t in _LOB_TYPE_IDS)
        maxed = ", ".join(str(t) for t in _MAX_TYPE_IDS)
        rows = self._fetch(
            f"""
            SELECT COUNT(*) AS n
            FROM {quote_name(store)}.sys.columns AS c
            WHERE c.object_id = :oid
              AND (c.system_type_id IN ({lob}) OR (c.system_type_id IN ({maxed}) AND c.max_length = -1))
            """,
            {"oid": object_id},
        )
        return bool(rows and int(rows[0].n) > 0)

    def find_table(self, store: str, schema_name: str, table_name: str) -> HeapTable | None:
        db = quote_name(store)
        rows = self._fetch(
            f"""
            SELECT o.object_id, s.name AS schema_name, o.name AS table_name
            FROM {db}.sys.objects AS o
            INNER JOIN {db}.sys.schemas AS s ON s.schema_id = o.schema_id
            WHERE o.type_desc = 'USER_TABLE' AND s.name = :schema AND o.name = :table
            """,
            {"schema": schema_name, "table": table_name},
        )
        if not rows:
            return None
        r = rows[0]
        return HeapTable(int(r.object_id), str(r.schema_name), str(r.table_name))

    def edition(self) -> str:
        rows = self._fetch("SELECT CAST(SERVERPROPERTY('Edition') AS NVARCHAR(128)) AS edition")
        return str(rows[0].edition or "") if rows else ""

    def configured_max_dop(self) -> int:
        rows = self._fetch(
            "SELECT CAST(value_in_use AS INT) AS v FROM sys.configurations WHERE name = 'max degree of parallelism'"
        )
        return int(rows[0].v) if rows and rows[0].v is not None else 0

    def issue(self, command_text: str) -> None:
        # ALTER TABLE ... REBUILD can't run inside a user transaction when ONLINE = ON.
        # exec_driver_sql: identifiers may legitimately contain ':' which text() would bind.
        try:
            with self.engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
                conn.exec_driver_sql(command_text)
        except SQLAlchemyError as e:
            raise RemediationError(f"Rebuild failed: {e}", command_text=command_text) from e


def create_store_engine(database_url: str) -> Engine:
    if not database_url:
        raise ValueError("HEAPS_DATABASE_URL is not configured")
    return create_engine(database_url, pool_pre_ping=True)


def open_store(database_url: str) -> SqlServerStore:
    return SqlServerStore(create_store_engine(database_url))
