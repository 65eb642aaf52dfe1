"""Durable, per-store work queue of fragmented heaps.

The queue is a plain SQLite table so operators can inspect or edit it between a
halted discovery and the execution run. A missing table means "no scan pending";
an empty table means "nothing left to fix".
"""
from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from pathlib import Path

from .models import HeapCandidate, SelectionConstraints

TABLE_PREFIX = "fragmented_heaps__"

_COLUMNS = (
    "object_id",
    "schema_name",
    "table_name",
    "page_count",
    "record_count",
    "forwarded_record_count",
    "index_count",
    "rebuild_online",
    "discovered_at",
)


def connect(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def queue_table_name(store: str) -> str:
    return TABLE_PREFIX + str(store)


def _quote(ident: str) -> str:
    return '"' + ident.replace('"', '""') + '"'


def _row_to_candidate(r: sqlite3.Row) -> HeapCandidate:
    return HeapCandidate(
        object_id=int(r["object_id"]),
        schema_name=str(r["schema_name"]),
        table_name=str(r["table_name"]),
        page_count=int(r["page_count"]),
        record_count=int(r["record_count"]),
        forwarded_record_count=int(r["forwarded_record_count"]),
        index_count=int(r["index_count"]),
        rebuild_online=bool(int(r["rebuild_online"] or 0)),
        discovered_at=r["discovered_at"],
    )


def _candidate_to_row(c: HeapCandidate) -> tuple:
    return (
        c.object_id,
        c.schema_name,
        c.table_name,
        c.page_count,
        c.record_count,
        c.forwarded_record_count,
        c.index_count,
        int(c.rebuild_online),
        c.discovered_at,
    )


class WorkQueueStore:
    def __init__(self, conn: sqlite3.Connection, store: str):
        self.conn = conn
        self.store = store
        self.table = queue_table_name(store)
        self._t = _quote(self.table)

    def exists(self) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (self.table,)
        ).fetchone()
        return row is not None

    def _create_sql(self) -> str:
        return f"""
            CREATE TABLE {self._t} (
                object_id INTEGER PRIMARY KEY,
                schema_name TEXT NOT NULL,
                table_name TEXT NOT NULL,
                page_count INTEGER NOT NULL,
                record_count INTEGER NOT NULL,
                forwarded_record_count INTEGER NOT NULL,
                index_count INTEGER NOT NULL DEFAULT 0,
                rebuild_online INTEGER NOT NULL DEFAULT 0,
                discovered_at TEXT
            )
            """

    @property
    def _insert_sql(self) -> str:
        placeholders = ", ".join(["?"] * len(_COLUMNS))
        return f"INSERT INTO {self._t} ({', '.join(_COLUMNS)}) VALUES ({placeholders})"

    def rebuild(self) -> None:
        """Drop and recreate the table. Every queued row is lost."""
        self.replace([])

    def replace(self, candidates: Iterable[HeapCandidate]) -> int:
        """Swap the queue contents for `candidates` in one transaction.

        Either the new queue is fully written or the previous state (rows, or no
        table at all) is kept. DDL needs the explicit BEGIN: sqlite3 only opens
        transactions on its own for DML.
        """
        rows = [_candidate_to_row(c) for c in candidates]
        with self.conn:
            self.conn.execute("BEGIN")
            self.conn.execute(f"DROP TABLE IF EXISTS {self._t}")
            self.conn.execute(self._create_sql())
            self.conn.executemany(self._insert_sql, rows)
        return len(rows)

    def drop(self) -> None:
        with self.conn:
            self.conn.execute(f"DROP TABLE IF EXISTS {self._t}")

    def insert_many(self, candidates: Iterable[HeapCandidate]) -> int:
        """Append candidates. A duplicate object_id raises sqlite3.IntegrityError and nothing is kept."""
        rows = [_candidate_to_row(c) for c in candidates]
        with self.conn:
            self.conn.executemany(self._insert_sql, rows)
        return len(rows)

    def select(self, constraints: SelectionConstraints | None = None, *, limit: int | None = None) -> list[HeapCandidate]:
        c = constraints or SelectionConstraints()
        where: list[str] = []
        params: list[object] = []
        if c.online_only:
            where.append("rebuild_online = 1")
        if c.max_row_count is not None:
            where.append("record_count <= ?")
            params.append(int(c.max_row_count))
        if c.max_index_count is not None:
            where.append("index_count <= ?")
            params.append(int(c.max_index_count))

        sql = f"SELECT {', '.join(_COLUMNS)} FROM {self._t}"
        if where:
            sql += " WHERE " + " AND ".join(where)
        # Ties on forwarded records fall back to object_id so batches are reproducible.
        sql += " ORDER BY forwarded_record_count DESC, object_id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [_row_to_candidate(r) for r in self.conn.execute(sql, params).fetchall()]

    def all(self) -> list[HeapCandidate]:
        return self.select()

    def get(self, object_id: int) -> HeapCandidate | None:
        row = self.conn.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM {self._t} WHERE object_id=?", (int(object_id),)
        ).fetchone()
        return _row_to_candidate(row) if row else None

    def contains(self, object_id: int) -> bool:
        return self.get(object_id) is not None

    def remove_one(self, object_id: int) -> bool:
        with self.conn:
            cur = self.conn.execute(f"DELETE FROM {self._t} WHERE object_id=?", (int(object_id),))
        return cur.rowcount > 0

    def remove_by_schema_table(self, schema_name: str, table_name: str) -> int:
        with self.conn:
            cur = self.conn.execute(
                f"DELETE FROM {self._t} WHERE schema_name=? AND table_name=?",
                (schema_name, table_name),
            )
        return cur.rowcount

    def count_all(self) -> int:
        return int(self.conn.execute(f"SELECT COUNT(*) FROM {self._t}").fetchone()[0])

    def clear(self) -> int:
        with self.conn:
            cur = self.conn.execute(f"DELETE FROM {self._t}")
        return cur.rowcount

    def drop_if_empty(self) -> bool:
        """Tear the table down once nothing is left, so the next run re-scans."""
        if not self.exists() or self.count_all() > 0:
            return False
        self.drop()
        return True

    def close(self) -> None:
        self.conn.close()


def open_work_queue(db_path: Path, store: str) -> WorkQueueStore:
    return WorkQueueStore(connect(Path(db_path)), store)
