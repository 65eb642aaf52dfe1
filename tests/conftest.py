from __future__ import annotations

import os
import sys

import pytest


def _ensure_project_root_on_path() -> None:
    # When running via the venv's pytest entrypoint, the CWD is not guaranteed to
    # be on sys.path. Ensure the repository root (containing `heap_rebuild/`) is importable.
    project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


_ensure_project_root_on_path()

from heap_rebuild.errors import MetadataAccessError, RemediationError  # noqa: E402
from heap_rebuild.models import HeapCandidate, HeapTable, PhysicalStats  # noqa: E402
from heap_rebuild.work_queue import open_work_queue  # noqa: E402


class FakeStore:
    """In-memory stand-in for SqlServerStore (metadata gateway + command issuer)."""

    def __init__(self, edition: str = "Enterprise Edition (64-bit)", max_dop: int = 4):
        self._edition = edition
        self._max_dop = max_dop
        self.heaps: dict[int, dict] = {}
        self.issued: list[str] = []
        self.fail_tables: set[str] = set()
        self.metadata_down = False

    def add_heap(self, object_id, schema, table, *, pages=100, rows=1_000, forwarded=10, indexes=0, lob=False):
        self.heaps[object_id] = {
            "schema": schema,
            "table": table,
            "pages": pages,
            "rows": rows,
            "forwarded": forwarded,
            "indexes": indexes,
            "lob": lob,
        }
        return self

    def _check(self):
        if self.metadata_down:
            raise MetadataAccessError("Metadata query failed: login timeout expired")

    def list_heap_tables(self, store):
        self._check()
        rows = [HeapTable(oid, h["schema"], h["table"]) for oid, h in self.heaps.items()]
        return sorted(rows, key=lambda r: (r.schema_name, r.table_name))

    def physical_stats(self, store, object_id):
        self._check()
        h = self.heaps.get(object_id)
        if h is None:
            return None
        return PhysicalStats(h["pages"], h["rows"], h["forwarded"])

    def secondary_index_count(self, store, object_id):
        self._check()
        return self.heaps[object_id]["indexes"]

    def has_lob_columns(self, store, object_id):
        self._check()
        return self.heaps[object_id]["lob"]

    def find_table(self, store, schema_name, table_name):
        self._check()
        for oid, h in self.heaps.items():
            if h["schema"] == schema_name and h["table"] == table_name:
                return HeapTable(oid, schema_name, table_name)
        return None

    def edition(self):
        self._check()
        return self._edition

    def configured_max_dop(self):
        self._check()
        return self._max_dop

    def issue(self, command_text):
        for t in self.fail_tables:
            if f"[{t}]" in command_text:
                raise RemediationError("Rebuild failed: lock request time out period exceeded", command_text=command_text)
        self.issued.append(command_text)


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def queue(tmp_path):
    q = open_work_queue(tmp_path / "heap_queue.db", "Sales")
    yield q
    q.close()


def make_candidate(object_id, *, forwarded=10, rows=1_000, indexes=0, online=True, schema="dbo", table=None, pages=100):
    return HeapCandidate(
        object_id=object_id,
        schema_name=schema,
        table_name=table or f"T{object_id}",
        page_count=pages,
        record_count=rows,
        forwarded_record_count=forwarded,
        index_count=indexes,
        rebuild_online=online,
    )


@pytest.fixture
def candidate():
    return make_candidate


@pytest.fixture
def store_factory():
    return FakeStore
