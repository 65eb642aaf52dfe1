from __future__ import annotations

import logging

import pytest

from heap_rebuild.controller import RunController, RunState
from heap_rebuild.errors import (
    ContractViolation,
    MetadataAccessError,
    RemediationError,
    TableNotFoundError,
    WorkQueueError,
)
from heap_rebuild.models import HeapTable, RunContext


def _store_with_heaps(fake_store):
    fake_store.add_heap(1, "dbo", "Orders", forwarded=500, rows=10_000, indexes=2)
    fake_store.add_heap(2, "dbo", "Audit", forwarded=300, rows=2_000_000, indexes=1)
    fake_store.add_heap(3, "etl", "Staging", forwarded=100, rows=500, lob=True)
    return fake_store


def _run(ctx, fake_store, queue):
    return RunController(ctx, fake_store, fake_store, queue).run()


@pytest.mark.parametrize(
    "schema, table, extra",
    [
        ("dbo", None, {}),
        (None, "Orders", {}),
        ("dbo", "", {"dry_run": False}),
        ("", "Orders", {"force_rescan": True, "stop_after_discovery": True}),
    ],
)
def test_partial_schema_table_pair_fails_validation(fake_store, queue, schema, table, extra):
    _store_with_heaps(fake_store)
    ctx = RunContext(store="Sales", schema_name=schema, table_name=table, **extra)

    outcome = _run(ctx, fake_store, queue)

    assert outcome.state is RunState.FAILED
    assert outcome.exit_code == 1
    assert isinstance(outcome.error, ContractViolation)
    assert outcome.trace == [RunState.VALIDATING, RunState.LOGGING, RunState.FAILED]
    assert queue.exists() is False
    assert fake_store.issued == []


def test_missing_store_and_negative_limits_are_all_reported(fake_store, queue, caplog):
    caplog.set_level(logging.INFO, logger="heap_rebuild")
    ctx = RunContext(store="  ", process_heap_count=-1, max_dop=-2)

    outcome = _run(ctx, fake_store, queue)

    assert outcome.exit_code == 1
    assert len(outcome.error.violations) == 3
    assert any("store parameter must be specified" in m for m in caplog.messages)
    assert caplog.messages[-1].startswith("Date and time: ")


def test_first_run_scans_then_rebuilds_top_batch(fake_store, queue, caplog):
    _store_with_heaps(fake_store)
    caplog.set_level(logging.INFO, logger="heap_rebuild")
    ctx = RunContext(store="Sales", process_heap_count=2, dry_run=False)

    outcome = _run(ctx, fake_store, queue)

    assert outcome.state is RunState.DONE
    assert outcome.exit_code == 0
    assert outcome.trace == [
        RunState.VALIDATING,
        RunState.SCANNING,
        RunState.EXECUTING,
        RunState.DRAINING,
        RunState.LOGGING,
        RunState.DONE,
    ]
    assert outcome.processed == 2
    assert fake_store.issued == [
        "ALTER TABLE [Sales].[dbo].[Orders] REBUILD WITH (ONLINE = ON, MAXDOP = 4);",
        "ALTER TABLE [Sales].[dbo].[Audit] REBUILD WITH (ONLINE = ON, MAXDOP = 4);",
    ]
    assert [c.table_name for c in queue.all()] == ["Staging"]
    assert all(r.duration_ms is not None for r in outcome.results)
    assert caplog.messages[-1].startswith("Date and time: ")


def test_existing_queue_skips_discovery(fake_store, queue, candidate):
    _store_with_heaps(fake_store)
    queue.rebuild()
    queue.insert_many([candidate(42, table="Curated", forwarded=1)])

    outcome = _run(RunContext(store="Sales", dry_run=False), fake_store, queue)

    assert RunState.SKIPPED in outcome.trace
    assert RunState.SCANNING not in outcome.trace
    assert fake_store.issued == ["ALTER TABLE [Sales].[dbo].[Curated] REBUILD WITH (ONLINE = ON, MAXDOP = 4);"]


def test_stop_after_discovery_halts_with_populated_queue(fake_store, queue):
    _store_with_heaps(fake_store)

    outcome = _run(RunContext(store="Sales", stop_after_discovery=True, dry_run=False), fake_store, queue)

    assert outcome.state is RunState.HALTED
    assert outcome.exit_code == 0
    assert RunState.EXECUTING not in outcome.trace
    assert queue.count_all() == 3
    assert fake_store.issued == []


def test_forced_rebuild_replaces_existing_rows(fake_store, queue, candidate):
    _store_with_heaps(fake_store)
    queue.rebuild()
    queue.insert_many([candidate(i) for i in range(101, 106)])

    _run(RunContext(store="Sales", force_rescan=True, stop_after_discovery=True), fake_store, queue)

    assert sorted(c.object_id for c in queue.all()) == [1, 2, 3]


def test_empty_queue_reaches_done_without_rebuilding(fake_store, queue, caplog):
    caplog.set_level(logging.INFO, logger="heap_rebuild")
    queue.rebuild()

    outcome = _run(RunContext(store="Sales", dry_run=False), fake_store, queue)

    assert outcome.state is RunState.DONE
    assert outcome.processed == 0
    assert not any("Rebuilding" in m for m in caplog.messages)
    assert queue.exists() is False


def test_draining_last_candidate_drops_queue(fake_store, queue):
    fake_store.add_heap(1, "dbo", "Orders")

    _run(RunContext(store="Sales", dry_run=False), fake_store, queue)

    assert fake_store.issued
    assert queue.exists() is False


def test_dry_run_leaves_queue_intact(fake_store, queue, caplog):
    _store_with_heaps(fake_store)
    caplog.set_level(logging.INFO, logger="heap_rebuild")

    outcome = _run(RunContext(store="Sales", process_heap_count=10, dry_run=True), fake_store, queue)

    assert outcome.processed == 3
    assert fake_store.issued == []
    assert queue.count_all() == 3
    assert "Performing a dry run. Nothing will be executed ..." in caplog.messages
    assert "No rows in table. Cleaning up..." not in caplog.messages


def test_selection_constraints_flow_through(fake_store, queue):
    _store_with_heaps(fake_store)
    ctx = RunContext(store="Sales", process_heap_count=1, max_row_count=100_000, dry_run=False)

    _run(ctx, fake_store, queue)

    assert fake_store.issued == ["ALTER TABLE [Sales].[dbo].[Orders] REBUILD WITH (ONLINE = ON, MAXDOP = 4);"]


def test_online_only_and_standard_edition(store_factory, queue):
    store = store_factory(edition="Standard Edition (64-bit)", max_dop=0)
    _store_with_heaps(store)

    _run(RunContext(store="Sales", process_heap_count=5, online_only=True, max_dop=2, dry_run=False), store, queue)

    assert store.issued == [
        "ALTER TABLE [Sales].[dbo].[Orders] REBUILD WITH (MAXDOP = 2);",
        "ALTER TABLE [Sales].[dbo].[Audit] REBUILD WITH (MAXDOP = 2);",
    ]


def test_targeted_table_bypasses_selection(fake_store, queue):
    _store_with_heaps(fake_store)
    ctx = RunContext(store="Sales", schema_name="etl", table_name="Staging", process_heap_count=0, dry_run=False)

    outcome = _run(ctx, fake_store, queue)

    assert outcome.processed == 1
    # The edition allows ONLINE; the targeted path ignores the per-table LOB flag.
    assert fake_store.issued == ["ALTER TABLE [Sales].[etl].[Staging] REBUILD WITH (ONLINE = ON, MAXDOP = 4);"]
    assert sorted(c.table_name for c in queue.all()) == ["Audit", "Orders"]


def test_targeted_table_not_found(fake_store, queue):
    _store_with_heaps(fake_store)
    ctx = RunContext(store="Sales", schema_name="dbo", table_name="Nope", dry_run=False)
    controller = RunController(ctx, fake_store, fake_store, queue)

    with pytest.raises(TableNotFoundError):
        controller.run()

    assert controller.trace[-1] is RunState.FAILED
    assert fake_store.issued == []


def test_remediation_failure_stops_the_batch(fake_store, queue, caplog):
    _store_with_heaps(fake_store)
    fake_store.fail_tables.add("Orders")
    caplog.set_level(logging.INFO, logger="heap_rebuild")
    controller = RunController(RunContext(store="Sales", process_heap_count=3, dry_run=False), fake_store, fake_store, queue)

    with pytest.raises(RemediationError):
        controller.run()

    assert fake_store.issued == []
    assert queue.count_all() == 3
    assert controller.trace[-2:] == [RunState.LOGGING, RunState.FAILED]
    assert caplog.messages[-1].startswith("Date and time: ")


def test_metadata_failure_during_scan_leaves_no_queue(fake_store, queue):
    _store_with_heaps(fake_store)
    fake_store.metadata_down = True

    with pytest.raises(MetadataAccessError):
        _run(RunContext(store="Sales"), fake_store, queue)

    assert queue.exists() is False


def _list_object_twice(fake_store, monkeypatch):
    monkeypatch.setattr(
        fake_store, "list_heap_tables", lambda store: [HeapTable(1, "dbo", "Orders"), HeapTable(1, "dbo", "Orders")]
    )


def test_queue_write_failure_keeps_previous_queue(fake_store, queue, candidate, monkeypatch, caplog):
    _store_with_heaps(fake_store)
    queue.replace([candidate(10), candidate(11)])
    _list_object_twice(fake_store, monkeypatch)
    caplog.set_level(logging.INFO, logger="heap_rebuild")

    controller = RunController(RunContext(store="Sales", force_rescan=True), fake_store, fake_store, queue)
    with pytest.raises(WorkQueueError):
        controller.run()

    assert [c.object_id for c in queue.all()] == [10, 11]
    assert controller.trace[-2:] == [RunState.LOGGING, RunState.FAILED]
    assert caplog.messages[-1].startswith("Date and time: ")
    assert fake_store.issued == []


def test_queue_write_failure_on_first_run_leaves_no_queue(fake_store, queue, monkeypatch):
    _store_with_heaps(fake_store)
    _list_object_twice(fake_store, monkeypatch)

    with pytest.raises(WorkQueueError) as exc:
        _run(RunContext(store="Sales"), fake_store, queue)

    assert exc.value.code == "WORK_QUEUE"
    assert queue.exists() is False
