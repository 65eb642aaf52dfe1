"""End-to-end run: validate, (re)scan, select, remediate, drain, log.

States:
    VALIDATING -> FAILED                      bad parameters, nothing touched
    VALIDATING -> SCANNING | SKIPPED          queue missing/forced vs. already present
    SCANNING | SKIPPED -> HALTED              stop-after-discovery
    SCANNING | SKIPPED -> EXECUTING -> DRAINING -> LOGGING -> DONE

Every path ends with the same timestamped completion line.
"""
from __future__ import annotations

import enum
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime

from . import capability as capability_detector
from .discovery import scan
from .errors import ContractViolation, HeapRebuildError, TableNotFoundError, WorkQueueError
from .executor import RemediationExecutor
from .gateway import CommandIssuer, MetadataGateway, quote_name
from .models import HeapCandidate, RemediationResult, RunContext
from .selector import select_batch
from .work_queue import WorkQueueStore

logger = logging.getLogger(__name__)


def log_completion() -> None:
    """The last line of every run, whichever state it ends in."""
    logger.info("Date and time: %s", datetime.now().strftime("%Y-%m-%d %H:%M:%S"))


class RunState(str, enum.Enum):
    VALIDATING = "validating"
    SCANNING = "scanning"
    SKIPPED = "skipped"
    HALTED = "halted"
    EXECUTING = "executing"
    DRAINING = "draining"
    LOGGING = "logging"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RunOutcome:
    state: RunState
    exit_code: int
    processed: int = 0
    results: list[RemediationResult] = field(default_factory=list)
    trace: list[RunState] = field(default_factory=list)
    error: HeapRebuildError | None = None


class RunController:
    def __init__(
        self,
        ctx: RunContext,
        gateway: MetadataGateway,
        issuer: CommandIssuer,
        queue: WorkQueueStore,
    ):
        self.ctx = ctx
        self.gateway = gateway
        self.issuer = issuer
        self.queue = queue
        self.trace: list[RunState] = []

    def _enter(self, state: RunState) -> None:
        self.trace.append(state)
        logger.debug("state -> %s", state.value)

    def _finish(self, state: RunState, *, exit_code: int = 0, error: HeapRebuildError | None = None) -> RunOutcome:
        self._enter(RunState.LOGGING)
        log_completion()
        self._enter(state)
        return RunOutcome(
            state=state,
            exit_code=exit_code,
            processed=self.ctx.processed,
            results=list(self.ctx.results),
            trace=list(self.trace),
            error=error,
        )

    def run(self) -> RunOutcome:
        self._enter(RunState.VALIDATING)
        violations = self.ctx.validate()
        if violations:
            for msg in violations:
                logger.error(msg)
            return self._finish(RunState.FAILED, exit_code=1, error=ContractViolation(violations))

        try:
            return self._run()
        except HeapRebuildError as e:
            logger.error("Run aborted [%s]: %s", e.code, e.message)
            self._finish(RunState.FAILED, exit_code=2, error=e)
            raise
        except sqlite3.Error as e:
            err = WorkQueueError(f"Work queue {self.queue.table} could not be written: {e}")
            logger.error("Run aborted [%s]: %s", err.code, err.message)
            self._finish(RunState.FAILED, exit_code=2, error=err)
            raise err from e

    def _run(self) -> RunOutcome:
        ctx = self.ctx
        store = str(ctx.store)

        if ctx.force_rescan or not self.queue.exists():
            self._enter(RunState.SCANNING)
            self._populate_queue(store)
        else:
            self._enter(RunState.SKIPPED)
            logger.info(
                "Work queue for %s already holds %d heap(s); skipping discovery",
                quote_name(store),
                self.queue.count_all(),
            )

        if ctx.stop_after_discovery:
            logger.info("Stopping after discovery; review %s before the next run", self.queue.table)
            return self._finish(RunState.HALTED)

        self._enter(RunState.EXECUTING)
        profile = capability_detector.detect(self.gateway, max_dop=ctx.max_dop)
        if ctx.dry_run:
            logger.info("Performing a dry run. Nothing will be executed ...")
        logger.info("Starting actual hard work")

        executor = RemediationExecutor(self.issuer, self.queue, profile, dry_run=ctx.dry_run)
        if ctx.targeted:
            self._record(executor.remediate(store, self._targeted_candidate(store), targeted=True))
        else:
            for candidate in select_batch(self.queue, ctx.constraints(), ctx.process_heap_count):
                self._record(executor.remediate(store, candidate))

        self._enter(RunState.DRAINING)
        if not ctx.dry_run and self.queue.drop_if_empty():
            logger.info("No rows in table. Cleaning up...")

        return self._finish(RunState.DONE)

    def _populate_queue(self, store: str) -> None:
        logger.info("Preparing work queue for %s", quote_name(store))
        # Scan completely before touching the queue: a failed scan leaves the previous state as it was.
        candidates = list(scan(self.gateway, store, self.ctx.min_pages))
        if self.queue.exists():
            logger.info("Dropping existing work queue for %s", quote_name(store))
        self.queue.replace(candidates)
        logger.info("Queued %d fragmented heap(s)", len(candidates))

    def _targeted_candidate(self, store: str) -> HeapCandidate:
        schema_name, table_name = str(self.ctx.schema_name), str(self.ctx.table_name)
        heap = self.gateway.find_table(store, schema_name, table_name)
        if heap is None:
            raise TableNotFoundError(
                f"Table {quote_name(schema_name)}.{quote_name(table_name)} was not found in {quote_name(store)}"
            )
        stats = self.gateway.physical_stats(store, heap.object_id)
        return HeapCandidate(
            object_id=heap.object_id,
            schema_name=heap.schema_name,
            table_name=heap.table_name,
            page_count=stats.page_count if stats else 0,
            record_count=stats.record_count if stats else 0,
            forwarded_record_count=stats.forwarded_record_count if stats else 0,
            index_count=0,
            rebuild_online=True,
        )

    def _record(self, result: RemediationResult) -> None:
        self.ctx.results.append(result)
        self.ctx.processed += 1
