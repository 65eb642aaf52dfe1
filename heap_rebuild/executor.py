from __future__ import annotations

import logging
import time
from datetime import datetime

from .commands import build_rebuild_command
from .errors import RemediationError
from .gateway import CommandIssuer, quote_name
from .models import CapabilityProfile, HeapCandidate, RemediationResult
from .work_queue import WorkQueueStore

logger = logging.getLogger(__name__)


class RemediationExecutor:
    """Builds, issues (or simulates) and retires one rebuild at a time.

    Live runs remove the candidate from the queue only after the command
    returned; a failure leaves it queued for the next run. Dry runs never touch
    the store or the queue.
    """

    def __init__(
        self,
        issuer: CommandIssuer,
        queue: WorkQueueStore,
        capability: CapabilityProfile,
        *,
        dry_run: bool = True,
    ):
        self.issuer = issuer
        self.queue = queue
        self.capability = capability
        self.dry_run = dry_run

    def remediate(self, store: str, candidate: HeapCandidate, *, targeted: bool = False) -> RemediationResult:
        full_name = ".".join(quote_name(p) for p in (store, candidate.schema_name, candidate.table_name))
        if targeted:
            logger.info("Rebuilding %s on request.", full_name)
        else:
            logger.info(
                "Rebuilding %s because of %d forwarded records.",
                full_name,
                candidate.forwarded_record_count,
            )

        command_text = build_rebuild_command(store, candidate, self.capability, targeted=targeted)
        logger.info(command_text)
        if self.dry_run:
            return RemediationResult(command_text=command_text)

        started_at = datetime.now()
        t0 = time.perf_counter()
        try:
            self.issuer.issue(command_text)
        except RemediationError as e:
            e.candidate = candidate
            logger.error("Rebuild of %s failed (%s); it stays queued for the next run.", full_name, e.message)
            raise
        duration_ms = int(round((time.perf_counter() - t0) * 1000))
        finished_at = datetime.now()
        logger.info("Rebuild took %d ms", duration_ms)

        self._retire(candidate, targeted=targeted)
        return RemediationResult(
            command_text=command_text,
            duration_ms=duration_ms,
            started_at=started_at,
            finished_at=finished_at,
        )

    def _retire(self, candidate: HeapCandidate, *, targeted: bool) -> None:
        if targeted:
            # The targeted path may run before any scan ever created a queue.
            if self.queue.exists() and self.queue.remove_by_schema_table(candidate.schema_name, candidate.table_name):
                logger.info("Removing heap from working table")
            return
        if self.queue.remove_one(candidate.object_id):
            logger.info("Removing heap from working table")
