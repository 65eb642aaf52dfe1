from __future__ import annotations

from .models import HeapCandidate, SelectionConstraints
from .work_queue import WorkQueueStore


def select_batch(queue: WorkQueueStore, constraints: SelectionConstraints, limit: int) -> list[HeapCandidate]:
    """Pick the next batch: most forwarded records first, at most `limit` items.

    Constraints combine with AND. The cap exists to bound the log volume a
    single run pushes at log-shipping / replication targets.
    """

    if limit <= 0:
        return []
    return queue.select(constraints, limit=limit)
