from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import datetime, timezone

from .gateway import MetadataGateway, quote_name
from .models import HeapCandidate

logger = logging.getLogger(__name__)


def scan(gateway: MetadataGateway, store: str, min_pages: int = 0) -> Iterator[HeapCandidate]:
    """Yield every fragmented heap in `store`, one at a time.

    A heap qualifies when its page count exceeds `min_pages` and it has at least
    one forwarded record. Each scan starts from scratch; there is no resume.
    Gateway failures propagate, so a broken scan never yields partial results
    that look complete.
    """

    logger.info("Looping through all heaps in %s", quote_name(store))
    heaps = gateway.list_heap_tables(store)
    total = len(heaps)
    now = datetime.now(timezone.utc).isoformat(timespec="seconds")

    # i follows enumeration order, so skipped heaps still advance the "n of total" counter.
    for i, heap in enumerate(heaps, start=1):
        stats = gateway.physical_stats(store, heap.object_id)
        if stats is None:
            continue
        if stats.page_count <= min_pages or stats.forwarded_record_count <= 0:
            continue

        candidate = HeapCandidate(
            object_id=heap.object_id,
            schema_name=heap.schema_name,
            table_name=heap.table_name,
            page_count=stats.page_count,
            record_count=stats.record_count,
            forwarded_record_count=stats.forwarded_record_count,
            index_count=gateway.secondary_index_count(store, heap.object_id),
            rebuild_online=not gateway.has_lob_columns(store, heap.object_id),
            discovered_at=now,
        )
        logger.info(
            "Added table %s.%s to worklist (%d of %d)",
            quote_name(heap.schema_name),
            quote_name(heap.table_name),
            i,
            total,
        )
        yield candidate
