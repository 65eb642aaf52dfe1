from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class HeapCandidate:
    """One fragmented heap, keyed by the engine's object id."""

    object_id: int
    schema_name: str
    table_name: str
    page_count: int
    record_count: int
    forwarded_record_count: int
    index_count: int
    rebuild_online: bool
    discovered_at: str | None = None


@dataclass(frozen=True)
class PhysicalStats:
    page_count: int
    record_count: int
    forwarded_record_count: int


@dataclass(frozen=True)
class HeapTable:
    object_id: int
    schema_name: str
    table_name: str


@dataclass(frozen=True)
class CapabilityProfile:
    edition: str
    online_supported: bool
    max_dop: int


@dataclass(frozen=True)
class SelectionConstraints:
    max_row_count: int | None = None
    max_index_count: int | None = None
    online_only: bool = False


@dataclass(frozen=True)
class RemediationResult:
    command_text: str
    # None for dry runs; nothing was timed.
    duration_ms: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass
class RunContext:
    """Everything one invocation knows. Never shared between runs."""

    store: str | None
    schema_name: str | None = None
    table_name: str | None = None
    min_pages: int = 0
    process_heap_count: int = 2
    max_index_count: int | None = None
    max_row_count: int | None = None
    max_dop: int | None = None
    online_only: bool = False
    dry_run: bool = True
    force_rescan: bool = False
    stop_after_discovery: bool = False

    processed: int = 0
    results: list[RemediationResult] = field(default_factory=list)

    @property
    def targeted(self) -> bool:
        return bool(self.schema_name and self.table_name)

    def constraints(self) -> SelectionConstraints:
        return SelectionConstraints(
            max_row_count=self.max_row_count,
            max_index_count=self.max_index_count,
            online_only=self.online_only,
        )

    def validate(self) -> list[str]:
        """Return every contract violation (empty list when the context is usable)."""
        errors: list[str] = []
        if not str(self.store or "").strip():
            errors.append("The store parameter must be specified and cannot be empty. Stopping execution...")
        has_schema = bool(str(self.schema_name or "").strip())
        has_table = bool(str(self.table_name or "").strip())
        if has_schema != has_table:
            errors.append(
                "The schema and table parameters must be specified together (or not at all). Stopping execution..."
            )
        for name in ("min_pages", "process_heap_count", "max_index_count", "max_row_count", "max_dop"):
            value = getattr(self, name)
            if value is not None and value < 0:
                errors.append(f"The {name} parameter cannot be negative (got {value}).")
        return errors
