from __future__ import annotations

from .gateway import quote_name
from .models import CapabilityProfile, HeapCandidate


def online_allowed(candidate: HeapCandidate, capability: CapabilityProfile, *, targeted: bool = False) -> bool:
    """ONLINE = ON needs both an eligible table shape and a full-feature edition.

    The targeted single-table path has no per-table flag; it goes by the edition alone.
    """

    if not capability.online_supported:
        return False
    return True if targeted else candidate.rebuild_online


def build_rebuild_command(
    store: str,
    candidate: HeapCandidate,
    capability: CapabilityProfile,
    *,
    targeted: bool = False,
) -> str:
    name = ".".join(quote_name(p) for p in (store, candidate.schema_name, candidate.table_name))
    options = []
    if online_allowed(candidate, capability, targeted=targeted):
        options.append("ONLINE = ON")
    options.append(f"MAXDOP = {int(capability.max_dop)}")
    return f"ALTER TABLE {name} REBUILD WITH ({', '.join(options)});"
