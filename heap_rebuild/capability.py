from __future__ import annotations

import logging

from .gateway import MetadataGateway
from .models import CapabilityProfile

logger = logging.getLogger(__name__)

# Developer edition carries the Enterprise feature set.
FULL_FEATURE_EDITIONS = ("Enterprise", "Developer")


def supports_online_rebuild(edition: str) -> bool:
    return str(edition or "").strip().startswith(FULL_FEATURE_EDITIONS)


def detect(gateway: MetadataGateway, *, max_dop: int | None = None) -> CapabilityProfile:
    """Read edition + default parallelism once per run.

    An explicit `max_dop` always wins over the instance's configured value.
    """

    edition = gateway.edition()
    online = supports_online_rebuild(edition)
    effective_dop = max_dop if max_dop is not None else gateway.configured_max_dop()
    logger.debug("Edition %r (online rebuild %s), MAXDOP %s", edition, "enabled" if online else "disabled", effective_dop)
    return CapabilityProfile(edition=edition, online_supported=online, max_dop=int(effective_dop))
