from __future__ import annotations

import logging
import os
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path


def _resolve_log_dir(settings: object) -> Path:
    # Relative HEAPS_LOG_DIR values hang off the checkout, not the CWD of the scheduler.
    raw = getattr(settings, "HEAPS_LOG_DIR", Path("_logs"))
    p = raw if isinstance(raw, Path) else Path(str(raw))
    if p.is_absolute():
        return p

    project_root = Path(__file__).resolve().parents[1]
    return project_root / p


def setup_logging(settings: object) -> Path:
    """Send the run log to the operator's terminal and to `heap_rebuild.log`.

    Each workflow step (scan progress, queued heaps, every rebuild command and its
    duration, the closing timestamp) is one line in both places. The file rolls over
    at midnight and keeps HEAPS_LOG_BACKUP_COUNT days, which is the audit trail a
    scheduled job leaves behind. Calling it again replaces the handlers.
    """
    log_dir = _resolve_log_dir(settings)
    log_dir.mkdir(parents=True, exist_ok=True)

    log_file = log_dir / "heap_rebuild.log"

    level_name = str(getattr(settings, "HEAPS_LOG_LEVEL", "INFO") or "INFO").upper().strip()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

    file_handler = TimedRotatingFileHandler(
        filename=str(log_file),
        when="midnight",
        interval=1,
        backupCount=max(0, int(getattr(settings, "HEAPS_LOG_BACKUP_COUNT", 14) or 0)),
        encoding="utf-8",
        utc=False,
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(fmt))

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(fmt))

    # One handler pair per process, however often setup_logging runs.
    root = logging.getLogger()
    root.handlers = []
    root.setLevel(level)
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # SQLAlchemy echoes every statement at INFO; keep it to warnings.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.getLogger("heap_rebuild").debug(
        "heap_rebuild logging enabled (file=%s, level=%s)",
        os.fspath(log_file),
        level_name,
    )

    return log_file
