"""
Audit Log
=========

Append-only record of every operator-visible release event. Entries are
stored in insertion order and read back newest first.

Usage:
    from canarypilot.audit import AuditLog
    from canarypilot.models import Severity

    log = AuditLog()
    log.record("Canary Rollout Started", "Traffic split: 95/5.")
    log.record("Anomaly Detected", "Latency > threshold", Severity.WARNING)

    log.entries()[0].event   # "Anomaly Detected"
"""

import logging
from typing import Callable, Iterator, Optional

from canarypilot.models import LogEntry, Severity

logger = logging.getLogger(__name__)

_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


class AuditLog:
    """Insertion-ordered store of LogEntry records."""

    def __init__(self, on_record: Optional[Callable[[LogEntry], None]] = None):
        self._entries: list[LogEntry] = []
        self._on_record = on_record

    def record(self, event: str, details: str, severity: Severity | str = Severity.INFO) -> LogEntry:
        """Append a new entry with a fresh id and the current timestamp."""
        entry = LogEntry(event=event, details=details, severity=Severity(severity))
        self._entries.append(entry)
        logger.log(_LEVELS[entry.severity], "%s: %s", event, details)
        if self._on_record:
            self._on_record(entry)
        return entry

    def entries(self) -> list[LogEntry]:
        """All entries, newest first."""
        return list(reversed(self._entries))

    def latest(self) -> Optional[LogEntry]:
        return self._entries[-1] if self._entries else None

    def find(self, event: str) -> list[LogEntry]:
        """Entries with the given event name, newest first."""
        return [e for e in reversed(self._entries) if e.event == event]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        """Iterate newest first, matching entries()."""
        return reversed(self._entries)
