"""Bounded in-memory log of recent relay activity.

Admission decisions, evictions and admin actions are recorded here so the
admin API can list and filter them. Every entry is also emitted through
loguru; this buffer is not a persistent store.
"""

from __future__ import annotations

import itertools
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from loguru import logger

Level = Literal["debug", "info", "warning", "error"]

LEVELS: tuple[str, ...] = ("debug", "info", "warning", "error")

# loguru level names for each activity level
_LOGURU_LEVELS = {
    "debug": "DEBUG",
    "info": "INFO",
    "warning": "WARNING",
    "error": "ERROR",
}


def mask_secret(secret: str) -> str:
    """Shorten a secret for log output, e.g. ``abcd***``."""
    if len(secret) <= 4:
        return "***"
    return f"{secret[:4]}***"


@dataclass
class ActivityEntry:
    id: str
    timestamp: str
    level: Level
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ActivityLog:
    """Ring buffer of the most recent ``max_entries`` events."""

    def __init__(self, max_entries: int = 1000) -> None:
        self._entries: deque[ActivityEntry] = deque(maxlen=max_entries)
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, level: Level, message: str, **details: Any) -> ActivityEntry:
        entry = ActivityEntry(
            id=str(next(self._ids)),
            timestamp=datetime.now(UTC).isoformat(),
            level=level,
            message=message,
            details=details,
        )
        self._entries.append(entry)
        logger.opt(depth=1).log(_LOGURU_LEVELS[level], "{} {}", message, details or "")
        return entry

    def recent(self, limit: int = 100, level: str | None = None) -> list[ActivityEntry]:
        """Newest first, optionally filtered to one level."""
        entries = [e for e in self._entries if level is None or e.level == level]
        if limit <= 0:
            return []
        return list(reversed(entries[-limit:]))

    def count(self, level: str | None = None) -> int:
        if level is None:
            return len(self._entries)
        return sum(1 for e in self._entries if e.level == level)

    def clear(self) -> None:
        self._entries.clear()
