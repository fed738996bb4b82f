from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
import itertools
import logging
from typing import Any

from profilehub.services.domains.activity.events import ActivityBroadcaster

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 100
DEFAULT_QUERY_LIMIT = 50


class ActivityLevel(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


_STD_LOG_LEVELS = {
    ActivityLevel.INFO: logging.INFO,
    ActivityLevel.SUCCESS: logging.INFO,
    ActivityLevel.WARNING: logging.WARNING,
    ActivityLevel.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class ActivityLogEntry:
    collector: str
    level: ActivityLevel
    message: str
    timestamp: datetime
    sequence: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "collector": self.collector,
            "level": self.level.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


class ActivityLog:
    """Bounded per-collector history of operator-facing messages.

    ``append`` never raises: storage or broadcast failures are reported to the
    standard logger and dropped.
    """

    def __init__(
        self,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        broadcaster: ActivityBroadcaster | None = None,
    ) -> None:
        self._max_entries = max(1, int(max_entries))
        self._entries: dict[str, deque[ActivityLogEntry]] = {}
        self._sequence = itertools.count(1)
        self.broadcaster = broadcaster or ActivityBroadcaster()

    def append(self, collector: str, level: ActivityLevel | str, message: str) -> None:
        try:
            entry = ActivityLogEntry(
                collector=collector,
                level=ActivityLevel(level),
                message=str(message),
                timestamp=datetime.now(UTC),
                sequence=next(self._sequence),
            )
            ring = self._entries.get(collector)
            if ring is None:
                ring = deque(maxlen=self._max_entries)
                self._entries[collector] = ring
            ring.append(entry)
            logger.log(
                _STD_LOG_LEVELS[entry.level],
                "activity.%s",
                entry.level.value,
                extra={
                    "event": f"activity.{entry.level.value}",
                    "collector": collector,
                    "activity_message": entry.message,
                },
            )
            self.broadcaster.publish(entry.to_dict())
        except Exception:
            logger.exception(
                "activity.append_failed",
                extra={"event": "activity.append_failed", "collector": collector},
            )

    def query(
        self,
        collector: str | None = None,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> list[ActivityLogEntry]:
        bounded_limit = max(0, int(limit))
        if collector is not None:
            entries = list(self._entries.get(collector, ()))
        else:
            entries = [entry for ring in self._entries.values() for entry in ring]
        entries.sort(key=lambda entry: entry.sequence, reverse=True)
        return entries[:bounded_limit]

    def clear(self, collector: str | None = None) -> None:
        if collector is None:
            self._entries.clear()
        else:
            self._entries.pop(collector, None)
        logger.info(
            "activity.cleared",
            extra={"event": "activity.cleared", "collector": collector or "all"},
        )
