"""
In-memory activity log: keeps the most recent events for operators.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, List, Optional

from .interfaces import ActivitySink
from .models import Event

logger = logging.getLogger(__name__)

_LEVELS = {
    "success": logging.INFO,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class ActivityLog(ActivitySink):
    """Ring buffer of :class:`~core.models.Event`, newest first."""

    def __init__(self, max_events: int = 50):
        self._events: Deque[Event] = deque(maxlen=max_events)

    def _record(self, event: Event) -> None:
        self._events.appendleft(event)
        logger.log(
            _LEVELS.get(event.level, logging.INFO),
            "%s | %s | %s",
            event.kind,
            event.source,
            event.message,
        )

    def log_check(self, source_id: str, source_name: str, status: str, **metadata: Any) -> None:
        verdict = "succeeded" if status == "success" else "failed"
        self._record(Event(
            level=status,
            kind="check",
            message=f'Check of "{source_name}" {verdict}',
            source=source_id,
            metadata=metadata,
        ))

    def log_fetch(
        self,
        source_id: str,
        title: str,
        status: str,
        record_id: Optional[str] = None,
    ) -> None:
        metadata = {"record_id": record_id} if record_id else {}
        self._record(Event(
            level=status,
            kind="fetch",
            message=f"Fetch: {title}",
            source=source_id,
            metadata=metadata,
        ))

    def log_system(self, message: str, status: str = "info") -> None:
        self._record(Event(level=status, kind="system", message=message, source="system"))

    def recent(self, limit: int = 10) -> List[Event]:
        return list(self._events)[:limit]
