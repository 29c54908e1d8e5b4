"""
API log buffer — bounded in-memory audit-log sink.

Implements the ApiLogSink port. Keeps the most recent entries for an
inspection view and mirrors each one as a structured log event.
Entries arrive already sanitized from the client.
"""

from __future__ import annotations

from collections import deque

import structlog

from ksef_client.domain.models import ApiLogEntry

log = structlog.get_logger()

DEFAULT_CAPACITY = 50


class ApiLogBuffer:
    """Ring buffer of the last ``capacity`` ApiLogEntry records (oldest first)."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._entries: deque[ApiLogEntry] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    @property
    def entries(self) -> list[ApiLogEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def log_api(self, entry: ApiLogEntry) -> None:
        self._entries.append(entry)
        log.info(
            "api.request",
            method=entry.method,
            path=entry.path,
            status=entry.status,
            duration_ms=round(entry.duration * 1000, 1),
            error=entry.error,
        )

    def clear(self) -> None:
        self._entries.clear()
