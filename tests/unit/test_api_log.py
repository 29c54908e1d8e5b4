"""Unit tests for the bounded API log buffer."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from ksef_client.adapters.api_log import ApiLogBuffer
from ksef_client.domain.models import ApiLogEntry
from ksef_client.domain.ports import ApiLogSink


def _entry(path: str, status: int = 200) -> ApiLogEntry:
    return ApiLogEntry(
        timestamp=datetime(2026, 2, 11, tzinfo=UTC),
        method="GET",
        path=path,
        status=status,
        duration=0.012,
    )


class TestApiLogBuffer:
    def test_satisfies_sink_port(self) -> None:
        assert isinstance(ApiLogBuffer(), ApiLogSink)

    def test_keeps_entries_in_arrival_order(self) -> None:
        buffer = ApiLogBuffer(capacity=3)
        buffer.log_api(_entry("/a"))
        buffer.log_api(_entry("/b", status=503))
        assert [e.path for e in buffer.entries] == ["/a", "/b"]
        assert len(buffer) == 2

    def test_drops_oldest_beyond_capacity(self) -> None:
        """
        GIVEN capacity=2
        WHEN three entries are logged
        THEN only the two most recent remain.
        """
        buffer = ApiLogBuffer(capacity=2)
        for path in ("/1", "/2", "/3"):
            buffer.log_api(_entry(path))
        assert [e.path for e in buffer.entries] == ["/2", "/3"]
        assert buffer.capacity == 2

    def test_entries_is_a_copy(self) -> None:
        buffer = ApiLogBuffer()
        buffer.log_api(_entry("/a"))
        buffer.entries.clear()
        assert len(buffer) == 1

    def test_clear(self) -> None:
        buffer = ApiLogBuffer()
        buffer.log_api(_entry("/a"))
        buffer.clear()
        assert buffer.entries == []

    @pytest.mark.parametrize("capacity", [0, -5])
    def test_rejects_non_positive_capacity(self, capacity: int) -> None:
        with pytest.raises(ValueError, match="capacity"):
            ApiLogBuffer(capacity=capacity)
