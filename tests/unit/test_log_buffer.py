"""
Unit tests for BoundedLogBuffer.

Tests cover:
- Newest-first ordering
- Capacity and eviction
- Redelivery
- Initial load and merging with live entries
"""

import pytest

from realtime.invoicy_sync.models import LogEntry
from realtime.invoicy_sync.store import DEFAULT_CAPACITY, BoundedLogBuffer


def entry(key, message=""):
    return LogEntry.from_row({"id": key, "log_type": "info", "message": message})


def ids(buffer):
    return [e.id for e in buffer.snapshot()]


class TestBoundedLogBuffer:
    """Tests for BoundedLogBuffer."""

    def test_default_capacity(self):
        assert BoundedLogBuffer().capacity == DEFAULT_CAPACITY == 100

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            BoundedLogBuffer(capacity=0)

    def test_newest_first(self):
        buffer = BoundedLogBuffer(capacity=10)

        for key in ("a", "b", "c"):
            buffer.append(entry(key))

        assert ids(buffer) == ["c", "b", "a"]

    def test_oldest_is_evicted_at_capacity(self):
        buffer = BoundedLogBuffer(capacity=2)

        for key in ("A", "B", "C"):
            buffer.append(entry(key))

        assert ids(buffer) == ["C", "B"]
        assert buffer.evicted_count == 1

    @pytest.mark.parametrize("capacity", [1, 3, 100])
    def test_never_exceeds_capacity(self, capacity):
        buffer = BoundedLogBuffer(capacity=capacity)

        for i in range(capacity * 3):
            buffer.append(entry(f"e{i}"))
            assert len(buffer) <= capacity

        expected = [f"e{i}" for i in reversed(range(capacity * 2, capacity * 3))]
        assert ids(buffer) == expected

    def test_redelivered_entry_is_ignored(self):
        buffer = BoundedLogBuffer(capacity=5)

        assert buffer.append(entry("a"))
        assert buffer.append(entry("b"))
        assert buffer.append(entry("a")) is False

        assert ids(buffer) == ["b", "a"]

    def test_evicted_entry_can_return(self):
        buffer = BoundedLogBuffer(capacity=1)
        buffer.append(entry("a"))
        buffer.append(entry("b"))

        assert buffer.append(entry("a"))
        assert ids(buffer) == ["a"]


class TestBoundedLogBufferLoad:
    """Tests for the initial batch."""

    def test_load_truncates_to_capacity(self):
        buffer = BoundedLogBuffer(capacity=2)

        buffer.load([entry("c"), entry("b"), entry("a")])

        assert ids(buffer) == ["c", "b"]
        assert buffer.loaded

    def test_load_dedupes(self):
        buffer = BoundedLogBuffer(capacity=5)

        buffer.load([entry("b"), entry("a"), entry("b")])

        assert ids(buffer) == ["b", "a"]

    def test_live_entries_stay_in_front_of_batch(self):
        buffer = BoundedLogBuffer(capacity=3)
        buffer.append(entry("live"))

        buffer.load([entry("c"), entry("b"), entry("a")])

        assert ids(buffer) == ["live", "c", "b"]

    def test_live_entry_also_in_batch_appears_once(self):
        buffer = BoundedLogBuffer(capacity=5)
        buffer.append(entry("c"))

        buffer.load([entry("c"), entry("b")])

        assert ids(buffer) == ["c", "b"]

    def test_append_after_load(self):
        buffer = BoundedLogBuffer(capacity=2)
        buffer.load([entry("b"), entry("a")])

        buffer.append(entry("c"))

        assert ids(buffer) == ["c", "b"]

    def test_reload_replaces(self):
        buffer = BoundedLogBuffer(capacity=3)
        buffer.load([entry("a")])
        buffer.append(entry("b"))

        buffer.load([entry("x")])

        assert ids(buffer) == ["x"]

    def test_reset(self):
        buffer = BoundedLogBuffer(capacity=3)
        buffer.load([entry("a")])

        buffer.reset()

        assert len(buffer) == 0
        assert not buffer.loaded
        assert buffer.append(entry("a"))
