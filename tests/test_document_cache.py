"""Tests for the search -> fetch document cache."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from claude_agent_mcp.document_cache import DocumentCache, make_document, new_document_id


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def doc(i: int, created_at: float):
    return make_document(f"doc-{i}", f"Title {i}", f"text {i}", f"https://claude-search/q/{i}", created_at, query="q")


class TestDocumentIds:
    """Tests for cache id generation."""

    def test_id_format(self):
        """Ids carry the timestamp, the index and a random suffix."""
        doc_id = new_document_id(2, now=1.5)
        prefix, millis, index, suffix = doc_id.split("-")
        assert (prefix, millis, index) == ("doc", "1500", "2")
        assert len(suffix) == 8

    def test_ids_unique_for_same_instant(self):
        """Two searches in the same millisecond do not collide."""
        assert new_document_id(0, now=1.0) != new_document_id(0, now=1.0)


class TestRoundTrip:
    """put then get."""

    def test_put_get_returns_same_document(self, clock):
        """A stored document comes back unchanged before the TTL."""
        cache = DocumentCache(clock=clock)
        document = doc(1, clock.now)
        cache.put(document)
        assert cache.get("doc-1") is document

    def test_miss_returns_none(self, clock):
        """Unknown ids are a normal miss."""
        assert DocumentCache(clock=clock).get("doc-404") is None

    def test_metadata_timestamp(self, clock):
        """Documents carry an ISO-8601 creation timestamp and their query."""
        document = doc(1, clock.now)
        assert document.metadata["query"] == "q"
        assert document.metadata["timestamp"].startswith("2023-11-14T")

    def test_fetch_result_shape(self, clock):
        """Fetch payloads expose id, title, text, url and metadata."""
        result = doc(1, clock.now).to_fetch_result()
        assert set(result) == {"id", "title", "text", "url", "metadata"}


class TestSizeEviction:
    """FIFO eviction by insertion order."""

    def test_overflow_drops_oldest(self, clock):
        """101 inserts into a 100-slot cache drop the earliest documents."""
        cache = DocumentCache(max_size=100, clock=clock)
        for i in range(101):
            cache.put(doc(i, clock.now))
        assert cache.size() <= 100
        assert cache.get("doc-0") is None
        assert cache.get("doc-100") is not None

    def test_eviction_leaves_headroom(self, clock):
        """Eviction frees the buffer beyond the cap."""
        cache = DocumentCache(max_size=100, eviction_buffer=10, clock=clock)
        for i in range(101):
            cache.put(doc(i, clock.now))
        assert cache.size() == 90
        assert cache.get("doc-10") is None
        assert cache.get("doc-11") is not None

    def test_fifo_not_lru(self, clock):
        """Reading an old entry does not protect it from eviction."""
        cache = DocumentCache(max_size=3, eviction_buffer=0, clock=clock)
        for i in range(3):
            cache.put(doc(i, clock.now))
        assert cache.get("doc-0") is not None
        cache.put(doc(3, clock.now))
        assert cache.get("doc-0") is None
        assert cache.get("doc-1") is not None


class TestTtl:
    """Entries do not outlive the TTL."""

    def test_stale_entries_swept_on_put(self, clock):
        """Expired entries are removed when new documents arrive."""
        cache = DocumentCache(ttl_seconds=3600, clock=clock)
        cache.put(doc(1, clock.now))
        clock.now += 3601
        cache.put(doc(2, clock.now))
        assert "doc-1" not in cache
        assert len(cache) == 1

    def test_stale_entry_is_a_miss(self, clock):
        """A lookup past the TTL misses even before the next put."""
        cache = DocumentCache(ttl_seconds=3600, clock=clock)
        cache.put(doc(1, clock.now))
        clock.now += 3601
        assert cache.get("doc-1") is None

    def test_fresh_entry_survives(self, clock):
        """Entries within the TTL are kept."""
        cache = DocumentCache(ttl_seconds=3600, clock=clock)
        cache.put(doc(1, clock.now))
        clock.now += 3599
        cache.put(doc(2, clock.now))
        assert cache.get("doc-1") is not None
