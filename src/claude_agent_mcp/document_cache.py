"""Bounded bridge cache between the search and fetch tools.

Eviction is FIFO by insertion order and happens opportunistically on every
insert; there is no background timer. Ids only gate access to content the
backend already produced, so they are not a security boundary.
"""

import logging
import secrets
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from .limits import DEFAULT_LIMITS

logger = logging.getLogger("claude-agent-mcp.document_cache")


def new_document_id(index: int, now: Optional[float] = None) -> str:
    """``doc-<epoch ms>-<index>-<random>``; the suffix avoids cross-search clashes."""
    millis = int((time.time() if now is None else now) * 1000)
    return f"doc-{millis}-{index}-{secrets.token_hex(4)}"


@dataclass
class CachedDocument:
    id: str
    title: str
    text: str
    url: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0

    def to_fetch_result(self) -> dict:
        result = asdict(self)
        result.pop("created_at")
        return result


def make_document(
    doc_id: str,
    title: str,
    text: str,
    url: str,
    created_at: float,
    **metadata: Any,
) -> CachedDocument:
    metadata["timestamp"] = datetime.fromtimestamp(created_at, tz=timezone.utc).isoformat()
    return CachedDocument(id=doc_id, title=title, text=text, url=url, metadata=metadata, created_at=created_at)


class DocumentCache:
    """Id -> CachedDocument table bounded by size and age."""

    def __init__(
        self,
        max_size: int = DEFAULT_LIMITS.max_cache_size,
        ttl_seconds: float = DEFAULT_LIMITS.cache_ttl_seconds,
        eviction_buffer: int = DEFAULT_LIMITS.cache_eviction_buffer,
        clock: Callable[[], float] = time.time,
    ):
        self._store: OrderedDict[str, CachedDocument] = OrderedDict()
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._buffer = min(eviction_buffer, max(0, max_size - 1))
        self._clock = clock
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def __contains__(self, doc_id: str) -> bool:
        with self._lock:
            return doc_id in self._store

    def size(self) -> int:
        return len(self)

    def now(self) -> float:
        return self._clock()

    def _is_stale(self, doc: CachedDocument, now: float) -> bool:
        return now - doc.created_at > self._ttl

    def _evict(self) -> None:
        now = self._clock()
        stale = [doc_id for doc_id, doc in self._store.items() if self._is_stale(doc, now)]
        for doc_id in stale:
            del self._store[doc_id]

        evicted = 0
        if len(self._store) >= self._max_size:
            target = self._max_size - self._buffer
            while len(self._store) >= target and self._store:
                self._store.popitem(last=False)
                evicted += 1

        if stale or evicted:
            logger.info(f"Cache cleanup: {len(stale)} expired, {evicted} evicted, {len(self._store)} remaining")

    def put(self, document: CachedDocument) -> None:
        with self._lock:
            self._evict()
            self._store.pop(document.id, None)
            self._store[document.id] = document

    def put_many(self, documents: Iterable[CachedDocument]) -> None:
        for document in documents:
            self.put(document)

    def get(self, doc_id: str) -> Optional[CachedDocument]:
        """Plain lookup; a miss (unknown or expired id) returns None."""
        with self._lock:
            doc = self._store.get(doc_id)
            if doc is None:
                return None
            if self._is_stale(doc, self._clock()):
                del self._store[doc_id]
                return None
            return doc

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
