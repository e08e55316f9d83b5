# reader_cache/page_cache.py
from __future__ import annotations

import time
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Generic, List, NamedTuple, Optional, TypeVar, Any

from pydantic import BaseModel, Field

from . import metrics

log = logging.getLogger(__name__)

T = TypeVar("T")

SizeEstimator = Callable[[Any], int]


class PageKey(NamedTuple):
    """Structured cache key for a page-scoped artifact."""

    document_id: str
    page: int


class CacheConfig(BaseModel):
    """Sizing knobs for one PageCache."""

    max_adjacent_pages: int = Field(3, ge=3, le=3)  # prev + current + next
    max_recent_pages: int = Field(4, ge=0)
    max_total_size: int = Field(15 * 1024 * 1024, ge=0)  # bytes


@dataclass
class CacheEntry(Generic[T]):
    page: int
    data: T
    inserted_at: float
    size_bytes: int


def format_size(n: int) -> str:
    """Render a byte count as B/KB/MB with one decimal."""
    if n < 1024:
        return f"{n}B"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f}KB"
    return f"{n / (1024 * 1024):.1f}MB"


class PageCache(Generic[T]):
    """Per-document page cache: protected adjacency window + recent queue.

    The adjacency window is {current-1, current, current+1}. Entries whose
    page is in the window are never evicted for memory pressure. Every other
    entry lives in a most-recent-first queue bounded by ``max_recent_pages``
    and trimmed from the tail while the total size is over budget.

    Inserts are never rejected and never evict themselves: when the window
    plus the newest entry exceed ``max_total_size`` the cache stays over
    budget until a later insert pushes the overflow out.
    """

    def __init__(
        self,
        config: CacheConfig,
        size_estimator: SizeEstimator,
        *,
        document_id: Optional[str] = None,
        name: str = "page",
    ) -> None:
        """Initialize the cache.

        Args:
            config: Recent-queue length and byte budget.
            size_estimator: Callable returning the byte size of an artifact.
                Called once per insert; must not raise.
            document_id: Owning document. Keys of other documents are rejected.
            name: Label used in logs and metrics (e.g. "audio").
        """
        self._config = config
        self._estimate = size_estimator
        self.document_id = document_id
        self.name = name
        self._current = 0
        self._positioned = False
        self._adjacent: Dict[int, CacheEntry[T]] = {}
        self._recent: Deque[CacheEntry[T]] = deque()
        self._total = 0

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def current_page(self) -> int:
        return self._current

    def page_of(self, key: PageKey) -> int:
        """Return the page index of ``key`` after checking it belongs here."""
        if self.document_id is not None and key.document_id != self.document_id:
            raise ValueError(
                f"key for document {key.document_id!r} used on cache of {self.document_id!r}"
            )
        return key.page

    # -----------------------------------------------------------------
    # Window management
    # -----------------------------------------------------------------

    def is_adjacent(self, page: int) -> bool:
        return abs(page - self._current) <= 1

    def set_current_page(self, page: int) -> None:
        """Move the adjacency window to ``page``.

        An adjacent move demotes only the entries that leave the window. A jump
        (or the first call) demotes the whole window, the old current page
        landing at the front of the recent queue.
        """
        previous = self._current
        first = not self._positioned
        self._positioned = True
        if not first and page == previous:
            return
        self._current = page

        if not first and abs(page - previous) == 1:
            log.debug("page_cache.transition cache=%s kind=adjacent %d->%d", self.name, previous, page)
            leaving = [p for p in self._adjacent if not self.is_adjacent(p)]
        else:
            log.debug("page_cache.transition cache=%s kind=jump %s->%d", self.name, None if first else previous, page)
            leaving = sorted(self._adjacent, key=lambda p: abs(p - previous), reverse=True)

        for p in leaving:
            self._recent.appendleft(self._adjacent.pop(p))
            log.debug("page_cache.demote cache=%s page=%d", self.name, p)

        # Pages re-entering the window must be protected again
        for entry in [e for e in self._recent if self.is_adjacent(e.page)]:
            self._recent.remove(entry)
            self._adjacent[entry.page] = entry
            log.debug("page_cache.promote cache=%s page=%d", self.name, entry.page)

        self._trim_recent()

    # -----------------------------------------------------------------
    # Reads / writes
    # -----------------------------------------------------------------

    def get(self, page: int) -> Optional[T]:
        """Return the cached artifact for ``page`` or None.

        A hit in the recent queue moves the entry to the front.
        """
        entry = self._adjacent.get(page)
        if entry is not None:
            metrics.record_cache_hit(self.name, "adjacent")
            return entry.data

        for entry in self._recent:
            if entry.page == page:
                self._recent.remove(entry)
                self._recent.appendleft(entry)  # recency bump
                metrics.record_cache_hit(self.name, "recent")
                return entry.data

        metrics.record_cache_miss(self.name)
        return None

    def set(self, page: int, data: T) -> None:
        """Insert or replace the artifact for ``page`` and enforce limits."""
        size = self._estimate(data)
        entry = CacheEntry(page=page, data=data, inserted_at=time.time(), size_bytes=size)
        self._discard(page)

        if self.is_adjacent(page):
            self._adjacent[page] = entry
            tier = "adjacent"
        else:
            self._recent.appendleft(entry)
            tier = "recent"
        self._total += size
        log.debug(
            "page_cache.put cache=%s page=%d tier=%s size=%s",
            self.name,
            page,
            tier,
            format_size(size),
        )

        self._trim_recent()
        self.enforce_memory_limits(keep=entry)

    def needs_fetch(self, page: int) -> bool:
        return self.get(page) is None

    def __contains__(self, page: object) -> bool:
        """Membership test that does not touch recency."""
        return page in self._adjacent or any(e.page == page for e in self._recent)

    def __len__(self) -> int:
        return len(self._adjacent) + len(self._recent)

    def get_prefetch_targets(self) -> List[int]:
        """Pages of the window that miss, in [prev, current, next] order.

        Not clamped: the cache does not know the page count.
        """
        cur = self._current
        return [p for p in (cur - 1, cur, cur + 1) if self.needs_fetch(p)]

    # -----------------------------------------------------------------
    # Eviction
    # -----------------------------------------------------------------

    def total_size(self) -> int:
        return self._total

    def enforce_memory_limits(self, keep: Optional[CacheEntry[T]] = None) -> None:
        """Evict from the recent tail while over budget. Never touches the window.

        Args:
            keep: Entry that must survive this pass (the one just inserted).
                It sits at the front of the queue, so it is only reached once
                every older recent entry is gone.
        """
        budget = self._config.max_total_size
        if self._total <= budget:
            return
        log.info(
            "page_cache.over_budget cache=%s total=%s budget=%s",
            self.name,
            format_size(self._total),
            format_size(budget),
        )
        while self._recent and self._total > budget and self._recent[-1] is not keep:
            self._evict_tail("memory")
        if self._total > budget:
            log.warning(
                "page_cache.overflow cache=%s total=%s budget=%s protected=%s",
                self.name,
                format_size(self._total),
                format_size(budget),
                sorted(self._adjacent),
            )

    def _trim_recent(self) -> None:
        while len(self._recent) > self._config.max_recent_pages:
            self._evict_tail("capacity")

    def _evict_tail(self, reason: str) -> None:
        removed = self._recent.pop()
        self._total -= removed.size_bytes
        metrics.record_eviction(reason, self.name)
        log.debug("page_cache.evict cache=%s page=%d reason=%s", self.name, removed.page, reason)

    def _discard(self, page: int) -> None:
        entry = self._adjacent.pop(page, None)
        if entry is None:
            for e in self._recent:
                if e.page == page:
                    entry = e
                    self._recent.remove(e)
                    break
        if entry is not None:
            self._total -= entry.size_bytes

    # -----------------------------------------------------------------
    # Introspection
    # -----------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Return a snapshot for observability (no side effects)."""
        total = self._total
        budget = self._config.max_total_size
        return {
            "current_page": self._current,
            "adjacent": sorted(self._adjacent),
            "recent": [e.page for e in self._recent],
            "total_size": format_size(total),
            "memory_utilization": (total / budget) if budget else 0.0,
        }

    def clear(self) -> None:
        """Drop every entry from both tiers."""
        log.debug("page_cache.clear cache=%s entries=%d", self.name, len(self))
        self._adjacent.clear()
        self._recent.clear()
        self._total = 0
