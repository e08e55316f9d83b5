"""Background prefetch around the reader's position.

On every page change the scheduler moves the cache window, collects the
window misses plus a forward lookahead, and feeds them through the
coordinator with at most ``max_concurrent_requests`` in flight. Excess
targets wait in a queue drained on every completion and on a periodic tick.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import suppress
from typing import Any, Deque, Dict, Generic, List, Optional, Set, TypeVar

from pydantic import BaseModel, Field

from . import metrics
from .coordinator import ArtifactGenerator, GenerationCoordinator
from .page_cache import PageCache, PageKey

log = logging.getLogger(__name__)

T = TypeVar("T")


class SchedulerConfig(BaseModel):
    lookahead_pages: int = Field(0, ge=0)
    max_concurrent_requests: int = Field(3, ge=1)
    tick_interval_ms: int = Field(2000, ge=1)


class PrefetchScheduler(Generic[T]):
    """Bounded-concurrency prefetcher for one document and artifact kind.

    Must be driven from inside the running event loop.
    """

    def __init__(
        self,
        document_id: str,
        cache: PageCache[T],
        coordinator: GenerationCoordinator[T],
        generator: ArtifactGenerator,
        config: SchedulerConfig,
    ) -> None:
        self.document_id = document_id
        self._cache = cache
        self._coordinator = coordinator
        self._generator = generator
        self._config = config
        self._queue: Deque[PageKey] = deque()
        self._active: Set[PageKey] = set()
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._stop_event = asyncio.Event()
        self._ticker: Optional["asyncio.Task[None]"] = None
        self._reported_depth = 0

    @property
    def name(self) -> str:
        return self._cache.name

    # -----------------------------------------------------------------
    # Target selection
    # -----------------------------------------------------------------

    def on_page_change(self, page: int, page_count: int) -> List[int]:
        """Reposition on ``page`` and queue what should become resident.

        Returns:
            The pages accepted into the queue, in dispatch priority order.
        """
        self._cache.set_current_page(page)
        window = self._cache.get_prefetch_targets()
        # Current page first, then the rest of the window in its order
        targets = [p for p in window if p == page] + [p for p in window if p != page]
        for offset in range(2, 2 + self._config.lookahead_pages):
            ahead = page + offset
            if ahead >= page_count:
                break
            if self._cache.needs_fetch(ahead):
                targets.append(ahead)

        targets = [p for p in targets if 0 <= p < page_count]
        accepted = self._enqueue_front(targets)
        log.info(
            "prefetch.page_change cache=%s doc=%s page=%d targets=%s queued=%d active=%d",
            self.name,
            self.document_id,
            page,
            accepted,
            len(self._queue),
            len(self._active),
        )
        self.drain()
        return accepted

    def enqueue(self, page: int) -> bool:
        """Append ``page`` to the backlog unless resident, queued or in flight."""
        key = PageKey(self.document_id, page)
        if not self._wanted(key):
            return False
        if key in self._queue:
            return False
        self._queue.append(key)
        self._idle.clear()
        self._report_depth()
        return True

    def _wanted(self, key: PageKey) -> bool:
        if key in self._active or self._coordinator.is_pending(key):
            return False
        return key.page not in self._cache

    def _enqueue_front(self, pages: List[int]) -> List[int]:
        accepted: List[int] = []
        for page in reversed(pages):
            key = PageKey(self.document_id, page)
            if not self._wanted(key):
                continue
            # Already waiting in the backlog: move it up instead of duplicating
            with suppress(ValueError):
                self._queue.remove(key)
            self._queue.appendleft(key)
            accepted.append(page)
        if accepted:
            self._idle.clear()
            self._report_depth()
        accepted.reverse()
        return accepted

    # -----------------------------------------------------------------
    # Dispatch
    # -----------------------------------------------------------------

    def drain(self) -> int:
        """Start queued generations up to the concurrency cap.

        Returns:
            Number of generations started.
        """
        started = 0
        while self._queue and len(self._active) < self._config.max_concurrent_requests:
            key = self._queue.popleft()
            if key.page in self._cache or key in self._active:
                metrics.record_prefetch("skipped", self.name)
                continue
            self._active.add(key)
            task = asyncio.ensure_future(self._run(key))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started += 1
        self._report_depth()
        self._update_idle()
        return started

    async def _run(self, key: PageKey) -> None:
        try:
            await self._coordinator.get_or_create(key, self._cache, self._generator)
            metrics.record_prefetch("success", self.name)
            log.debug("prefetch.done cache=%s key=%s", self.name, key)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Background attempts are best-effort; keep draining
            metrics.record_prefetch("failure", self.name)
            log.warning("prefetch.failed cache=%s key=%s error=%r", self.name, key, exc)
        finally:
            self._active.discard(key)
            if not self._stop_event.is_set():
                self.drain()
            else:
                self._update_idle()

    def prune(self, page_count: int) -> int:
        """Drop queued pages at or past ``page_count``. In-flight work is left alone.

        Returns:
            Number of queued pages dropped.
        """
        kept = deque(k for k in self._queue if k.page < page_count)
        dropped = len(self._queue) - len(kept)
        if dropped:
            self._queue = kept
            self._report_depth()
            self._update_idle()
            log.info(
                "prefetch.pruned cache=%s doc=%s page_count=%d dropped=%d",
                self.name,
                self.document_id,
                page_count,
                dropped,
            )
        return dropped

    def _report_depth(self) -> None:
        depth = len(self._queue)
        metrics.adjust_queue_depth(depth - self._reported_depth, self.name)
        self._reported_depth = depth

    def _update_idle(self) -> None:
        if not self._queue and not self._active:
            self._idle.set()

    async def wait_idle(self) -> None:
        """Wait until nothing is queued or in flight."""
        await self._idle.wait()

    # -----------------------------------------------------------------
    # Periodic tick
    # -----------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic drain loop (idempotent)."""
        if self._ticker is not None:
            return
        interval = self._config.tick_interval_ms / 1000.0
        self._stop_event.clear()

        async def _ticker():
            while not self._stop_event.is_set():
                try:
                    n = self.drain()
                    if n:
                        log.debug("prefetch.tick cache=%s started=%d", self.name, n)
                except Exception as exc:
                    # keep going; we don't want the task to die
                    log.warning("prefetch.tick_error cache=%s error=%r", self.name, exc)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    continue

        self._ticker = asyncio.create_task(_ticker())

    async def stop(self) -> None:
        """Stop the tick loop and forget queued work. In-flight tasks are left to the coordinator."""
        self._stop_event.set()
        self._queue.clear()
        self._report_depth()
        if self._ticker is not None:
            self._ticker.cancel()
            with suppress(asyncio.CancelledError):
                await self._ticker
            self._ticker = None
        self._update_idle()

    def stats(self) -> Dict[str, Any]:
        return {
            "queued": [k.page for k in self._queue],
            "active": sorted(k.page for k in self._active),
            "running": self._ticker is not None,
            "config": self._config.model_dump(),
        }
