"""Single-flight artifact generation per (document, page) key.

Concurrent requests for one key share one generator call. Results are
committed into the caller's PageCache in the same step that clears the
pending entry, so a key is never both cached and pending. A failure clears
the pending entry and re-raises to every waiting caller, leaving the key
retryable.
"""

from __future__ import annotations

import time
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

from . import metrics
from .errors import CoordinatorClosed, GenerationTimeout
from .page_cache import PageCache, PageKey

log = logging.getLogger(__name__)

T = TypeVar("T")

ArtifactGenerator = Callable[[PageKey], Awaitable[T]]


class GenerationCoordinator(Generic[T]):
    """Deduplicates generator calls through a map of in-flight tasks."""

    def __init__(self, *, generation_timeout: Optional[float] = None, name: str = "page") -> None:
        """Initialize the coordinator.

        Args:
            generation_timeout: Seconds before a generator call is abandoned and
                treated as a failure. None waits forever.
            name: Label used in logs and metrics.
        """
        self._timeout = generation_timeout
        self.name = name
        self._pending: Dict[PageKey, "asyncio.Task[T]"] = {}
        self._closed = False

    def is_pending(self, key: PageKey) -> bool:
        return key in self._pending

    def pending_keys(self) -> List[PageKey]:
        return list(self._pending)

    async def get_or_create(
        self, key: PageKey, cache: PageCache[T], generator: ArtifactGenerator
    ) -> T:
        """Return the artifact for ``key``, generating it at most once at a time.

        1) Cache hit -> returned without calling the generator.
        2) Key already in flight -> await the same task.
        3) Otherwise start the generator, register it as pending and await it.

        Raises:
            CoordinatorClosed: The owning session was closed.
            GenerationTimeout: The generator exceeded ``generation_timeout``.
            Exception: Whatever the generator raised, unchanged.
        """
        if self._closed:
            raise CoordinatorClosed(f"coordinator {self.name!r} is closed")

        page = cache.page_of(key)
        cached = cache.get(page)
        if cached is not None:
            return cached

        task = self._pending.get(key)
        if task is not None:
            log.debug("generation.coalesced cache=%s key=%s", self.name, key)
            metrics.record_coalesced(self.name)
        else:
            # No await between the lookup above and registration below
            task = asyncio.ensure_future(self._generate(key, cache, generator))
            task.add_done_callback(self._consume_result)
            self._pending[key] = task

        # A cancelled caller must not cancel the shared generation
        return await asyncio.shield(task)

    async def _generate(self, key: PageKey, cache: PageCache[T], generator: ArtifactGenerator) -> T:
        t0 = time.perf_counter()
        log.info("generation.start cache=%s key=%s", self.name, key)
        try:
            result = await self._call(generator, key)
        except GenerationTimeout:
            self._pending.pop(key, None)
            metrics.record_generation("timeout", time.perf_counter() - t0, self.name)
            log.warning(
                "generation.timeout cache=%s key=%s timeout=%.3fs", self.name, key, self._timeout
            )
            raise
        except asyncio.CancelledError:
            self._pending.pop(key, None)
            raise
        except Exception as exc:
            self._pending.pop(key, None)
            metrics.record_generation("failure", time.perf_counter() - t0, self.name)
            log.warning("generation.failed cache=%s key=%s error=%r", self.name, key, exc)
            raise

        self._pending.pop(key, None)
        cache.set(key.page, result)
        dur = time.perf_counter() - t0
        metrics.record_generation("success", dur, self.name)
        log.info("generation.complete cache=%s key=%s elapsed=%.3fs", self.name, key, dur)
        return result

    async def _call(self, generator: ArtifactGenerator, key: PageKey) -> T:
        if self._timeout is None:
            return await generator(key)
        try:
            return await asyncio.wait_for(generator(key), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise GenerationTimeout(f"generation of {key} exceeded {self._timeout}s") from exc

    @staticmethod
    def _consume_result(task: "asyncio.Task") -> None:
        # Every waiter may have been cancelled; mark the outcome as retrieved.
        if not task.cancelled():
            task.exception()

    async def close(self) -> None:
        """Cancel in-flight generations and refuse new requests."""
        self._closed = True
        tasks = list(self._pending.values())
        self._pending.clear()
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            log.info("generation.cancelled cache=%s count=%d", self.name, len(tasks))
