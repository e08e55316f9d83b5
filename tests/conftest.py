# --- keep this shim at the very top ---
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
# --------------------------------------

import asyncio
from typing import Any, Dict, List, Optional, Set

import httpx
import pytest
import pytest_asyncio

from reader_cache.estimators import fixed_size
from reader_cache.page_cache import CacheConfig, PageKey
from reader_cache.scheduler import SchedulerConfig
from reader_cache.session import ArtifactProfile, SessionRegistry

import reader_cache.main as app_main


class FakeGenerator:
    """Async generator stand-in that records calls.

    * ``gate``: when set, every call waits on it before returning.
    * ``fail_pages``: pages that raise on their next call (once each).
    * ``always_fail``: pages that raise on every call.
    """

    def __init__(self, gate: Optional[asyncio.Event] = None) -> None:
        self.calls: List[PageKey] = []
        self.gate = gate
        self.fail_pages: Set[int] = set()
        self.always_fail: Set[int] = set()
        self.in_flight = 0
        self.max_in_flight = 0

    def count(self, page: int) -> int:
        return sum(1 for k in self.calls if k.page == page)

    async def __call__(self, key: PageKey) -> Dict[str, Any]:
        self.calls.append(key)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if key.page in self.always_fail:
                raise RuntimeError(f"boom page {key.page}")
            if key.page in self.fail_pages:
                self.fail_pages.discard(key.page)
                raise RuntimeError(f"boom page {key.page}")
            return {"document_id": key.document_id, "page": key.page}
        finally:
            self.in_flight -= 1


@pytest.fixture
def fake_generator():
    return FakeGenerator()


def make_profile(generator, **overrides) -> ArtifactProfile:
    cache_cfg = overrides.pop("cache_config", CacheConfig(max_recent_pages=4, max_total_size=10_000))
    sched_cfg = overrides.pop(
        "scheduler_config",
        SchedulerConfig(lookahead_pages=0, max_concurrent_requests=2, tick_interval_ms=50),
    )
    return ArtifactProfile(
        generator=generator,
        size_estimator=overrides.pop("size_estimator", fixed_size(100)),
        cache_config=cache_cfg,
        scheduler_config=sched_cfg,
        generation_timeout=overrides.pop("generation_timeout", None),
    )


@pytest_asyncio.fixture
async def registry():
    """Registry with fake audio/translation generators and no periodic ticks."""
    gens = {"audio": FakeGenerator(), "translation": FakeGenerator()}
    reg = SessionRegistry(
        {kind: make_profile(g) for kind, g in gens.items()}, autostart=False
    )
    reg.generators = gens  # handy for assertions
    yield reg
    await reg.close_all()


@pytest_asyncio.fixture
async def test_app(registry):
    # httpx's ASGITransport does not run the lifespan; wire the registry directly
    app_main.app.state.registry = registry
    yield app_main.app
    del app_main.app.state.registry


@pytest_asyncio.fixture
async def test_client(test_app):
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://testserver"
    ) as c:
        yield c
