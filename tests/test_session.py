"""Session registry tests: per-document isolation, lifecycle, foreground fetches."""

import asyncio

import pytest

from reader_cache import session as session_mod
from reader_cache.errors import DocumentNotOpen, PageOutOfRange, UnknownArtifactKind
from reader_cache.scheduler import SchedulerConfig
from reader_cache.session import SessionRegistry, build_profiles
from reader_cache.settings import Settings

from conftest import FakeGenerator, make_profile


@pytest.mark.asyncio
async def test_open_document_prefetches_every_kind(registry):
    session = registry.open_document("doc-1", page_count=10, current_page=3)
    await session.wait_idle()

    for kind in ("audio", "translation"):
        gen = registry.generators[kind]
        assert sorted(k.page for k in gen.calls) == [2, 3, 4]
        assert session.pipeline(kind).cache.stats()["adjacent"] == [2, 3, 4]
    assert "doc-1" in registry and len(registry) == 1


@pytest.mark.asyncio
async def test_documents_never_share_cache_state(registry):
    a = registry.open_document("doc-a", page_count=5, current_page=0)
    b = registry.open_document("doc-b", page_count=5, current_page=0)
    await a.wait_idle()
    await b.wait_idle()

    audio = registry.generators["audio"]
    assert sorted(k.document_id for k in audio.calls) == ["doc-a", "doc-a", "doc-b", "doc-b"]
    assert a.pipeline("audio").cache is not b.pipeline("audio").cache

    await registry.close_document("doc-a")
    assert b.pipeline("audio").cache.get(0) == {"document_id": "doc-b", "page": 0}


@pytest.mark.asyncio
async def test_reopen_reuses_session_and_repositions(registry):
    first = registry.open_document("doc", page_count=10, current_page=0)
    again = registry.open_document("doc", page_count=12, current_page=7)
    assert first is again
    assert again.page_count == 12
    assert again.current_page == 7
    await again.wait_idle()


@pytest.mark.asyncio
async def test_advance_reports_targets_per_kind(registry):
    session = registry.open_document("doc", page_count=10, current_page=0)
    await session.wait_idle()

    queued = session.advance(1)
    assert queued == {"audio": [2], "translation": [2]}
    await session.wait_idle()


@pytest.mark.asyncio
async def test_page_bounds_and_unknown_kind(registry):
    with pytest.raises(PageOutOfRange):
        registry.open_document("doc", page_count=3, current_page=3)
    assert "doc" not in registry

    session = registry.open_document("doc", page_count=3)
    with pytest.raises(PageOutOfRange):
        session.advance(-1)
    with pytest.raises(PageOutOfRange):
        await session.get_artifact("audio", 9)
    with pytest.raises(UnknownArtifactKind):
        await session.get_artifact("video", 0)
    await session.wait_idle()


@pytest.mark.asyncio
async def test_get_artifact_joins_background_generation():
    gate = asyncio.Event()
    gen = FakeGenerator(gate=gate)
    reg = SessionRegistry({"audio": make_profile(gen)}, autostart=False)
    session = reg.open_document("doc", page_count=10, current_page=4)

    fetch = asyncio.ensure_future(session.get_artifact("audio", 4))
    await asyncio.sleep(0)
    gate.set()
    assert await fetch == {"document_id": "doc", "page": 4}
    assert gen.count(4) == 1
    await reg.close_all()


@pytest.mark.asyncio
async def test_get_artifact_moves_that_kinds_window(registry):
    session = registry.open_document("doc", page_count=50, current_page=0)
    await session.wait_idle()

    assert await session.get_artifact("audio", 40) == {"document_id": "doc", "page": 40}

    audio = session.pipeline("audio").cache.stats()
    assert audio["current_page"] == 40
    assert audio["adjacent"] == [40]
    assert audio["recent"] == [0, 1]
    assert session.pipeline("translation").cache.stats()["current_page"] == 0


@pytest.mark.asyncio
async def test_reopen_with_fewer_pages_drops_queued_targets():
    gate = asyncio.Event()
    gen = FakeGenerator(gate=gate)
    profile = make_profile(
        gen,
        scheduler_config=SchedulerConfig(max_concurrent_requests=1, tick_interval_ms=50),
    )
    reg = SessionRegistry({"audio": profile}, autostart=False)
    reg.open_document("doc", page_count=100, current_page=50)
    session = reg.open_document("doc", page_count=10, current_page=0)

    assert session.pipeline("audio").scheduler.stats()["queued"] == [0, 1]
    gate.set()
    await session.wait_idle()
    assert [k.page for k in gen.calls] == [50, 0, 1]
    await reg.close_all()


@pytest.mark.asyncio
async def test_close_document_cancels_and_forgets():
    gate = asyncio.Event()
    gen = FakeGenerator(gate=gate)
    reg = SessionRegistry({"audio": make_profile(gen)}, autostart=True)
    session = reg.open_document("doc", page_count=10, current_page=4)
    await asyncio.sleep(0)
    pipeline = session.pipeline("audio")
    assert pipeline.coordinator.pending_keys()

    assert await reg.close_document("doc") is True
    assert pipeline.coordinator.pending_keys() == []
    assert len(pipeline.cache) == 0
    assert pipeline.scheduler.stats()["running"] is False
    assert await reg.close_document("doc") is False
    with pytest.raises(DocumentNotOpen):
        reg.get("doc")


@pytest.mark.asyncio
async def test_stats_snapshot(registry):
    session = registry.open_document("doc", page_count=10, current_page=5)
    await session.wait_idle()

    stats = registry.stats()
    assert stats["open_documents"] == 1
    doc = stats["sessions"][0]
    assert doc["document_id"] == "doc"
    assert doc["current_page"] == 5
    assert doc["pipelines"]["audio"]["cache"]["adjacent"] == [4, 5, 6]
    assert doc["pipelines"]["audio"]["pending"] == []


def test_build_profiles_from_settings():
    s = Settings(AUDIO_MAX_RECENT_PAGES=2, TRANSLATION_LOOKAHEAD_PAGES=3, MAX_CONCURRENT_REQUESTS=5)
    profiles = build_profiles(s)

    assert set(profiles) == {"audio", "translation"}
    assert profiles["audio"].cache_config.max_recent_pages == 2
    assert profiles["audio"].cache_config.max_total_size == 15 * 1024 * 1024
    assert profiles["translation"].cache_config.max_recent_pages == 10
    assert profiles["translation"].scheduler_config.lookahead_pages == 3
    assert profiles["audio"].scheduler_config.lookahead_pages == 0
    assert profiles["audio"].scheduler_config.max_concurrent_requests == 5
    assert profiles["audio"].size_estimator is session_mod.estimate_audio_size
    assert profiles["translation"].generator.url == s.TRANSLATION_GENERATOR_URL
