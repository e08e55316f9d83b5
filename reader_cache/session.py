"""Per-document reading sessions and the registry that owns them.

A session holds one pipeline (cache + coordinator + scheduler) per artifact
kind. Sessions never share state, and closing one drops its caches and
cancels whatever it still has in flight.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from . import metrics
from .clients import HttpArtifactGenerator
from .coordinator import ArtifactGenerator, GenerationCoordinator
from .errors import DocumentNotOpen, PageOutOfRange, UnknownArtifactKind
from .estimators import estimate_audio_size, estimate_translation_size
from .page_cache import CacheConfig, PageCache, PageKey, SizeEstimator
from .scheduler import PrefetchScheduler, SchedulerConfig
from .schemas import PageAudio, PageTranslation

log = logging.getLogger(__name__)


@dataclass
class ArtifactProfile:
    """Everything needed to build a pipeline for one artifact kind."""

    generator: ArtifactGenerator
    size_estimator: SizeEstimator
    cache_config: CacheConfig
    scheduler_config: SchedulerConfig
    generation_timeout: Optional[float] = None


class ArtifactPipeline:
    def __init__(self, document_id: str, kind: str, profile: ArtifactProfile) -> None:
        self.kind = kind
        self.document_id = document_id
        self.generator = profile.generator
        self.cache: PageCache[Any] = PageCache(
            profile.cache_config,
            profile.size_estimator,
            document_id=document_id,
            name=kind,
        )
        self.coordinator: GenerationCoordinator[Any] = GenerationCoordinator(
            generation_timeout=profile.generation_timeout, name=kind
        )
        self.scheduler: PrefetchScheduler[Any] = PrefetchScheduler(
            document_id, self.cache, self.coordinator, self.generator, profile.scheduler_config
        )

    async def get(self, page: int) -> Any:
        key = PageKey(self.document_id, page)
        return await self.coordinator.get_or_create(key, self.cache, self.generator)

    def stats(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.stats(),
            "scheduler": self.scheduler.stats(),
            "pending": sorted(k.page for k in self.coordinator.pending_keys()),
        }

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.coordinator.close()
        self.cache.clear()


class DocumentSession:
    """Reading state of one open document."""

    def __init__(
        self, document_id: str, page_count: int, profiles: Dict[str, ArtifactProfile]
    ) -> None:
        self.document_id = document_id
        self.page_count = page_count
        self.current_page = 0
        self.pipelines: Dict[str, ArtifactPipeline] = {
            kind: ArtifactPipeline(document_id, kind, profile)
            for kind, profile in profiles.items()
        }

    def _check_page(self, page: int) -> None:
        if not 0 <= page < self.page_count:
            raise PageOutOfRange(page, self.page_count)

    def pipeline(self, kind: str) -> ArtifactPipeline:
        try:
            return self.pipelines[kind]
        except KeyError:
            raise UnknownArtifactKind(kind) from None

    def start(self) -> None:
        for p in self.pipelines.values():
            p.scheduler.start()

    def advance(self, page: int) -> Dict[str, List[int]]:
        """Report a page transition to every pipeline.

        Returns:
            Prefetch targets accepted per artifact kind.
        """
        self._check_page(page)
        previous, self.current_page = self.current_page, page
        queued = {
            kind: p.scheduler.on_page_change(page, self.page_count)
            for kind, p in self.pipelines.items()
        }
        log.info(
            "session.advance doc=%s %d->%d queued=%s", self.document_id, previous, page, queued
        )
        return queued

    def resize(self, page_count: int) -> None:
        """Change the page count and drop queued prefetches past the new end."""
        self.page_count = page_count
        for p in self.pipelines.values():
            p.scheduler.prune(page_count)

    async def get_artifact(self, kind: str, page: int) -> Any:
        """Foreground fetch: cached, joined with an in-flight generation, or generated.

        The kind's cache window moves to ``page`` first so the requested page
        and its neighbours are protected from eviction.
        """
        pipeline = self.pipeline(kind)
        self._check_page(page)
        pipeline.cache.set_current_page(page)
        return await pipeline.get(page)

    async def wait_idle(self) -> None:
        for p in self.pipelines.values():
            await p.scheduler.wait_idle()

    def stats(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "page_count": self.page_count,
            "current_page": self.current_page,
            "pipelines": {kind: p.stats() for kind, p in self.pipelines.items()},
        }

    async def close(self) -> None:
        for p in self.pipelines.values():
            await p.close()


class SessionRegistry:
    """Owns the open document sessions of one application instance."""

    def __init__(self, profiles: Dict[str, ArtifactProfile], *, autostart: bool = True) -> None:
        """Initialize the registry.

        Args:
            profiles: Artifact kinds to build for every document.
            autostart: Start each session's periodic scheduler ticks on open.
        """
        self._profiles = profiles
        self._autostart = autostart
        self._sessions: Dict[str, DocumentSession] = {}

    @property
    def kinds(self) -> List[str]:
        return list(self._profiles)

    def __contains__(self, document_id: object) -> bool:
        return document_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def open_document(
        self, document_id: str, page_count: int, current_page: int = 0
    ) -> DocumentSession:
        """Open (or reuse) the session for ``document_id`` and position it.

        Must be called from inside the running event loop.
        """
        if not 0 <= current_page < page_count:
            raise PageOutOfRange(current_page, page_count)
        session = self._sessions.get(document_id)
        if session is None:
            session = DocumentSession(document_id, page_count, self._profiles)
            self._sessions[document_id] = session
            if self._autostart:
                session.start()
            metrics.observe_sessions(len(self._sessions))
            log.info("session.open doc=%s pages=%d", document_id, page_count)
        else:
            session.resize(page_count)
            log.debug("session.reopen doc=%s pages=%d", document_id, page_count)
        session.advance(current_page)
        return session

    def get(self, document_id: str) -> DocumentSession:
        try:
            return self._sessions[document_id]
        except KeyError:
            raise DocumentNotOpen(document_id) from None

    async def close_document(self, document_id: str) -> bool:
        session = self._sessions.pop(document_id, None)
        if session is None:
            return False
        await session.close()
        metrics.observe_sessions(len(self._sessions))
        log.info("session.close doc=%s", document_id)
        return True

    async def close_all(self) -> None:
        for document_id in list(self._sessions):
            await self.close_document(document_id)

    def stats(self) -> Dict[str, Any]:
        return {
            "open_documents": len(self._sessions),
            "sessions": [s.stats() for s in self._sessions.values()],
        }


def build_profiles(settings) -> Dict[str, ArtifactProfile]:
    """Build the audio and translation profiles backed by remote generators."""
    audio = HttpArtifactGenerator(
        settings.AUDIO_GENERATOR_URL,
        PageAudio.model_validate,
        timeout=settings.REQUEST_TIMEOUT,
        max_retries=settings.MAX_RETRIES,
        name="audio",
    )
    translation = HttpArtifactGenerator(
        settings.TRANSLATION_GENERATOR_URL,
        PageTranslation.model_validate,
        timeout=settings.REQUEST_TIMEOUT,
        max_retries=settings.MAX_RETRIES,
        name="translation",
    )
    return {
        "audio": ArtifactProfile(
            generator=audio,
            size_estimator=estimate_audio_size,
            cache_config=settings.cache_config("audio"),
            scheduler_config=settings.scheduler_config("audio"),
            generation_timeout=settings.GENERATION_TIMEOUT_SECONDS,
        ),
        "translation": ArtifactProfile(
            generator=translation,
            size_estimator=estimate_translation_size,
            cache_config=settings.cache_config("translation"),
            scheduler_config=settings.scheduler_config("translation"),
            generation_timeout=settings.GENERATION_TIMEOUT_SECONDS,
        ),
    }
