"""Pydantic schemas for artifacts and API request/response bodies."""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


class SentenceTimestamp(BaseModel):
    sentence_index: int
    start_time_ms: int
    end_time_ms: int
    text: str
    audio_url: Optional[str] = None
    audio_id: Optional[str] = None
    duration_ms: Optional[int] = None


class PageAudio(BaseModel):
    """Synthesized audio for one page with per-sentence timing."""

    audio_id: str
    audio_url: str
    total_duration_ms: int
    sentence_timestamps: List[SentenceTimestamp] = []


class PageTranslation(BaseModel):
    """Translated sentences for one page, in page order."""

    direction: Optional[str] = None
    translations: List[str] = []


class OpenDocumentIn(BaseModel):
    page_count: int = Field(ge=1)
    current_page: int = Field(0, ge=0)


class PageChangeIn(BaseModel):
    page: int = Field(ge=0)


class CacheStatsOut(BaseModel):
    current_page: int
    adjacent: List[int]
    recent: List[int]
    total_size: str
    memory_utilization: float


class SchedulerStatsOut(BaseModel):
    queued: List[int]
    active: List[int]
    running: bool
    config: Dict[str, Any]


class PipelineStatsOut(BaseModel):
    cache: CacheStatsOut
    scheduler: SchedulerStatsOut
    pending: List[int]


class SessionStatsOut(BaseModel):
    document_id: str
    page_count: int
    current_page: int
    pipelines: Dict[str, PipelineStatsOut]


class RegistryStatsOut(BaseModel):
    open_documents: int
    sessions: List[SessionStatsOut]


class ProblemDetail(BaseModel):
    """RFC 7807-style problem response (simplified)."""

    type: str = "about:blank"
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
