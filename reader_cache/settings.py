from typing import Optional

from pydantic_settings import BaseSettings

from .page_cache import CacheConfig
from .scheduler import SchedulerConfig


class Settings(BaseSettings):
    # Audio cache (audio is large)
    AUDIO_MAX_RECENT_PAGES: int = 4
    AUDIO_MAX_TOTAL_SIZE: int = 15 * 1024 * 1024
    AUDIO_LOOKAHEAD_PAGES: int = 0

    # Translation cache (much smaller payloads)
    TRANSLATION_MAX_RECENT_PAGES: int = 10
    TRANSLATION_MAX_TOTAL_SIZE: int = 5 * 1024 * 1024
    TRANSLATION_LOOKAHEAD_PAGES: int = 1

    # Scheduler
    MAX_CONCURRENT_REQUESTS: int = 3
    TICK_INTERVAL_MS: int = 2000
    GENERATION_TIMEOUT_SECONDS: Optional[float] = 120.0

    # Remote generators (override via env)
    AUDIO_GENERATOR_URL: str = "http://localhost:8080/tts/page"
    TRANSLATION_GENERATOR_URL: str = "http://localhost:8080/translate/page"
    REQUEST_TIMEOUT: float = 30.0
    MAX_RETRIES: int = 5

    class Config:
        env_file = ".env"

    def cache_config(self, kind: str) -> CacheConfig:
        if kind == "audio":
            return CacheConfig(
                max_recent_pages=self.AUDIO_MAX_RECENT_PAGES,
                max_total_size=self.AUDIO_MAX_TOTAL_SIZE,
            )
        return CacheConfig(
            max_recent_pages=self.TRANSLATION_MAX_RECENT_PAGES,
            max_total_size=self.TRANSLATION_MAX_TOTAL_SIZE,
        )

    def scheduler_config(self, kind: str) -> SchedulerConfig:
        lookahead = (
            self.AUDIO_LOOKAHEAD_PAGES if kind == "audio" else self.TRANSLATION_LOOKAHEAD_PAGES
        )
        return SchedulerConfig(
            lookahead_pages=lookahead,
            max_concurrent_requests=self.MAX_CONCURRENT_REQUESTS,
            tick_interval_ms=self.TICK_INTERVAL_MS,
        )


settings = Settings()
