"""Size estimators for cached artifacts.

Estimators run once per insert and must never raise: malformed input gets a
fixed fallback size instead.
"""

import json
import logging
from typing import Any, Callable

from pydantic import BaseModel

log = logging.getLogger(__name__)

AUDIO_BYTES_PER_SENTENCE = 100 * 1024  # base64 sentence audio
AUDIO_FALLBACK_SIZE = 1024
TRANSLATION_FALLBACK_SIZE = 512


def _field(data: Any, name: str) -> Any:
    if isinstance(data, dict):
        return data.get(name)
    return getattr(data, name, None)


def estimate_audio_size(data: Any) -> int:
    """~100KB per sentence with timing; 1KB when the field is missing."""
    try:
        stamps = _field(data, "sentence_timestamps")
        if stamps is None:
            return AUDIO_FALLBACK_SIZE
        return len(stamps) * AUDIO_BYTES_PER_SENTENCE
    except Exception as exc:
        log.debug("estimator.audio fallback error=%r", exc)
        return AUDIO_FALLBACK_SIZE


def estimate_translation_size(data: Any) -> int:
    """Twice the JSON length, for string and container overhead."""
    if not data:
        return TRANSLATION_FALLBACK_SIZE
    try:
        if isinstance(data, BaseModel):
            encoded = data.model_dump_json()
        else:
            encoded = json.dumps(data, ensure_ascii=False)
        return len(encoded) * 2
    except Exception as exc:
        log.debug("estimator.translation fallback error=%r", exc)
        return TRANSLATION_FALLBACK_SIZE


def fixed_size(n: int) -> Callable[[Any], int]:
    """Estimator that charges every artifact ``n`` bytes."""

    def _estimate(_data: Any) -> int:
        return n

    return _estimate
