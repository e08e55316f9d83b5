"""Size estimators never raise and fall back to fixed sizes."""

import pytest

from reader_cache import estimators as est
from reader_cache.schemas import PageAudio, PageTranslation, SentenceTimestamp


def _audio(n: int) -> PageAudio:
    return PageAudio(
        audio_id="a",
        audio_url="/audio/a.wav",
        total_duration_ms=n * 1000,
        sentence_timestamps=[
            SentenceTimestamp(sentence_index=i, start_time_ms=i * 1000, end_time_ms=(i + 1) * 1000, text="x")
            for i in range(n)
        ],
    )


def test_audio_size_scales_with_sentences():
    assert est.estimate_audio_size(_audio(3)) == 3 * 100 * 1024
    assert est.estimate_audio_size({"sentence_timestamps": [{}, {}]}) == 2 * 100 * 1024


@pytest.mark.parametrize("bad", [None, {}, {"sentence_timestamps": None}, {"sentence_timestamps": 5}, object(), "junk"])
def test_audio_size_falls_back(bad):
    assert est.estimate_audio_size(bad) == est.AUDIO_FALLBACK_SIZE


def test_audio_without_sentences_costs_nothing():
    assert est.estimate_audio_size(_audio(0)) == 0
    assert est.estimate_audio_size({"sentence_timestamps": []}) == 0


def test_translation_size_is_twice_json_length():
    data = ["hello", "world"]
    assert est.estimate_translation_size(data) == 2 * len('["hello", "world"]')

    page = PageTranslation(direction="ja-en", translations=["hi"])
    assert est.estimate_translation_size(page) == 2 * len(page.model_dump_json())


@pytest.mark.parametrize("bad", [None, [], {}, {"x": object()}, {1, 2}])
def test_translation_size_falls_back(bad):
    assert est.estimate_translation_size(bad) == est.TRANSLATION_FALLBACK_SIZE


def test_fixed_size():
    assert est.fixed_size(42)("anything") == 42
