"""
Tests for caption reconciliation: dedup, anti-regression, expiry and
last-write-wins display ordering.
"""
import asyncio
from unittest.mock import Mock

import pytest

from caption_call.services.captions import CaptionFragment, CaptionReconciler, Direction
from caption_call.services.translation import CaptionTranslator
from tests.helpers import FakeTranslationBackend


class DisplayLog:
    def __init__(self):
        self.writes = []

    def __call__(self, direction, text):
        self.writes.append((direction, text))

    def last(self, direction):
        for written_direction, text in reversed(self.writes):
            if written_direction is direction:
                return text
        return None


def make_reconciler(timers, backend=None, **kwargs):
    display = DisplayLog()
    reconciler = CaptionReconciler(
        timers,
        CaptionTranslator(backend or FakeTranslationBackend(), timeout=1.0),
        target_language=lambda: "en",
        on_display=display,
        **kwargs,
    )
    return reconciler, display


@pytest.mark.asyncio
async def test_repeated_local_text_is_ignored(timers):
    reconciler, display = make_reconciler(timers)

    assert reconciler.ingest_local("hello there") is True
    first_timer = timers.get(reconciler.mine.expiry_key)
    assert reconciler.ingest_local("hello there") is False

    assert display.writes == [(Direction.MINE, "hello there")]
    assert first_timer is not None
    assert timers.get(reconciler.mine.expiry_key) is first_timer


@pytest.mark.asyncio
async def test_local_window_shows_last_twenty_words(timers):
    reconciler, display = make_reconciler(timers)
    text = " ".join(f"w{i}" for i in range(1, 26))

    reconciler.ingest_local(text)

    assert display.last(Direction.MINE) == " ".join(f"w{i}" for i in range(6, 26))
    assert reconciler.mine.current_text == text


@pytest.mark.asyncio
async def test_local_silence_clears_caption_and_requests_restart(timers):
    on_silence = Mock()
    reconciler, display = make_reconciler(timers, on_silence=on_silence, silence_expiry=0.05)

    reconciler.ingest_local("anyone there")
    await asyncio.sleep(0.12)

    assert display.last(Direction.MINE) == ""
    assert reconciler.mine.previous_text == ""
    on_silence.assert_called_once_with()


@pytest.mark.asyncio
async def test_new_local_text_rearms_single_expiry(timers):
    on_silence = Mock()
    reconciler, _ = make_reconciler(timers, on_silence=on_silence, silence_expiry=0.15)

    reconciler.ingest_local("one")
    await asyncio.sleep(0.1)
    reconciler.ingest_local("one two")
    await asyncio.sleep(0.1)

    on_silence.assert_not_called()
    assert timers.pending_keys() == [reconciler.mine.expiry_key]

    await asyncio.sleep(0.1)
    on_silence.assert_called_once_with()


@pytest.mark.asyncio
async def test_remote_fragment_is_translated_for_display(timers):
    backend = FakeTranslationBackend()
    reconciler, display = make_reconciler(timers, backend=backend)

    task = reconciler.ingest_remote(CaptionFragment("merhaba dünya", "tr", is_final=True))
    await task

    assert display.last(Direction.REMOTE) == "[en] merhaba dünya"
    assert backend.requests == [("merhaba dünya", "tr", "en")]


@pytest.mark.asyncio
async def test_remote_in_target_language_skips_translation(timers):
    backend = FakeTranslationBackend()
    reconciler, display = make_reconciler(timers, backend=backend)

    await reconciler.ingest_remote(CaptionFragment("hello", "en"))

    assert display.last(Direction.REMOTE) == "hello"
    assert backend.requests == []


@pytest.mark.asyncio
async def test_stale_remote_partial_is_rejected_but_final_is_not(timers):
    reconciler, display = make_reconciler(timers)

    await reconciler.ingest_remote(CaptionFragment("hello world today", "en"))
    assert reconciler.ingest_remote(CaptionFragment("hello world", "en")) is None
    assert reconciler.ingest_remote(CaptionFragment("hello world today", "en")) is None
    assert display.last(Direction.REMOTE) == "hello world today"

    task = reconciler.ingest_remote(CaptionFragment("hello world", "en", is_final=True))
    assert task is not None
    await task
    assert display.last(Direction.REMOTE) == "hello world"


@pytest.mark.asyncio
async def test_translation_failure_shows_source_text(timers):
    backend = FakeTranslationBackend(error=RuntimeError("quota exceeded"))
    reconciler, display = make_reconciler(timers, backend=backend)

    await reconciler.ingest_remote(CaptionFragment("bonjour", "fr"))

    assert display.last(Direction.REMOTE) == "bonjour"


@pytest.mark.asyncio
async def test_newest_fragment_wins_when_translations_finish_out_of_order(timers):
    backend = FakeTranslationBackend(delays={"slow start": 0.2})
    reconciler, display = make_reconciler(timers, backend=backend)

    slow = reconciler.ingest_remote(CaptionFragment("slow start", "tr"))
    fast = reconciler.ingest_remote(CaptionFragment("slow start then more", "tr"))
    await asyncio.gather(slow, fast)

    assert display.last(Direction.REMOTE) == "[en] slow start then more"
    assert (Direction.REMOTE, "[en] slow start") not in display.writes


@pytest.mark.asyncio
async def test_final_caption_outlives_partial_caption(timers):
    reconciler, display = make_reconciler(timers, partial_expiry=0.05, final_expiry=0.3)

    await reconciler.ingest_remote(CaptionFragment("done speaking", "en", is_final=True))
    await asyncio.sleep(0.1)
    assert display.last(Direction.REMOTE) == "done speaking"

    await reconciler.ingest_remote(CaptionFragment("done speaking and", "en"))
    await asyncio.sleep(0.1)
    assert display.last(Direction.REMOTE) == ""
    assert reconciler.remote.previous_text == ""


@pytest.mark.asyncio
async def test_reset_clears_buffers_and_cancels_timers(timers):
    reconciler, display = make_reconciler(timers)

    reconciler.ingest_local("my words")
    await reconciler.ingest_remote(CaptionFragment("their words", "en"))
    assert len(timers.pending_keys()) == 2

    reconciler.reset()

    assert timers.pending_keys() == []
    assert reconciler.mine.current_text == ""
    assert reconciler.remote.current_text == ""
    assert display.last(Direction.MINE) == ""
    assert display.last(Direction.REMOTE) == ""


@pytest.mark.asyncio
async def test_in_flight_translation_does_not_repaint_after_reset(timers):
    backend = FakeTranslationBackend(delays={"late": 0.1})
    reconciler, display = make_reconciler(timers, backend=backend)

    task = reconciler.ingest_remote(CaptionFragment("late", "tr"))
    reconciler.reset()
    await task

    assert display.last(Direction.REMOTE) == ""
    assert timers.pending_keys() == []
