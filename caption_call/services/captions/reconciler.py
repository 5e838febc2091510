"""
Caption Reconciler - turns raw transcript updates into display captions.

Owns both TranscriptBuffers (``mine`` and ``remote``) and their expiry
timers.

Local side:
    every engine result → ingest_local(text) → dedup → display → 5 s silence
    timer that clears the caption and asks for an engine restart

Remote side:
    every inbound fragment → ingest_remote(fragment) → acceptance rules →
    translation (in the background) → display → 7 s / 5 s display timer

Translations complete out of order. Each accepted remote fragment gets a
sequence number and a display write only lands if no newer fragment has
already been displayed, so the newest accepted fragment always wins.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Optional

from caption_call.config.constants import (
    DISPLAY_WINDOW_WORDS,
    LOCAL_SILENCE_EXPIRY_SEC,
    REMOTE_FINAL_EXPIRY_SEC,
    REMOTE_PARTIAL_EXPIRY_SEC,
)
from caption_call.services.captions.buffer import (
    CaptionFragment,
    Direction,
    FragmentVerdict,
    TranscriptBuffer,
)
from caption_call.services.core.events import spawn
from caption_call.services.core.timers import TimerRegistry
from caption_call.services.metrics import caption_fragments
from caption_call.services.translation import CaptionTranslator

logger = logging.getLogger(__name__)

# (direction, display_text) -> None
DisplayCallback = Callable[[Direction, str], Any]


class CaptionReconciler:
    """Dedup, anti-regression and expiry for both caption directions."""

    def __init__(
        self,
        timers: TimerRegistry,
        translator: CaptionTranslator,
        target_language: Callable[[], str],
        on_display: Optional[DisplayCallback] = None,
        on_silence: Optional[Callable[[], Any]] = None,
        window_words: int = DISPLAY_WINDOW_WORDS,
        silence_expiry: float = LOCAL_SILENCE_EXPIRY_SEC,
        partial_expiry: float = REMOTE_PARTIAL_EXPIRY_SEC,
        final_expiry: float = REMOTE_FINAL_EXPIRY_SEC,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timers = timers
        self.translator = translator
        self._target_language = target_language
        self._on_display = on_display
        self._on_silence = on_silence
        self.window_words = window_words
        self.silence_expiry = silence_expiry
        self.partial_expiry = partial_expiry
        self.final_expiry = final_expiry
        self._clock = clock

        self.mine = TranscriptBuffer(Direction.MINE)
        self.remote = TranscriptBuffer(Direction.REMOTE)

        # Remote display ordering
        self._remote_seq = 0
        self._remote_shown_seq = 0

    # === Local side ===

    def ingest_local(self, text: str) -> bool:
        """
        Accept the speaker's own cumulative transcript.

        Returns:
            True if the caption changed, False for a duplicate.
        """
        buffer = self.mine
        if buffer.is_duplicate(text):
            logger.debug("🔄 Same local transcript repeated, skipping")
            caption_fragments.labels(direction=buffer.direction.value, outcome="duplicate").inc()
            return False

        buffer.replace(text, self._clock())
        caption_fragments.labels(direction=buffer.direction.value, outcome="accepted").inc()
        self._show(buffer, buffer.display_window(n=self.window_words))
        self.timers.schedule(buffer.expiry_key, self.silence_expiry, self._expire_local)
        return True

    def _expire_local(self):
        logger.info("🫥 Local silence - caption cleared, restarting transcription")
        self._clear(self.mine)
        if self._on_silence is not None:
            result = self._on_silence()
            if asyncio.iscoroutine(result):
                spawn(result, name="transcription:silence-restart")

    # === Remote side ===

    def ingest_remote(self, fragment: CaptionFragment) -> Optional[asyncio.Task]:
        """
        Reconcile an inbound fragment from the peer.

        Returns:
            The background task that translates and displays the fragment,
            or None if the fragment was rejected.
        """
        buffer = self.remote
        verdict = buffer.evaluate_remote(fragment)
        caption_fragments.labels(direction=buffer.direction.value, outcome=verdict.value).inc()

        if verdict is not FragmentVerdict.ACCEPTED:
            logger.debug(f"Remote fragment rejected ({verdict.value}): '{fragment.text[:50]}'")
            return None

        buffer.replace(fragment.text, self._clock())
        self._remote_seq += 1
        return spawn(
            self._display_remote(fragment, self._remote_seq),
            name=f"caption:remote:{self._remote_seq}",
        )

    async def _display_remote(self, fragment: CaptionFragment, seq: int):
        target = self._target_language()
        translated = await self.translator.translate(fragment.text, fragment.language, target)

        if seq < self._remote_shown_seq:
            logger.debug(f"Dropping stale translation #{seq} (showing #{self._remote_shown_seq})")
            return
        self._remote_shown_seq = seq

        buffer = self.remote
        self._show(buffer, buffer.display_window(translated, n=self.window_words))
        expiry = self.final_expiry if fragment.is_final else self.partial_expiry
        self.timers.schedule(buffer.expiry_key, expiry, self._expire_remote)

    def _expire_remote(self):
        logger.info("🫥 Remote silence - caption cleared")
        self._clear(self.remote)

    # === Shared ===

    def _show(self, buffer: TranscriptBuffer, text: str):
        buffer.display_text = text
        if self._on_display is not None:
            self._on_display(buffer.direction, text)

    def _clear(self, buffer: TranscriptBuffer):
        self.timers.cancel(buffer.expiry_key)
        if buffer is self.remote:
            # In-flight translations must not repaint a cleared caption
            self._remote_shown_seq = self._remote_seq + 1
        buffer.clear()
        if self._on_display is not None:
            self._on_display(buffer.direction, "")

    def reset(self):
        """Clear both buffers and cancel their timers (session teardown)."""
        self._clear(self.mine)
        self._clear(self.remote)
