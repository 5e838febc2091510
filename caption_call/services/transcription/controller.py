"""
Transcription Lifecycle Controller - keeps continuous dictation running.

The underlying engine ends on its own every so often and accumulates
history for as long as an instance lives. This controller:
- restarts the engine ~100 ms after it ends while the call is connected
- stops and re-creates it (~200 ms back-off) when the local caption goes
  silent, which clears the engine's accumulated transcript
- drops an instance that reports "aborted" and starts a fresh one after the
  back-off; 5 aborts in a row latch captioning off and only an explicit
  enable() turns it back on
- treats a missing engine (no capability on the host) as a logged no-op

Events from an instance that has since been replaced are ignored.
"""

import logging
from typing import Any, Awaitable, Callable, List, Optional

from caption_call.config.constants import (
    ABORTED_ERROR_CODE,
    ENGINE_END_RESTART_DELAY_SEC,
    ENGINE_RESTART_BACKOFF_SEC,
    MAX_CONSECUTIVE_ABORTS,
    locale_for,
)
from caption_call.services.core.timers import TimerRegistry
from caption_call.services.metrics import transcription_aborts, transcription_latch_trips
from caption_call.services.protocols import (
    EngineFactory,
    TranscriptSegment,
    TranscriptionEngineProtocol,
)

logger = logging.getLogger(__name__)

RESTART_TIMER_KEY = "transcription:restart"

ResultCallback = Callable[[List[TranscriptSegment]], Awaitable[Any]]


class TranscriptionLifecycleController:
    """Starts, stops and restarts the transcription engine for one session."""

    def __init__(
        self,
        engine_factory: EngineFactory,
        on_result: ResultCallback,
        is_active: Callable[[], bool],
        language: Callable[[], str],
        timers: TimerRegistry,
        on_disabled: Optional[Callable[[], Any]] = None,
        enabled: bool = True,
        end_restart_delay: float = ENGINE_END_RESTART_DELAY_SEC,
        restart_backoff: float = ENGINE_RESTART_BACKOFF_SEC,
        max_consecutive_aborts: int = MAX_CONSECUTIVE_ABORTS,
    ):
        self._engine_factory = engine_factory
        self._on_result = on_result
        self._is_active = is_active
        self._language = language
        self.timers = timers
        self._on_disabled = on_disabled
        self.end_restart_delay = end_restart_delay
        self.restart_backoff = restart_backoff
        self.max_consecutive_aborts = max_consecutive_aborts

        self.enabled = enabled
        self.starting = False
        self.consecutive_abort_count = 0
        self._engine: Optional[TranscriptionEngineProtocol] = None

    @property
    def engine(self) -> Optional[TranscriptionEngineProtocol]:
        return self._engine

    # === Commands ===

    def start(self) -> bool:
        """
        Create and start a new engine instance.

        Returns:
            True if an instance was started.
        """
        if self.starting:
            logger.debug("Transcription already starting, waiting...")
            return False
        if not self.enabled:
            logger.debug("Transcription disabled, not starting")
            return False

        if self._engine is not None:
            self._detach_and_stop()

        locale = locale_for(self._language())
        try:
            engine = self._engine_factory(locale)
        except Exception as e:
            logger.error(f"Transcription engine could not be created: {e}")
            engine = None
        if engine is None:
            logger.error("Speech recognition is not supported on this host")
            return False

        engine.continuous = True
        engine.interim_results = True
        engine.max_alternatives = 1
        engine.language = locale

        engine.on("start", lambda: self._handle_start(engine))
        engine.on("result", lambda segments: self._handle_result(engine, segments))
        engine.on("error", lambda code: self._handle_error(engine, code))
        engine.on("end", lambda: self._handle_end(engine))

        self._engine = engine
        self.starting = True
        logger.info(f"🚀 Starting transcription ({locale})")
        try:
            engine.start()
        except Exception as e:
            logger.error(f"❌ Transcription start failed: {e}")
            self._engine = None
            self.starting = False
            return False
        return True

    def stop(self):
        """Stop the current instance and any pending restart."""
        self.starting = False
        self.timers.cancel(RESTART_TIMER_KEY)
        if self._engine is not None:
            self._detach_and_stop()

    def restart(self):
        """Stop now and start a fresh instance after the back-off."""
        if not (self.enabled and self._is_active()):
            return
        logger.info("🔄 Restarting transcription to clear engine history")
        self.stop()
        self.timers.schedule(RESTART_TIMER_KEY, self.restart_backoff, self._restart_after_backoff)

    def _restart_after_backoff(self):
        if self.enabled and self._is_active():
            self.start()

    def enable(self):
        """Explicit user re-enable; clears the abort latch."""
        self.enabled = True
        self.consecutive_abort_count = 0
        logger.info("Captioning enabled")
        if self._is_active() and self._engine is None:
            self.start()

    def disable(self):
        self.enabled = False
        self.stop()
        logger.info("Captioning disabled")

    def _detach_and_stop(self):
        engine = self._engine
        self._engine = None
        try:
            engine.stop()
        except Exception as e:
            logger.debug(f"Engine stop raised (ignored): {e}")

    # === Engine events ===

    def _handle_start(self, engine: TranscriptionEngineProtocol):
        if engine is not self._engine:
            return
        self.starting = False
        self.consecutive_abort_count = 0
        logger.info("✅ Speech recognition started")

    def _handle_result(self, engine: TranscriptionEngineProtocol, segments):
        if engine is not self._engine:
            return None
        return self._on_result(segments)

    def _handle_error(self, engine: TranscriptionEngineProtocol, code: str):
        if engine is not self._engine:
            return
        self.starting = False

        if code != ABORTED_ERROR_CODE:
            logger.error(f"Speech recognition error: {code}")
            return

        self.consecutive_abort_count += 1
        transcription_aborts.inc()
        logger.info(f"⚠️ Recognition aborted {self.consecutive_abort_count} time(s)")

        if self.consecutive_abort_count >= self.max_consecutive_aborts:
            logger.warning("🚫 Too many aborted errors - disabling speech recognition")
            transcription_latch_trips.inc()
            self.enabled = False
            self.stop()
            if self._on_disabled is not None:
                self._on_disabled()
            return

        # Drop the instance so its end event does not resume it
        self.stop()
        if self._is_active():
            self.timers.schedule(RESTART_TIMER_KEY, self.restart_backoff, self._restart_after_backoff)

    def _handle_end(self, engine: TranscriptionEngineProtocol):
        if engine is not self._engine:
            return
        self.starting = False

        if not (self._is_active() and self.enabled):
            logger.debug("Recognition ended, not restarting")
            return

        logger.debug("🔚 Recognition ended - restarting shortly")
        self.timers.schedule(
            RESTART_TIMER_KEY,
            self.end_restart_delay,
            lambda: self._resume(engine),
        )

    def _resume(self, engine: TranscriptionEngineProtocol):
        if not (self._is_active() and self.enabled):
            return
        if self.starting or engine is not self._engine:
            return
        try:
            engine.start()
            self.starting = True
        except Exception as e:
            logger.error(f"❌ Quick restart failed: {e}")
