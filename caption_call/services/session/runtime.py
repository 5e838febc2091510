"""
Call Session Runtime - one process, one local participant.

Wires the signaling state machine, caption reconciler, synchronizer,
transcription controller and translator around a shared TimerRegistry, and
keeps the UI-facing view (display strings, transient status, ringing caller)
that the API and the WebSocket feed read from.

Usage:
    runtime = CallSessionRuntime(create_redis_transport, create_speech_engine)
    await runtime.start()
    await runtime.machine.call_user("xYz12Ab")
    ...
    await runtime.shutdown()
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Set

from caption_call.config.constants import (
    STATUS_DISPLAY_SEC,
    SUPPORTED_LANGUAGES,
    TRANSCRIPTION_START_DELAY_SEC,
)
from caption_call.config.settings import settings
from caption_call.schemas.session import CaptionDisplay, SessionSnapshot
from caption_call.services.captions import CaptionReconciler, CaptionSynchronizer, Direction
from caption_call.services.core.timers import TimerRegistry
from caption_call.services.protocols import EngineFactory, TranslationBackendProtocol
from caption_call.services.signaling import (
    CallSignalingMachine,
    CallState,
    CallStatus,
    Session,
    generate_peer_id,
)
from caption_call.services.signaling.machine import TransportFactory
from caption_call.services.transcription import TranscriptionLifecycleController
from caption_call.services.translation import CaptionTranslator

logger = logging.getLogger(__name__)

TRANSCRIPTION_START_TIMER_KEY = "transcription:start"
STATUS_TIMER_KEY = "status:clear"

FEED_QUEUE_SIZE = 256


class CallSessionRuntime:
    """Owns every per-process component and the UI view of the session."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        engine_factory: EngineFactory,
        translation_backend: Optional[TranslationBackendProtocol] = None,
        language: Optional[str] = None,
        captions_enabled: Optional[bool] = None,
        identity_factory: Callable[[Optional[str]], str] = generate_peer_id,
        clock: Callable[[], float] = time.monotonic,
        probe_channels: bool = False,
        transcription_start_delay: float = TRANSCRIPTION_START_DELAY_SEC,
        status_display: float = STATUS_DISPLAY_SEC,
    ):
        self.language = (language or settings.DEFAULT_LANGUAGE).strip().lower()
        enabled = settings.CAPTIONS_ENABLED if captions_enabled is None else captions_enabled
        self.transcription_start_delay = transcription_start_delay
        self.status_display = status_display

        self.timers = TimerRegistry()
        self.translator = CaptionTranslator(translation_backend)
        self.machine = CallSignalingMachine(
            transport_factory,
            self.timers,
            identity_factory=identity_factory,
            clock=clock,
            probe_channels=probe_channels,
        )
        self.reconciler = CaptionReconciler(
            self.timers,
            self.translator,
            target_language=lambda: self.language,
            on_display=self._on_display,
            on_silence=self._on_local_silence,
            clock=clock,
        )
        self.synchronizer = CaptionSynchronizer(
            self.reconciler,
            send=self.machine.send,
            language=lambda: self.language,
        )
        self.transcription = TranscriptionLifecycleController(
            engine_factory,
            on_result=self.synchronizer.handle_result,
            is_active=self._is_connected,
            language=lambda: self.language,
            timers=self.timers,
            on_disabled=self._on_captions_latched,
            enabled=enabled,
        )

        self.captions: Dict[str, str] = {Direction.MINE.value: "", Direction.REMOTE.value: ""}
        self.status: Optional[str] = None
        self.incoming_from: Optional[str] = None
        self._subscribers: Set[asyncio.Queue] = set()

        self.machine.on("state", self._on_state)
        self.machine.on("incoming", self._on_incoming)
        self.machine.on("incoming_withdrawn", self._on_incoming_withdrawn)
        self.machine.on("connected", self._on_connected)
        self.machine.on("ended", self._on_ended)
        self.machine.on("status", self._on_status)
        self.machine.on("subtitle", self.synchronizer.handle_remote)

    # === Lifecycle ===

    async def start(self):
        await self.machine.start()
        logger.info(f"🚀 Session runtime ready as {self.machine.local_id} ({self.language})")

    async def shutdown(self):
        logger.info("🛑 Shutting down session runtime...")
        self.transcription.stop()
        await self.machine.shutdown()
        self.timers.cancel_all()

    # === Commands ===

    def set_language(self, language: str) -> str:
        """Change the session language; restarts transcription when connected."""
        code = (language or "").strip().lower()
        if not code:
            raise ValueError("Language code is empty")
        if code not in SUPPORTED_LANGUAGES:
            logger.warning(f"Language '{code}' has no engine locale, using the fallback")
        if code == self.language:
            return code

        self.language = code
        logger.info(f"🌐 Language set to {code}")
        if self._is_connected():
            self.transcription.restart()
        self._publish({"type": "language", "language": code})
        return code

    def enable_captions(self):
        self.transcription.enable()
        self._publish({"type": "captions", "enabled": True})

    def disable_captions(self):
        self.transcription.disable()
        self._publish({"type": "captions", "enabled": False})

    def push_audio(self, chunk: bytes) -> bool:
        """Forward captured audio to the running engine, if it accepts audio."""
        engine = self.transcription.engine
        push = getattr(engine, "push_audio", None)
        if push is None:
            return False
        push(chunk)
        return True

    # === View ===

    def snapshot(self) -> SessionSnapshot:
        session = self.machine.session
        return SessionSnapshot(
            local_id=session.local_identity if session else "",
            remote_id=session.remote_identity if session else None,
            state=self.machine.state.value,
            language=self.language,
            captions_enabled=self.transcription.enabled,
            captions=CaptionDisplay(**self.captions),
            status=self.status,
            incoming_from=self.incoming_from,
        )

    def subscribe(self) -> asyncio.Queue:
        """Register a feed consumer; every UI event is put on the returned queue."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=FEED_QUEUE_SIZE)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        self._subscribers.discard(queue)

    def _publish(self, event: Dict[str, Any]):
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Caption feed consumer is behind, dropping event")

    # === Component callbacks ===

    def _is_connected(self) -> bool:
        return self.machine.state == CallState.CONNECTED

    def _on_display(self, direction: Direction, text: str):
        self.captions[direction.value] = text
        self._publish({"type": "caption", "direction": direction.value, "text": text})

    def _on_local_silence(self):
        self.transcription.restart()

    def _on_captions_latched(self):
        logger.warning("Captions disabled after repeated engine aborts; re-enable to resume")
        self._publish({"type": "captions", "enabled": False})

    def _on_state(self, session: Session):
        self._publish({
            "type": "state",
            "state": session.state.value,
            "local_id": session.local_identity,
            "remote_id": session.remote_identity,
        })

    def _on_incoming(self, peer: str):
        self.incoming_from = peer
        self._publish({"type": "incoming", "peer": peer})

    def _on_incoming_withdrawn(self, peer: str):
        if self.incoming_from == peer:
            self.incoming_from = None
        self._publish({"type": "incoming_withdrawn", "peer": peer})

    def _on_connected(self, session: Session):
        self.incoming_from = None
        self.reconciler.reset()
        self.timers.schedule(
            TRANSCRIPTION_START_TIMER_KEY,
            self.transcription_start_delay,
            self._start_transcription,
        )

    def _start_transcription(self):
        if self._is_connected():
            self.transcription.start()

    def _on_ended(self, session: Session):
        self.timers.cancel(TRANSCRIPTION_START_TIMER_KEY)
        self.transcription.stop()
        self.reconciler.reset()
        self.incoming_from = None

    def _on_status(self, status: CallStatus):
        self.status = status.value
        self.incoming_from = None
        self._publish({"type": "status", "status": status.value})
        self.timers.schedule(STATUS_TIMER_KEY, self.status_display, self._clear_status)

    def _clear_status(self):
        self.status = None
        self._publish({"type": "status", "status": None})
