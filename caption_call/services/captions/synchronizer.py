"""
Caption Synchronizer - bridges the transcription engine, the peer link and
the reconciler.

Local (sender) side, per engine result event:
    finalPart   = all final segments concatenated
    partialPart = all partial segments concatenated
    own caption ← finalPart + partialPart
    outbound:
        finalPart present → Subtitle(finalPart, isFinal=True)
        partial only      → Subtitle(lastFinal + partialPart, isFinal=False)

Partials are always re-based on the last final checkpoint so the receiver's
anti-regression rule can tell normal growth from stale echoes.

Remote (receiver) side:
    Subtitle message → CaptionFragment → reconciler.ingest_remote
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

from caption_call.schemas.signal_messages import SubtitleMessage
from caption_call.services.captions.buffer import CaptionFragment
from caption_call.services.captions.reconciler import CaptionReconciler
from caption_call.services.protocols import TranscriptSegment

logger = logging.getLogger(__name__)

SendCallback = Callable[[SubtitleMessage], Awaitable[bool]]


class CaptionSynchronizer:
    """Feeds captions in both directions."""

    def __init__(
        self,
        reconciler: CaptionReconciler,
        send: SendCallback,
        language: Callable[[], str],
    ):
        self.reconciler = reconciler
        self._send = send
        self._language = language

    async def handle_result(self, segments: Iterable[TranscriptSegment]) -> Optional[SubtitleMessage]:
        """
        Process one transcription result event.

        Returns:
            The subtitle message sent to the peer, if any.
        """
        final_part = ""
        partial_part = ""
        for segment in segments:
            if segment.is_final:
                final_part += segment.transcript
            else:
                partial_part += segment.transcript

        full = final_part + partial_part
        if not full.strip():
            return None

        self.reconciler.ingest_local(full)

        buffer = self.reconciler.mine
        message: Optional[SubtitleMessage] = None
        if final_part.strip():
            buffer.last_final_text = final_part
            buffer.pending_partial_text = partial_part
            message = SubtitleMessage(text=final_part, language=self._language(), is_final=True)
        elif partial_part.strip():
            message = SubtitleMessage(
                text=buffer.last_final_text + partial_part,
                language=self._language(),
                is_final=False,
            )

        if message is not None:
            kind = "final" if message.is_final else "partial"
            if await self._send(message):
                logger.debug(f"📤 Sent {kind} subtitle: '{message.text[:50]}'")
            else:
                logger.debug(f"Signal channel not open, {kind} subtitle not sent")
        return message

    def handle_remote(self, message: SubtitleMessage) -> Optional[asyncio.Task]:
        """Reconcile a subtitle received from the peer."""
        logger.debug(
            f"📨 Remote subtitle ({message.language}, final={message.is_final}): '{message.text[:50]}'"
        )
        fragment = CaptionFragment(
            text=message.text,
            language=message.language,
            is_final=message.is_final,
        )
        return self.reconciler.ingest_remote(fragment)

