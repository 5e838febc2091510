"""
Protocol definitions for the external collaborators.

This module defines interfaces (Python Protocols) that allow:
- Swapping implementations (e.g., Redis transport → in-process fake)
- Testing without real API credentials
- Clear contracts between components

Usage:
    from caption_call.services.protocols import CallTransportProtocol

    async def dial(transport: CallTransportProtocol, peer_id: str):
        call = await transport.call(peer_id, LOCAL_STREAM)
        call.on("stream", lambda stream: ...)
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Tuple


@dataclass(frozen=True)
class MediaStream:
    """
    Opaque handle for a local or remote media stream.

    Capture and rendering live outside this service; the signaling core only
    needs to know whether a stream carries any tracks.
    """
    tracks: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.tracks


EMPTY_STREAM = MediaStream()
LOCAL_AV_STREAM = MediaStream(tracks=("audio", "video"))


@dataclass(frozen=True)
class TranscriptSegment:
    """One result segment from the transcription engine."""
    transcript: str
    is_final: bool


class CallHandleProtocol(Protocol):
    """
    A media call with one remote peer.

    Events:
        stream(MediaStream): remote media arrived
        error(code): the call failed, e.g. "peer-unavailable"
        close(): the call closed (either side)
    """

    peer: str

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        ...

    async def answer(self, stream: MediaStream) -> None:
        """Answer an inbound call with a local stream (empty to decline)."""
        ...

    async def close(self) -> None:
        ...


class SignalChannelProtocol(Protocol):
    """
    Reliable, ordered message channel with one remote peer.

    Events:
        open(): channel is ready for send()
        data(payload): one decoded JSON object arrived
        close(): channel closed (either side)
    """

    peer: str
    open: bool

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        ...

    async def send(self, message: dict) -> None:
        ...

    async def close(self) -> None:
        ...


class CallTransportProtocol(Protocol):
    """
    Peer endpoint bound to one local identity.

    Events:
        call(CallHandleProtocol): inbound media call
        connection(SignalChannelProtocol): inbound signal channel
    """

    local_id: str

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        ...

    async def call(self, remote_id: str, stream: MediaStream) -> CallHandleProtocol:
        ...

    async def connect(self, remote_id: str) -> SignalChannelProtocol:
        ...

    async def destroy(self) -> None:
        """Close every call and channel and release the identity."""
        ...


class TranscriptionEngineProtocol(Protocol):
    """
    Continuous speech recognizer.

    Events:
        start(): recognition is running
        result(list[TranscriptSegment]): cumulative segments for the instance
        error(code: str): e.g. "aborted", "network", "no-speech"
        end(): the instance stopped; it may be started again
    """

    language: str
    continuous: bool
    interim_results: bool
    max_alternatives: int

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        ...

    def start(self) -> None:
        """Begin recognition. Raises if the instance is already running."""
        ...

    def stop(self) -> None:
        ...


class TranslationBackendProtocol(Protocol):
    """
    Interface for translation services (blocking call).
    """

    def translate(self, text: str, source: str, target: str) -> str:
        """
        Translate text from source to target language.

        Args:
            text: Text to translate
            source: Source language code (e.g., "tr", "en")
            target: Target language code

        Returns:
            Translated text

        Raises:
            Exception: on any failure, including an empty response
        """
        ...


# Factory used by the transcription controller; returns None when the host
# has no transcription capability.
EngineFactory = Callable[[str], Optional[TranscriptionEngineProtocol]]
