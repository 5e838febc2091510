"""
GCP Speech Service

Continuous speech recognition on Google Cloud Speech-to-Text streaming,
presented through the transcription engine event interface
(start / result / error / end).

The blocking gRPC stream runs in a worker thread; events are marshalled back
onto the event loop. Results are cumulative for the lifetime of one
``start()``: every result event carries all finals recognized so far plus the
current interim hypothesis, which is what the caption pipeline expects.
"start" is reported with the first response, so a stream that fails before
the service answers yields only "error" and "end".
"""

import asyncio
import logging
from queue import Empty, Queue
from typing import Generator, List, Optional

from google.api_core import exceptions as gcp_exceptions
from google.auth.exceptions import DefaultCredentialsError
from google.cloud import speech

from caption_call.config.constants import ABORTED_ERROR_CODE
from caption_call.services.core.events import EventEmitter
from caption_call.services.gcp.credentials import ensure_credentials
from caption_call.services.protocols import TranscriptSegment

logger = logging.getLogger(__name__)

SAMPLE_RATE_HZ = 16000


def _error_code(exc: Exception) -> str:
    """Map a gRPC failure to a recognizer error code."""
    if isinstance(exc, (gcp_exceptions.Cancelled, gcp_exceptions.Aborted)):
        return ABORTED_ERROR_CODE
    if isinstance(exc, (gcp_exceptions.DeadlineExceeded, gcp_exceptions.OutOfRange)):
        return "no-speech"
    if isinstance(exc, (gcp_exceptions.PermissionDenied, gcp_exceptions.Unauthenticated)):
        return "not-allowed"
    if isinstance(exc, gcp_exceptions.ServiceUnavailable):
        return "network"
    return "unknown"


class GCPStreamingRecognizer:
    """Speech-to-Text streaming recognizer with engine-style events."""

    def __init__(self, language: str, client: Optional[speech.SpeechClient] = None):
        self.language = language
        self.continuous = True
        self.interim_results = True
        self.max_alternatives = 1
        self._client = client
        self._events = EventEmitter()
        self._audio: "Queue[Optional[bytes]]" = Queue()
        self._running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._finals: List[str] = []

    def on(self, event: str, handler):
        self._events.on(event, handler)

    @property
    def running(self) -> bool:
        return self._running

    def push_audio(self, chunk: bytes):
        """Feed raw PCM16 mono audio at 16 kHz."""
        if self._running:
            self._audio.put_nowait(chunk)

    def start(self):
        if self._running:
            raise RuntimeError("recognition has already started")
        if self._client is None:
            ensure_credentials()
            self._client = speech.SpeechClient()
        self._loop = asyncio.get_running_loop()
        audio: "Queue[Optional[bytes]]" = Queue()
        self._audio = audio
        self._finals = []
        self._running = True
        self._loop.run_in_executor(None, self._run_stream, audio)

    def stop(self):
        if not self._running:
            return
        self._running = False
        # Unblock the request generator
        self._audio.put(None)

    # === Worker thread ===

    def _emit(self, event: str, *args):
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._events.emit, event, *args)

    def _requests(self, audio: Queue) -> Generator[speech.StreamingRecognizeRequest, None, None]:
        while self._running:
            try:
                chunk = audio.get(timeout=0.1)
            except Empty:
                continue
            if chunk is None:
                return
            yield speech.StreamingRecognizeRequest(audio_content=chunk)

    def _run_stream(self, audio: Queue):
        config = speech.StreamingRecognitionConfig(
            config=speech.RecognitionConfig(
                encoding=speech.RecognitionConfig.AudioEncoding.LINEAR16,
                sample_rate_hertz=SAMPLE_RATE_HZ,
                language_code=self.language,
                max_alternatives=self.max_alternatives,
                enable_automatic_punctuation=True,
            ),
            interim_results=self.interim_results,
            single_utterance=not self.continuous,
        )

        established = False
        try:
            responses = self._client.streaming_recognize(config=config, requests=self._requests(audio))
            for response in responses:
                if not self._running:
                    break
                if not established:
                    # The stream counts as started once the service answers
                    established = True
                    self._emit("start")
                segments = self._collect(response)
                if segments:
                    self._emit("result", segments)
        except Exception as e:
            code = _error_code(e)
            if code == ABORTED_ERROR_CODE:
                logger.debug(f"Streaming recognition aborted: {e}")
            else:
                logger.error(f"Streaming recognition failed: {e}")
            self._emit("error", code)
        finally:
            self._running = False
            self._emit("end")

    def _collect(self, response) -> List[TranscriptSegment]:
        interim: List[TranscriptSegment] = []
        for result in response.results:
            if not result.alternatives:
                continue
            transcript = result.alternatives[0].transcript
            if result.is_final:
                self._finals.append(transcript)
            else:
                interim.append(TranscriptSegment(transcript=transcript, is_final=False))
        finals = [TranscriptSegment(transcript=t, is_final=True) for t in self._finals]
        return finals + interim


def create_speech_engine(language: str) -> Optional[GCPStreamingRecognizer]:
    """
    Engine factory for the transcription controller.

    Returns None when Google credentials are missing, which the controller
    treats as "no transcription capability on this host".
    """
    try:
        ensure_credentials()
        client = speech.SpeechClient()
    except DefaultCredentialsError as e:
        logger.error(f"Speech recognition unavailable: {e}")
        return None
    return GCPStreamingRecognizer(language, client=client)
