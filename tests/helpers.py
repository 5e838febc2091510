import asyncio
import itertools
import time
from typing import Callable, Dict, List, Optional

from caption_call.services.core.events import EventEmitter
from caption_call.services.protocols import MediaStream, TranscriptSegment


async def settle(rounds: int = 10):
    # Let spawned handlers and background tasks run
    for _ in range(rounds):
        await asyncio.sleep(0)


async def eventually(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def segments(*parts) -> List[TranscriptSegment]:
    """segments(("I am", True), (" going", False))"""
    return [TranscriptSegment(transcript=text, is_final=final) for text, final in parts]


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def sequential_ids(prefix: str = "peer") -> Callable[[Optional[str]], str]:
    counter = itertools.count(1)

    def _next(previous: Optional[str] = None) -> str:
        return f"{prefix}{next(counter):03d}"

    return _next


class FakeCallHandle:
    def __init__(self, peer: str, offered: Optional[MediaStream] = None):
        self.peer = peer
        self.offered = offered
        self._events = EventEmitter()
        self.answered_with: Optional[MediaStream] = None
        self.closed = False
        self.close_calls = 0

    def on(self, event, handler):
        self._events.on(event, handler)

    async def answer(self, stream: MediaStream):
        self.answered_with = stream

    async def close(self):
        self.close_calls += 1
        if self.closed:
            return
        self.closed = True
        self._events.emit("close")

    # Remote side

    def remote_stream(self, stream: MediaStream = MediaStream(tracks=("audio", "video"))):
        self._events.emit("stream", stream)

    def remote_close(self):
        if self.closed:
            return
        self.closed = True
        self._events.emit("close")

    def remote_unavailable(self):
        self._events.emit("error", "peer-unavailable")
        self.remote_close()


class FakeChannel:
    def __init__(self, peer: str):
        self.peer = peer
        self.open = False
        self.closed = False
        self.sent: List[dict] = []
        self._events = EventEmitter()

    def on(self, event, handler):
        self._events.on(event, handler)

    async def send(self, message: dict):
        if not self.open:
            raise ConnectionError("channel not open")
        self.sent.append(message)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.open = False
        self._events.emit("close")

    # Remote side

    def remote_open(self):
        self.open = True
        self._events.emit("open")

    def receive(self, payload):
        self._events.emit("data", payload)

    def remote_close(self):
        if self.closed:
            return
        self.closed = True
        self.open = False
        self._events.emit("close")


class FakeTransport:
    def __init__(self, local_id: str, auto_open: bool = True):
        self.local_id = local_id
        self.auto_open = auto_open
        self._events = EventEmitter()
        self.calls: List[FakeCallHandle] = []
        self.channels: List[FakeChannel] = []
        self.destroyed = False

    def on(self, event, handler):
        self._events.on(event, handler)

    async def call(self, remote_id: str, stream: MediaStream) -> FakeCallHandle:
        handle = FakeCallHandle(remote_id)
        handle.offered = stream
        self.calls.append(handle)
        return handle

    async def connect(self, remote_id: str) -> FakeChannel:
        channel = FakeChannel(remote_id)
        if self.auto_open:
            channel.open = True
        self.channels.append(channel)
        return channel

    async def destroy(self):
        self.destroyed = True

    def channels_to(self, peer: str) -> List[FakeChannel]:
        return [channel for channel in self.channels if channel.peer == peer]

    # Remote side

    def incoming_call(self, peer: str) -> FakeCallHandle:
        handle = FakeCallHandle(peer, offered=MediaStream(tracks=("audio", "video")))
        self._events.emit("call", handle)
        return handle

    def incoming_connection(self, peer: str, open: bool = True) -> FakeChannel:
        channel = FakeChannel(peer)
        self._events.emit("connection", channel)
        if open:
            channel.remote_open()
        return channel


class FakeTransportFactory:
    def __init__(self, auto_open: bool = True):
        self.auto_open = auto_open
        self.created: List[FakeTransport] = []

    async def __call__(self, local_id: str) -> FakeTransport:
        transport = FakeTransport(local_id, auto_open=self.auto_open)
        self.created.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.created[-1]


class FakeEngine:
    def __init__(self, language: str):
        self.language = language
        self.continuous = False
        self.interim_results = False
        self.max_alternatives = 0
        self._events = EventEmitter()
        self.running = False
        self.start_calls = 0
        self.stop_calls = 0
        self.audio: List[bytes] = []

    def on(self, event, handler):
        self._events.on(event, handler)

    def start(self):
        if self.running:
            raise RuntimeError("recognition has already started")
        self.running = True
        self.start_calls += 1

    def stop(self):
        self.stop_calls += 1
        self.running = False

    def push_audio(self, chunk: bytes):
        self.audio.append(chunk)

    # Engine side

    def fire_start(self):
        self._events.emit("start")

    def fire_result(self, result: List[TranscriptSegment]):
        self._events.emit("result", result)

    def fire_error(self, code: str):
        self._events.emit("error", code)

    def fire_end(self):
        self.running = False
        self._events.emit("end")


class FakeEngineFactory:
    def __init__(self, supported: bool = True):
        self.supported = supported
        self.engines: List[FakeEngine] = []

    def __call__(self, locale: str) -> Optional[FakeEngine]:
        if not self.supported:
            return None
        engine = FakeEngine(locale)
        self.engines.append(engine)
        return engine

    @property
    def latest(self) -> FakeEngine:
        return self.engines[-1]


class FakeTranslationBackend:
    """Prefixes text with the target language; optional per-text delays."""

    def __init__(
        self,
        delays: Optional[Dict[str, float]] = None,
        error: Optional[Exception] = None,
        result: Optional[str] = None,
    ):
        self.delays = delays or {}
        self.error = error
        self.result = result
        self.requests: List[tuple] = []

    def translate(self, text, source, target):
        self.requests.append((text, source, target))
        delay = self.delays.get(text)
        if delay:
            time.sleep(delay)
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result
        return f"[{target}] {text}"
