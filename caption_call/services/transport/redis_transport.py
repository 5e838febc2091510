"""
Redis Call Transport - peer call/connection primitive over Redis Pub/Sub.

Every peer identity listens on one channel, ``{prefix}:{identity}``. All
traffic addressed to a peer (call offers, answers, closes and signal channel
frames) is a JSON envelope on that channel, so everything a peer receives
arrives in the order it was published.

Envelope kinds:
    call / answer / hangup         media call lifecycle (keyed by call_id)
    connect / accept / data / bye  signal channel lifecycle (keyed by conn_id)

Media itself never crosses Redis; an answer only states whether the answering
side attached a non-empty stream. Answering with an empty stream therefore
produces no ``stream`` event at the caller. A call offer that reaches no
subscriber fails with "peer-unavailable".
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional

import redis.asyncio as redis

from caption_call.config.settings import settings
from caption_call.services.core.events import EventEmitter
from caption_call.services.protocols import MediaStream

logger = logging.getLogger(__name__)


class RedisCallHandle:
    """One media call with a remote peer."""

    def __init__(
        self,
        transport: "RedisCallTransport",
        call_id: str,
        peer: str,
        outbound: bool,
        offered: Optional[MediaStream] = None,
    ):
        self._transport = transport
        self.offered = offered
        self._events = EventEmitter()
        self.call_id = call_id
        self.peer = peer
        self.outbound = outbound
        self.closed = False
        self.remote_stream: Optional[MediaStream] = None

    def on(self, event: str, handler):
        self._events.on(event, handler)

    async def answer(self, stream: MediaStream):
        if self.outbound or self.closed:
            return
        await self._transport._publish(self.peer, {
            "kind": "answer",
            "call_id": self.call_id,
            "tracks": list(stream.tracks),
        })
        if not stream.is_empty and self.offered is not None:
            self._remote_stream_arrived(self.offered)

    async def close(self):
        if self.closed:
            return
        await self._transport._publish(self.peer, {"kind": "hangup", "call_id": self.call_id})
        self._closed()

    def _remote_stream_arrived(self, stream: MediaStream):
        if self.closed or stream.is_empty:
            return
        self.remote_stream = stream
        self._events.emit("stream", stream)

    def _failed(self, code: str):
        if self.closed:
            return
        self._events.emit("error", code)
        self._closed()

    def _closed(self):
        if self.closed:
            return
        self.closed = True
        self._transport._calls.pop(self.call_id, None)
        self._events.emit("close")


class RedisSignalChannel:
    """Ordered JSON message channel with a remote peer."""

    def __init__(self, transport: "RedisCallTransport", conn_id: str, peer: str):
        self._transport = transport
        self._events = EventEmitter()
        self.conn_id = conn_id
        self.peer = peer
        self.open = False
        self.closed = False

    def on(self, event: str, handler):
        self._events.on(event, handler)

    async def send(self, message: dict):
        if not self.open:
            raise ConnectionError(f"channel {self.conn_id} to {self.peer} is not open")
        await self._transport._publish(self.peer, {
            "kind": "data",
            "conn_id": self.conn_id,
            "payload": message,
        })

    async def close(self):
        if self.closed:
            return
        await self._transport._publish(self.peer, {"kind": "bye", "conn_id": self.conn_id})
        self._closed()

    def _opened(self):
        if self.open or self.closed:
            return
        self.open = True
        self._events.emit("open")

    def _closed(self):
        if self.closed:
            return
        self.closed = True
        self.open = False
        self._transport._channels.pop(self.conn_id, None)
        self._events.emit("close")


class RedisCallTransport:
    """
    Peer endpoint for one local identity.

    Usage:
        transport = RedisCallTransport(get_signal_redis(), "abc1234")
        await transport.start()
        transport.on("call", handle_incoming_call)
        call = await transport.call("xyz9876", local_stream)
    """

    def __init__(self, client: redis.Redis, local_id: str, prefix: Optional[str] = None):
        self._redis = client
        self.local_id = local_id
        self.prefix = prefix or settings.SIGNAL_CHANNEL_PREFIX
        self._events = EventEmitter()
        self._calls: Dict[str, RedisCallHandle] = {}
        self._channels: Dict[str, RedisSignalChannel] = {}
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None
        self.destroyed = False

    def on(self, event: str, handler):
        self._events.on(event, handler)

    def channel_name(self, peer_id: str) -> str:
        return f"{self.prefix}:{peer_id}"

    async def start(self):
        """Subscribe to this identity's channel and start dispatching."""
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self.channel_name(self.local_id))
        self._listener = asyncio.create_task(self._listen())
        logger.info(f"✅ Peer {self.local_id} listening on {self.channel_name(self.local_id)}")

    # === Outbound API ===

    async def call(self, remote_id: str, stream: MediaStream) -> RedisCallHandle:
        handle = RedisCallHandle(self, uuid.uuid4().hex, remote_id, outbound=True)
        self._calls[handle.call_id] = handle
        receivers = await self._publish(remote_id, {
            "kind": "call",
            "call_id": handle.call_id,
            "tracks": list(stream.tracks),
        })
        if not receivers:
            logger.info(f"Peer {remote_id} is not listening")
            # Fail after the caller has subscribed to the handle
            asyncio.get_running_loop().call_soon(handle._failed, "peer-unavailable")
        return handle

    async def connect(self, remote_id: str) -> RedisSignalChannel:
        channel = RedisSignalChannel(self, uuid.uuid4().hex, remote_id)
        self._channels[channel.conn_id] = channel
        await self._publish(remote_id, {"kind": "connect", "conn_id": channel.conn_id})
        return channel

    async def destroy(self):
        if self.destroyed:
            return
        self.destroyed = True
        for handle in list(self._calls.values()):
            await handle.close()
        for channel in list(self._channels.values()):
            await channel.close()
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel_name(self.local_id))
            await self._pubsub.aclose()
        self._events.remove_all_listeners()
        logger.info(f"🛑 Peer {self.local_id} destroyed")

    # === Internals ===

    async def _publish(self, peer_id: str, envelope: Dict[str, Any]) -> int:
        """Returns the number of subscribers that received the envelope."""
        envelope["from"] = self.local_id
        return await self._redis.publish(self.channel_name(peer_id), json.dumps(envelope))

    async def _listen(self):
        try:
            while True:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    await asyncio.sleep(0.01)
                    continue
                if message["type"] != "message":
                    continue
                try:
                    envelope = json.loads(message["data"])
                except (TypeError, ValueError) as e:
                    logger.warning(f"Peer {self.local_id} dropped undecodable envelope: {e}")
                    continue
                try:
                    await self._dispatch(envelope)
                except Exception as e:
                    logger.error(f"Error dispatching {envelope.get('kind')} envelope: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Peer {self.local_id} subscription error: {e}")

    async def _dispatch(self, envelope: Dict[str, Any]):
        kind = envelope.get("kind")
        sender = envelope.get("from", "")

        if kind == "call":
            handle = RedisCallHandle(
                self,
                envelope["call_id"],
                sender,
                outbound=False,
                offered=MediaStream(tracks=tuple(envelope.get("tracks", ()))),
            )
            self._calls[handle.call_id] = handle
            self._events.emit("call", handle)

        elif kind == "answer":
            handle = self._calls.get(envelope["call_id"])
            if handle is not None:
                handle._remote_stream_arrived(MediaStream(tracks=tuple(envelope.get("tracks", ()))))

        elif kind == "hangup":
            handle = self._calls.get(envelope["call_id"])
            if handle is not None:
                handle._closed()

        elif kind == "connect":
            channel = RedisSignalChannel(self, envelope["conn_id"], sender)
            self._channels[channel.conn_id] = channel
            await self._publish(sender, {"kind": "accept", "conn_id": channel.conn_id})
            self._events.emit("connection", channel)
            channel._opened()

        elif kind == "accept":
            channel = self._channels.get(envelope["conn_id"])
            if channel is not None:
                channel._opened()

        elif kind == "data":
            channel = self._channels.get(envelope["conn_id"])
            if channel is not None and channel.open:
                channel._events.emit("data", envelope.get("payload"))

        elif kind == "bye":
            channel = self._channels.get(envelope["conn_id"])
            if channel is not None:
                channel._closed()

        else:
            logger.warning(f"Peer {self.local_id} got unknown envelope kind: {kind}")


_client: Optional[redis.Redis] = None


def get_signal_redis() -> redis.Redis:
    """Shared client for every transport in the process, created on first use."""
    global _client
    if _client is None:
        _client = redis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            password=settings.REDIS_PASSWORD,
            # Envelopes are JSON text
            decode_responses=True,
            # Subscriber connections sit idle between calls
            health_check_interval=30,
        )
    return _client


async def close_signal_redis():
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


async def create_redis_transport(local_id: str, client: Optional[redis.Redis] = None) -> RedisCallTransport:
    """Transport factory used by the session runtime."""
    transport = RedisCallTransport(client or get_signal_redis(), local_id)
    await transport.start()
    return transport
