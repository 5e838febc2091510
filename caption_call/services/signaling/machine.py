"""
Call Signaling State Machine

    Idle ──call_user──▶ Calling ──stream──▶ Connected ──end──▶ Ended ─▶ Idle
      │                    │                                 (new identity)
      │                    ├─close < 500 ms / CallRejected──▶ Idle  ("rejected")
      │                    ├─close ≥ 500 ms──────────────────▶ Idle  (unanswered)
      │                    ├─peer unavailable────────────────▶ Idle
      │                    └─cancel──────────────────────────▶ Idle
      └─incoming call──▶ RingingIncoming ──accept──▶ Connected
                           ├─reject───────────────▶ Idle
                           └─CallCancelled / close▶ Idle  (notification withdrawn)

The media call only reports "stream arrived", "closed" or, for a peer that
is not online, an error. A callee rejects by answering with an empty stream
and closing ~100 ms later, which the caller detects as a close within 500 ms
of dialing. A call nobody answers is closed by the caller after
UNANSWERED_CALL_TIMEOUT_SEC. The callee also sends an explicit CallRejected
over a short-lived signal connection; the caller reacts to whichever arrives
first and ignores the other.

Events (subscribe with ``on``):
    state(Session)                  after every transition
    incoming(peer_id)               an inbound call is ringing
    incoming_withdrawn(peer_id)     the ringing call went away
    connected(Session)
    ended(Session)                  before the identity is rotated
    status(CallStatus)              transient notice, e.g. rejected
    subtitle(SubtitleMessage)       caption from the connected peer
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Set

from caption_call.config.constants import (
    BEST_EFFORT_SEND_TIMEOUT_SEC,
    REJECT_CLOSE_DELAY_SEC,
    REJECT_DETECTION_THRESHOLD_SEC,
    UNANSWERED_CALL_TIMEOUT_SEC,
)
from caption_call.schemas.signal_messages import (
    CallCancelledMessage,
    CallRejectedMessage,
    SignalMessageBase,
    SubtitleMessage,
)
from caption_call.services.core.events import EventEmitter, spawn
from caption_call.services.core.timers import TimerRegistry
from caption_call.services.metrics import call_outcomes
from caption_call.services.protocols import (
    EMPTY_STREAM,
    LOCAL_AV_STREAM,
    CallHandleProtocol,
    CallTransportProtocol,
    MediaStream,
    SignalChannelProtocol,
)
from caption_call.services.signaling.exceptions import (
    AlreadyInCallError,
    CallNotFoundError,
    InvalidTargetError,
    SignalingError,
)
from caption_call.services.signaling.identity import generate_peer_id
from caption_call.services.signaling.models import CallState, CallStatus, Session
from caption_call.services.transport.adapter import SignalChannelAdapter

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str], Awaitable[CallTransportProtocol]]

REJECT_CLOSE_TIMER_KEY = "signaling:reject-close"
UNANSWERED_TIMER_KEY = "signaling:unanswered"


class CallSignalingMachine:
    """Owns the Session and resolves call lifecycle races."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        timers: TimerRegistry,
        identity_factory: Callable[[Optional[str]], str] = generate_peer_id,
        clock: Callable[[], float] = time.monotonic,
        local_stream: MediaStream = LOCAL_AV_STREAM,
        reject_threshold: float = REJECT_DETECTION_THRESHOLD_SEC,
        reject_close_delay: float = REJECT_CLOSE_DELAY_SEC,
        unanswered_timeout: float = UNANSWERED_CALL_TIMEOUT_SEC,
        probe_channels: bool = False,
    ):
        self._transport_factory = transport_factory
        self.timers = timers
        self._identity_factory = identity_factory
        self._clock = clock
        self.local_stream = local_stream
        self.reject_threshold = reject_threshold
        self.reject_close_delay = reject_close_delay
        self.unanswered_timeout = unanswered_timeout
        self.probe_channels = probe_channels

        self._events = EventEmitter()
        self.session: Optional[Session] = None
        self.transport: Optional[CallTransportProtocol] = None
        self._call: Optional[CallHandleProtocol] = None
        self._channel: Optional[SignalChannelAdapter] = None
        # Latest inbound channel per peer that is not (yet) the session channel
        self._inbound: Dict[str, SignalChannelAdapter] = {}
        self._adapters: Set[SignalChannelAdapter] = set()

    def on(self, event: str, handler):
        self._events.on(event, handler)

    @property
    def state(self) -> CallState:
        return self.session.state if self.session else CallState.IDLE

    @property
    def local_id(self) -> Optional[str]:
        return self.session.local_identity if self.session else None

    @property
    def channel(self) -> Optional[SignalChannelAdapter]:
        return self._channel

    # === Lifecycle ===

    async def start(self):
        """Claim a local identity and start listening for calls."""
        identity = self._identity_factory(None)
        self.session = Session(local_identity=identity)
        await self._bind_transport(identity)
        self._emit_state()

    async def shutdown(self):
        if self.state == CallState.CONNECTED:
            await self._hang_up()
        if self.transport is not None:
            await self.transport.destroy()
            self.transport = None

    async def _bind_transport(self, identity: str):
        transport = await self._transport_factory(identity)
        self.transport = transport
        transport.on("call", lambda call: self._on_incoming_call(transport, call))
        transport.on("connection", lambda channel: self._on_connection(transport, channel))
        logger.info(f"📇 Local identity: {identity}")

    # === Commands ===

    async def call_user(self, target_id: str):
        """Dial ``target_id``: open the media call and the signal channel."""
        target = (target_id or "").strip()
        if not target:
            raise InvalidTargetError("Target identity is empty")
        if target == self.local_id:
            raise InvalidTargetError("Cannot call yourself")
        if self.state != CallState.IDLE:
            raise AlreadyInCallError(f"Cannot call while {self.state.value}")
        if self.transport is None:
            await self._rebind_transport()
            if self.state != CallState.IDLE:
                raise AlreadyInCallError(f"Cannot call while {self.state.value}")

        session = self.session
        session.remote_identity = target
        session.state = CallState.CALLING
        session.started_at = self._clock()
        self._emit_state()
        logger.info(f"📞 Calling {target}")

        try:
            call = await self.transport.call(target, self.local_stream)
        except Exception as e:
            logger.error(f"Call to {target} failed: {e}")
            self._return_to_idle()
            raise SignalingError(f"Call to {target} failed") from e

        if self.state != CallState.CALLING:
            # Cancelled while dialing
            await self._close_quietly(call)
            return
        self._track_call(call)
        self.timers.schedule(
            UNANSWERED_TIMER_KEY,
            self.unanswered_timeout,
            lambda: self._close_unanswered(call),
        )

        try:
            channel = await self.transport.connect(target)
        except Exception as e:
            logger.warning(f"Signal channel to {target} failed, captions unavailable: {e}")
            return
        adapter = self._wrap(channel)
        if self.state not in (CallState.CALLING, CallState.CONNECTED):
            await adapter.close()
            return
        if self._channel is None:
            self._channel = adapter

    async def accept(self):
        """Answer the ringing call with the local stream."""
        if self.state != CallState.RINGING_INCOMING or self._call is None:
            raise CallNotFoundError("No incoming call to accept")
        call = self._call
        await call.answer(self.local_stream)
        if call is not self._call:
            return
        self._adopt_inbound_channel()
        self._connect()

    async def reject(self):
        """Decline the ringing call."""
        if self.state != CallState.RINGING_INCOMING or self._call is None:
            raise CallNotFoundError("No incoming call to reject")
        call = self._call
        peer = self.session.remote_identity
        self._call = None

        try:
            await call.answer(EMPTY_STREAM)
        except Exception as e:
            logger.warning(f"Answering {peer} with an empty stream failed: {e}")
        # Keyed per call so back-to-back rejects each get their close
        self.timers.schedule(f"{REJECT_CLOSE_TIMER_KEY}:{id(call)}", self.reject_close_delay, call.close)

        logger.info(f"🙅 Rejected call from {peer}")
        call_outcomes.labels(outcome="declined").inc()
        self._return_to_idle()
        spawn(self._notify_peer(peer, CallRejectedMessage()), name=f"notify:rejected:{peer}")

    async def cancel(self) -> bool:
        """Withdraw an unanswered outbound call."""
        if self.state != CallState.CALLING:
            logger.debug(f"Cancel ignored while {self.state.value}")
            return False
        call = self._call
        peer = self.session.remote_identity
        self._call = None

        sent = self._channel is not None and await self._channel.send(CallCancelledMessage())
        if not sent:
            spawn(self._notify_peer(peer, CallCancelledMessage()), name=f"notify:cancelled:{peer}")
        if call is not None:
            await self._close_quietly(call)

        logger.info(f"↩️ Cancelled call to {peer}")
        call_outcomes.labels(outcome="cancelled").inc()
        self._return_to_idle()
        return True

    async def end(self) -> bool:
        """Hang up a connected call and rotate the local identity."""
        if self.state != CallState.CONNECTED:
            logger.debug(f"End ignored while {self.state.value}")
            return False
        await self._hang_up()
        return True

    async def send(self, message: SignalMessageBase) -> bool:
        """Send over the session's signal channel, if it is open."""
        if self._channel is None:
            return False
        return await self._channel.send(message)

    # === Transitions ===

    def _connect(self):
        self.timers.cancel(UNANSWERED_TIMER_KEY)
        session = self.session
        session.state = CallState.CONNECTED
        session.started_at = self._clock()
        logger.info(f"✅ Connected with {session.remote_identity}")
        call_outcomes.labels(outcome="connected").inc()
        self._emit_state()
        self._events.emit("connected", session)

    def _return_to_idle(self) -> bool:
        """Back to Idle under the same identity. No-op when already Idle."""
        if self.state == CallState.IDLE:
            return False
        self.timers.cancel(UNANSWERED_TIMER_KEY)
        self._call = None
        channel, self._channel = self._channel, None
        if channel is not None:
            spawn(channel.close(), name=f"close:{channel.peer}")
        self.session.reset()
        self._emit_state()
        return True

    async def _hang_up(self):
        if self.state != CallState.CONNECTED:
            return
        session = self.session
        call, self._call = self._call, None
        channel, self._channel = self._channel, None
        session.state = CallState.ENDED
        self._emit_state()
        logger.info(f"📴 Call with {session.remote_identity} ended")
        call_outcomes.labels(outcome="ended").inc()

        if call is not None:
            await self._close_quietly(call)
        if channel is not None:
            await channel.close()
        self._events.emit("ended", session)

        # Fresh identity for the next session
        old_transport, self.transport = self.transport, None
        for adapter in list(self._adapters):
            await adapter.close()
        self._adapters.clear()
        self._inbound.clear()
        if old_transport is not None:
            try:
                await old_transport.destroy()
            except Exception as e:
                logger.warning(f"Destroying transport for {session.local_identity} failed: {e}")

        identity = self._identity_factory(session.local_identity)
        try:
            await self._bind_transport(identity)
        except Exception as e:
            # Idle without a transport; the next call_user retries the bind
            logger.error(f"Could not listen as {identity}: {e}")
        session.reset(local_identity=identity)
        self._emit_state()

    async def _rebind_transport(self):
        try:
            await self._bind_transport(self.local_id)
        except Exception as e:
            logger.error(f"Signaling transport for {self.local_id} unavailable: {e}")
            raise SignalingError("Signaling transport unavailable") from e

    def _emit_state(self):
        self._events.emit("state", self.session)

    # === Media call events ===

    def _track_call(self, call: CallHandleProtocol):
        self._call = call
        call.on("stream", lambda stream: self._on_call_stream(call, stream))
        call.on("close", lambda: self._on_call_close(call))
        call.on("error", lambda code: self._on_call_error(call, code))

    def _on_call_stream(self, call: CallHandleProtocol, stream: MediaStream):
        if call is not self._call:
            return
        if self.state == CallState.CALLING:
            self._connect()

    def _on_call_close(self, call: CallHandleProtocol):
        if call is not self._call:
            logger.debug("Close from a superseded call ignored")
            return None
        state = self.state

        if state == CallState.CALLING:
            elapsed = self._clock() - self.session.started_at
            if elapsed < self.reject_threshold:
                self._rejected_by_peer(f"closed after {elapsed * 1000:.0f} ms")
            else:
                logger.info(f"Call to {self.session.remote_identity} went unanswered")
                call_outcomes.labels(outcome="unanswered").inc()
                self._return_to_idle()
            return None

        if state == CallState.RINGING_INCOMING:
            self._withdraw_incoming()
            return None

        if state == CallState.CONNECTED:
            # Remote side hung up
            self._call = None
            return self._hang_up()
        return None

    def _on_call_error(self, call: CallHandleProtocol, code: str):
        if call is not self._call:
            return
        if self.state != CallState.CALLING:
            logger.warning(f"Call error from {call.peer} while {self.state.value}: {code}")
            return
        logger.info(f"Call to {call.peer} failed: {code}")
        call_outcomes.labels(outcome="unavailable").inc()
        self._return_to_idle()

    def _close_unanswered(self, call: CallHandleProtocol):
        if call is not self._call or self.state != CallState.CALLING:
            return None
        logger.info(f"⏰ No answer from {call.peer}, giving up")
        return self._close_quietly(call)

    def _rejected_by_peer(self, reason: str):
        logger.info(f"🚫 Call rejected by {self.session.remote_identity} ({reason})")
        call_outcomes.labels(outcome="rejected").inc()
        self._return_to_idle()
        self._events.emit("status", CallStatus.REJECTED)

    def _withdraw_incoming(self):
        peer = self.session.remote_identity
        logger.info(f"Incoming call from {peer} withdrawn")
        self._return_to_idle()
        self._events.emit("incoming_withdrawn", peer)

    def _on_incoming_call(self, transport: CallTransportProtocol, call: CallHandleProtocol):
        if transport is not self.transport:
            return None
        if self.state != CallState.IDLE:
            logger.info(f"Busy ({self.state.value}), declining call from {call.peer}")
            call_outcomes.labels(outcome="busy").inc()
            return self._close_quietly(call)

        session = self.session
        session.state = CallState.RINGING_INCOMING
        session.remote_identity = call.peer
        session.started_at = self._clock()
        self._track_call(call)
        self._adopt_inbound_channel()
        logger.info(f"🔔 Incoming call from {call.peer}")
        self._emit_state()
        self._events.emit("incoming", call.peer)
        return None

    # === Signal channel events ===

    def _wrap(self, channel: SignalChannelProtocol) -> SignalChannelAdapter:
        adapter = SignalChannelAdapter(
            channel,
            on_message=self._on_signal,
            on_close=self._on_channel_closed,
            probe_on_open=self.probe_channels,
        )
        self._adapters.add(adapter)
        return adapter

    def _on_connection(self, transport: CallTransportProtocol, channel: SignalChannelProtocol):
        if transport is not self.transport:
            return
        adapter = self._wrap(channel)
        session = self.session
        if (
            self._channel is None
            and channel.peer == session.remote_identity
            and self.state in (CallState.RINGING_INCOMING, CallState.CONNECTED)
        ):
            self._channel = adapter
        else:
            self._inbound[channel.peer] = adapter

    def _adopt_inbound_channel(self):
        peer = self.session.remote_identity
        if self._channel is None and peer in self._inbound:
            self._channel = self._inbound.pop(peer)

    def _on_channel_closed(self, adapter: SignalChannelAdapter):
        self._adapters.discard(adapter)
        if self._inbound.get(adapter.peer) is adapter:
            del self._inbound[adapter.peer]
        if adapter is self._channel:
            self._channel = None

    def _on_signal(self, message: SignalMessageBase, adapter: SignalChannelAdapter):
        session = self.session
        from_remote = adapter.peer == session.remote_identity

        if isinstance(message, SubtitleMessage):
            if self.state == CallState.CONNECTED and from_remote:
                self._events.emit("subtitle", message)
            else:
                logger.debug(f"Subtitle from {adapter.peer} ignored while {self.state.value}")
            return None

        if isinstance(message, CallRejectedMessage):
            if self.state == CallState.CALLING and from_remote:
                call = self._call
                self._call = None
                self._rejected_by_peer("explicit rejection")
                if call is not None:
                    return self._close_quietly(call)
            return None

        if isinstance(message, CallCancelledMessage):
            if self.state == CallState.RINGING_INCOMING and from_remote:
                self._withdraw_incoming()
            return None

        logger.debug(f"Unhandled signal message {message.type} from {adapter.peer}")
        return None

    # === Helpers ===

    async def _close_quietly(self, call: CallHandleProtocol):
        try:
            await call.close()
        except Exception as e:
            logger.debug(f"Call close raised (ignored): {e}")

    async def _notify_peer(self, peer: str, message: SignalMessageBase):
        """Best-effort delivery over a short-lived signal connection."""
        transport = self.transport
        if transport is None:
            return
        channel = None
        try:
            channel = await transport.connect(peer)
            opened = asyncio.Event()
            channel.on("open", opened.set)
            if not channel.open:
                await asyncio.wait_for(opened.wait(), timeout=BEST_EFFORT_SEND_TIMEOUT_SEC)
            await channel.send(message.to_wire())
            logger.debug(f"Sent {message.type} to {peer}")
        except Exception as e:
            logger.warning(f"Could not deliver {message.type} to {peer}: {e!r}")
        finally:
            if channel is not None:
                try:
                    await channel.close()
                except Exception as e:
                    logger.debug(f"Short-lived channel close raised (ignored): {e}")
