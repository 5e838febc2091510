"""
Signal Transport Adapter

Thin facade over a raw signal channel:
- decodes inbound JSON payloads into typed signal messages (malformed
  payloads are dropped with a warning)
- answers connection probes and measures probe round trips
- encodes outbound messages, dropping them while the channel is not open
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from pydantic import ValidationError

from caption_call.config.constants import CONNECTION_PROBE_TIMEOUT_SEC
from caption_call.schemas.signal_messages import (
    ConnectionProbeAckMessage,
    ConnectionProbeMessage,
    SignalMessageBase,
    parse_signal_message,
)
from caption_call.services.core.events import spawn
from caption_call.services.protocols import SignalChannelProtocol

logger = logging.getLogger(__name__)

MessageCallback = Callable[[SignalMessageBase, "SignalChannelAdapter"], Any]
ChannelCallback = Callable[["SignalChannelAdapter"], Any]


class SignalChannelAdapter:
    """Typed view of one signal channel."""

    def __init__(
        self,
        channel: SignalChannelProtocol,
        on_message: MessageCallback,
        on_close: Optional[ChannelCallback] = None,
        probe_on_open: bool = False,
        probe_timeout: float = CONNECTION_PROBE_TIMEOUT_SEC,
    ):
        self.channel = channel
        self._on_message = on_message
        self._on_close = on_close
        self.probe_on_open = probe_on_open
        self.probe_timeout = probe_timeout
        self.closed = False
        self._probe_waiter: Optional[asyncio.Future] = None

        channel.on("open", self._handle_open)
        channel.on("data", self._handle_data)
        channel.on("close", self._handle_close)

    @property
    def peer(self) -> str:
        return self.channel.peer

    @property
    def is_open(self) -> bool:
        return bool(self.channel.open) and not self.closed

    # === Outbound ===

    async def send(self, message: SignalMessageBase) -> bool:
        """Send a message. Returns False if the channel is not open or the send failed."""
        if not self.is_open:
            return False
        try:
            await self.channel.send(message.to_wire())
            return True
        except Exception as e:
            logger.warning(f"Failed to send {message.type} to {self.peer}: {e}")
            return False

    async def probe(self, timeout: Optional[float] = None) -> Optional[float]:
        """
        Send a connection probe and wait for the answer.

        Returns:
            Round-trip time in seconds, or None on timeout / closed channel.
        """
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._probe_waiter = waiter
        started = loop.time()
        if not await self.send(ConnectionProbeMessage()):
            return None
        try:
            await asyncio.wait_for(waiter, timeout=timeout or self.probe_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Connection probe to {self.peer} timed out")
            return None
        finally:
            if self._probe_waiter is waiter:
                self._probe_waiter = None
        return loop.time() - started

    async def close(self):
        if self.closed:
            return
        try:
            await self.channel.close()
        except Exception as e:
            logger.debug(f"Channel close raised (ignored): {e}")
        self._handle_close()

    # === Inbound ===

    def _handle_open(self):
        logger.info(f"Signal channel to {self.peer} opened")
        if self.probe_on_open:
            spawn(self._log_probe(), name=f"probe:{self.peer}")

    async def _log_probe(self):
        rtt = await self.probe()
        if rtt is not None:
            logger.info(f"Signal channel to {self.peer} healthy (rtt {rtt * 1000:.0f} ms)")

    def _handle_data(self, payload: Any):
        try:
            message = parse_signal_message(payload)
        except ValidationError as e:
            logger.warning(f"Dropping malformed signal message from {self.peer}: {e.errors()[:1]}")
            return None

        if isinstance(message, ConnectionProbeMessage):
            return self.send(ConnectionProbeAckMessage())
        if isinstance(message, ConnectionProbeAckMessage):
            if self._probe_waiter is not None and not self._probe_waiter.done():
                self._probe_waiter.set_result(None)
            return None
        return self._on_message(message, self)

    def _handle_close(self):
        if self.closed:
            return
        self.closed = True
        logger.info(f"Signal channel to {self.peer} closed")
        if self._on_close is not None:
            self._on_close(self)
