"""
Tests for the call signaling state machine
"""
import asyncio
from collections import defaultdict

import pytest

from caption_call.services.protocols import EMPTY_STREAM, LOCAL_AV_STREAM
from caption_call.services.signaling import (
    AlreadyInCallError,
    CallNotFoundError,
    CallSignalingMachine,
    CallState,
    CallStatus,
    InvalidTargetError,
    SignalingError,
)
from tests.helpers import FakeTransportFactory, eventually, sequential_ids, settle

EVENTS = ("state", "incoming", "incoming_withdrawn", "connected", "ended", "status", "subtitle")


def record(machine):
    seen = defaultdict(list)
    for event in EVENTS:
        machine.on(event, lambda *args, event=event: seen[event].append(args[0] if args else None))
    return seen


@pytest.fixture
async def machine(transport_factory, timers, clock):
    machine = CallSignalingMachine(
        transport_factory,
        timers,
        identity_factory=sequential_ids(),
        clock=clock,
        reject_close_delay=0.01,
    )
    await machine.start()
    return machine


@pytest.fixture
def events(machine):
    return record(machine)


async def dial(machine, transport_factory, peer="bob"):
    await machine.call_user(peer)
    return transport_factory.current.calls[-1]


async def ring(machine, transport_factory, peer="alice"):
    transport = transport_factory.current
    call = transport.incoming_call(peer)
    channel = transport.incoming_connection(peer)
    return call, channel


# === Outbound calls ===

def test_call_states_are_the_reported_values():
    assert [state.value for state in CallState] == [
        "idle", "calling", "ringing_incoming", "connected", "ended",
    ]
    assert "is_terminal" not in vars(CallState)


@pytest.mark.asyncio
async def test_start_claims_identity(machine, transport_factory):
    assert machine.local_id == "peer001"
    assert machine.state is CallState.IDLE
    assert transport_factory.current.local_id == "peer001"


@pytest.mark.asyncio
@pytest.mark.parametrize("target", ["", "   ", "peer001"])
async def test_invalid_targets_are_refused(machine, target):
    with pytest.raises(InvalidTargetError):
        await machine.call_user(target)
    assert machine.state is CallState.IDLE


@pytest.mark.asyncio
async def test_second_call_while_calling_is_refused(machine, transport_factory):
    await dial(machine, transport_factory)
    with pytest.raises(AlreadyInCallError):
        await machine.call_user("carol")


@pytest.mark.asyncio
async def test_call_opens_media_call_and_signal_channel(machine, transport_factory, events):
    call = await dial(machine, transport_factory)

    assert machine.state is CallState.CALLING
    assert machine.session.remote_identity == "bob"
    assert call.peer == "bob"
    assert call.offered == LOCAL_AV_STREAM
    assert len(transport_factory.current.channels_to("bob")) == 1
    assert machine.channel.peer == "bob"


@pytest.mark.asyncio
async def test_remote_stream_connects(machine, transport_factory, events):
    call = await dial(machine, transport_factory)

    call.remote_stream()
    call.remote_stream()

    assert machine.state is CallState.CONNECTED
    assert len(events["connected"]) == 1


@pytest.mark.asyncio
async def test_quick_close_is_reported_as_rejected(machine, transport_factory, clock, events):
    call = await dial(machine, transport_factory)

    clock.advance(0.05)
    call.remote_close()

    assert machine.state is CallState.IDLE
    assert events["status"] == [CallStatus.REJECTED]
    assert machine.local_id == "peer001"


@pytest.mark.asyncio
async def test_late_close_is_a_silent_timeout(machine, transport_factory, clock, events):
    call = await dial(machine, transport_factory)

    clock.advance(5.0)
    call.remote_close()

    assert machine.state is CallState.IDLE
    assert events["status"] == []


@pytest.mark.asyncio
async def test_unanswered_call_is_closed_after_timeout(transport_factory, timers, clock):
    machine = CallSignalingMachine(
        transport_factory,
        timers,
        identity_factory=sequential_ids(),
        clock=clock,
        unanswered_timeout=0.05,
    )
    await machine.start()
    events = record(machine)
    call = await dial(machine, transport_factory)

    clock.advance(30.0)
    await asyncio.sleep(0.1)

    assert call.closed
    assert machine.state is CallState.IDLE
    assert events["status"] == []
    assert machine.local_id == "peer001"


@pytest.mark.asyncio
async def test_answered_call_is_not_timed_out(transport_factory, timers, clock):
    machine = CallSignalingMachine(
        transport_factory,
        timers,
        identity_factory=sequential_ids(),
        clock=clock,
        unanswered_timeout=0.05,
    )
    await machine.start()
    call = await dial(machine, transport_factory)
    call.remote_stream()

    await asyncio.sleep(0.1)

    assert not call.closed
    assert machine.state is CallState.CONNECTED


@pytest.mark.asyncio
async def test_unavailable_peer_returns_to_idle_silently(machine, transport_factory, events):
    call = await dial(machine, transport_factory)

    call.remote_unavailable()

    assert machine.state is CallState.IDLE
    assert events["status"] == []
    assert machine.local_id == "peer001"
    await eventually(lambda: transport_factory.current.channels_to("bob")[0].closed)


@pytest.mark.asyncio
async def test_explicit_rejection_and_media_close_report_once(machine, transport_factory, clock, events):
    call = await dial(machine, transport_factory)
    notice = transport_factory.current.incoming_connection("bob")

    notice.receive({"type": "call_rejected"})
    await settle()
    clock.advance(0.1)
    call.remote_close()

    assert machine.state is CallState.IDLE
    assert events["status"] == [CallStatus.REJECTED]
    assert call.closed


@pytest.mark.asyncio
async def test_rejection_from_another_peer_is_ignored(machine, transport_factory, events):
    await dial(machine, transport_factory)
    stranger = transport_factory.current.incoming_connection("mallory")

    stranger.receive({"type": "call_rejected"})
    await settle()

    assert machine.state is CallState.CALLING
    assert events["status"] == []


@pytest.mark.asyncio
async def test_cancel_notifies_peer_and_returns_to_idle(machine, transport_factory, events):
    call = await dial(machine, transport_factory)
    channel = transport_factory.current.channels_to("bob")[0]

    assert await machine.cancel() is True
    await settle()

    assert channel.sent == [{"type": "call_cancelled"}]
    assert call.closed
    assert channel.closed
    assert machine.state is CallState.IDLE
    assert events["status"] == []


@pytest.mark.asyncio
async def test_cancel_outside_calling_is_noop(machine):
    assert await machine.cancel() is False
    assert machine.state is CallState.IDLE


@pytest.mark.asyncio
async def test_incoming_call_while_busy_is_declined(machine, transport_factory):
    await dial(machine, transport_factory)

    intruder = transport_factory.current.incoming_call("carol")
    await settle()

    assert intruder.closed
    assert machine.state is CallState.CALLING
    assert machine.session.remote_identity == "bob"


# === Inbound calls ===

@pytest.mark.asyncio
async def test_incoming_call_rings(machine, transport_factory, events):
    await ring(machine, transport_factory)

    assert machine.state is CallState.RINGING_INCOMING
    assert machine.session.remote_identity == "alice"
    assert events["incoming"] == ["alice"]
    assert machine.channel.peer == "alice"


@pytest.mark.asyncio
async def test_accept_answers_with_local_stream(machine, transport_factory, events):
    call, _ = await ring(machine, transport_factory)

    await machine.accept()

    assert call.answered_with == LOCAL_AV_STREAM
    assert machine.state is CallState.CONNECTED
    assert len(events["connected"]) == 1


@pytest.mark.asyncio
async def test_channel_opened_before_call_is_adopted(machine, transport_factory):
    transport = transport_factory.current
    transport.incoming_connection("alice")
    transport.incoming_call("alice")

    await machine.accept()

    assert machine.channel is not None
    assert machine.channel.peer == "alice"


@pytest.mark.asyncio
async def test_accept_or_reject_without_ringing_call(machine):
    with pytest.raises(CallNotFoundError):
        await machine.accept()
    with pytest.raises(CallNotFoundError):
        await machine.reject()


@pytest.mark.asyncio
async def test_reject_answers_empty_then_closes_and_notifies(machine, transport_factory, events):
    call, channel = await ring(machine, transport_factory)

    await machine.reject()

    assert call.answered_with == EMPTY_STREAM
    assert machine.state is CallState.IDLE
    assert not call.closed

    await asyncio.sleep(0.05)

    assert call.closed
    notice = transport_factory.current.channels_to("alice")[-1]
    assert notice.sent == [{"type": "call_rejected"}]
    assert notice.closed
    assert channel.closed
    assert events["incoming_withdrawn"] == []


@pytest.mark.asyncio
async def test_back_to_back_rejects_close_both_calls(machine, transport_factory):
    first, _ = await ring(machine, transport_factory, peer="alice")
    await machine.reject()
    second, _ = await ring(machine, transport_factory, peer="carol")
    await machine.reject()

    await asyncio.sleep(0.05)

    assert first.closed
    assert second.closed


@pytest.mark.asyncio
async def test_caller_cancel_withdraws_incoming(machine, transport_factory, events):
    call, channel = await ring(machine, transport_factory)

    channel.receive({"type": "call_cancelled"})
    await settle()
    call.remote_close()

    assert machine.state is CallState.IDLE
    assert events["incoming_withdrawn"] == ["alice"]


@pytest.mark.asyncio
async def test_caller_hangup_while_ringing_withdraws_incoming(machine, transport_factory, events):
    call, _ = await ring(machine, transport_factory)

    call.remote_close()

    assert machine.state is CallState.IDLE
    assert events["incoming_withdrawn"] == ["alice"]


# === Connected sessions ===

@pytest.mark.asyncio
async def test_subtitles_forwarded_only_while_connected(machine, transport_factory, events):
    call, channel = await ring(machine, transport_factory)
    payload = {"type": "subtitle", "text": "hola", "language": "es", "isFinal": True}

    channel.receive(payload)
    assert events["subtitle"] == []

    await machine.accept()
    channel.receive(payload)
    channel.receive({"type": "subtitle", "broken": True})

    assert len(events["subtitle"]) == 1
    assert events["subtitle"][0].text == "hola"


@pytest.mark.asyncio
async def test_end_rotates_identity(machine, transport_factory, events):
    call = await dial(machine, transport_factory)
    call.remote_stream()
    old_transport = transport_factory.current
    channel = old_transport.channels_to("bob")[0]

    assert await machine.end() is True

    assert call.closed
    assert channel.closed
    assert old_transport.destroyed
    assert len(events["ended"]) == 1
    assert machine.state is CallState.IDLE
    assert machine.local_id == "peer002"
    assert transport_factory.current.local_id == "peer002"
    assert machine.session.remote_identity is None


class FlakyTransportFactory(FakeTransportFactory):
    def __init__(self):
        super().__init__()
        self.failures = 0

    async def __call__(self, local_id):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("redis unreachable")
        return await super().__call__(local_id)


@pytest.mark.asyncio
async def test_failed_rebind_after_end_surfaces_transport_error(timers, clock):
    factory = FlakyTransportFactory()
    machine = CallSignalingMachine(factory, timers, identity_factory=sequential_ids(), clock=clock)
    await machine.start()
    call = await dial(machine, factory)
    call.remote_stream()

    factory.failures = 1
    assert await machine.end() is True

    assert machine.state is CallState.IDLE
    assert machine.local_id == "peer002"
    assert machine.transport is None

    factory.failures = 1
    with pytest.raises(SignalingError) as excinfo:
        await machine.call_user("carol")
    assert not isinstance(excinfo.value, AlreadyInCallError)
    assert machine.state is CallState.IDLE

    await machine.call_user("carol")

    assert machine.state is CallState.CALLING
    assert machine.transport is factory.current
    assert factory.current.local_id == "peer002"


@pytest.mark.asyncio
async def test_remote_hangup_ends_session(machine, transport_factory, events):
    call = await dial(machine, transport_factory)
    call.remote_stream()

    call.remote_close()
    await settle()

    assert machine.state is CallState.IDLE
    assert len(events["ended"]) == 1
    assert machine.local_id == "peer002"


@pytest.mark.asyncio
async def test_end_is_idempotent(machine, transport_factory, events):
    call = await dial(machine, transport_factory)
    call.remote_stream()

    await machine.end()
    assert await machine.end() is False
    call.remote_close()
    await settle()

    assert len(events["ended"]) == 1
    assert len(transport_factory.created) == 2


@pytest.mark.asyncio
async def test_events_from_retired_transport_are_ignored(machine, transport_factory):
    call = await dial(machine, transport_factory)
    call.remote_stream()
    old_transport = transport_factory.current
    await machine.end()

    old_transport.incoming_call("ghost")
    await settle()

    assert machine.state is CallState.IDLE


@pytest.mark.asyncio
async def test_send_uses_session_channel(machine, transport_factory):
    from caption_call.schemas.signal_messages import SubtitleMessage

    assert await machine.send(SubtitleMessage(text="x", language="en")) is False

    call = await dial(machine, transport_factory)
    call.remote_stream()
    message = SubtitleMessage(text="hi", language="en", is_final=True)

    assert await machine.send(message) is True
    assert transport_factory.current.channels_to("bob")[0].sent == [message.to_wire()]
